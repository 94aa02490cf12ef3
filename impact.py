"""
Environmental impact scoring.

CO2 credit per unit comes from one canonical table. The impact score is a
bounded 0-100 number that grows with cumulative CO2 credit and with how
many different materials a student recycles.
"""
import math
from dataclasses import dataclass, field
from typing import Dict, Iterable, Mapping

import structlog
from pymongo import ASCENDING
from pymongo.errors import PyMongoError

from database import ACTIVITIES
from schemas import EnvironmentalStats

logger = structlog.get_logger(__name__)

TRACKED_MATERIALS = ("plastic", "glass", "aluminum", "paper", "cardboard", "metal", "electronics")
MATERIALS = TRACKED_MATERIALS + ("other",)

# kg CO2 saved per recycled unit
CO2_PER_UNIT = {
    "plastic": 0.15,
    "glass": 0.25,
    "aluminum": 0.35,
    "paper": 0.10,
    "cardboard": 0.12,
    "metal": 0.30,
    "electronics": 0.50,
}
DEFAULT_CO2_PER_UNIT = 0.10

SCORE_CAP = 100.0
LONGEVITY_DAYS = 30


def normalize_material(material) -> str:
    """Lower-case a material name, folding anything unknown into "other"."""
    name = str(material or "").strip().lower()
    return name if name in MATERIALS else "other"


def co2_for(material: str, quantity: int = 1) -> float:
    return CO2_PER_UNIT.get(normalize_material(material), DEFAULT_CO2_PER_UNIT) * quantity


@dataclass
class ImpactSummary:
    total_co2: float = 0.0
    per_material: Dict[str, float] = field(default_factory=dict)
    days_active: int = 0
    longevity: float = 0.0
    material_diversity: float = 0.0
    score: float = 0.0


def score_events(events: Iterable[Mapping]) -> ImpactSummary:
    """Score a user's recycling events.

    Only the tracked materials contribute. With ``y`` the square root of
    material diversity, the diversity weight is
    ``0.5 * ln(sqrt(1 + y^2) + 1) / y`` (0.5 when ``y`` is 0) and the score
    is ``min(100, weight * total_co2 * 10)`` rounded to two places.
    """
    per_material = {m: 0.0 for m in TRACKED_MATERIALS}
    counts = {m: 0 for m in TRACKED_MATERIALS}
    first = last = None
    total_events = 0

    for event in events:
        total_events += 1
        material = normalize_material(event.get("material"))
        if material in counts:
            counts[material] += 1
            per_material[material] += co2_for(material, event.get("quantity") or 1)

        timestamp = event.get("timestamp")
        if timestamp is not None:
            if first is None or timestamp < first:
                first = timestamp
            if last is None or timestamp > last:
                last = timestamp

    if total_events == 0:
        return ImpactSummary(per_material=per_material)

    days_active = (last - first).days + 1 if first is not None else 1
    longevity = min(1.0, days_active / LONGEVITY_DAYS)

    diversity = sum(1 for c in counts.values() if c > 0) / len(TRACKED_MATERIALS)
    y = math.sqrt(diversity)
    weight = 0.5
    if y > 0:
        weight = 0.5 * math.log(math.sqrt(1 + y * y) + 1) / y

    total_co2 = sum(per_material.values())
    score = round(min(SCORE_CAP, weight * total_co2 * 10), 2)

    return ImpactSummary(
        total_co2=total_co2,
        per_material=per_material,
        days_active=days_active,
        longevity=longevity,
        material_diversity=diversity,
        score=score,
    )


def _user_events(db, user_id: str):
    return list(db[ACTIVITIES].find({"user_id": user_id}).sort("timestamp", ASCENDING))


def calculate_impact_score(db, user_id: str) -> float:
    """Impact score for a user; storage failures are logged and score 0."""
    try:
        return score_events(_user_events(db, user_id)).score
    except (PyMongoError, AttributeError, TypeError, ValueError) as exc:
        logger.warning("impact_score_failed", user_id=user_id, error=str(exc))
        return 0.0


def get_environmental_stats(db, user_id: str) -> EnvironmentalStats:
    try:
        events = _user_events(db, user_id)
    except PyMongoError as exc:
        logger.warning("environmental_stats_failed", user_id=user_id, error=str(exc))
        return EnvironmentalStats()

    breakdown = {m: 0.0 for m in TRACKED_MATERIALS}
    total_co2 = 0.0
    for event in events:
        credit = event.get("co2_impact") or 0.0
        total_co2 += credit
        material = normalize_material(event.get("material"))
        if material in breakdown:
            breakdown[material] += credit

    summary = score_events(events)
    return EnvironmentalStats(
        total_co2_saved=round(total_co2, 2),
        impact_score=summary.score,
        material_breakdown={m: round(v, 2) for m, v in breakdown.items()},
        total_items=len(events),
        days_active=summary.days_active,
    )
