"""Recording recycling events: scoring, persistence and ledger credit."""
from datetime import timedelta
from typing import List, Optional

import structlog
from pymongo import DESCENDING
from pymongo.errors import PyMongoError

from config import get_settings
from database import (
    ACTIVITIES,
    RESIDENCE_HALLS,
    UNIVERSITIES,
    USERS,
    create_document,
    get_documents,
    to_object_id,
    to_str_id,
    utcnow,
)
from errors import DuplicateSubmission, NotFound
from impact import co2_for, normalize_material
from ledger import apply_delta, points_for, record_transaction
from schemas import EventResult, RecyclingActivity

logger = structlog.get_logger(__name__)


def find_recent_submission(db, dedupe_code: str, now, window_seconds: int) -> Optional[dict]:
    """Latest event carrying ``dedupe_code`` inside the de-duplication window, if any."""
    return db[ACTIVITIES].find_one(
        {"barcode": dedupe_code, "timestamp": {"$gt": now - timedelta(seconds=window_seconds)}},
        sort=[("timestamp", DESCENDING)],
    )


def record_event(db, user_id: str, material: str, quantity: int = 1,
                 location: Optional[str] = None, dedupe_code: Optional[str] = None,
                 now=None) -> EventResult:
    """Record one recycling submission and credit the user.

    The same ``dedupe_code`` scanned again within the configured window is
    rejected with DuplicateSubmission. This guards against double scans of
    one item, not against arbitrary client retries.
    """
    if quantity < 1:
        raise ValueError("quantity must be at least 1")

    now = now or utcnow()
    material = normalize_material(material)

    user = db[USERS].find_one({"_id": user_id})
    if user is None:
        raise NotFound("User not found")

    if dedupe_code:
        window = get_settings().dedupe_window_seconds
        if find_recent_submission(db, dedupe_code, now, window) is not None:
            logger.info("duplicate_submission", user_id=user_id, dedupe_code=dedupe_code)
            raise DuplicateSubmission()

    points = points_for(material, quantity)
    co2 = co2_for(material, quantity)

    activity = RecyclingActivity(
        user_id=user_id,
        material=material,
        quantity=quantity,
        points=points,
        co2_impact=co2,
        location=location or "Campus Scanner",
        barcode=dedupe_code,
        timestamp=now,
    )
    activity_id = create_document(db, ACTIVITIES, activity)

    try:
        account = apply_delta(db, user_id, points_delta=points, co2_delta=co2, item_delta=quantity, now=now)
    except (PyMongoError, NotFound):
        db[ACTIVITIES].delete_one({"_id": to_object_id(activity_id)})
        logger.error("ledger_update_failed", user_id=user_id, activity_id=activity_id)
        raise

    record_transaction(
        db,
        user_id,
        "recycling",
        points,
        f"Recycled {material}",
        now=now,
        activity_id=activity_id,
    )
    update_group_stats(db, user, points, co2, quantity)

    logger.info("recycling_recorded", user_id=user_id, material=material, points=points, activity_id=activity_id)
    return EventResult(
        activity_id=activity_id,
        material=material,
        quantity=quantity,
        points=points,
        co2_impact=co2,
        new_balance=account["points_balance"],
        total_items=account.get("total_items_recycled", 0),
        total_co2=round(account.get("total_co2_saved", 0.0), 2),
    )


def _group_key(value):
    return to_object_id(value) or value


def update_group_stats(db, user: dict, points: int, co2: float, quantity: int) -> None:
    """Add an event to the user's university and residence hall totals.

    Leaderboard aggregates only; a failure here is logged and does not
    undo the event.
    """
    targets = []
    if user.get("university"):
        targets.append((UNIVERSITIES, user["university"], {
            "total_points": points,
            "total_items_recycled": quantity,
            "total_co2_saved": co2,
        }))
    if user.get("residence_hall"):
        targets.append((RESIDENCE_HALLS, user["residence_hall"], {
            "total_points": points,
            "total_items_recycled": quantity,
        }))

    for collection, key, inc in targets:
        try:
            result = db[collection].update_one({"_id": _group_key(key)}, {"$inc": inc})
        except PyMongoError as exc:
            logger.warning("group_stats_not_updated", collection=collection, key=key, error=str(exc))
            continue
        if result.matched_count == 0:
            logger.warning("group_stats_not_updated", collection=collection, key=key, error="missing document")


def get_recycling_history(db, user_id: str, limit: Optional[int] = 50) -> List[dict]:
    docs = get_documents(db, ACTIVITIES, {"user_id": user_id}, sort=[("timestamp", DESCENDING)], limit=limit)
    return [to_str_id(d) for d in docs]
