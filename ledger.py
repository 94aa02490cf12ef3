"""
Points ledger: per-user running totals and the transaction log.

Every balance change is one conditional ``find_one_and_update``. Debits
carry the balance guard in the filter, so two concurrent spends can never
both pass the check against the same balance.
"""
from typing import List, Optional

import structlog
from pymongo import DESCENDING, ReturnDocument

from database import TRANSACTIONS, USERS, create_document, get_documents, to_str_id, utcnow
from errors import InsufficientBalance, NotFound
from impact import normalize_material
from schemas import Transaction, UserAccount, UserStats

logger = structlog.get_logger(__name__)

POINTS_PER_UNIT = {
    "plastic": 5,
    "glass": 10,
    "aluminum": 7,
    "paper": 3,
    "cardboard": 4,
    "metal": 8,
    "electronics": 15,
}
DEFAULT_POINTS = 5

COUNTER_FIELDS = (
    "points_balance",
    "total_points_earned",
    "total_points_spent",
    "total_items_recycled",
    "total_co2_saved",
)


def points_for(material: str, quantity: int = 1) -> int:
    return POINTS_PER_UNIT.get(normalize_material(material), DEFAULT_POINTS) * quantity


def create_user_account(db, user_id: str, profile: UserAccount) -> dict:
    """Create the profile for a new identity with all counters zeroed.

    Registering an identity that already has a profile returns the
    existing document untouched.
    """
    doc = profile.model_dump()
    for name in COUNTER_FIELDS:
        doc[name] = 0
    doc["total_co2_saved"] = 0.0
    if not doc.get("display_name"):
        doc["display_name"] = f"{profile.first_name} {profile.last_name}".strip() or "Anonymous"
    now = utcnow()
    doc["created_at"] = now
    doc["updated_at"] = now

    result = db[USERS].update_one({"_id": user_id}, {"$setOnInsert": doc}, upsert=True)
    if result.upserted_id is not None:
        logger.info("user_created", user_id=user_id)
    return db[USERS].find_one({"_id": user_id})


PROFILE_FIELDS = (
    "email",
    "first_name",
    "last_name",
    "display_name",
    "student_id",
    "university",
    "residence_hall",
)


def get_user_profile(db, user_id: str) -> dict:
    user = db[USERS].find_one({"_id": user_id})
    if user is None:
        raise NotFound("User not found")
    return to_str_id(user)


def update_user_profile(db, user_id: str, changes: dict, now=None) -> dict:
    """Change profile fields of an existing user.

    Only the keys in ``PROFILE_FIELDS`` are applied; counters and status
    are never writable through here.
    """
    fields = {k: v for k, v in changes.items() if k in PROFILE_FIELDS}
    fields["updated_at"] = now or utcnow()
    user = db[USERS].find_one_and_update(
        {"_id": user_id},
        {"$set": fields},
        return_document=ReturnDocument.AFTER,
    )
    if user is None:
        raise NotFound("User not found")
    logger.info("user_profile_updated", user_id=user_id, fields=sorted(k for k in fields if k != "updated_at"))
    return to_str_id(user)


def apply_delta(db, user_id: str, points_delta: int = 0, co2_delta: float = 0.0,
                item_delta: int = 0, now=None) -> dict:
    """Apply a points/CO2/item change to a user's totals and return the updated account.

    Positive points also count towards ``total_points_earned``; negative
    points count towards ``total_points_spent`` and may not take the
    balance below zero.
    """
    if co2_delta < 0 or item_delta < 0:
        raise ValueError("CO2 and item counters only move forward")

    inc = {"points_balance": points_delta}
    if points_delta > 0:
        inc["total_points_earned"] = points_delta
    elif points_delta < 0:
        inc["total_points_spent"] = -points_delta
    if item_delta:
        inc["total_items_recycled"] = item_delta
    if co2_delta:
        inc["total_co2_saved"] = co2_delta

    query = {"_id": user_id}
    if points_delta < 0:
        query["points_balance"] = {"$gte": -points_delta}

    update = {"$inc": inc, "$set": {"updated_at": now or utcnow()}}
    if item_delta:
        update["$set"]["last_activity_date"] = now or utcnow()

    account = db[USERS].find_one_and_update(query, update, return_document=ReturnDocument.AFTER)
    if account is None:
        if db[USERS].find_one({"_id": user_id}, {"_id": 1}) is None:
            raise NotFound("User not found")
        logger.info("ledger_debit_rejected", user_id=user_id, points_delta=points_delta)
        raise InsufficientBalance()

    logger.debug(
        "ledger_delta_applied",
        user_id=user_id,
        points_delta=points_delta,
        co2_delta=co2_delta,
        item_delta=item_delta,
        balance=account["points_balance"],
    )
    return account


def refund_points(db, user_id: str, points: int, now=None) -> dict:
    """Give back points taken by a purchase that could not be completed."""
    account = db[USERS].find_one_and_update(
        {"_id": user_id},
        {
            "$inc": {"points_balance": points, "total_points_spent": -points},
            "$set": {"updated_at": now or utcnow()},
        },
        return_document=ReturnDocument.AFTER,
    )
    if account is None:
        raise NotFound("User not found")
    logger.info("ledger_refund", user_id=user_id, points=points)
    return account


def record_transaction(db, user_id: str, type: str, amount: int, description: str,
                       now=None, **refs) -> str:
    txn = Transaction(
        user_id=user_id,
        type=type,
        amount=amount,
        description=description,
        timestamp=now or utcnow(),
        **refs,
    )
    return create_document(db, TRANSACTIONS, txn)


def get_user_stats(db, user_id: str) -> UserStats:
    user = db[USERS].find_one({"_id": user_id})
    if user is None:
        raise NotFound("User not found")
    return UserStats(
        user_id=user_id,
        points_balance=user.get("points_balance", 0),
        total_points_earned=user.get("total_points_earned", 0),
        total_points_spent=user.get("total_points_spent", 0),
        total_items_recycled=user.get("total_items_recycled", 0),
        total_co2_saved=round(user.get("total_co2_saved", 0.0), 2),
    )


def get_user_transactions(db, user_id: str, limit: Optional[int] = 50) -> List[dict]:
    docs = get_documents(db, TRANSACTIONS, {"user_id": user_id}, sort=[("timestamp", DESCENDING)], limit=limit)
    return [to_str_id(d) for d in docs]
