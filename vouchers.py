"""
Voucher catalogue and the voucher lifecycle.

A voucher is stored as ``active`` or ``redeemed``. ``expired`` is never
written: it is derived whenever an active voucher is read after its
``expires_at``.
"""
import math
import secrets
import string
from datetime import timedelta
from typing import List, Optional

import structlog
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from config import get_settings
from database import (
    USERS,
    VOUCHER_TEMPLATES,
    VOUCHERS,
    create_document,
    get_documents,
    to_object_id,
    to_str_id,
    utcnow,
)
from errors import (
    AlreadyRedeemed,
    BackendUnavailable,
    Expired,
    InsufficientBalance,
    InsufficientPoints,
    NotFound,
    OutOfStock,
    TemplateInactive,
    TemplateNotFound,
)
from ledger import apply_delta, record_transaction, refund_points
from schemas import Voucher, VoucherTemplate, VerifyResult

logger = structlog.get_logger(__name__)

CODE_CHARSET = string.ascii_uppercase + string.digits  # A-Z, 0-9

DEFAULT_TEMPLATES = [
    {
        "name": "Free coffee",
        "points_cost": 50,
        "discount_type": "free_item",
        "discount_value": 0,
        "vendor_name": "Campus Cafe",
        "category": "food",
        "terms_conditions": "One regular coffee per voucher.",
        "inventory": None,
        "valid_days": 14,
        "is_active": True,
    },
    {
        "name": "10% off textbooks",
        "points_cost": 150,
        "discount_type": "percentage",
        "discount_value": 10,
        "vendor_name": "University Bookstore",
        "category": "books",
        "terms_conditions": "Not valid on sale items.",
        "inventory": None,
        "valid_days": 30,
        "is_active": True,
    },
    {
        "name": "R50 off a meal",
        "points_cost": 300,
        "discount_type": "fixed_amount",
        "discount_value": 50,
        "vendor_name": "Student Union Dining",
        "category": "food",
        "terms_conditions": "Minimum spend R100.",
        "inventory": 100,
        "valid_days": 30,
        "is_active": True,
    },
    {
        "name": "Reusable water bottle",
        "points_cost": 500,
        "discount_type": "free_item",
        "discount_value": 0,
        "vendor_name": "Green Office",
        "category": "merchandise",
        "terms_conditions": "Collect at the Green Office during office hours.",
        "inventory": 25,
        "valid_days": 60,
        "is_active": True,
    },
]


def generate_voucher_code(length: Optional[int] = None) -> str:
    """Generate a cryptographically random code drawn uniformly from A-Z0-9."""
    length = length or get_settings().voucher_code_length
    return "".join(secrets.choice(CODE_CHARSET) for _ in range(length))


def derive_status(voucher: dict, now=None) -> str:
    """Status as seen by readers: an active voucher past its expiry is expired."""
    status = voucher.get("status", "active")
    expires_at = voucher.get("expires_at")
    if status == "active" and expires_at is not None and expires_at < (now or utcnow()):
        return "expired"
    return status


def serialize_voucher(voucher: dict, now=None) -> dict:
    now = now or utcnow()
    d = to_str_id(voucher)
    d["voucher_id"] = d.get("id")
    d["status"] = derive_status(voucher, now)
    expires_at = voucher.get("expires_at")
    d["days_until_expiry"] = (
        math.ceil((expires_at - now).total_seconds() / 86400) if expires_at else 0
    )
    return d


# --------- Catalogue ---------

def get_voucher_templates(db) -> List[dict]:
    docs = get_documents(db, VOUCHER_TEMPLATES, {"is_active": True}, sort=[("points_cost", ASCENDING)])
    templates = []
    for doc in docs:
        d = to_str_id(doc)
        d["template_id"] = d["id"]
        templates.append(d)
    return templates


def get_voucher_categories(db) -> List[str]:
    return sorted(c for c in db[VOUCHER_TEMPLATES].distinct("category") if c)


def seed_voucher_templates(db) -> dict:
    """Insert the default catalogue when no templates exist yet."""
    existing = db[VOUCHER_TEMPLATES].count_documents({})
    if existing > 0:
        return {"status": "ok", "seeded": False, "count": existing}

    for item in DEFAULT_TEMPLATES:
        create_document(db, VOUCHER_TEMPLATES, VoucherTemplate(**item))

    logger.info("voucher_templates_seeded", count=len(DEFAULT_TEMPLATES))
    return {"status": "ok", "seeded": True, "count": len(DEFAULT_TEMPLATES)}


# --------- Lifecycle ---------

def _insert_with_unique_code(db, voucher_fields: dict) -> tuple:
    attempts = get_settings().voucher_code_attempts
    for _ in range(attempts):
        code = generate_voucher_code()
        if db[VOUCHERS].find_one({"voucher_code": code}, {"_id": 1}) is not None:
            continue
        doc = Voucher(voucher_code=code, **voucher_fields).model_dump()
        doc["created_at"] = doc["generated_at"]
        try:
            result = db[VOUCHERS].insert_one(doc)
        except DuplicateKeyError:
            continue
        return result.inserted_id, doc
    raise BackendUnavailable(f"Failed to generate unique voucher code after {attempts} attempts")


def generate_voucher(db, user_id: str, template_id: str, now=None) -> dict:
    """Spend a user's points on a voucher from a template.

    The points debit and the stock reservation are each a guarded update,
    so concurrent generators cannot overspend a balance or oversell the
    last unit. If a later step fails, the earlier ones are undone.
    """
    now = now or utcnow()
    oid = to_object_id(template_id)
    template = db[VOUCHER_TEMPLATES].find_one({"_id": oid}) if oid else None
    if template is None:
        raise TemplateNotFound()
    if not template.get("is_active", True):
        raise TemplateInactive()

    user = db[USERS].find_one({"_id": user_id})
    if user is None:
        raise NotFound("User not found")

    cost = template["points_cost"]
    if user.get("points_balance", 0) < cost:
        raise InsufficientPoints()

    tracks_stock = template.get("inventory") is not None
    if tracks_stock and template["inventory"] <= 0:
        raise OutOfStock()

    try:
        apply_delta(db, user_id, points_delta=-cost, now=now)
    except InsufficientBalance:
        raise InsufficientPoints()

    if tracks_stock:
        reserved = db[VOUCHER_TEMPLATES].find_one_and_update(
            {"_id": oid, "inventory": {"$gt": 0}},
            {"$inc": {"inventory": -1}},
            return_document=ReturnDocument.AFTER,
        )
        if reserved is None:
            refund_points(db, user_id, cost, now=now)
            raise OutOfStock()

    valid_days = template.get("valid_days") or get_settings().default_voucher_valid_days
    fields = {
        "user_id": user_id,
        "template_id": str(oid),
        "template_name": template["name"],
        "status": "active",
        "discount_type": template.get("discount_type", "percentage"),
        "discount_value": template.get("discount_value", 0),
        "vendor_name": template.get("vendor_name", ""),
        "category": template.get("category"),
        "terms_conditions": template.get("terms_conditions"),
        "points_cost": cost,
        "generated_at": now,
        "expires_at": now + timedelta(days=valid_days),
    }

    try:
        voucher_id, doc = _insert_with_unique_code(db, fields)
    except (PyMongoError, BackendUnavailable):
        if tracks_stock:
            db[VOUCHER_TEMPLATES].update_one({"_id": oid}, {"$inc": {"inventory": 1}})
        refund_points(db, user_id, cost, now=now)
        logger.error("voucher_mint_failed", user_id=user_id, template_id=str(oid))
        raise

    record_transaction(
        db,
        user_id,
        "voucher_purchase",
        -cost,
        f"Generated voucher: {template['name']}",
        now=now,
        voucher_id=str(voucher_id),
    )
    logger.info("voucher_generated", user_id=user_id, template_id=str(oid), voucher_id=str(voucher_id))

    doc["_id"] = voucher_id
    return serialize_voucher(doc, now)


def redeem_voucher(db, voucher_id: str, redeemed_by: str, now=None) -> dict:
    """Mark an active, unexpired voucher as redeemed by a vendor.

    Not idempotent: redeeming twice fails with AlreadyRedeemed.
    """
    now = now or utcnow()
    oid = to_object_id(voucher_id)
    if oid is None:
        raise NotFound("Voucher not found")

    voucher = db[VOUCHERS].find_one_and_update(
        {"_id": oid, "status": "active", "expires_at": {"$gte": now}},
        {"$set": {"status": "redeemed", "redeemed_at": now, "redeemed_by": redeemed_by, "updated_at": now}},
        return_document=ReturnDocument.AFTER,
    )
    if voucher is None:
        existing = db[VOUCHERS].find_one({"_id": oid})
        if existing is None:
            raise NotFound("Voucher not found")
        if existing.get("status") == "redeemed":
            raise AlreadyRedeemed()
        raise Expired()

    record_transaction(
        db,
        voucher["user_id"],
        "voucher_redemption",
        0,
        f"Redeemed voucher: {voucher.get('template_name', '')}",
        now=now,
        voucher_id=str(oid),
        vendor_id=redeemed_by,
    )
    logger.info("voucher_redeemed", voucher_id=str(oid), redeemed_by=redeemed_by)
    return serialize_voucher(voucher, now)


def verify_voucher_code(db, code: str, now=None) -> VerifyResult:
    """Check whether a code can be redeemed right now. Read-only."""
    now = now or utcnow()
    try:
        voucher = db[VOUCHERS].find_one({"voucher_code": (code or "").strip().upper()})
    except PyMongoError as exc:
        logger.error("voucher_verify_failed", error=str(exc))
        return VerifyResult(valid=False, reason=BackendUnavailable.code, message="Verification error")

    if voucher is None:
        return VerifyResult(valid=False, reason=NotFound.code, message="Voucher not found")

    status = derive_status(voucher, now)
    if status == "redeemed":
        return VerifyResult(valid=False, reason=AlreadyRedeemed.code, message=AlreadyRedeemed.default_message)
    if status == "expired":
        return VerifyResult(valid=False, reason=Expired.code, message=Expired.default_message)

    return VerifyResult(
        valid=True,
        message="Voucher is valid",
        voucher_id=str(voucher["_id"]),
        voucher=serialize_voucher(voucher, now),
    )


def get_user_vouchers(db, user_id: str, status_filter: str = "all", now=None) -> List[dict]:
    now = now or utcnow()
    cursor = db[VOUCHERS].find({"user_id": user_id}).sort("generated_at", DESCENDING)
    vouchers = []
    for doc in cursor:
        item = serialize_voucher(doc, now)
        if status_filter == "all" or item["status"] == status_filter:
            vouchers.append(item)
    return vouchers
