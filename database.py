"""
MongoDB access for the recycling rewards API.

The client is created once at import time from settings. When DATABASE_URL
is not set, ``db`` stays ``None`` and routes answer "Database not
configured".
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

import structlog
from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from config import get_settings

logger = structlog.get_logger(__name__)

USERS = "users"
ACTIVITIES = "recycling_activities"
VOUCHER_TEMPLATES = "voucher_templates"
VOUCHERS = "vouchers"
TRANSACTIONS = "transactions"
UNIVERSITIES = "universities"
RESIDENCE_HALLS = "residence_halls"


def _connect() -> Optional[Database]:
    settings = get_settings()
    if not settings.database_url:
        return None
    client = MongoClient(settings.database_url, serverSelectionTimeoutMS=settings.mongo_timeout_ms)
    return client[settings.database_name]


db = _connect()


def get_db() -> Optional[Database]:
    """FastAPI dependency returning the configured database (or None)."""
    return db


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, the form Mongo hands back."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_object_id(value: Any) -> Optional[ObjectId]:
    """Parse an id string, returning None when it is not a valid ObjectId."""
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


def to_str_id(doc):
    if doc is None:
        return None
    d = {**doc}
    if d.get("_id") is not None:
        d["id"] = str(d.pop("_id"))
    return d


def create_document(database: Database, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    """Insert a document, stamping created_at/updated_at, and return its id as a string."""
    doc = data.model_dump() if isinstance(data, BaseModel) else dict(data)
    now = utcnow()
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = database[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(
    database: Database,
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    sort: Optional[List[Tuple[str, int]]] = None,
    limit: Optional[int] = None,
) -> List[Dict[str, Any]]:
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def ensure_indexes(database: Database) -> None:
    """Create the indexes the rewards rules depend on."""
    database[VOUCHERS].create_index("voucher_code", unique=True)
    database[VOUCHERS].create_index([("user_id", ASCENDING), ("generated_at", DESCENDING)])
    database[ACTIVITIES].create_index([("user_id", ASCENDING), ("timestamp", ASCENDING)])
    database[ACTIVITIES].create_index([("barcode", ASCENDING), ("timestamp", DESCENDING)])
    database[TRANSACTIONS].create_index([("user_id", ASCENDING), ("timestamp", DESCENDING)])
    logger.info("indexes_ensured", database=database.name)
