"""
MongoDB access for the scheduler.

One client per process; handlers receive the database through the
``get_db`` dependency so tests can swap in an in-memory double.
"""
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from app_logger import get_logger
from errors import NotFound
from settings import get_settings

logger = get_logger("database")


def utcnow() -> datetime:
    # pymongo hands back naive UTC datetimes; keep everything in that form
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


@lru_cache
def get_client() -> MongoClient:
    settings = get_settings()
    logger.info("Connecting to MongoDB database %s", settings.database_name)
    return MongoClient(settings.database_url)


def get_db() -> Database:
    db = get_client()[get_settings().database_name]
    ensure_indexes(db)
    return db


_indexed = set()


def ensure_indexes(db: Database) -> None:
    """Create the unique keys the fan-out and reminder paths rely on."""
    key = (id(db.client), db.name)
    if key in _indexed:
        return
    db.enrollment.create_index([("class_id", ASCENDING), ("student_id", ASCENDING)], unique=True)
    db.notification.create_index(
        [("broadcast_id", ASCENDING), ("user_id", ASCENDING)],
        unique=True,
        partialFilterExpression={"broadcast_id": {"$type": "string"}},
    )
    db.alert.create_index(
        [("broadcast_id", ASCENDING), ("user_id", ASCENDING)],
        unique=True,
        partialFilterExpression={"broadcast_id": {"$type": "string"}},
    )
    db.notification.create_index(
        [("event_id", ASCENDING), ("user_id", ASCENDING), ("type", ASCENDING)],
        unique=True,
        partialFilterExpression={"event_id": {"$type": "string"}},
    )
    db.notification.create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    db.alert.create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    db.event.create_index([("event_type", ASCENDING), ("start_at", ASCENDING)])
    db.broadcast_status.create_index([("broadcast_id", ASCENDING), ("user_id", ASCENDING)], unique=True)
    _indexed.add(key)


def object_id(value: str) -> ObjectId:
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise NotFound("Not found")


def create_document(db: Database, collection_name: str, data: Dict[str, Any]) -> str:
    now = utcnow()
    doc = dict(data)
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = db[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(
    db: Database,
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    limit: Optional[int] = None,
    sort: Optional[List] = None,
) -> List[Dict[str, Any]]:
    cursor = db[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return [serialize(doc) for doc in cursor]


def serialize(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if doc is None:
        return None
    out = dict(doc)
    out["id"] = str(out.pop("_id"))
    return out
