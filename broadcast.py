"""
Broadcast fan-out.

A broadcast is stored as one ``event`` document (``broadcast`` or
``urgent_broadcast``) plus one notification or alert row per recipient.
Rows are keyed by (broadcast_id, user_id) and written with upserts, so
delivering the same broadcast again only fills in recipients that are still
missing. ``metadata.sent_to`` always reflects rows actually stored.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Tuple

from bson import ObjectId
from pydantic import BaseModel
from pymongo.database import Database
from pymongo.errors import PyMongoError

from app_logger import get_logger
from auth import Principal
from database import create_document, get_documents, object_id, serialize, utcnow
from errors import Forbidden, NotFound, ValidationFailed
from settings import Settings
from visibility import class_teacher_ids, enrolled_student_ids

logger = get_logger("broadcast")

BROADCAST_EVENT_TYPES = ("broadcast", "urgent_broadcast")


class BroadcastRequest(BaseModel):
    title: Optional[str] = None
    message: Optional[str] = None
    target_class: Optional[str] = None
    target_user: Optional[str] = None
    visibility_scope: Optional[str] = None
    notification_type: Literal["notification", "alert"] = "notification"
    isUrgent: bool = False


@dataclass
class FanOutResult:
    committed: int = 0
    created: int = 0
    failed: List[str] = field(default_factory=list)


def resolve_recipients(
    db: Database,
    settings: Settings,
    target_class: Optional[str] = None,
    target_user: Optional[str] = None,
    visibility_scope: Optional[str] = None,
) -> Tuple[List[str], str]:
    """Return (recipient ids, effective visibility scope) for a broadcast target."""
    if target_class:
        recipients = enrolled_student_ids(db, target_class)
        if settings.broadcast_include_class_teachers:
            for teacher_id in class_teacher_ids(db, target_class):
                if teacher_id not in recipients:
                    recipients.append(teacher_id)
        return recipients, visibility_scope or "class"
    if target_user:
        if db.profile.find_one({"_id": target_user}, {"_id": 1}) is None:
            return [], visibility_scope or "user"
        return [target_user], visibility_scope or "user"
    if visibility_scope in (None, "all", "schoolwide"):
        recipients = [row["_id"] for row in db.profile.find({"is_active": {"$ne": False}}, {"_id": 1})]
        return recipients, visibility_scope or "all"
    raise ValidationFailed(
        "Invalid or missing target configuration. Use target_class, target_user, or visibility_scope: all"
    )


def _row_for(event: Dict[str, Any], sent_to: int) -> Dict[str, Any]:
    meta = event.get("metadata", {})
    notification_type = meta.get("notification_type", "notification")
    now = utcnow()
    row = {
        "message": meta.get("full_message") or event.get("description") or "",
        "status": "unread",
        "metadata": {
            "notification_type": notification_type,
            "isUrgent": meta.get("isUrgent", False),
            "sent_to": sent_to,
            "sender_role": meta.get("sender_role"),
            "title": event.get("title"),
        },
        "created_at": now,
        "updated_at": now,
    }
    if notification_type == "alert":
        row.update({"alert_type": "announcement", "delivery": "in_app"})
    else:
        row["type"] = "broadcast"
    return row


def _table_for(event: Dict[str, Any]) -> str:
    return "alert" if event.get("metadata", {}).get("notification_type") == "alert" else "notification"


def fan_out(db: Database, event: Dict[str, Any], recipients: List[str]) -> FanOutResult:
    """Write one row per recipient for ``event`` and record the committed count on it."""
    broadcast_id = str(event["_id"])
    table = _table_for(event)
    result = FanOutResult()

    for user_id in recipients:
        try:
            res = db[table].update_one(
                {"broadcast_id": broadcast_id, "user_id": user_id},
                {"$setOnInsert": _row_for(event, len(recipients))},
                upsert=True,
            )
        except PyMongoError as exc:
            logger.error("Broadcast %s: delivery to %s failed: %s", broadcast_id, user_id, exc)
            result.failed.append(user_id)
            continue
        if res.upserted_id is not None:
            result.created += 1

    result.committed = db[table].count_documents({"broadcast_id": broadcast_id})
    db[table].update_many({"broadcast_id": broadcast_id}, {"$set": {"metadata.sent_to": result.committed}})
    db.event.update_one(
        {"_id": event["_id"]},
        {
            "$set": {
                "metadata.sent_to": result.committed,
                "metadata.delivery_failed": len(result.failed),
                "updated_at": utcnow(),
            }
        },
    )
    if result.failed:
        logger.warning(
            "Broadcast %s partially delivered: %d stored, %d failed",
            broadcast_id, result.committed, len(result.failed),
        )
    else:
        logger.info("Broadcast %s delivered to %d recipients (%d new)", broadcast_id, result.committed, result.created)
    return result


def _response(db: Database, event_id: ObjectId, result: FanOutResult) -> Dict[str, Any]:
    event = serialize(db.event.find_one({"_id": event_id}))
    table = _table_for(event)
    return {
        "success": not result.failed,
        "sent_count": result.committed,
        "created_count": result.created,
        "failed_count": len(result.failed),
        "failed_recipients": result.failed,
        "broadcast": event,
        "notifications": get_documents(db, table, {"broadcast_id": event["id"]}),
    }


def create_broadcast(db: Database, principal: Principal, req: BroadcastRequest, settings: Settings) -> Dict[str, Any]:
    if principal.role not in ("admin", "teacher"):
        raise Forbidden()
    if not req.title or not req.message:
        raise ValidationFailed("Missing required fields: title and message")

    recipients, scope = resolve_recipients(
        db, settings,
        target_class=req.target_class,
        target_user=req.target_user,
        visibility_scope=req.visibility_scope,
    )
    if not recipients:
        raise ValidationFailed("No target users found")

    now = utcnow()
    full_message = f"{req.title}\n\n{req.message}"
    event_id = create_document(db, "event", {
        "title": req.title,
        "description": req.message,
        "event_type": "urgent_broadcast" if req.isUrgent else "broadcast",
        "start_at": now,
        "end_at": now,
        "created_by": principal.id,
        "created_by_role": principal.role,
        "target_class": req.target_class or None,
        "target_user": None if req.target_class else (req.target_user or None),
        "visibility_scope": scope,
        "metadata": {
            "notification_type": req.notification_type,
            "isUrgent": req.isUrgent,
            "sent_to": 0,
            "sender_role": principal.role,
            "full_message": full_message,
        },
        "is_deleted": False,
    })
    event = db.event.find_one({"_id": ObjectId(event_id)})
    result = fan_out(db, event, recipients)
    return _response(db, event["_id"], result)


def deliver_broadcast(db: Database, principal: Principal, broadcast_id: str, settings: Settings) -> Dict[str, Any]:
    """Re-run fan-out for a stored broadcast; recipients already holding a row are skipped."""
    event = db.event.find_one({"_id": object_id(broadcast_id), "event_type": {"$in": list(BROADCAST_EVENT_TYPES)}})
    if event is None:
        raise NotFound("Broadcast not found")
    if principal.role != "admin" and event.get("created_by") != principal.id:
        raise Forbidden()

    recipients, _ = resolve_recipients(
        db, settings,
        target_class=event.get("target_class"),
        target_user=event.get("target_user"),
        visibility_scope=event.get("visibility_scope"),
    )
    result = fan_out(db, event, recipients)
    return _response(db, event["_id"], result)


def set_broadcast_status(db: Database, user_id: str, broadcast_id: str, status: Optional[str]) -> Dict[str, Any]:
    if status not in ("read", "dismissed"):
        raise ValidationFailed("Invalid status value")
    if not ObjectId.is_valid(broadcast_id) or db.event.find_one(
        {"_id": ObjectId(broadcast_id), "event_type": {"$in": list(BROADCAST_EVENT_TYPES)}}, {"_id": 1}
    ) is None:
        raise NotFound("Broadcast not found")
    now = utcnow()
    db.broadcast_status.update_one(
        {"broadcast_id": broadcast_id, "user_id": user_id},
        {"$set": {"status": status, "updated_at": now}, "$setOnInsert": {"created_at": now}},
        upsert=True,
    )
    return serialize(db.broadcast_status.find_one({"broadcast_id": broadcast_id, "user_id": user_id}))
