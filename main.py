import hmac
import os
from datetime import datetime, timedelta
from typing import Literal, Optional

import httpx
from fastapi import Depends, FastAPI, Header, Query, WebSocket, WebSocketDisconnect, status
from fastapi.concurrency import run_in_threadpool
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from jose import JWTError
from pydantic import BaseModel, EmailStr, Field
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import PyMongoError

import alert_generator
import broadcast
from app_logger import get_logger
from auth import (
    ACCESS_TOKEN_COOKIE,
    AuthedUser,
    AuthProvider,
    AuthProviderError,
    Principal,
    dashboard_for,
    decode_access_token,
    ensure_profile,
    get_auth_provider,
    get_current_profile,
    get_current_user,
    principal_from_profile,
    require_role,
)
from database import as_utc, create_document, get_db, get_documents, object_id, serialize, utcnow
from errors import GENERIC_ERROR, Conflict, Forbidden, NotFound, Unauthenticated, ValidationFailed, install_error_handlers
from realtime import EVENTS_TOPIC, ChangeFeed, get_feed
from schemas import ROLE_EVENT_TYPES, Delivery, EventType, InboxStatus
from settings import Settings, get_settings
from visibility import enrolled_student_ids, list_visible_events

logger = get_logger("api")

app = FastAPI(title="School Scheduler API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

install_error_handlers(app)


# Request models
class ProfileRequest(BaseModel):
    id: Optional[str] = None
    email: Optional[EmailStr] = None
    full_name: Optional[str] = None
    role: Optional[Literal["student", "teacher"]] = None  # admin is never self-assigned


class CreateNotificationRequest(BaseModel):
    message: str
    target_user_id: str


class CreateAlertRequest(BaseModel):
    message: str
    target_user_id: str
    alert_type: str = "announcement"
    delivery: Delivery = "in_app"


class InboxStatusUpdate(BaseModel):
    status: InboxStatus


class BroadcastStatusUpdate(BaseModel):
    status: Optional[str] = None


class CreateEventRequest(BaseModel):
    title: str
    description: Optional[str] = None
    event_type: EventType
    visibility_scope: Literal["personal", "class", "schoolwide", "user", "role", "batch"] = "personal"
    start_at: datetime
    end_at: datetime
    location: Optional[str] = None
    target_class: Optional[str] = None
    target_user: Optional[str] = None
    target_role: Optional[Literal["admin", "teacher", "student"]] = None
    target_batch: Optional[str] = None


class EventVisibilityUpdate(BaseModel):
    eventId: str
    visibility_scope: Literal["personal", "class", "schoolwide"]


class CapacityUpdate(BaseModel):
    classId: str
    capacity: int = Field(..., ge=1)
    # when set, the write only lands if the stored capacity still equals it
    expected_capacity: Optional[int] = None


class EnrollRequest(BaseModel):
    student_id: str


class BatchUpdate(BaseModel):
    batchId: str
    isActive: bool
    startDate: Optional[datetime] = None
    endDate: Optional[datetime] = None


class ChangePasswordRequest(BaseModel):
    newPassword: Optional[str] = None


@app.get("/")
def root():
    return {"message": "School Scheduler API"}


@app.get("/schema")
def get_schema():
    # Minimal schema export so the platform can inspect collections
    from schemas import Alert, Batch, BroadcastStatus, Classroom, Enrollment, Event, Notification, Profile
    return {
        "profile": Profile.model_json_schema(),
        "event": Event.model_json_schema(),
        "classroom": Classroom.model_json_schema(),
        "enrollment": Enrollment.model_json_schema(),
        "batch": Batch.model_json_schema(),
        "notification": Notification.model_json_schema(),
        "alert": Alert.model_json_schema(),
        "broadcast_status": BroadcastStatus.model_json_schema(),
    }


@app.get("/health")
def health(db: Database = Depends(get_db)):
    try:
        db.command("ping")
    except PyMongoError as exc:
        logger.error("Health check failed: %s", exc)
        return JSONResponse({"backend": "ok", "database": "unavailable"}, status_code=503)
    return {"backend": "ok", "database": "ok"}


# Profiles
@app.post("/api/profiles")
def upsert_profile(
    req: ProfileRequest,
    user: AuthedUser = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    if req.id and req.id != user.id:
        raise ValidationFailed("ID mismatch")
    return ensure_profile(
        db,
        user.id,
        email=req.email or user.email,
        full_name=req.full_name,
        role=req.role or "student",
    )


@app.get("/api/profiles/me")
def my_profile(current: Principal = Depends(get_current_profile)):
    return current.model_dump()


# Notifications
@app.get("/api/notifications")
def list_notifications(
    status_filter: Optional[InboxStatus] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=200),
    current: AuthedUser = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    query = {"user_id": current.id}
    if status_filter:
        query["status"] = status_filter
    notifications = get_documents(db, "notification", query, limit=limit, sort=[("created_at", -1)])
    return {"notifications": notifications}


@app.post("/api/notifications", status_code=201)
def create_notification(
    req: CreateNotificationRequest,
    current: Principal = Depends(require_role("admin", "teacher")),
    db: Database = Depends(get_db),
):
    notification_id = create_document(db, "notification", {
        "user_id": req.target_user_id,
        "message": req.message,
        "type": "direct",
        "status": "unread",
        "metadata": {"sender_id": current.id, "sender_role": current.role},
    })
    return {"notification": serialize(db.notification.find_one({"_id": object_id(notification_id)}))}


def _update_owned_status(db: Database, collection: str, item_id: str, user_id: str, new_status: str):
    doc = db[collection].find_one_and_update(
        {"_id": object_id(item_id), "user_id": user_id},
        {"$set": {"status": new_status, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if doc is None:
        raise NotFound(f"{collection.capitalize()} not found")
    return serialize(doc)


def _delete_owned(db: Database, collection: str, item_id: str, user_id: str) -> None:
    res = db[collection].delete_one({"_id": object_id(item_id), "user_id": user_id})
    if res.deleted_count == 0:
        raise NotFound(f"{collection.capitalize()} not found")


@app.patch("/api/notifications/{notification_id}")
def update_notification(
    notification_id: str,
    req: InboxStatusUpdate,
    current: AuthedUser = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    return {"notification": _update_owned_status(db, "notification", notification_id, current.id, req.status)}


@app.delete("/api/notifications/{notification_id}")
def delete_notification(
    notification_id: str,
    current: AuthedUser = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    _delete_owned(db, "notification", notification_id, current.id)
    return {"success": True}


# Alerts
@app.get("/api/alerts")
def list_alerts(
    alert_type: Optional[str] = None,
    status_filter: Optional[InboxStatus] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=200),
    current: AuthedUser = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    query = {"user_id": current.id}
    if alert_type:
        query["alert_type"] = alert_type
    if status_filter:
        query["status"] = status_filter
    alerts = get_documents(db, "alert", query, limit=limit, sort=[("created_at", -1)])
    return {"alerts": alerts}


@app.post("/api/alerts", status_code=201)
def create_alert(
    req: CreateAlertRequest,
    current: Principal = Depends(require_role("admin", "teacher")),
    db: Database = Depends(get_db),
):
    alert_id = create_document(db, "alert", {
        "user_id": req.target_user_id,
        "alert_type": req.alert_type,
        "message": req.message,
        "delivery": req.delivery,
        "status": "unread",
        "metadata": {"sender_id": current.id, "sender_role": current.role},
    })
    return {"alert": serialize(db.alert.find_one({"_id": object_id(alert_id)}))}


@app.patch("/api/alerts/{alert_id}")
def update_alert(
    alert_id: str,
    req: InboxStatusUpdate,
    current: AuthedUser = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    return {"alert": _update_owned_status(db, "alert", alert_id, current.id, req.status)}


@app.delete("/api/alerts/{alert_id}")
def delete_alert(
    alert_id: str,
    current: AuthedUser = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    _delete_owned(db, "alert", alert_id, current.id)
    return {"success": True}


# Broadcasts
@app.post("/api/broadcast")
async def send_broadcast(
    req: broadcast.BroadcastRequest,
    current: Principal = Depends(require_role("admin", "teacher")),
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
    feed: ChangeFeed = Depends(get_feed),
):
    result = await run_in_threadpool(broadcast.create_broadcast, db, current, req, settings)
    await feed.publish(EVENTS_TOPIC, {"op": "insert", "event_id": result["broadcast"]["id"]})
    code = status.HTTP_200_OK if result["success"] else status.HTTP_207_MULTI_STATUS
    return JSONResponse(jsonable_encoder(result), status_code=code)


@app.post("/api/broadcast/{broadcast_id}/deliver")
def redeliver_broadcast(
    broadcast_id: str,
    current: Principal = Depends(require_role("admin", "teacher")),
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    result = broadcast.deliver_broadcast(db, current, broadcast_id, settings)
    code = status.HTTP_200_OK if result["success"] else status.HTTP_207_MULTI_STATUS
    return JSONResponse(jsonable_encoder(result), status_code=code)


@app.patch("/api/broadcast/{broadcast_id}/status")
def update_broadcast_status(
    broadcast_id: str,
    req: BroadcastStatusUpdate,
    current: AuthedUser = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    data = broadcast.set_broadcast_status(db, current.id, broadcast_id, req.status)
    return {"success": True, "data": data}


# Events
@app.get("/api/events")
def my_events(
    scope: Optional[str] = None,
    class_id: Optional[str] = None,
    current: Principal = Depends(get_current_profile),
    db: Database = Depends(get_db),
):
    return {"events": list_visible_events(db, current, scope=scope, class_id=class_id)}


def _event_targets(req: CreateEventRequest, current: Principal) -> dict:
    scope = req.visibility_scope
    if current.role == "student" and scope != "personal":
        raise Forbidden("Students can only create personal events")
    if scope == "class" and not req.target_class:
        raise ValidationFailed("target_class is required for class events")
    if scope == "user" and not req.target_user:
        raise ValidationFailed("target_user is required for user events")
    if scope == "role" and not req.target_role:
        raise ValidationFailed("target_role is required for role events")
    if scope == "batch" and not req.target_batch:
        raise ValidationFailed("target_batch is required for batch events")
    metadata = {}
    if scope == "role":
        metadata["target_role"] = req.target_role
    if scope == "batch":
        metadata["target_batch"] = req.target_batch
    return {
        "target_class": req.target_class if scope == "class" else None,
        "target_user": req.target_user if scope == "user" else None,
        "metadata": metadata,
    }


def _insert_event(db: Database, req: CreateEventRequest, current: Principal, settings: Settings) -> dict:
    if req.event_type not in ROLE_EVENT_TYPES.get(current.role, []):
        raise Forbidden(f"Role {current.role} cannot create {req.event_type} events")
    start_at, end_at = as_utc(req.start_at), as_utc(req.end_at)
    if end_at < start_at:
        raise ValidationFailed("end_at must not be before start_at")

    data = {
        "title": req.title,
        "description": req.description,
        "event_type": req.event_type,
        "visibility_scope": req.visibility_scope,
        "start_at": start_at,
        "end_at": end_at,
        "location": req.location,
        "created_by": current.id,
        "created_by_role": current.role,
        "is_deleted": False,
    }
    data.update(_event_targets(req, current))
    event_id = create_document(db, "event", data)

    conflict = overloaded = False
    try:
        conflict = alert_generator.detect_schedule_conflicts(db, current.id, start_at, end_at, exclude_id=event_id)
        overloaded = alert_generator.check_schedule_overload(db, current.id, threshold=settings.overload_threshold)
    except PyMongoError as exc:
        logger.warning("Schedule checks for event %s failed: %s", event_id, exc)

    event = serialize(db.event.find_one({"_id": object_id(event_id)}))
    return {"event": event, "conflict_detected": conflict, "overload_warning": overloaded}


@app.post("/api/events", status_code=201)
async def create_event(
    req: CreateEventRequest,
    current: Principal = Depends(get_current_profile),
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
    feed: ChangeFeed = Depends(get_feed),
):
    result = await run_in_threadpool(_insert_event, db, req, current, settings)
    await feed.publish(EVENTS_TOPIC, {"op": "insert", "event_id": result["event"]["id"]})
    return result


def _set_event_visibility(db: Database, req: EventVisibilityUpdate, current: Principal) -> dict:
    event = db.event.find_one({"_id": object_id(req.eventId), "is_deleted": {"$ne": True}}, {"created_by": 1})
    if event is None:
        raise NotFound("Event not found")
    if event.get("created_by") != current.id:
        raise Forbidden("Unauthorized - You do not own this event")
    if current.role == "student" and req.visibility_scope != "personal":
        raise Forbidden("Students can only keep events personal")
    doc = db.event.find_one_and_update(
        {"_id": event["_id"]},
        {"$set": {"visibility_scope": req.visibility_scope, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    return serialize(doc)


@app.put("/api/events/visibility")
async def update_event_visibility(
    req: EventVisibilityUpdate,
    current: Principal = Depends(get_current_profile),
    db: Database = Depends(get_db),
    feed: ChangeFeed = Depends(get_feed),
):
    event = await run_in_threadpool(_set_event_visibility, db, req, current)
    await feed.publish(EVENTS_TOPIC, {"op": "update", "event_id": req.eventId})
    return event


def _soft_delete_event(db: Database, event_id: str, current: Principal) -> None:
    event = db.event.find_one({"_id": object_id(event_id), "is_deleted": {"$ne": True}}, {"created_by": 1})
    if event is None:
        raise NotFound("Event not found")
    if current.role != "admin" and event.get("created_by") != current.id:
        raise Forbidden()
    db.event.update_one({"_id": event["_id"]}, {"$set": {"is_deleted": True, "updated_at": utcnow()}})


@app.delete("/api/events/{event_id}")
async def delete_event(
    event_id: str,
    current: Principal = Depends(get_current_profile),
    db: Database = Depends(get_db),
    feed: ChangeFeed = Depends(get_feed),
):
    await run_in_threadpool(_soft_delete_event, db, event_id, current)
    await feed.publish(EVENTS_TOPIC, {"op": "delete", "event_id": event_id})
    return {"success": True}


@app.websocket("/ws/events")
async def events_socket(
    websocket: WebSocket,
    token: Optional[str] = None,
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
    feed: ChangeFeed = Depends(get_feed),
):
    token = token or websocket.cookies.get(ACCESS_TOKEN_COOKIE)
    try:
        payload = decode_access_token(token or "", settings)
    except JWTError:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    if not payload.get("sub"):
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    profile = await run_in_threadpool(ensure_profile, db, payload["sub"], email=payload.get("email"))
    principal = principal_from_profile(profile)
    await websocket.accept()

    async def refresh(change: dict) -> None:
        events = await run_in_threadpool(list_visible_events, db, principal)
        await websocket.send_json(jsonable_encoder({"change": change, "events": events}))

    await refresh({"op": "snapshot"})
    await feed.subscribe(EVENTS_TOPIC, refresh)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        await feed.unsubscribe(EVENTS_TOPIC, refresh)


# Classes
def _class_or_404(db: Database, class_id: str) -> dict:
    row = db.classroom.find_one({"_id": object_id(class_id)})
    if row is None:
        raise NotFound("Class not found")
    return row


@app.get("/api/classes/capacity")
def get_class_capacity(
    class_id: Optional[str] = Query(None, alias="classId"),
    current: AuthedUser = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    if not class_id:
        raise ValidationFailed("Class ID is required")
    row = _class_or_404(db, class_id)
    return {
        "id": class_id,
        "capacity": row.get("capacity"),
        "current_enrollment": len(enrolled_student_ids(db, class_id)),
    }


@app.put("/api/classes/capacity")
def update_class_capacity(
    req: CapacityUpdate,
    current: Principal = Depends(require_role("teacher")),
    db: Database = Depends(get_db),
):
    row = _class_or_404(db, req.classId)
    # read-then-write: two edits without expected_capacity can overwrite each other
    enrolled = len(enrolled_student_ids(db, req.classId))
    if req.capacity < enrolled:
        raise ValidationFailed(f"Capacity cannot be below current enrollment ({enrolled})")

    query = {"_id": row["_id"]}
    if req.expected_capacity is not None:
        query["capacity"] = req.expected_capacity
    doc = db.classroom.find_one_and_update(
        query,
        {"$set": {"capacity": req.capacity, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if doc is None:
        raise Conflict("Class capacity was changed by another request")
    logger.info("Class %s capacity set to %d by %s", req.classId, req.capacity, current.id)
    out = serialize(doc)
    out["current_enrollment"] = enrolled
    return out


@app.post("/api/classes/{class_id}/enrollments", status_code=201)
def enroll_student(
    class_id: str,
    req: EnrollRequest,
    current: Principal = Depends(require_role("admin")),
    db: Database = Depends(get_db),
):
    row = _class_or_404(db, class_id)
    if not row.get("is_active", True):
        raise ValidationFailed("Class is not active")
    student = db.profile.find_one({"_id": req.student_id, "role": "student"})
    if student is None:
        raise NotFound("Student not found")
    enrolled = enrolled_student_ids(db, class_id)
    if req.student_id not in enrolled and len(enrolled) >= row.get("capacity", 0):
        raise Conflict("Class is at capacity")
    now = utcnow()
    db.enrollment.update_one(
        {"class_id": class_id, "student_id": req.student_id},
        {"$setOnInsert": {"created_at": now, "updated_at": now}},
        upsert=True,
    )
    return serialize(db.enrollment.find_one({"class_id": class_id, "student_id": req.student_id}))


# Batches
@app.get("/api/admin/batches")
def list_batches(
    active: Optional[bool] = None,
    current: Principal = Depends(require_role("admin")),
    db: Database = Depends(get_db),
):
    query = {} if active is None else {"is_active": active}
    batches = get_documents(db, "batch", query, sort=[("created_at", -1)])
    for batch in batches:
        classes = get_documents(db, "classroom", {"batch_id": batch["id"]})
        for klass in classes:
            klass["enrollments"] = len(enrolled_student_ids(db, klass["id"]))
        batch["classes"] = classes
    return batches


@app.patch("/api/admin/batches")
def update_batch(
    req: BatchUpdate,
    current: Principal = Depends(require_role("admin")),
    db: Database = Depends(get_db),
):
    changes = {"is_active": req.isActive, "updated_at": utcnow()}
    if req.startDate:
        changes["start_date"] = as_utc(req.startDate)
    if req.endDate:
        changes["end_date"] = as_utc(req.endDate)
    doc = db.batch.find_one_and_update(
        {"_id": object_id(req.batchId)},
        {"$set": changes},
        return_document=ReturnDocument.AFTER,
    )
    if doc is None:
        raise NotFound("Batch not found")
    if not req.isActive:
        res = db.classroom.update_many({"batch_id": req.batchId}, {"$set": {"is_active": False, "updated_at": utcnow()}})
        logger.info("Batch %s deactivated with %d classes", req.batchId, res.modified_count)
    return serialize(doc)


# Settings
@app.post("/api/settings/change-password")
def change_password(
    req: ChangePasswordRequest,
    current: AuthedUser = Depends(get_current_user),
    settings: Settings = Depends(get_settings),
    provider: AuthProvider = Depends(get_auth_provider),
):
    if not req.newPassword:
        raise ValidationFailed("New password is required")
    if len(req.newPassword) < settings.min_password_length:
        raise ValidationFailed(f"Password must be at least {settings.min_password_length} characters long")
    try:
        provider.update_password(current.access_token, req.newPassword)
    except AuthProviderError as exc:
        logger.info("Password update rejected for %s: %s", current.id, exc)
        raise ValidationFailed(str(exc))
    except httpx.HTTPError as exc:
        logger.error("Password update for %s failed: %s", current.id, exc)
        return JSONResponse({"error": GENERIC_ERROR}, status_code=500)
    return {"message": "Password updated successfully"}


# Scheduled trigger
@app.get("/api/cron/generate-alerts")
def cron_generate_alerts(
    authorization: Optional[str] = Header(None),
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    expected = f"Bearer {settings.cron_secret}"
    if not settings.cron_secret or not hmac.compare_digest((authorization or "").encode(), expected.encode()):
        raise Unauthenticated()
    report = alert_generator.generate_exam_reminders(
        db, lookahead=timedelta(hours=settings.exam_reminder_lookahead_hours)
    )
    return {"success": report["exams_failed"] == 0, "message": "Exam reminders generated", **report}


# Auth callback
def _safe_next(next_path: Optional[str], dashboard: str) -> str:
    area = dashboard.rsplit("/", 1)[0]
    if next_path and next_path.startswith(area + "/") and not next_path.startswith("//"):
        return next_path
    return dashboard


@app.get("/auth/callback")
def auth_callback(
    code: Optional[str] = None,
    next: Optional[str] = None,
    db: Database = Depends(get_db),
    provider: AuthProvider = Depends(get_auth_provider),
):
    error_redirect = RedirectResponse("/auth/auth-code-error", status_code=status.HTTP_303_SEE_OTHER)
    if not code:
        return error_redirect
    try:
        session = provider.exchange_code_for_session(code)
    except (AuthProviderError, httpx.HTTPError) as exc:
        logger.warning("Auth code exchange failed: %s", exc)
        return error_redirect

    user = session.get("user") or {}
    access_token = session.get("access_token")
    if not user.get("id") or not access_token:
        return error_redirect

    meta = user.get("user_metadata") or {}
    profile = ensure_profile(db, user["id"], email=user.get("email"), full_name=meta.get("full_name"))
    response = RedirectResponse(_safe_next(next, dashboard_for(profile.get("role"))), status_code=status.HTTP_303_SEE_OTHER)
    response.set_cookie(ACCESS_TOKEN_COOKIE, access_token, httponly=True, samesite="lax")
    return response


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", get_settings().port))
    uvicorn.run(app, host="0.0.0.0", port=port)
