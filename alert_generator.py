"""
Scheduled reminders and schedule-health alerts.

``generate_exam_reminders`` is what the cron endpoint runs. Reminders are
keyed by (event_id, user_id), so re-running inside the same window adds
nothing.
"""
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from bson import ObjectId
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from app_logger import get_logger
from database import create_document, utcnow
from visibility import enrolled_student_ids

logger = get_logger("alert_generator")


def _reminder_message(exam: Dict[str, Any]) -> str:
    start = exam["start_at"]
    return f"Exam reminder: {exam.get('title')} is scheduled for {start:%Y-%m-%d} at {start:%H:%M}"


def generate_exam_reminders(
    db: Database,
    now: Optional[datetime] = None,
    lookahead: timedelta = timedelta(hours=24),
) -> Dict[str, int]:
    now = now or utcnow()
    exams = list(db.event.find({
        "event_type": "exam",
        "is_deleted": {"$ne": True},
        "start_at": {"$gte": now, "$lte": now + lookahead},
    }))

    created = 0
    failed = 0
    for exam in exams:
        exam_id = str(exam["_id"])
        if not exam.get("target_class"):
            continue
        try:
            students = enrolled_student_ids(db, exam["target_class"])
            message = _reminder_message(exam)
            for student_id in students:
                stamp = utcnow()
                try:
                    res = db.notification.update_one(
                        {"event_id": exam_id, "user_id": student_id, "type": "exam_reminder"},
                        {"$setOnInsert": {
                            "message": message,
                            "status": "unread",
                            "metadata": {"title": exam.get("title"), "start_at": exam["start_at"]},
                            "created_at": stamp,
                            "updated_at": stamp,
                        }},
                        upsert=True,
                    )
                except DuplicateKeyError:
                    # a concurrent run inserted this reminder first
                    continue
                if res.upserted_id is not None:
                    created += 1
        except PyMongoError as exc:
            failed += 1
            logger.error("Exam %s: reminder generation failed: %s", exam_id, exc)

    logger.info("Exam reminders: %d exams scanned, %d reminders created, %d failed", len(exams), created, failed)
    return {"exams_scanned": len(exams), "reminders_created": created, "exams_failed": failed}


def _week_start(now: datetime) -> datetime:
    # weeks start on Sunday
    days = (now.weekday() + 1) % 7
    return (now - timedelta(days=days)).replace(hour=0, minute=0, second=0, microsecond=0)


def check_schedule_overload(db: Database, user_id: str, threshold: int = 10, now: Optional[datetime] = None) -> bool:
    """Warn once a week when a user has ``threshold`` or more events in the current week."""
    now = now or utcnow()
    start = _week_start(now)
    end = start + timedelta(days=7)

    class_ids = [row["class_id"] for row in db.enrollment.find({"student_id": user_id}, {"class_id": 1})]
    profile = db.profile.find_one({"_id": user_id}, {"class_id": 1})
    if profile and profile.get("class_id"):
        class_ids.append(profile["class_id"])

    count = db.event.count_documents({
        "$or": [{"created_by": user_id}, {"target_class": {"$in": class_ids}}],
        "is_deleted": {"$ne": True},
        "start_at": {"$gte": start, "$lt": end},
    })
    if count < threshold:
        return False

    if db.alert.find_one({"user_id": user_id, "alert_type": "overload_warning", "created_at": {"$gte": start}}):
        return False

    create_document(db, "alert", {
        "user_id": user_id,
        "alert_type": "overload_warning",
        "message": (
            f"Schedule overload warning: You have {count} events scheduled this week. "
            "Consider reviewing your schedule to avoid burnout."
        ),
        "delivery": "in_app",
        "status": "unread",
        "metadata": {"event_count": count},
    })
    return True


def detect_schedule_conflicts(
    db: Database,
    user_id: str,
    start_at: datetime,
    end_at: datetime,
    exclude_id: Optional[str] = None,
) -> bool:
    query: Dict[str, Any] = {
        "created_by": user_id,
        "is_deleted": {"$ne": True},
        "start_at": {"$lt": end_at},
        "end_at": {"$gt": start_at},
    }
    if exclude_id and ObjectId.is_valid(exclude_id):
        query["_id"] = {"$ne": ObjectId(exclude_id)}
    if db.event.find_one(query, {"_id": 1}) is None:
        return False

    create_document(db, "alert", {
        "user_id": user_id,
        "alert_type": "conflict_alert",
        "message": (
            "Schedule conflict detected: Your new event overlaps with existing schedules. "
            "Please review and adjust timing."
        ),
        "delivery": "in_app",
        "status": "unread",
        "metadata": {},
    })
    return True
