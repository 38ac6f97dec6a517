"""
Database Schemas for the School Scheduler

Each Pydantic model corresponds to a collection (lowercased class name) in MongoDB.
"""
from pydantic import BaseModel, Field
from typing import Optional, List, Literal, Dict, Any
from datetime import datetime

Role = Literal["admin", "teacher", "student"]

EventType = Literal[
    "lesson",
    "exam",
    "assignment",
    "personal",
    "broadcast",
    "urgent_broadcast",
    "class_announcement",
    "break",
    "prayer",
    "sports",
    "administrative",
]

VisibilityScope = Literal["personal", "class", "schoolwide", "all", "user", "role", "batch"]

InboxStatus = Literal["unread", "read", "dismissed", "archived"]

BroadcastStatusValue = Literal["read", "dismissed"]

Delivery = Literal["in_app", "email", "both"]

# Event types each role may create directly (broadcast types go through /api/broadcast)
ROLE_EVENT_TYPES: Dict[str, List[str]] = {
    "admin": ["lesson", "exam", "break", "prayer", "sports", "administrative", "class_announcement", "personal"],
    "teacher": ["lesson", "exam", "assignment", "sports", "administrative", "class_announcement", "personal"],
    "student": ["personal"],
}


class Profile(BaseModel):
    # _id is the principal id issued by the auth provider
    email: Optional[str] = None
    full_name: Optional[str] = None
    role: Role = "student"
    class_id: Optional[str] = None
    is_active: bool = True


class Event(BaseModel):
    title: str
    description: Optional[str] = None
    event_type: EventType
    visibility_scope: VisibilityScope = "personal"
    start_at: datetime
    end_at: datetime
    location: Optional[str] = None
    created_by: str
    created_by_role: Role
    target_class: Optional[str] = None
    target_user: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    is_deleted: bool = False


class Classroom(BaseModel):
    name: str
    capacity: int = Field(..., ge=1)
    batch_id: Optional[str] = None
    teacher_ids: List[str] = []
    is_active: bool = True


class Enrollment(BaseModel):
    class_id: str
    student_id: str


class Batch(BaseModel):
    name: str
    is_active: bool = True
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


class Notification(BaseModel):
    user_id: str
    message: str
    type: Literal["direct", "broadcast", "exam_reminder"] = "direct"
    status: InboxStatus = "unread"
    broadcast_id: Optional[str] = None
    event_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class Alert(BaseModel):
    user_id: str
    message: str
    alert_type: str = "announcement"  # announcement | exam_reminder | overload_warning | conflict_alert
    delivery: Delivery = "in_app"
    status: InboxStatus = "unread"
    broadcast_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class BroadcastStatus(BaseModel):
    broadcast_id: str
    user_id: str
    status: BroadcastStatusValue
