import logging
import os
import sys
from datetime import timedelta
from typing import Dict, List, Optional

import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient
from jose import jwt

from auth import AuthProviderError, get_auth_provider
from database import get_db, utcnow
from realtime import ChangeFeed, get_feed
from settings import Settings, get_settings


@pytest.fixture(scope="session", autouse=True)
def _tests_log_to_stdout():
    root = logging.getLogger()
    if not any(isinstance(h, logging.StreamHandler) and getattr(h, "stream", None) is sys.stdout for h in root.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
        root.addHandler(handler)
    root.setLevel(os.getenv("TEST_LOG_LEVEL", "INFO").upper())


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        jwt_secret="test-jwt-secret",
        cron_secret="test-cron-secret",
        exam_reminder_lookahead_hours=72,
        overload_threshold=3,
    )


@pytest.fixture
def db():
    return mongomock.MongoClient()["school_scheduler_test"]


class FakeAuthProvider:
    """Stands in for the external auth provider."""

    def __init__(self):
        self.sessions: Dict[str, dict] = {}
        self.password_updates: List[tuple] = []
        self.reject_passwords = set()

    def exchange_code_for_session(self, code: str) -> dict:
        if code not in self.sessions:
            raise AuthProviderError("invalid auth code", 400)
        return self.sessions[code]

    def update_password(self, access_token: str, new_password: str) -> None:
        if new_password in self.reject_passwords:
            raise AuthProviderError("Password is too weak", 422)
        self.password_updates.append((access_token, new_password))


@pytest.fixture
def auth_provider() -> FakeAuthProvider:
    return FakeAuthProvider()


@pytest.fixture
def feed() -> ChangeFeed:
    return ChangeFeed()


@pytest.fixture
def client(db, settings, auth_provider, feed):
    from main import app

    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_auth_provider] = lambda: auth_provider
    app.dependency_overrides[get_feed] = lambda: feed
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def make_token(settings):
    def _make(user_id: str, email: Optional[str] = None, expires_in: int = 3600) -> str:
        claims = {
            "sub": user_id,
            "email": email or f"{user_id}@school.edu",
            "aud": settings.jwt_audience,
            "exp": utcnow() + timedelta(seconds=expires_in),
        }
        return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)

    return _make


@pytest.fixture
def headers_for(make_token):
    def _headers(user_id: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {make_token(user_id)}"}

    return _headers


# Seed helpers
def add_profile(db, user_id: str, role: str = "student", class_id: Optional[str] = None, **extra) -> str:
    doc = {
        "_id": user_id,
        "email": f"{user_id}@school.edu",
        "full_name": user_id.title(),
        "role": role,
        "class_id": class_id,
        "is_active": True,
        "created_at": utcnow(),
    }
    doc.update(extra)
    db.profile.insert_one(doc)
    return user_id


def add_class(db, name: str = "C1", capacity: int = 30, teacher_ids=(), batch_id: Optional[str] = None) -> str:
    res = db.classroom.insert_one({
        "name": name,
        "capacity": capacity,
        "teacher_ids": list(teacher_ids),
        "batch_id": batch_id,
        "is_active": True,
        "created_at": utcnow(),
    })
    return str(res.inserted_id)


def enroll(db, class_id: str, *student_ids: str) -> None:
    for student_id in student_ids:
        db.enrollment.insert_one({"class_id": class_id, "student_id": student_id, "created_at": utcnow()})


def add_event(db, created_by: str, **fields) -> str:
    now = utcnow()
    doc = {
        "title": "Event",
        "event_type": "lesson",
        "visibility_scope": "personal",
        "start_at": now + timedelta(hours=1),
        "end_at": now + timedelta(hours=2),
        "created_by": created_by,
        "created_by_role": "teacher",
        "target_class": None,
        "target_user": None,
        "metadata": {},
        "is_deleted": False,
        "created_at": now,
    }
    doc.update(fields)
    return str(db.event.insert_one(doc).inserted_id)


def event_titles(rows) -> List[str]:
    return sorted(row["title"] for row in rows)


def oid(value: str) -> ObjectId:
    return ObjectId(value)
