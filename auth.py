"""
Identity & role resolution.

Access tokens are issued by the external auth provider (HS256 JWTs whose
``sub`` is the principal id). A principal is mapped to a Profile document,
which carries the role every route gates on.
"""
from functools import lru_cache
from typing import Any, Dict, Optional

import httpx
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from app_logger import get_logger
from database import get_db, serialize, utcnow
from errors import Forbidden, Unauthenticated
from settings import Settings, get_settings

logger = get_logger("auth")

ACCESS_TOKEN_COOKIE = "access_token"

DASHBOARDS = {
    "admin": "/admin/dashboard",
    "teacher": "/teacher/dashboard",
    "student": "/student/dashboard",
}


class AuthedUser(BaseModel):
    id: str
    email: Optional[str] = None
    access_token: str


class Principal(BaseModel):
    id: str
    email: Optional[str] = None
    full_name: Optional[str] = None
    role: str = "student"
    class_id: Optional[str] = None


bearer_scheme = HTTPBearer(auto_error=False)


def decode_access_token(token: str, settings: Settings) -> Dict[str, Any]:
    return jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=[settings.jwt_algorithm],
        audience=settings.jwt_audience,
    )


async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    settings: Settings = Depends(get_settings),
) -> AuthedUser:
    token = credentials.credentials if credentials else request.cookies.get(ACCESS_TOKEN_COOKIE)
    if not token:
        raise Unauthenticated()
    try:
        payload = decode_access_token(token, settings)
    except JWTError as exc:
        logger.info("Rejected access token: %s", exc)
        raise Unauthenticated()
    user_id = payload.get("sub")
    if not user_id:
        raise Unauthenticated()
    return AuthedUser(id=user_id, email=payload.get("email"), access_token=token)


def ensure_profile(
    db: Database,
    principal_id: str,
    email: Optional[str] = None,
    full_name: Optional[str] = None,
    role: str = "student",
) -> Dict[str, Any]:
    """
    Insert the profile for ``principal_id`` or return the one already there.

    A single upsert with ``$setOnInsert`` keyed on ``_id``: concurrent first
    logins converge on one document and nothing on an existing profile is
    overwritten. The upsert that loses an insert race gets a duplicate key
    error and reads back the winner's document.
    """
    now = utcnow()
    try:
        doc = db.profile.find_one_and_update(
            {"_id": principal_id},
            {
                "$setOnInsert": {
                    "email": email,
                    "full_name": full_name,
                    "role": role,
                    "class_id": None,
                    "is_active": True,
                    "created_at": now,
                    "updated_at": now,
                }
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
    except DuplicateKeyError:
        doc = db.profile.find_one({"_id": principal_id})
    return serialize(doc)


def principal_from_profile(profile: Dict[str, Any]) -> Principal:
    return Principal(
        id=profile["id"],
        email=profile.get("email"),
        full_name=profile.get("full_name"),
        role=profile.get("role") or "student",
        class_id=profile.get("class_id"),
    )


def get_current_profile(
    user: AuthedUser = Depends(get_current_user),
    db: Database = Depends(get_db),
) -> Principal:
    profile = ensure_profile(db, user.id, email=user.email)
    return principal_from_profile(profile)


def require_role(*allowed_roles: str):
    """Dependency factory: resolve the caller and reject roles outside ``allowed_roles``."""

    def checker(principal: Principal = Depends(get_current_profile)) -> Principal:
        if principal.role not in allowed_roles:
            raise Forbidden()
        return principal

    return checker


def dashboard_for(role: Optional[str]) -> str:
    return DASHBOARDS.get(role or "student", DASHBOARDS["student"])


# Auth provider client (code exchange, password change)
class AuthProviderError(Exception):
    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.status_code = status_code


class AuthProvider:
    def __init__(self, base_url: str, api_key: str, timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout

    def _headers(self, access_token: Optional[str] = None) -> Dict[str, str]:
        headers = {"apikey": self.api_key}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        return headers

    def _raise_for(self, resp: httpx.Response) -> None:
        if resp.status_code < 400:
            return
        try:
            body = resp.json()
            message = body.get("msg") or body.get("error_description") or body.get("error") or resp.text
        except ValueError:
            message = resp.text
        raise AuthProviderError(message or "Auth provider error", resp.status_code)

    def exchange_code_for_session(self, code: str) -> Dict[str, Any]:
        with httpx.Client(timeout=self.timeout) as client:
            resp = client.post(
                f"{self.base_url}/token",
                params={"grant_type": "pkce"},
                json={"auth_code": code},
                headers=self._headers(),
            )
        self._raise_for(resp)
        return resp.json()

    def update_password(self, access_token: str, new_password: str) -> None:
        with httpx.Client(timeout=self.timeout) as client:
            resp = client.put(
                f"{self.base_url}/user",
                json={"password": new_password},
                headers=self._headers(access_token),
            )
        self._raise_for(resp)


@lru_cache
def _provider_for(base_url: str, api_key: str) -> AuthProvider:
    return AuthProvider(base_url, api_key)


def get_auth_provider(settings: Settings = Depends(get_settings)) -> AuthProvider:
    return _provider_for(settings.auth_url, settings.auth_api_key)
