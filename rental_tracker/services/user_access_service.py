from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
import threading
import time
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from models.enums import Department, UserRole
from models.rental_models import User


SESSION_TTL_SECONDS = 60 * 60 * 12
ADMIN_DEPARTMENT = Department.PRODUCT_OPERATIONS
DEFAULT_EMAIL_DOMAIN = "example.com"

_LOCK = threading.Lock()
_REVOKED_TOKENS: dict[str, float] = {}


class SessionConfigError(RuntimeError):
    pass


def _require_session_secret() -> bytes:
    raw = (os.environ.get("SESSION_SIGNING_SECRET") or "").strip()
    if len(raw) < 32:
        raise SessionConfigError("SESSION_SIGNING_SECRET must be set and at least 32 characters long.")
    return raw.encode("utf-8")


def role_for_department(department: Department) -> UserRole:
    return UserRole.ADMIN if department == ADMIN_DEPARTMENT else UserRole.USER


def requires_password(department: Department) -> bool:
    return role_for_department(department) == UserRole.ADMIN


def verify_admin_password(candidate: str | None) -> bool:
    expected = (os.environ.get("ADMIN_PASSWORD") or "").strip()
    if not expected or not candidate:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), candidate.encode("utf-8"))


def default_email(user_id: str) -> str:
    domain = (os.environ.get("USER_EMAIL_DOMAIN") or DEFAULT_EMAIL_DOMAIN).strip()
    return f"{user_id}@{domain}"


def upsert_user(db: Session, user_id: str, name: str, department: Department, email: str | None = None) -> User:
    role = role_for_department(department)
    user = db.get(User, user_id)
    now = datetime.now()
    if user is None:
        user = User(UserID=user_id, CreatedDate=now)
        db.add(user)
    user.Name = name
    user.Department = department.value
    user.Role = role.value
    user.Email = (email or "").strip() or user.Email or default_email(user_id)
    user.UpdatedDate = now
    db.commit()
    return user


def session_payload_for(user: User) -> dict[str, Any]:
    return {
        "userId": user.UserID,
        "name": user.Name,
        "department": user.Department,
        "role": user.Role,
        "email": user.Email,
    }


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64decode(raw: str) -> bytes:
    return base64.urlsafe_b64decode(raw + "=" * (-len(raw) % 4))


def create_session(payload: dict[str, Any]) -> str:
    secret = _require_session_secret()
    session_payload = dict(payload)
    session_payload["expiresAt"] = time.time() + SESSION_TTL_SECONDS
    body = json.dumps(session_payload, ensure_ascii=True, separators=(",", ":")).encode("utf-8")
    encoded = _b64encode(body)
    signature = hmac.new(secret, encoded.encode("ascii"), hashlib.sha256).digest()
    return f"{encoded}.{_b64encode(signature)}"


def get_session(token: str | None) -> dict[str, Any] | None:
    if not token:
        return None
    secret = _require_session_secret()
    try:
        encoded, encoded_sig = token.split(".", 1)
        expected_sig = hmac.new(secret, encoded.encode("ascii"), hashlib.sha256).digest()
        if not hmac.compare_digest(expected_sig, _b64decode(encoded_sig)):
            return None
        decoded = json.loads(_b64decode(encoded).decode("utf-8"))
    except (ValueError, UnicodeError):
        return None
    if not isinstance(decoded, dict):
        return None

    now = time.time()
    if now >= float(decoded.get("expiresAt") or 0.0):
        return None
    with _LOCK:
        for revoked_token, expires_at in list(_REVOKED_TOKENS.items()):
            if now >= expires_at:
                _REVOKED_TOKENS.pop(revoked_token, None)
        if token in _REVOKED_TOKENS:
            return None
    return decoded


def remove_session(token: str | None) -> None:
    session = get_session(token)
    if not session:
        return
    with _LOCK:
        _REVOKED_TOKENS[token] = float(session.get("expiresAt") or time.time())
