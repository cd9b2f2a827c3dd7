from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Union

from jose import jwt, JWTError
from passlib.context import CryptContext

from promorang.core.settings import settings

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return pwd_context.verify(password, password_hash)
    except ValueError:
        return False


def create_token(payload: dict[str, Any], days: int | None = None, now: int | None = None) -> str:
    ttl_days = days if days is not None else settings.SESSION_TTL_DAYS
    issued_at = now if now is not None else int(time.time())
    data = dict(payload)
    data["iat"] = issued_at
    data["exp"] = issued_at + ttl_days * 86400
    return jwt.encode(data, settings.JWT_SECRET, algorithm=settings.JWT_ALG)


def issue_session_token(user_id: str) -> str:
    return create_token({"sub": user_id, "type": "user"})


def issue_admin_token(admin_id: int) -> str:
    return create_token({"sub": str(admin_id), "type": "admin"})


def decode_token(token: str) -> dict[str, Any] | None:
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALG])
    except JWTError:
        return None


# --- 会话解析结果：显式区分 已登录 / 匿名 / 无效 ---

@dataclass(frozen=True)
class Authenticated:
    user_id: str


@dataclass(frozen=True)
class Anonymous:
    pass


@dataclass(frozen=True)
class Invalid:
    reason: str


SessionState = Union[Authenticated, Anonymous, Invalid]


def resolve_token(token: str | None, expected_type: str = "user", now: int | None = None) -> SessionState:
    """Verify a session token and return who it belongs to.

    A token is accepted only if the signature verifies, ``type`` matches,
    ``sub`` is present and ``iat`` lies inside the session window.
    """
    if not token:
        return Anonymous()
    payload = decode_token(token)
    if payload is None:
        return Invalid("bad_signature_or_expired")
    if payload.get("type", "user") != expected_type:
        return Invalid("wrong_token_type")
    subject = payload.get("sub")
    if not subject:
        return Invalid("missing_subject")
    issued_at = payload.get("iat")
    current = now if now is not None else int(time.time())
    if not isinstance(issued_at, int):
        return Invalid("missing_issued_at")
    if issued_at > current + 60 or current - issued_at > settings.SESSION_TTL_DAYS * 86400:
        return Invalid("expired")
    return Authenticated(str(subject))
