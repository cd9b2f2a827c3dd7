from __future__ import annotations

import logging

from fastapi import Depends, Header, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from promorang.core.errors import Unauthorized
from promorang.core.settings import settings
from promorang.db import get_db
from promorang.services.security import Anonymous, Authenticated, Invalid, SessionState, resolve_token
from promorang.models.user import User
from promorang.models.admin import Admin
from promorang.models.partners import PartnerApp
from promorang.services.partners_service import validate_partner_api_key
from promorang.services.user_service import get_user

logger = logging.getLogger(__name__)


def _bearer_token(request: Request) -> str | None:
    auth = request.headers.get("Authorization", "")
    scheme, _, token = auth.partition(" ")
    if scheme.lower() == "bearer" and token.strip():
        return token.strip()
    return None


def resolve_session(request: Request) -> SessionState:
    """Cookie first, then ``Authorization: Bearer``."""
    token = request.cookies.get(settings.COOKIE_NAME) or _bearer_token(request)
    return resolve_token(token, expected_type="user")


async def _load_user(db: AsyncSession, user_id: str) -> User | None:
    user = await get_user(db, user_id)
    if not user or user.is_banned:
        return None
    return user


async def require_user(
    session: SessionState = Depends(resolve_session),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Protected routes: anonymous and invalid sessions are both rejected."""
    if isinstance(session, Anonymous):
        raise Unauthorized("Authentication required")
    if isinstance(session, Invalid):
        raise Unauthorized("Invalid session")
    user = await _load_user(db, session.user_id)
    if not user:
        raise Unauthorized("User not found")
    return user


async def optional_user(
    request: Request,
    session: SessionState = Depends(resolve_session),
    db: AsyncSession = Depends(get_db),
) -> User | None:
    """Public routes: an invalid token is treated as anonymous."""
    if isinstance(session, Invalid):
        logger.warning("ignoring invalid session on %s: %s", request.url.path, session.reason)
        return None
    if isinstance(session, Authenticated):
        return await _load_user(db, session.user_id)
    return None


async def require_admin(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> Admin:
    session = resolve_token(request.cookies.get(settings.ADMIN_COOKIE_NAME), expected_type="admin")
    if not isinstance(session, Authenticated):
        raise Unauthorized("Admin authentication required")
    admin = (await db.execute(select(Admin).where(Admin.id == int(session.user_id)))).scalar_one_or_none()
    if not admin or not admin.is_active:
        raise Unauthorized("Admin not found")
    return admin


def idempotency_key(idempotency_key: str | None = Header(default=None, alias="Idempotency-Key", max_length=128)) -> str | None:
    return idempotency_key.strip() if idempotency_key and idempotency_key.strip() else None


async def require_partner(
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
    api_key: str | None = Query(default=None),
    db: AsyncSession = Depends(get_db),
) -> PartnerApp:
    """Partner routes: an approved app's API key, from the header or ``?api_key=``."""
    return await validate_partner_api_key(db, x_api_key or api_key)
