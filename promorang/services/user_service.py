from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from promorang.db import atomic
from promorang.models.user import User
from promorang.services.config_service import get_int_config
from promorang.services.ledger_service import credit, ensure_balance

logger = logging.getLogger(__name__)


async def get_user(db: AsyncSession, user_id: str) -> User | None:
    return (await db.execute(select(User).where(User.id == user_id))).scalar_one_or_none()


async def find_user_by_sub(db: AsyncSession, google_sub: str) -> User | None:
    return (await db.execute(select(User).where(User.google_sub == google_sub))).scalar_one_or_none()


async def ensure_user(
    db: AsyncSession,
    google_sub: str,
    email: str | None = None,
    name: str | None = None,
    picture: str | None = None,
) -> tuple[User, bool]:
    """Find the user for an identity-provider subject, creating it (with balance and signup bonus) if absent."""
    user = await find_user_by_sub(db, google_sub)
    if user:
        user.last_login_at = datetime.utcnow()
        if picture:
            user.picture = picture
        await db.commit()
        return user, False

    email = (email or "").lower()
    try:
        async with atomic(db):
            user = User(
                google_sub=google_sub,
                email=email,
                name=name or (email.split("@")[0] if email else ""),
                picture=picture,
                tier="free",
                created_at=datetime.utcnow(),
                last_login_at=datetime.utcnow(),
            )
            db.add(user)
            await db.flush()
            await ensure_balance(db, user.id)

            # 注册赠送积分（可后台配置）
            bonus = await get_int_config(db, "signup_bonus_points")
            if bonus > 0:
                await credit(db, user.id, "points", bonus, "earn", "signup_bonus")
    except IntegrityError:
        # 同一账号的并发回调先一步完成了注册
        existing = await find_user_by_sub(db, google_sub)
        if existing is None:
            raise
        logger.info("user for %s was created concurrently", google_sub)
        return existing, False

    logger.info("created user %s for %s", user.id, email or google_sub)
    return user, True
