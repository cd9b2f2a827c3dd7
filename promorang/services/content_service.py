from __future__ import annotations

from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from promorang.core.errors import BadRequest
from promorang.db import atomic
from promorang.models.content import Content


async def list_content(db: AsyncSession, limit: int = 20, offset: int = 0) -> list[Content]:
    return list((await db.execute(
        select(Content)
        .where(Content.status == "active")
        .order_by(Content.created_at.desc(), Content.id.desc())
        .limit(limit)
        .offset(offset)
    )).scalars().all())


async def create_content(
    db: AsyncSession,
    creator_id: str,
    title: str,
    platform: str,
    description: str | None = None,
    platform_url: str | None = None,
    image_url: str | None = None,
    total_shares: int = 100,
    share_price: Decimal = Decimal("0.01"),
) -> Content:
    if not title or not platform:
        raise BadRequest("Title and platform are required")
    if total_shares < 1 or total_shares > 10000:
        raise BadRequest("Total shares must be between 1 and 10,000")
    if share_price < 0 or share_price > 1000:
        raise BadRequest("Share price must be between 0 and 1,000 gems")

    async with atomic(db):
        content = Content(
            creator_id=creator_id,
            title=title.strip(),
            description=description,
            platform=platform,
            platform_url=platform_url,
            media_url=image_url,
            share_price=share_price,
            total_shares=total_shares,
            shares_sold=0,
            status="active",
        )
        db.add(content)
    return content
