from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession

from promorang.core.errors import BadRequest
from promorang.db import atomic
from promorang.models.growth import FundingProject
from promorang.models.user import User


async def list_funding_projects(db: AsyncSession, limit: int = 20, offset: int = 0) -> list[dict]:
    now = datetime.utcnow()
    rows = (await db.execute(
        select(FundingProject, User.name, User.picture)
        .join(User, FundingProject.creator_id == User.id)
        .where(FundingProject.status == "active", or_(FundingProject.ends_at.is_(None), FundingProject.ends_at > now))
        .order_by(FundingProject.created_at.desc(), FundingProject.id.desc())
        .limit(limit)
        .offset(offset)
    )).all()
    out = []
    for project, creator_name, creator_picture in rows:
        item = project.as_dict()
        item["creator_name"] = creator_name
        item["creator_picture"] = creator_picture
        out.append(item)
    return out


async def create_funding_project(
    db: AsyncSession,
    creator_id: str,
    title: str,
    funding_goal: Decimal,
    description: str | None = None,
    duration_days: int = 30,
) -> FundingProject:
    if not title or funding_goal is None or funding_goal <= 0:
        raise BadRequest("Title and funding goal are required")
    if duration_days < 1 or duration_days > 90:
        raise BadRequest("Duration must be between 1 and 90 days")

    created_at = datetime.utcnow()
    async with atomic(db):
        project = FundingProject(
            creator_id=creator_id,
            title=title.strip(),
            description=description,
            funding_goal=funding_goal,
            funded_amount=Decimal("0"),
            duration_days=duration_days,
            status="active",
            created_at=created_at,
            ends_at=created_at + timedelta(days=duration_days),
        )
        db.add(project)
    return project
