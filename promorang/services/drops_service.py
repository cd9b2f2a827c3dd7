from __future__ import annotations

import json
import logging
import math
from datetime import datetime

from sqlalchemy import select, update, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from promorang.core.errors import BadRequest, Conflict, NotFound, ResourceExhausted
from promorang.db import atomic
from promorang.models.admin import AdminLog
from promorang.models.drops import Drop, DropApplication
from promorang.models.user import User
from promorang.services.config_service import get_tier_multiplier
from promorang.services.ledger_service import apply_entry

logger = logging.getLogger(__name__)

DROP_TYPES = ("proof_of_work", "paid_promotion")


async def list_drops(db: AsyncSession, status: str = "active", limit: int = 20, offset: int = 0) -> list[Drop]:
    now = datetime.utcnow()
    return list((await db.execute(
        select(Drop)
        .where(Drop.status == status, or_(Drop.deadline_at.is_(None), Drop.deadline_at > now))
        .order_by(Drop.created_at.desc(), Drop.id.desc())
        .limit(limit)
        .offset(offset)
    )).scalars().all())


async def create_drop(db: AsyncSession, creator_id: str, **fields) -> Drop:
    if not fields.get("title"):
        raise BadRequest("Title is required")
    if fields.get("drop_type", "proof_of_work") not in DROP_TYPES:
        raise BadRequest("Invalid drop type")
    for reward in ("reward_points", "reward_keys", "reward_gems"):
        if (fields.get(reward) or 0) < 0:
            raise BadRequest(f"{reward} must not be negative")
    if fields.get("max_participants") is not None and fields["max_participants"] < 1:
        raise BadRequest("max_participants must be at least 1")

    async with atomic(db):
        drop = Drop(creator_id=creator_id, status="active", **fields)
        db.add(drop)
    return drop


async def apply_to_drop(db: AsyncSession, user_id: str, drop_id: int, submission_url: str | None = None) -> DropApplication:
    if not drop_id or drop_id <= 0:
        raise BadRequest("Invalid drop ID")

    drop = await db.get(Drop, drop_id)
    if not drop:
        raise NotFound("Drop")
    if drop.status != "active":
        raise BadRequest("Drop is not active")
    if drop.deadline_at and drop.deadline_at < datetime.utcnow():
        raise BadRequest("Drop deadline has passed")

    existing = (await db.execute(
        select(DropApplication.id).where(DropApplication.drop_id == drop_id, DropApplication.user_id == user_id)
    )).scalar_one_or_none()
    if existing:
        raise Conflict("You have already applied to this drop")

    if drop.max_participants:
        count = (await db.execute(
            select(func.count(DropApplication.id)).where(DropApplication.drop_id == drop_id)
        )).scalar_one()
        if count >= drop.max_participants:
            raise ResourceExhausted("Drop has reached maximum participants")

    application = DropApplication(drop_id=drop_id, user_id=user_id, submission_url=submission_url, status="pending")
    try:
        async with atomic(db):
            db.add(application)
    except IntegrityError as exc:
        # 并发重复申请由唯一索引兜底
        raise Conflict("You have already applied to this drop") from exc
    logger.info("user %s applied to drop %s", user_id, drop_id)
    return application


async def list_user_applications(db: AsyncSession, user_id: str) -> list[dict]:
    rows = (await db.execute(
        select(DropApplication, Drop)
        .join(Drop, DropApplication.drop_id == Drop.id)
        .where(DropApplication.user_id == user_id)
        .order_by(DropApplication.submitted_at.desc())
    )).all()
    out = []
    for application, drop in rows:
        item = application.as_dict()
        item.update({
            "drop_title": drop.title,
            "drop_description": drop.description,
            "drop_type": drop.drop_type,
            "reward_points": drop.reward_points,
            "reward_keys": drop.reward_keys,
            "reward_gems": drop.reward_gems,
            "deadline_at": drop.deadline_at.isoformat() if drop.deadline_at else None,
        })
        out.append(item)
    return out


async def review_application(db: AsyncSession, admin_id: int, application_id: int, action: str) -> dict:
    """Approve or reject a pending application; approval pays the drop reward once."""
    if action not in ("approve", "reject"):
        raise BadRequest("Invalid action")
    application = await db.get(DropApplication, application_id)
    if not application:
        raise NotFound("Application")
    drop = await db.get(Drop, application.drop_id)
    user = await db.get(User, application.user_id)
    multiplier = await get_tier_multiplier(db, user.tier if user else None)

    new_status = "approved" if action == "approve" else "rejected"
    rewards = {}
    async with atomic(db):
        flipped = await db.execute(
            update(DropApplication)
            .where(DropApplication.id == application_id, DropApplication.status == "pending")
            .values(status=new_status, reviewed_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        if flipped.rowcount != 1:
            raise Conflict("Application was already reviewed")

        if action == "approve":
            rewards = {
                "points": math.floor(drop.reward_points * multiplier),
                "keys": drop.reward_keys,
                "gems": drop.reward_gems,
            }
            if any(rewards.values()):
                await apply_entry(db, application.user_id, "earn", rewards, f"drop:{drop.id}")

        db.add(AdminLog(
            admin_id=admin_id,
            action_type="drop_review",
            target_id=str(application_id),
            action_details=json.dumps({"action": action, "drop_id": drop.id}),
        ))

    logger.info("application %s %s by admin %s", application_id, new_status, admin_id)
    return {"application_id": application_id, "status": new_status, "rewards": rewards}
