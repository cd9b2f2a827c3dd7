from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Body, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from promorang.core.errors import success
from promorang.db import get_db
from promorang.deps import require_user
from promorang.models.user import User
from promorang.services.drops_service import apply_to_drop, create_drop, list_drops, list_user_applications

router = APIRouter(prefix="/api/drops", tags=["drops"])


class CreateDropIn(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    description: str | None = None
    drop_type: str = "proof_of_work"
    difficulty: str | None = None
    platform: str | None = None
    content_url: str | None = None
    reward_points: int = Field(default=0, ge=0)
    reward_keys: int = Field(default=0, ge=0)
    reward_gems: int = Field(default=0, ge=0)
    max_participants: int | None = Field(default=None, ge=1)
    deadline_at: datetime | None = None


class ApplyIn(BaseModel):
    submission_url: str | None = Field(default=None, max_length=512)


@router.get("")
async def drops_feed(
    status: str = Query("active"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    rows = await list_drops(db, status=status, limit=limit, offset=offset)
    return success([d.as_dict() for d in rows])


@router.post("", status_code=201)
async def new_drop(payload: CreateDropIn, user: User = Depends(require_user), db: AsyncSession = Depends(get_db)):
    fields = payload.model_dump()
    deadline = fields.get("deadline_at")
    if deadline is not None and deadline.tzinfo is not None:
        # 数据库统一存 UTC naive 时间
        fields["deadline_at"] = deadline.astimezone(timezone.utc).replace(tzinfo=None)
    drop = await create_drop(db, user.id, **fields)
    return success(drop.as_dict())


@router.get("/applications/me")
async def my_applications(user: User = Depends(require_user), db: AsyncSession = Depends(get_db)):
    return success(await list_user_applications(db, user.id))


@router.post("/{drop_id}/apply", status_code=201)
async def apply(
    drop_id: int,
    payload: ApplyIn | None = Body(default=None),
    user: User = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    application = await apply_to_drop(db, user.id, drop_id, payload.submission_url if payload else None)
    return success(application.as_dict())
