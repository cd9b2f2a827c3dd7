from __future__ import annotations

from decimal import Decimal

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from promorang.core.errors import success
from promorang.db import get_db
from promorang.deps import idempotency_key, require_user
from promorang.models.user import User
from promorang.services.config_service import list_stake_channels
from promorang.services.growth_service import create_funding_project, list_funding_projects
from promorang.services.settlement_service import list_stakes, stake

router = APIRouter(prefix="/api/growth-hub", tags=["growth-hub"])


class StakeIn(BaseModel):
    amount: Decimal = Field(gt=0, allow_inf_nan=False)
    channel_name: str = Field(min_length=1, max_length=32)


class FundingProjectIn(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    description: str | None = None
    funding_goal: Decimal = Field(gt=0, allow_inf_nan=False)
    duration_days: int = 30


@router.get("/channels")
async def channels(db: AsyncSession = Depends(get_db)):
    rows = await list_stake_channels(db)
    return success([
        {"name": c.name, "lock_period_days": c.lock_period_days, "multiplier": float(c.multiplier)}
        for c in rows
    ])


@router.post("/stake")
async def stake_gems(
    payload: StakeIn,
    user: User = Depends(require_user),
    key: str | None = Depends(idempotency_key),
    db: AsyncSession = Depends(get_db),
):
    return success(await stake(db, user.id, payload.amount, payload.channel_name, idempotency_key=key))


@router.get("/stakes")
async def my_stakes(user: User = Depends(require_user), db: AsyncSession = Depends(get_db)):
    return success([s.as_dict() for s in await list_stakes(db, user.id)])


@router.get("/projects")
async def projects(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    return success(await list_funding_projects(db, limit=limit, offset=offset))


@router.post("/projects", status_code=201)
async def new_project(payload: FundingProjectIn, user: User = Depends(require_user), db: AsyncSession = Depends(get_db)):
    project = await create_funding_project(db, user.id, **payload.model_dump())
    return success(project.as_dict())
