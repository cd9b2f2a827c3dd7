from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from promorang.core.errors import success
from promorang.db import get_db
from promorang.deps import optional_user
from promorang.models.user import User
from promorang.services.leaderboard_service import get_leaderboard, get_user_rank

router = APIRouter(prefix="/api/leaderboard", tags=["leaderboard"])


@router.get("")
async def leaderboard(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    return success(await get_leaderboard(db, limit=limit, offset=offset))


@router.get("/me")
async def my_rank(user: User | None = Depends(optional_user), db: AsyncSession = Depends(get_db)):
    return success(await get_user_rank(db, user.id if user else None))
