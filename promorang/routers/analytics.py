from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from promorang.core.errors import success
from promorang.db import get_db
from promorang.deps import require_admin, require_user
from promorang.models.admin import Admin
from promorang.models.user import User
from promorang.services.analytics_service import global_analytics, user_analytics

router = APIRouter(prefix="/api/analytics", tags=["analytics"])


@router.get("/me")
async def my_analytics(user: User = Depends(require_user), db: AsyncSession = Depends(get_db)):
    return success(await user_analytics(db, user))


@router.get("/global")
async def platform_analytics(_: Admin = Depends(require_admin), db: AsyncSession = Depends(get_db)):
    return success(await global_analytics(db))
