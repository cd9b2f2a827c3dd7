from __future__ import annotations

from decimal import Decimal

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from promorang.core.errors import success
from promorang.db import get_db
from promorang.deps import idempotency_key, require_user
from promorang.models.user import User
from promorang.services.content_service import create_content, list_content
from promorang.services.settlement_service import buy_shares

router = APIRouter(prefix="/api/content", tags=["content"])


class CreateContentIn(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    platform: str = Field(min_length=1, max_length=32)
    description: str | None = None
    platform_url: str | None = Field(default=None, max_length=512)
    image_url: str | None = Field(default=None, max_length=512)
    total_shares: int = 100
    share_price: Decimal = Field(default=Decimal("0.01"), allow_inf_nan=False)


class BuySharesIn(BaseModel):
    content_id: int
    shares_count: int


@router.get("")
async def content_feed(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    rows = await list_content(db, limit=limit, offset=offset)
    return success([c.as_dict() for c in rows])


@router.post("", status_code=201)
async def publish_content(payload: CreateContentIn, user: User = Depends(require_user), db: AsyncSession = Depends(get_db)):
    content = await create_content(db, user.id, **payload.model_dump())
    return success(content.as_dict())


@router.post("/buy-shares")
async def buy_content_shares(
    payload: BuySharesIn,
    user: User = Depends(require_user),
    key: str | None = Depends(idempotency_key),
    db: AsyncSession = Depends(get_db),
):
    result = await buy_shares(db, user.id, payload.content_id, payload.shares_count, idempotency_key=key)
    return success(result)
