from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from promorang.core.errors import success
from promorang.db import get_db
from promorang.deps import idempotency_key, require_user
from promorang.models.user import User
from promorang.services.config_service import get_tier_multiplier
from promorang.services.conversion_service import convert
from promorang.services.ledger_service import ensure_balance, list_entries

router = APIRouter(prefix="/api/economy", tags=["economy"])


class ConvertIn(BaseModel):
    from_currency: str = Field(alias="from")
    to_currency: str = Field(alias="to")
    amount: float = Field(gt=0, allow_inf_nan=False)


@router.get("/me")
async def economy_me(user: User = Depends(require_user), db: AsyncSession = Depends(get_db)):
    balance = await ensure_balance(db, user.id)
    multiplier = await get_tier_multiplier(db, user.tier)
    data = balance.as_dict()
    data.update({
        "level": user.level,
        "tier": user.tier,
        "streak": 0,
        "multiplier": float(multiplier),
    })
    return success(data)


@router.post("/convert")
async def convert_currency(
    payload: ConvertIn,
    user: User = Depends(require_user),
    key: str | None = Depends(idempotency_key),
    db: AsyncSession = Depends(get_db),
):
    result = await convert(db, user.id, payload.from_currency, payload.to_currency, payload.amount, idempotency_key=key)
    return success(result)


@router.get("/transactions")
async def transactions(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user: User = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    entries = await list_entries(db, user.id, limit=limit, offset=offset)
    return success([e.as_dict() for e in entries])
