from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from promorang.core.errors import BadRequest, success
from promorang.core.settings import settings
from promorang.db import get_db
from promorang.deps import idempotency_key, require_user
from promorang.models.user import User
from promorang.services.payments_service import create_checkout, handle_webhook_event, verify_stripe_signature
from promorang.services.settlement_service import request_withdrawal

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payments", tags=["payments"])


class CheckoutIn(BaseModel):
    gems: int = Field(gt=0)
    price_id: str | None = None


class WithdrawIn(BaseModel):
    amount: float = Field(gt=0, allow_inf_nan=False)


@router.post("/create-checkout")
async def checkout(payload: CheckoutIn, request: Request, user: User = Depends(require_user),
                   db: AsyncSession = Depends(get_db)):
    base_url = settings.FRONTEND_URL or str(request.base_url)
    return success(await create_checkout(db, user, payload.gems, payload.price_id, base_url))


@router.post("/webhook")
async def stripe_webhook(request: Request, stripe_signature: str | None = Header(default=None),
                         db: AsyncSession = Depends(get_db)):
    if not settings.STRIPE_WEBHOOK_SECRET:
        raise BadRequest("Stripe not configured")
    raw_body = await request.body()
    verify_stripe_signature(raw_body, stripe_signature, settings.STRIPE_WEBHOOK_SECRET,
                            settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS)
    try:
        event = json.loads(raw_body)
    except ValueError as exc:
        raise BadRequest("Invalid JSON payload") from exc
    status = await handle_webhook_event(db, event)
    logger.info("stripe event %s: %s", event.get("type"), status)
    return success({"status": status})


@router.post("/withdraw")
async def withdraw(
    payload: WithdrawIn,
    user: User = Depends(require_user),
    key: str | None = Depends(idempotency_key),
    db: AsyncSession = Depends(get_db),
):
    return success(await request_withdrawal(db, user.id, payload.amount, idempotency_key=key))
