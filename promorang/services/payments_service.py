from __future__ import annotations

import hashlib
import hmac
import logging
import time
from datetime import datetime

import httpx
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from promorang.core.errors import BadRequest, UpstreamTimeout
from promorang.core.settings import settings
from promorang.db import atomic
from promorang.models.payments import Payment
from promorang.models.user import User
from promorang.services.ledger_service import credit

logger = logging.getLogger(__name__)

STRIPE_API = "https://api.stripe.com/v1"


async def create_checkout(db: AsyncSession, user: User, gems: int, price_id: str | None, base_url: str) -> dict:
    if not gems or gems <= 0:
        raise BadRequest("Valid gems amount is required")
    if not settings.STRIPE_SECRET_KEY:
        raise BadRequest("Stripe not configured")
    if not user.email:
        raise BadRequest("User email required for payment")

    final_price_id = price_id or settings.gem_price_ids.get(gems)
    if not final_price_id:
        raise BadRequest("Invalid gems amount or missing price_id")

    base_url = base_url.rstrip("/")
    try:
        async with httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_SECONDS) as client:
            resp = await client.post(
                f"{STRIPE_API}/checkout/sessions",
                headers={"Authorization": f"Bearer {settings.STRIPE_SECRET_KEY}"},
                data={
                    "payment_method_types[]": "card",
                    "line_items[0][price]": final_price_id,
                    "line_items[0][quantity]": "1",
                    "mode": "payment",
                    "success_url": f"{base_url}/success?session_id={{CHECKOUT_SESSION_ID}}",
                    "cancel_url": f"{base_url}/cancel",
                    "customer_email": user.email,
                    "metadata[gems]": str(gems),
                    "metadata[user_id]": user.id,
                },
            )
    except httpx.TimeoutException as exc:
        raise UpstreamTimeout("Stripe checkout timed out, please retry") from exc

    if resp.status_code >= 400:
        logger.error("Stripe checkout failed for user %s: %s %s", user.id, resp.status_code, resp.text)
        raise BadRequest("checkout_create_failed")

    session = resp.json()
    async with atomic(db):
        db.add(Payment(
            user_id=user.id,
            payment_type="deposit",
            amount=gems,
            status="pending",
            provider="stripe",
            provider_session_id=session["id"],
            checkout_url=session.get("url"),
        ))
    logger.info("created Stripe checkout %s for user %s (%s gems)", session["id"], user.id, gems)
    return {"checkout_url": session.get("url"), "session_id": session["id"]}


def verify_stripe_signature(payload: bytes, header: str | None, secret: str, tolerance: int,
                            now: int | None = None) -> None:
    """Check a ``Stripe-Signature`` header (``t=...,v1=...``) against the raw body."""
    if not header:
        raise BadRequest("No signature")
    timestamp = None
    signatures = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)
    if not timestamp or not timestamp.isdigit() or not signatures:
        raise BadRequest("Malformed signature header")

    signed = timestamp.encode() + b"." + payload
    expected = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    if not any(hmac.compare_digest(expected, sig) for sig in signatures):
        raise BadRequest("Invalid signature")
    current = now if now is not None else int(time.time())
    if abs(current - int(timestamp)) > tolerance:
        raise BadRequest("Signature timestamp outside tolerance")


async def complete_checkout(db: AsyncSession, session_id: str) -> bool:
    """Mark a deposit as completed and credit its gems. Returns False for repeats and unknown sessions."""
    payment = (await db.execute(
        select(Payment).where(Payment.provider_session_id == session_id, Payment.payment_type == "deposit")
    )).scalar_one_or_none()
    if not payment:
        logger.warning("webhook for unknown checkout session %s", session_id)
        return False

    async with atomic(db):
        flipped = await db.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status == "pending")
            .values(status="completed", completed_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        if flipped.rowcount != 1:
            return False
        await credit(db, payment.user_id, "gems", payment.amount, "purchase", f"stripe:{session_id}")

    logger.info("credited %s gems to user %s for session %s", payment.amount, payment.user_id, session_id)
    return True


async def handle_webhook_event(db: AsyncSession, event: dict) -> str:
    if event.get("type") != "checkout.session.completed":
        return "ignored"
    session = (event.get("data") or {}).get("object") or {}
    session_id = session.get("id")
    if not session_id:
        raise BadRequest("Checkout session id missing")
    return "processed" if await complete_checkout(db, session_id) else "ignored"
