"""Marketplace settlement: value moving between users, or out of and back into the platform.

Every operation here touches more than one row (two balances, a resource
counter, a record of the exchange) and runs inside a single ``atomic`` block.
Resource counters are claimed with guarded updates so that concurrent
buyers can never oversell content or double-settle a stake.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_DOWN

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from promorang.core.errors import BadRequest, Conflict, NotFound, ResourceExhausted
from promorang.db import atomic
from promorang.models.admin import AdminLog
from promorang.models.content import Content, ContentShare
from promorang.models.growth import Stake
from promorang.models.payments import Payment
from promorang.services.config_service import get_int_config, get_stake_channel
from promorang.services.ledger_service import CENT, credit, debit, to_amount, transfer

logger = logging.getLogger(__name__)


async def buy_shares(
    db: AsyncSession,
    buyer_id: str,
    content_id: int,
    shares_count: int,
    idempotency_key: str | None = None,
) -> dict:
    if not content_id or not shares_count or shares_count <= 0:
        raise BadRequest("Invalid content_id or shares_count")

    content = await db.get(Content, content_id)
    if not content:
        raise NotFound("Content")
    if content.status != "active":
        raise BadRequest("Content is not available for trading")
    if content.creator_id == buyer_id:
        raise BadRequest("Cannot buy shares of your own content")

    price_each = to_amount("gems", content.share_price)
    total_cost = (price_each * shares_count).quantize(CENT)
    reference = f"content:{content.id}"

    async with atomic(db):
        # 先占用份额：剩余不足时 rowcount 为 0
        reserved = await db.execute(
            update(Content)
            .where(
                Content.id == content.id,
                Content.total_shares - Content.shares_sold >= shares_count,
            )
            .values(shares_sold=Content.shares_sold + shares_count)
            .execution_options(synchronize_session=False)
        )
        if reserved.rowcount != 1:
            raise ResourceExhausted(
                f"Only {content.total_shares - content.shares_sold} shares available"
            )

        if total_cost > 0:
            await transfer(db, buyer_id, content.creator_id, "gems", total_cost, reference, idempotency_key)

        db.add(ContentShare(content_id=content.id, buyer_id=buyer_id, shares_count=shares_count, price_each=price_each))
        await db.flush()

    await db.refresh(content)
    logger.info("user %s bought %s shares of content %s for %s gems", buyer_id, shares_count, content.id, total_cost)
    return {
        "shares_purchased": shares_count,
        "total_cost": float(total_cost),
        "remaining_shares": content.total_shares - content.shares_sold,
    }


async def stake(
    db: AsyncSession,
    user_id: str,
    amount,
    channel_name: str,
    idempotency_key: str | None = None,
    now: datetime | None = None,
) -> dict:
    amount = to_amount("gems", amount)
    if amount <= 0:
        raise BadRequest("Amount must be greater than 0")
    if not channel_name:
        raise BadRequest("Channel name is required")
    channel = await get_stake_channel(db, channel_name)

    started_at = now or datetime.utcnow()
    expires_at = started_at + timedelta(days=channel.lock_period_days)

    async with atomic(db):
        row = Stake(
            user_id=user_id,
            channel_name=channel.name,
            amount=amount,
            lock_period_days=channel.lock_period_days,
            base_multiplier=channel.multiplier,
            status="active",
            started_at=started_at,
            expires_at=expires_at,
        )
        db.add(row)
        await db.flush()
        await debit(db, user_id, "gems", amount, "stake", f"stake:{row.id}", idempotency_key)

    logger.info("user %s staked %s gems in %s (stake %s)", user_id, amount, channel.name, row.id)
    return {
        "stake_id": row.id,
        "staked": float(amount),
        "channel": channel.name,
        "multiplier": float(channel.multiplier),
        "expires_at": expires_at.isoformat(),
    }


async def list_stakes(db: AsyncSession, user_id: str) -> list[Stake]:
    return list((await db.execute(
        select(Stake).where(Stake.user_id == user_id).order_by(Stake.started_at.desc())
    )).scalars().all())


def stake_reward(amount: Decimal, multiplier: Decimal) -> Decimal:
    return (Decimal(amount) * (Decimal(multiplier) - 1)).quantize(CENT, rounding=ROUND_DOWN)


async def distribute_stake_rewards(db: AsyncSession, now: datetime | None = None) -> dict:
    """Pay out every matured stake: principal back as ``unstake``, reward minted as ``earn``.

    Each stake settles in its own transaction. The active -> completed flip
    is the guard: a stake that another run already settled is skipped.
    """
    now = now or datetime.utcnow()
    due_ids = list((await db.execute(
        select(Stake.id).where(Stake.status == "active", Stake.expires_at <= now).order_by(Stake.id)
    )).scalars().all())

    settled = 0
    minted = Decimal("0")
    for stake_id in due_ids:
        async with atomic(db):
            claimed = await db.execute(
                update(Stake)
                .where(Stake.id == stake_id, Stake.status == "active")
                .values(status="completed", completed_at=now)
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != 1:
                continue
            row = (await db.execute(
                select(Stake).where(Stake.id == stake_id).execution_options(populate_existing=True)
            )).scalar_one()
            reference = f"stake:{row.id}"
            await credit(db, row.user_id, "gems", row.amount, "unstake", reference)
            reward = stake_reward(row.amount, row.base_multiplier)
            if reward > 0:
                await credit(db, row.user_id, "gems", reward, "earn", reference)
        settled += 1
        minted += reward

    if settled:
        logger.info("settled %s stakes, minted %s gems in rewards", settled, minted)
    return {"settled": settled, "rewards_minted": float(minted)}


async def request_withdrawal(db: AsyncSession, user_id: str, amount, idempotency_key: str | None = None) -> dict:
    amount = to_amount("gems", amount)
    if amount <= 0:
        raise BadRequest("Valid withdrawal amount is required")
    min_gems = await get_int_config(db, "min_withdrawal_gems")
    if amount < min_gems:
        raise BadRequest(f"Minimum withdrawal is {min_gems} gems")

    async with atomic(db):
        payment = Payment(user_id=user_id, payment_type="withdrawal", amount=amount, status="pending", provider="manual")
        db.add(payment)
        await db.flush()
        await debit(db, user_id, "gems", amount, "withdraw", f"payment:{payment.id}", idempotency_key)

    logger.info("user %s requested withdrawal of %s gems (payment %s)", user_id, amount, payment.id)
    return {
        "payment_id": payment.id,
        "withdrawal_requested": float(amount),
        "status": "pending",
        "message": "Withdrawal request submitted. Processing may take 1-3 business days.",
    }


async def review_withdrawal(db: AsyncSession, admin_id: int, payment_id: int, action: str) -> Payment:
    """Approve or reject a pending withdrawal; rejection refunds the gems."""
    if action not in ("approve", "reject"):
        raise BadRequest("Invalid action")
    payment = await db.get(Payment, payment_id)
    if not payment or payment.payment_type != "withdrawal":
        raise NotFound("Withdrawal")

    new_status = "completed" if action == "approve" else "rejected"
    async with atomic(db):
        flipped = await db.execute(
            update(Payment)
            .where(Payment.id == payment_id, Payment.status == "pending")
            .values(status=new_status, completed_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        if flipped.rowcount != 1:
            raise Conflict("Withdrawal was already reviewed")
        if action == "reject":
            await credit(db, payment.user_id, "gems", payment.amount, "withdraw_reversal", f"payment:{payment.id}")
        db.add(AdminLog(
            admin_id=admin_id,
            action_type="withdrawal_review",
            target_id=str(payment_id),
            action_details=json.dumps({"action": action, "amount": str(payment.amount)}),
        ))

    await db.refresh(payment)
    logger.info("withdrawal %s %s by admin %s", payment_id, new_status, admin_id)
    return payment
