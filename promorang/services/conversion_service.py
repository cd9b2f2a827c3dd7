from __future__ import annotations

import logging
import math
from datetime import datetime, time
from decimal import Decimal

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from promorang.core.errors import BadRequest, BelowMinimum, DailyLimitExceeded, UnsupportedPair
from promorang.db import atomic
from promorang.models.ledger import LedgerEntry, CURRENCIES
from promorang.services.config_service import get_active_rule
from promorang.services.ledger_service import apply_entry

logger = logging.getLogger(__name__)


async def units_converted_today(db: AsyncSession, user_id: str, to_currency: str, now: datetime | None = None) -> int:
    midnight = datetime.combine((now or datetime.utcnow()).date(), time.min)
    column = getattr(LedgerEntry, f"delta_{to_currency}")
    total = (await db.execute(
        select(func.coalesce(func.sum(column), 0)).where(
            LedgerEntry.user_id == user_id,
            LedgerEntry.event_type == "convert",
            LedgerEntry.created_at >= midnight,
            column > 0,
        )
    )).scalar_one()
    return int(total)


async def convert(
    db: AsyncSession,
    user_id: str,
    from_currency: str,
    to_currency: str,
    amount,
    idempotency_key: str | None = None,
) -> dict:
    """Exchange ``amount`` of ``from_currency`` for whole units of ``to_currency``.

    Only the exact multiple of the rate is consumed: converting 1999 points at
    500 per key yields 3 keys and costs 1500 points. The caller must hold at
    least the requested ``amount``.
    """
    if amount is None or isinstance(amount, bool):
        raise BadRequest("Invalid conversion parameters")
    amount = Decimal(str(amount))
    if not amount.is_finite() or amount <= 0:
        raise BadRequest("Amount must be a positive, finite number")
    if from_currency not in CURRENCIES or to_currency not in CURRENCIES:
        raise UnsupportedPair(f"{from_currency} → {to_currency} conversion is not supported")

    rule = await get_active_rule(db, from_currency, to_currency)
    if not rule:
        raise UnsupportedPair(f"{from_currency} → {to_currency} conversion is not supported")

    units = math.floor(amount / rule.rate)
    if units <= 0:
        raise BelowMinimum(f"Minimum {rule.rate} {from_currency} required to convert to 1 {to_currency}")
    cost = units * rule.rate

    converted_today = await units_converted_today(db, user_id, to_currency)
    if rule.daily_limit is not None and converted_today + units > rule.daily_limit:
        raise DailyLimitExceeded(
            f"Daily limit of {rule.daily_limit} {to_currency} reached ({converted_today} converted today)"
        )

    async with atomic(db):
        entry = await apply_entry(
            db,
            user_id,
            "convert",
            {from_currency: -cost, to_currency: units},
            reference=f"rule:{rule.id}@v{rule.version}",
            idempotency_key=idempotency_key,
            require={from_currency: amount},
        )
        # 余额行的写锁已持有，重新统计今日兑换量（含本条）
        converted_today = await units_converted_today(db, user_id, to_currency)
        if rule.daily_limit is not None and converted_today > rule.daily_limit:
            raise DailyLimitExceeded(
                f"Daily limit of {rule.daily_limit} {to_currency} reached ({converted_today - units} converted today)"
            )

    logger.info("user %s converted %s %s -> %s %s", user_id, cost, from_currency, units, to_currency)
    remaining = None
    if rule.daily_limit is not None:
        remaining = max(rule.daily_limit - converted_today, 0)
    return {
        "converted": units,
        "cost": cost,
        "from": from_currency,
        "to": to_currency,
        "remaining_daily": remaining,
        "entry_id": entry.id,
    }
