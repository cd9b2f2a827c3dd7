"""Balance store and ledger.

All balance mutation in the application goes through :func:`apply_entry`.
It updates the balance row with a guarded ``UPDATE ... WHERE field + delta >= 0``
and appends exactly one :class:`LedgerEntry` carrying the same deltas, so
replaying a user's entries from zero always reproduces the balance row.
Callers wrap it in :func:`promorang.db.atomic` together with whatever other
rows their operation touches.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_DOWN
from typing import Mapping

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from promorang.core.errors import BadRequest, Conflict, InsufficientFunds
from promorang.models.ledger import Balance, LedgerEntry, CURRENCIES

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
INTEGER_CURRENCIES = ("points", "keys")
DECIMAL_CURRENCIES = ("gems", "gold")
# transfer() 写出的两条腿，只能成对存在
TRANSFER_EVENTS = ("spend", "sale")


def to_amount(currency: str, value) -> int | Decimal:
    """Coerce an amount to the storage type of ``currency``."""
    if currency not in CURRENCIES:
        raise BadRequest(f"Unknown currency: {currency}")
    if currency in INTEGER_CURRENCIES:
        if isinstance(value, float) and not math.isfinite(value):
            raise BadRequest(f"{currency} amount must be finite")
        if value != int(value):
            raise BadRequest(f"{currency} must be a whole number")
        return int(value)
    amount = Decimal(str(value))
    if not amount.is_finite():
        raise BadRequest(f"{currency} amount must be finite")
    return amount.quantize(CENT, rounding=ROUND_DOWN)


def _normalize(deltas: Mapping[str, object]) -> dict[str, int | Decimal]:
    out: dict[str, int | Decimal] = {}
    for currency, value in deltas.items():
        amount = to_amount(currency, value)
        if amount:
            out[currency] = amount
    if not out:
        raise BadRequest("Ledger entry must change at least one currency")
    return out


async def get_balance(db: AsyncSession, user_id: str) -> Balance | None:
    return (await db.execute(
        select(Balance).where(Balance.user_id == user_id).execution_options(populate_existing=True)
    )).scalar_one_or_none()


async def ensure_balance(db: AsyncSession, user_id: str) -> Balance:
    balance = await get_balance(db, user_id)
    if not balance:
        try:
            async with db.begin_nested():
                db.add(Balance(user_id=user_id, points=0, keys=0, gems=Decimal("0"), gold=Decimal("0")))
        except IntegrityError:
            # 并发请求已经建好了这一行
            logger.info("balance row for user %s created concurrently", user_id)
        balance = await get_balance(db, user_id)
    return balance


async def _check_idempotency(db: AsyncSession, user_id: str, idempotency_key: str) -> None:
    seen = (await db.execute(
        select(LedgerEntry.id).where(
            LedgerEntry.user_id == user_id,
            LedgerEntry.idempotency_key == idempotency_key,
        )
    )).scalar_one_or_none()
    if seen:
        raise Conflict("Request with this idempotency key was already applied")


def _shortfall(balance: Balance | None, deltas: dict[str, int | Decimal], minimums: dict[str, int | Decimal]) -> str:
    for currency, minimum in minimums.items():
        held = getattr(balance, currency) if balance else 0
        if held < minimum:
            return currency
    for currency, delta in deltas.items():
        if delta >= 0:
            continue
        held = getattr(balance, currency) if balance else 0
        if held + delta < 0:
            return currency
    # 余额行在检查之后被并发修改，按第一个扣减币种报错
    return next((c for c, d in deltas.items() if d < 0), next(iter(minimums), next(iter(deltas))))


async def apply_entry(
    db: AsyncSession,
    user_id: str,
    event_type: str,
    deltas: Mapping[str, object],
    reference: str | None = None,
    idempotency_key: str | None = None,
    require: Mapping[str, object] | None = None,
) -> LedgerEntry:
    """Apply signed ``deltas`` to the user's balance and record them.

    Raises :class:`InsufficientFunds` without touching the balance when any
    field would go negative (or fall short of a ``require`` minimum checked
    in the same statement), and :class:`Conflict` when ``idempotency_key``
    has already been used by this user.
    """
    changes = _normalize(deltas)
    minimums = {c: to_amount(c, v) for c, v in (require or {}).items()}
    if idempotency_key:
        await _check_idempotency(db, user_id, idempotency_key)

    values: dict[str, object] = {"updated_at": datetime.utcnow()}
    stmt = update(Balance).where(Balance.user_id == user_id)
    for currency, minimum in minimums.items():
        stmt = stmt.where(getattr(Balance, currency) >= minimum)
    for currency, delta in changes.items():
        column = getattr(Balance, currency)
        if currency in DECIMAL_CURRENCIES:
            # sqlite 里 Numeric 按浮点存储，round 防止误差累积
            new_value = func.round(column + delta, 2)
        else:
            new_value = column + delta
        values[currency] = new_value
        if delta < 0:
            stmt = stmt.where(new_value >= 0)

    guarded = stmt.values(**values).execution_options(synchronize_session=False)
    result = await db.execute(guarded)
    if result.rowcount != 1:
        balance = await get_balance(db, user_id)
        if balance is None and not minimums and all(d > 0 for d in changes.values()):
            # 第一次引用该用户：懒创建余额行
            try:
                async with db.begin_nested():
                    db.add(Balance(
                        user_id=user_id,
                        points=changes.get("points", 0),
                        keys=changes.get("keys", 0),
                        gems=changes.get("gems", Decimal("0")),
                        gold=changes.get("gold", Decimal("0")),
                    ))
            except IntegrityError:
                # 并发的首次入账抢先建了行，改走带条件的 UPDATE
                logger.info("balance row for user %s created concurrently, retrying update", user_id)
                if (await db.execute(guarded)).rowcount != 1:
                    raise InsufficientFunds(_shortfall(await get_balance(db, user_id), changes, minimums))
        else:
            currency = _shortfall(balance, changes, minimums)
            logger.info("insufficient %s for user %s (%s)", currency, user_id, event_type)
            raise InsufficientFunds(currency)

    entry = LedgerEntry(
        user_id=user_id,
        event_type=event_type,
        delta_points=changes.get("points", 0),
        delta_keys=changes.get("keys", 0),
        delta_gems=changes.get("gems", Decimal("0")),
        delta_gold=changes.get("gold", Decimal("0")),
        reference=reference,
        idempotency_key=idempotency_key,
    )
    db.add(entry)
    try:
        await db.flush()
    except IntegrityError as exc:
        raise Conflict("Request with this idempotency key was already applied") from exc
    return entry


async def credit(db: AsyncSession, user_id: str, currency: str, amount, event_type: str, reference: str | None = None,
                 idempotency_key: str | None = None) -> LedgerEntry:
    amount = to_amount(currency, amount)
    if amount <= 0:
        raise BadRequest("Amount must be greater than 0")
    return await apply_entry(db, user_id, event_type, {currency: amount}, reference, idempotency_key)


async def debit(db: AsyncSession, user_id: str, currency: str, amount, event_type: str, reference: str | None = None,
                idempotency_key: str | None = None) -> LedgerEntry:
    amount = to_amount(currency, amount)
    if amount <= 0:
        raise BadRequest("Amount must be greater than 0")
    return await apply_entry(db, user_id, event_type, {currency: -amount}, reference, idempotency_key)


async def transfer(
    db: AsyncSession,
    payer_id: str,
    payee_id: str,
    currency: str,
    amount,
    reference: str | None = None,
    idempotency_key: str | None = None,
) -> tuple[LedgerEntry, LedgerEntry]:
    """Move ``amount`` of one currency between two users; debit and credit are equal."""
    if payer_id == payee_id:
        raise BadRequest("Payer and payee must be different users")
    spent = await debit(db, payer_id, currency, amount, "spend", reference, idempotency_key)
    sold = await credit(db, payee_id, currency, amount, "sale", reference)
    return spent, sold


async def list_entries(db: AsyncSession, user_id: str, limit: int = 20, offset: int = 0) -> list[LedgerEntry]:
    return list((await db.execute(
        select(LedgerEntry)
        .where(LedgerEntry.user_id == user_id)
        .order_by(LedgerEntry.created_at.desc(), LedgerEntry.id)
        .limit(limit)
        .offset(offset)
    )).scalars().all())


@dataclass
class Reconciliation:
    balance: dict
    replayed: dict
    consistent: bool


async def reconcile(db: AsyncSession, user_id: str) -> Reconciliation:
    """Replay every ledger entry of ``user_id`` from zero and compare with the balance row."""
    row = (await db.execute(
        select(
            func.coalesce(func.sum(LedgerEntry.delta_points), 0),
            func.coalesce(func.sum(LedgerEntry.delta_keys), 0),
            func.coalesce(func.sum(LedgerEntry.delta_gems), 0),
            func.coalesce(func.sum(LedgerEntry.delta_gold), 0),
        ).where(LedgerEntry.user_id == user_id)
    )).one()
    replayed = {
        "points": int(row[0]),
        "keys": int(row[1]),
        "gems": to_amount("gems", round(float(row[2]), 2)),
        "gold": to_amount("gold", round(float(row[3]), 2)),
    }
    balance = await get_balance(db, user_id)
    current = {
        "points": balance.points if balance else 0,
        "keys": balance.keys if balance else 0,
        "gems": to_amount("gems", balance.gems) if balance else Decimal("0.00"),
        "gold": to_amount("gold", balance.gold) if balance else Decimal("0.00"),
    }
    consistent = all(current[c] == replayed[c] for c in CURRENCIES)
    if not consistent:
        logger.error("ledger mismatch for user %s: balance=%s replayed=%s", user_id, current, replayed)
    return Reconciliation(
        balance={c: float(v) if isinstance(v, Decimal) else v for c, v in current.items()},
        replayed={c: float(v) if isinstance(v, Decimal) else v for c, v in replayed.items()},
        consistent=consistent,
    )
