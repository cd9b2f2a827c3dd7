from decimal import Decimal

import pytest
from sqlalchemy import insert, select, func

from promorang.core.errors import BadRequest, Conflict, InsufficientFunds
from promorang.db import atomic
from promorang.models.ledger import Balance, LedgerEntry
from promorang.models.user import User
from promorang.services import ledger_service
from promorang.services.ledger_service import (
    apply_entry,
    credit,
    debit,
    get_balance,
    reconcile,
    to_amount,
    transfer,
)

from conftest import make_user


async def _entry_count(db, user_id):
    return (await db.execute(select(func.count(LedgerEntry.id)).where(LedgerEntry.user_id == user_id))).scalar_one()


def test_to_amount_rules():
    assert to_amount("points", 10) == 10
    assert to_amount("gems", "12.349") == Decimal("12.34")
    with pytest.raises(BadRequest):
        to_amount("points", 1.5)
    with pytest.raises(BadRequest):
        to_amount("gems", float("nan"))
    with pytest.raises(BadRequest):
        to_amount("diamonds", 1)


async def test_signup_creates_balance_with_bonus(db):
    user = await make_user(db, "alice")
    balance = await get_balance(db, user.id)
    assert balance.points == 100
    assert balance.keys == 0
    assert (await reconcile(db, user.id)).consistent


async def test_credit_creates_missing_balance_row(db):
    user = User(email="bare@example.com", name="bare")
    db.add(user)
    await db.commit()

    async with atomic(db):
        await credit(db, user.id, "gems", Decimal("5.50"), "earn", "manual")

    balance = await get_balance(db, user.id)
    assert balance.gems == Decimal("5.50")
    assert (await reconcile(db, user.id)).consistent


async def test_debit_never_goes_negative(db):
    user = await make_user(db, "bob", gems=10)
    before = await _entry_count(db, user.id)

    with pytest.raises(InsufficientFunds) as exc:
        async with atomic(db):
            await debit(db, user.id, "gems", 11, "spend")
    assert exc.value.currency == "gems"

    balance = await get_balance(db, user.id)
    assert balance.gems == Decimal("10.00")
    assert await _entry_count(db, user.id) == before


async def test_debit_for_user_without_balance_row_fails(db):
    user = User(email="nobody@example.com", name="nobody")
    db.add(user)
    await db.commit()
    user_id = user.id

    with pytest.raises(InsufficientFunds):
        async with atomic(db):
            await debit(db, user_id, "points", 1, "spend")
    assert await get_balance(db, user_id) is None


async def test_multi_currency_entry_is_all_or_nothing(db):
    user = await make_user(db, "carol", points=1000, keys=0)

    with pytest.raises(InsufficientFunds) as exc:
        async with atomic(db):
            await apply_entry(db, user.id, "convert", {"points": -500, "keys": -1})
    assert exc.value.currency == "keys"

    balance = await get_balance(db, user.id)
    assert balance.points == 1000
    assert balance.keys == 0


async def test_idempotency_key_applies_once(db):
    user = await make_user(db, "dave", points=0)

    async with atomic(db):
        await credit(db, user.id, "points", 50, "earn", idempotency_key="req-1")
    with pytest.raises(Conflict):
        async with atomic(db):
            await credit(db, user.id, "points", 50, "earn", idempotency_key="req-1")

    balance = await get_balance(db, user.id)
    assert balance.points == 50


async def test_transfer_conserves_value(db):
    payer = await make_user(db, "payer", gems=100)
    payee = await make_user(db, "payee", gems=0)

    async with atomic(db):
        spent, sold = await transfer(db, payer.id, payee.id, "gems", Decimal("40.25"), "content:1")

    assert spent.delta_gems == -sold.delta_gems
    assert (await get_balance(db, payer.id)).gems == Decimal("59.75")
    assert (await get_balance(db, payee.id)).gems == Decimal("40.25")
    assert (await reconcile(db, payer.id)).consistent
    assert (await reconcile(db, payee.id)).consistent


async def test_transfer_to_self_rejected(db):
    user = await make_user(db, "self", gems=10)
    with pytest.raises(BadRequest):
        async with atomic(db):
            await transfer(db, user.id, user.id, "gems", 1)


async def test_replay_matches_balance_after_mixed_events(db):
    user = await make_user(db, "erin", points=700, gems=20)
    async with atomic(db):
        await debit(db, user.id, "points", 200, "spend")
        await credit(db, user.id, "gold", Decimal("1.10"), "earn")
        await apply_entry(db, user.id, "convert", {"points": -500, "keys": 1})
        await debit(db, user.id, "gems", Decimal("0.30"), "stake")

    result = await reconcile(db, user.id)
    assert result.consistent
    assert result.balance == {"points": 0, "keys": 1, "gems": 19.7, "gold": 1.1}


async def test_first_credit_racing_another_insert_retries_update(db, monkeypatch):
    user = User(email="late@example.com", name="late")
    db.add(user)
    await db.commit()
    user_id = user.id
    real_get_balance = ledger_service.get_balance
    raced = []

    async def get_balance_after_concurrent_insert(session, uid):
        if not raced:
            raced.append(uid)
            # 另一个首次入账恰好在 UPDATE 与 INSERT 之间建好了余额行
            await session.execute(insert(Balance).values(user_id=uid, points=0, keys=0, gems=0, gold=0))
            return None
        return await real_get_balance(session, uid)

    monkeypatch.setattr(ledger_service, "get_balance", get_balance_after_concurrent_insert)
    async with atomic(db):
        await credit(db, user_id, "points", 5, "earn", "late signup")
    monkeypatch.undo()

    assert raced == [user_id]
    balance = await get_balance(db, user_id)
    assert balance.points == 5
    assert await _entry_count(db, user_id) == 1
    assert (await reconcile(db, user_id)).consistent
