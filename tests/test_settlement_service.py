from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select, func

from promorang.core.errors import BadRequest, Conflict, InsufficientFunds, ResourceExhausted
from promorang.models.content import Content, ContentShare
from promorang.models.growth import Stake
from promorang.models.ledger import LedgerEntry
from promorang.services.content_service import create_content
from promorang.services.ledger_service import get_balance, reconcile
from promorang.services.settlement_service import (
    buy_shares,
    distribute_stake_rewards,
    request_withdrawal,
    review_withdrawal,
    stake,
    stake_reward,
)

from conftest import make_user


async def _content(db, creator, **kwargs):
    fields = {"title": "Launch video", "platform": "youtube", "total_shares": 100, "share_price": Decimal("1.50")}
    fields.update(kwargs)
    return await create_content(db, creator.id, **fields)


async def test_buy_shares_moves_gems_to_creator(db):
    creator = await make_user(db, "creator", gems=0)
    buyer = await make_user(db, "buyer", gems=100)
    content = await _content(db, creator)

    result = await buy_shares(db, buyer.id, content.id, 10)

    assert result == {"shares_purchased": 10, "total_cost": 15.0, "remaining_shares": 90}
    assert (await get_balance(db, buyer.id)).gems == Decimal("85.00")
    assert (await get_balance(db, creator.id)).gems == Decimal("15.00")
    holdings = (await db.execute(select(ContentShare).where(ContentShare.buyer_id == buyer.id))).scalars().all()
    assert [h.shares_count for h in holdings] == [10]
    assert (await reconcile(db, buyer.id)).consistent
    assert (await reconcile(db, creator.id)).consistent


async def test_buy_shares_insufficient_gems_changes_nothing(db):
    creator = await make_user(db, "creator", gems=0)
    buyer = await make_user(db, "buyer", gems=100)
    content_id = (await _content(db, creator)).id
    entries_before = (await db.execute(select(func.count(LedgerEntry.id)))).scalar_one()

    with pytest.raises(InsufficientFunds) as exc:
        await buy_shares(db, buyer.id, content_id, 100)
    assert exc.value.currency == "gems"

    content = (await db.execute(
        select(Content).where(Content.id == content_id).execution_options(populate_existing=True)
    )).scalar_one()
    assert content.shares_sold == 0
    assert (await db.execute(select(func.count(ContentShare.id)))).scalar_one() == 0
    assert (await db.execute(select(func.count(LedgerEntry.id)))).scalar_one() == entries_before
    assert (await get_balance(db, buyer.id)).gems == Decimal("100.00")
    assert (await get_balance(db, creator.id)).gems == Decimal("0.00")


async def test_buy_more_shares_than_available(db):
    creator = await make_user(db, "creator")
    buyer = await make_user(db, "buyer", gems=1000)
    content_id = (await _content(db, creator, total_shares=5)).id

    with pytest.raises(ResourceExhausted):
        await buy_shares(db, buyer.id, content_id, 6)
    await buy_shares(db, buyer.id, content_id, 5)
    with pytest.raises(ResourceExhausted):
        await buy_shares(db, buyer.id, content_id, 1)

    content = (await db.execute(
        select(Content).where(Content.id == content_id).execution_options(populate_existing=True)
    )).scalar_one()
    assert content.shares_sold == 5


async def test_cannot_buy_own_content(db):
    creator = await make_user(db, "creator", gems=100)
    content = await _content(db, creator)
    with pytest.raises(BadRequest):
        await buy_shares(db, creator.id, content.id, 1)


def test_stake_reward_rounds_down():
    assert stake_reward(Decimal("100"), Decimal("1.2")) == Decimal("20.00")
    assert stake_reward(Decimal("0.05"), Decimal("1.5")) == Decimal("0.02")


async def test_stake_and_distribute(db):
    user = await make_user(db, "staker", gems=150)
    started = datetime(2026, 1, 1, 12, 0, 0)

    result = await stake(db, user.id, 100, "LowRisk", now=started)
    assert result["multiplier"] == 1.2
    assert (await get_balance(db, user.id)).gems == Decimal("50.00")

    # 未到期不结算
    early = await distribute_stake_rewards(db, now=started + timedelta(days=3))
    assert early["settled"] == 0

    payout = await distribute_stake_rewards(db, now=started + timedelta(days=7))
    assert payout == {"settled": 1, "rewards_minted": 20.0}
    assert (await get_balance(db, user.id)).gems == Decimal("170.00")

    again = await distribute_stake_rewards(db, now=started + timedelta(days=8))
    assert again["settled"] == 0
    row = await db.get(Stake, result["stake_id"])
    await db.refresh(row)
    assert row.status == "completed"
    assert (await reconcile(db, user.id)).consistent


async def test_stake_unknown_channel(db):
    user = await make_user(db, "staker", gems=150)
    with pytest.raises(BadRequest):
        await stake(db, user.id, 10, "NoSuchChannel")
    assert (await get_balance(db, user.id)).gems == Decimal("150.00")


async def test_stake_more_than_balance(db):
    user = await make_user(db, "staker", gems=10)
    with pytest.raises(InsufficientFunds):
        await stake(db, user.id, 11, "LowRisk")
    assert (await db.execute(select(func.count(Stake.id)))).scalar_one() == 0


async def test_withdrawal_minimum(db):
    user = await make_user(db, "saver", gems=100)
    with pytest.raises(BadRequest):
        await request_withdrawal(db, user.id, 49)


async def test_rejected_withdrawal_is_refunded(db, admin):
    user = await make_user(db, "saver", gems=100)

    result = await request_withdrawal(db, user.id, 60)
    assert (await get_balance(db, user.id)).gems == Decimal("40.00")

    payment = await review_withdrawal(db, admin.id, result["payment_id"], "reject")
    assert payment.status == "rejected"
    assert (await get_balance(db, user.id)).gems == Decimal("100.00")

    with pytest.raises(Conflict):
        await review_withdrawal(db, admin.id, result["payment_id"], "approve")
    assert (await reconcile(db, user.id)).consistent
