from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import select, func, case
from sqlalchemy.ext.asyncio import AsyncSession

from promorang.models.drops import DropApplication
from promorang.models.growth import Stake, FundingProject
from promorang.models.ledger import LedgerEntry
from promorang.models.user import User
from promorang.services.ledger_service import get_balance


def _count_since(column, since: datetime):
    return func.coalesce(func.sum(case((column >= since, 1), else_=0)), 0)


async def user_analytics(db: AsyncSession, user: User, now: datetime | None = None) -> dict:
    now = now or datetime.utcnow()
    day, week, month = now - timedelta(days=1), now - timedelta(days=7), now - timedelta(days=30)

    ledger = (await db.execute(
        select(
            _count_since(LedgerEntry.created_at, day),
            _count_since(LedgerEntry.created_at, week),
            _count_since(LedgerEntry.created_at, month),
            func.coalesce(func.sum(case(
                ((LedgerEntry.event_type == "earn") & (LedgerEntry.created_at >= day), LedgerEntry.delta_points),
                else_=0,
            )), 0),
            func.coalesce(func.sum(case(
                ((LedgerEntry.event_type == "spend") & (LedgerEntry.created_at >= day), -LedgerEntry.delta_gems),
                else_=0,
            )), 0),
        ).where(LedgerEntry.user_id == user.id)
    )).one()

    drops = (await db.execute(
        select(
            _count_since(DropApplication.submitted_at, day),
            func.coalesce(func.sum(case(
                ((DropApplication.status == "approved") & (DropApplication.submitted_at >= week), 1),
                else_=0,
            )), 0),
        ).where(DropApplication.user_id == user.id)
    )).one()

    stakes = (await db.execute(
        select(
            _count_since(Stake.started_at, day),
            func.coalesce(func.sum(Stake.amount), 0),
        ).where(Stake.user_id == user.id)
    )).one()

    projects = (await db.execute(
        select(func.count(FundingProject.id), func.coalesce(func.sum(FundingProject.funded_amount), 0))
        .where(FundingProject.creator_id == user.id)
    )).one()

    balance = await get_balance(db, user.id)
    return {
        "user_id": user.id,
        "balances": balance.as_dict() if balance else {"points": 0, "keys": 0, "gems": 0, "gold": 0},
        "tier": user.tier or "free",
        "level": user.level or 1,
        "activity": {
            "transactions_last_1d": int(ledger[0]),
            "transactions_last_7d": int(ledger[1]),
            "transactions_last_30d": int(ledger[2]),
            "points_earned_last_1d": int(ledger[3]),
            "gems_spent_last_1d": float(ledger[4]),
            "drops_applied_last_1d": int(drops[0]),
            "drops_completed_last_7d": int(drops[1]),
            "stakes_last_1d": int(stakes[0]),
            "total_staked": float(stakes[1]),
            "funding_projects_created": int(projects[0]),
            "total_funded": float(projects[1]),
        },
    }


async def _active_users(db: AsyncSession, since: datetime) -> int:
    return (await db.execute(
        select(func.count(func.distinct(LedgerEntry.user_id))).where(LedgerEntry.created_at >= since)
    )).scalar_one()


async def global_analytics(db: AsyncSession, now: datetime | None = None) -> dict:
    now = now or datetime.utcnow()
    total_users = (await db.execute(select(func.count(User.id)))).scalar_one()
    total_entries = (await db.execute(select(func.count(LedgerEntry.id)))).scalar_one()
    gems_purchased = (await db.execute(
        select(func.coalesce(func.sum(LedgerEntry.delta_gems), 0)).where(LedgerEntry.event_type == "purchase")
    )).scalar_one()
    gems_spent = (await db.execute(
        select(func.coalesce(func.sum(-LedgerEntry.delta_gems), 0)).where(LedgerEntry.event_type == "spend")
    )).scalar_one()
    total_stakes = (await db.execute(select(func.count(Stake.id)))).scalar_one()
    total_projects = (await db.execute(select(func.count(FundingProject.id)))).scalar_one()
    applications, approved = (await db.execute(
        select(
            func.count(DropApplication.id),
            func.coalesce(func.sum(case((DropApplication.status == "approved", 1), else_=0)), 0),
        )
    )).one()

    return {
        "date": now.date().isoformat(),
        "total_users": total_users,
        "dau": await _active_users(db, now - timedelta(days=1)),
        "wau": await _active_users(db, now - timedelta(days=7)),
        "mau": await _active_users(db, now - timedelta(days=30)),
        "total_transactions": total_entries,
        "total_gems_purchased": float(gems_purchased),
        "total_gems_spent": float(gems_spent),
        "total_stakes": total_stakes,
        "total_funding_projects": total_projects,
        "task_completion_rate": round(int(approved) / applications, 4) if applications else 0.0,
    }
