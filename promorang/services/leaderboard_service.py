from __future__ import annotations

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from promorang.models.ledger import Balance
from promorang.models.user import User

# 综合分权重
SCORE_WEIGHTS = {"points": 0.25, "gems": 0.4, "keys": 0.15, "gold": 0.2}


def _composite_score():
    return sum(
        func.coalesce(getattr(Balance, currency), 0) * weight
        for currency, weight in SCORE_WEIGHTS.items()
    )


async def get_leaderboard(db: AsyncSession, limit: int = 50, offset: int = 0) -> list[dict]:
    score = _composite_score().label("composite_score")
    rows = (await db.execute(
        select(
            User.id,
            User.name,
            User.picture,
            User.tier,
            User.level,
            func.coalesce(Balance.points, 0).label("points"),
            func.coalesce(Balance.keys, 0).label("keys"),
            func.coalesce(Balance.gems, 0).label("gems"),
            func.coalesce(Balance.gold, 0).label("gold"),
            score,
        )
        .outerjoin(Balance, Balance.user_id == User.id)
        .where(User.is_banned.is_(False))
        .order_by(score.desc(), User.created_at.asc())
        .limit(limit)
        .offset(offset)
    )).all()
    return [
        {
            "rank": offset + index + 1,
            "id": row.id,
            "name": row.name,
            "picture": row.picture,
            "points": int(row.points),
            "keys": int(row.keys),
            "gems": float(row.gems),
            "gold": float(row.gold),
            "composite_score": round(float(row.composite_score), 2),
            "tier": row.tier,
            "level": row.level,
        }
        for index, row in enumerate(rows)
    ]


async def get_user_rank(db: AsyncSession, user_id: str | None) -> dict:
    if not user_id:
        return {"rank": None, "total_users": 0}

    user_score = (await db.execute(
        select(_composite_score())
        .select_from(User)
        .outerjoin(Balance, Balance.user_id == User.id)
        .where(User.id == user_id)
    )).scalar_one_or_none()
    if user_score is None:
        return {"rank": None, "total_users": 0}

    higher = (await db.execute(
        select(func.count(User.id))
        .select_from(User)
        .outerjoin(Balance, Balance.user_id == User.id)
        .where(User.is_banned.is_(False), _composite_score() > user_score)
    )).scalar_one()
    total = (await db.execute(select(func.count(User.id)).where(User.is_banned.is_(False)))).scalar_one()
    return {
        "rank": higher + 1,
        "total_users": total,
        "score": round(float(user_score), 2),
    }
