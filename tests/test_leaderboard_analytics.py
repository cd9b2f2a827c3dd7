from promorang.services.analytics_service import global_analytics, user_analytics
from promorang.services.leaderboard_service import get_leaderboard, get_user_rank

from conftest import make_user


async def test_leaderboard_orders_by_composite_score(db):
    alice = await make_user(db, "alice", points=1000)
    bob = await make_user(db, "bob", points=0, gems=1000)
    carol = await make_user(db, "carol", points=0)

    board = await get_leaderboard(db)

    assert [row["id"] for row in board] == [bob.id, alice.id, carol.id]
    assert [row["rank"] for row in board] == [1, 2, 3]
    assert board[0]["composite_score"] == 400.0
    assert board[1]["composite_score"] == 250.0

    second_page = await get_leaderboard(db, limit=1, offset=1)
    assert second_page[0]["rank"] == 2


async def test_user_rank(db):
    alice = await make_user(db, "alice", points=1000)
    await make_user(db, "bob", points=0, gems=1000)

    assert await get_user_rank(db, alice.id) == {"rank": 2, "total_users": 2, "score": 250.0}
    assert await get_user_rank(db, None) == {"rank": None, "total_users": 0}


async def test_user_analytics_counts_recent_activity(db):
    user = await make_user(db, "alice", points=400)

    stats = await user_analytics(db, user)

    assert stats["balances"]["points"] == 400
    assert stats["activity"]["transactions_last_1d"] == 2
    assert stats["activity"]["points_earned_last_1d"] == 100
    assert stats["activity"]["drops_applied_last_1d"] == 0


async def test_global_analytics(db):
    await make_user(db, "alice", points=400)
    await make_user(db, "bob")

    stats = await global_analytics(db)

    assert stats["total_users"] == 2
    assert stats["dau"] == 2
    assert stats["total_transactions"] == 3
    assert stats["task_completion_rate"] == 0.0
