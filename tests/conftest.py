from __future__ import annotations

from types import SimpleNamespace

import httpx
import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from promorang.api import create_app
from promorang.core.settings import settings
from promorang.db import atomic, get_db, init_db
from promorang.models.admin import Admin
from promorang.services.ledger_service import apply_entry, ensure_balance, to_amount
from promorang.services.security import issue_admin_token, issue_session_token
from promorang.services.user_service import ensure_user


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    yield engine
    await engine.dispose()


@pytest.fixture
async def session_factory(engine):
    """每个测试一个独立的 sqlite 文件，已建表并写入默认配置。"""
    factory = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await init_db(engine, factory)
    return factory


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def client(session_factory):
    app = create_app(init_database=False)

    async def _get_test_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = _get_test_db
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
async def admin(db):
    row = (await db.execute(select(Admin).where(Admin.username == settings.DEFAULT_ADMIN_USERNAME))).scalar_one()
    return SimpleNamespace(id=row.id, username=row.username)


async def make_user(db: AsyncSession, sub: str, tier: str = "free", **balances):
    """Create a user and set its balance to exactly ``balances`` through the ledger.

    Returns a plain snapshot, not the ORM row: a failed ``atomic`` block rolls
    the session back and expires loaded instances, and touching an expired
    attribute outside a greenlet raises ``MissingGreenlet``.
    """
    user, _ = await ensure_user(db, google_sub=sub, email=f"{sub}@example.com", name=sub)
    if tier != "free":
        user.tier = tier
        await db.commit()
    current = await ensure_balance(db, user.id)
    deltas = {}
    for currency, target in balances.items():
        diff = to_amount(currency, target) - getattr(current, currency)
        if diff:
            deltas[currency] = diff
    if deltas:
        async with atomic(db):
            await apply_entry(db, user.id, "admin_refill", deltas, reference="test setup")
    return SimpleNamespace(id=user.id, google_sub=user.google_sub, email=user.email, name=user.name, tier=user.tier,
                           level=user.level)


def user_headers(user_id: str) -> dict:
    return {"Authorization": f"Bearer {issue_session_token(user_id)}"}


def admin_headers(admin_id: int) -> dict:
    return {"Cookie": f"{settings.ADMIN_COOKIE_NAME}={issue_admin_token(admin_id)}"}
