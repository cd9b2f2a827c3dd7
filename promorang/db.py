from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase

from promorang.core.settings import settings


class Base(DeclarativeBase):
    pass


engine = create_async_engine(
    settings.DATABASE_URL,
    echo=False,
    future=True,
)

AsyncSessionLocal = sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)


async def get_db() -> AsyncIterator[AsyncSession]:
    async with AsyncSessionLocal() as session:
        try:
            yield session
            # 如果业务逻辑没有抛出异常，执行 commit 持久化数据
            await session.commit()
        except Exception:
            # 如果发生错误，回滚事务
            await session.rollback()
            raise


@asynccontextmanager
async def atomic(db: AsyncSession) -> AsyncIterator[AsyncSession]:
    """事务边界：块内所有语句要么一起提交，要么一起回滚。"""
    try:
        yield db
        await db.commit()
    except BaseException:
        await db.rollback()
        raise


async def init_db(bind_engine=None, session_factory=None) -> None:
    """启动时自动建表，并写入默认配置/管理员。"""
    from promorang.models import all_models  # noqa: F401
    from sqlalchemy import text
    from promorang.services.bootstrap_defaults import ensure_default_admin, ensure_default_configs

    bind_engine = bind_engine or engine
    session_factory = session_factory or AsyncSessionLocal

    async with bind_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        # sqlite 性能小优化
        if bind_engine.url.get_backend_name() == "sqlite":
            await conn.execute(text("PRAGMA journal_mode=WAL;"))
            await conn.execute(text("PRAGMA synchronous=NORMAL;"))

    # 写入默认配置与管理员
    async with session_factory() as session:
        await ensure_default_configs(session)
        await ensure_default_admin(session)
        await session.commit()
