# perishable/db/session.py
# 异步 Engine / Session 工厂 + FastAPI 依赖
from __future__ import annotations

import re
from collections.abc import AsyncGenerator
from functools import lru_cache

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from perishable.core.config import get_settings


def normalize_async_dsn(url: str) -> str:
    """
    DSN 归一：postgres(+*) → postgresql+psycopg；sqlite:/// → sqlite+aiosqlite:///
    """
    url = url.strip()
    if (url.startswith('"') and url.endswith('"')) or (url.startswith("'") and url.endswith("'")):
        url = url[1:-1].strip()
    if url.startswith("sqlite:///"):
        return "sqlite+aiosqlite://" + url[len("sqlite://") :]
    if url.startswith("postgresql+asyncpg://") or url.startswith("postgres+asyncpg://"):
        return re.sub(r"^postgres(?:ql)?\+asyncpg://", "postgresql+psycopg://", url)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+psycopg://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+psycopg://", 1)
    return url


def build_engine(url: str, *, echo: bool = False) -> AsyncEngine:
    dsn = normalize_async_dsn(url)
    if dsn.startswith("sqlite"):
        # sqlite 单文件：每次借出新连接，避免跨 loop 复用
        return create_async_engine(dsn, echo=echo, poolclass=NullPool)
    return create_async_engine(dsn, echo=echo, pool_pre_ping=True)


def build_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@lru_cache
def get_engine() -> AsyncEngine:
    settings = get_settings()
    return build_engine(settings.DATABASE_URL, echo=settings.SQL_ECHO)


@lru_cache
def get_session_maker() -> async_sessionmaker[AsyncSession]:
    return build_session_maker(get_engine())


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with get_session_maker()() as session:
        yield session


async def close_engine() -> None:
    await get_engine().dispose()
