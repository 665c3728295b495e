# tests/conftest.py
from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import AsyncGenerator

# ============================================================
# ★ 在 import perishable 之前设置：get_settings() 需要 DATABASE_URL，
#   worker 在测试态下 send_task 同步执行 / 只记录
# ============================================================
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./.pytest-perishable.db")
os.environ.setdefault("CELERY_ALWAYS_EAGER", "1")

import httpx  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker  # noqa: E402

from perishable.core.config import AppSettings  # noqa: E402
from perishable.db.base import Base, init_models  # noqa: E402
from perishable.db.session import build_engine, build_session_maker  # noqa: E402
from perishable.engine import Engine, assemble_engine  # noqa: E402

from tests.factories import (  # noqa: E402
    FakeBuyerNotifier,
    FakeDeliveryScheduler,
    FakeEta,
    FakeFees,
    FakeNotifier,
    FakePaymentProvider,
    FakeRestock,
    FixedClock,
)

T0 = datetime(2025, 1, 6, 12, 0, 0, tzinfo=timezone.utc)


# =========================================
# 每用例独立 sqlite 文件库（NullPool，避免跨 loop）
# =========================================
@pytest.fixture
def db_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'perishable.db'}"


@pytest_asyncio.fixture(scope="function")
async def async_engine(db_url: str) -> AsyncGenerator[AsyncEngine, None]:
    engine = build_engine(db_url)
    init_models()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
def session_maker(async_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_maker(async_engine)


@pytest_asyncio.fixture
async def session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """只读校验用 Session（不参与被测代码的事务）"""
    async with session_maker() as sess:
        yield sess


# =========================================
# 外部协作方 fake + 固定时钟
# =========================================
@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(T0)


@pytest.fixture
def eta(clock: FixedClock) -> FakeEta:
    # 默认：下单后 2 天送达
    return FakeEta(clock() + timedelta(days=2))


@pytest.fixture
def payment() -> FakePaymentProvider:
    return FakePaymentProvider()


@pytest.fixture
def delivery() -> FakeDeliveryScheduler:
    return FakeDeliveryScheduler()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def buyer_notifier() -> FakeBuyerNotifier:
    return FakeBuyerNotifier()


@pytest.fixture
def fees() -> FakeFees:
    return FakeFees(Decimal("8.00"))


@pytest.fixture
def restock(clock: FixedClock) -> FakeRestock:
    return FakeRestock(clock() + timedelta(days=3))


@pytest.fixture
def settings(db_url: str) -> AppSettings:
    return AppSettings(
        DATABASE_URL=db_url,
        PAYMENT_WINDOW_MINUTES=30,
        CACHE_TTL_SECONDS=300,
        EXPIRY_ALERT_DAYS=2,
        SWEEP_BATCH_SIZE=100,
    )


@pytest.fixture
def engine(
    settings: AppSettings,
    session_maker,
    eta,
    payment,
    delivery,
    notifier,
    buyer_notifier,
    fees,
    restock,
    clock,
) -> Engine:
    return assemble_engine(
        settings,
        session_maker,
        eta=eta,
        payment=payment,
        delivery=delivery,
        notifier=notifier,
        buyer_notifier=buyer_notifier,
        fees=fees,
        restock=restock,
        clock=clock,
    )


@pytest.fixture
def ledger(engine: Engine):
    return engine.ledger


# =========================================
# FastAPI / httpx AsyncClient（不走 lifespan，直接注入 Engine）
# =========================================
@pytest_asyncio.fixture(scope="function")
async def client(engine: Engine) -> AsyncGenerator[httpx.AsyncClient, None]:
    from perishable.main import create_app

    app = create_app()
    app.state.engine = engine
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(
        transport=transport,
        base_url="http://testserver",
        timeout=httpx.Timeout(10.0, connect=5.0, read=10.0, write=5.0, pool=5.0),
    ) as c:
        yield c
