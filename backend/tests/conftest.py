"""
PulseBoard 测试基础配置

提供隔离的 SQLite 异步数据库、固定时钟、存储/规划器/注册表以及 FastAPI 测试客户端等通用 fixture。
所有测试不依赖外部 PostgreSQL。
"""
import os
from datetime import datetime, timezone
from typing import AsyncGenerator, Optional

# 必须在导入 pulseboard 之前设置环境变量，避免真实连接
os.environ["DATABASE_URL_OVERRIDE"] = "sqlite+aiosqlite:///:memory:"
os.environ["ENVIRONMENT"] = "test"

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from pulseboard.core.database import Base
from pulseboard.core.deps import get_event_log, get_registry
import pulseboard.models  # noqa: F401
from pulseboard.services.buckets import HeartbeatStatus, from_timestamp
from pulseboard.services.calculator import CalculatorRegistry
from pulseboard.services.query_planner import AdaptiveQueryPlanner
from pulseboard.services.stores import BucketStore, HeartbeatRecord, RawEventLog

# 2026-03-10 10:00:00 UTC，整点
BASE_TS = int(datetime(2026, 3, 10, 10, 0, 0, tzinfo=timezone.utc).timestamp())


class FixedClock:
    """可手动设置的时钟，返回 Unix 秒。"""

    def __init__(self, now: int = BASE_TS):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def set(self, now: int) -> None:
        self.now = now


def make_heartbeat(monitor_id: int, ts: int, status: int = HeartbeatStatus.UP,
                   ping: Optional[float] = 10.0, msg: Optional[str] = None) -> HeartbeatRecord:
    return HeartbeatRecord(monitor_id=monitor_id, time=from_timestamp(ts), status=status, ping=ping, msg=msg)


class BrokenSession:
    """进入即失败的会话，用来模拟存储不可用。"""

    async def __aenter__(self):
        from sqlalchemy.exc import OperationalError
        raise OperationalError("SELECT 1", {}, Exception("connection refused"))

    async def __aexit__(self, *exc):
        return False


def broken_session_factory():
    return BrokenSession()


# ── Fixtures ──────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def engine(tmp_path):
    """每个测试一个独立的 SQLite 文件数据库。"""
    test_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'pulseboard.db'}", echo=False)
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def bucket_store(session_factory):
    return BucketStore(session_factory)


@pytest.fixture
def event_log(session_factory):
    return RawEventLog(session_factory)


@pytest.fixture
def planner(bucket_store, event_log, clock):
    return AdaptiveQueryPlanner(bucket_store, event_log, clock=clock)


@pytest.fixture
def registry(bucket_store, event_log, planner, clock):
    return CalculatorRegistry(bucket_store, event_log, planner=planner, clock=clock)


@pytest_asyncio.fixture
async def client(registry, event_log) -> AsyncGenerator[AsyncClient, None]:
    """提供配置好依赖覆盖的异步 HTTP 测试客户端。"""
    from pulseboard.main import app

    app.dependency_overrides[get_registry] = lambda: registry
    app.dependency_overrides[get_event_log] = lambda: event_log

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
