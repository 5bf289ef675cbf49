"""
PulseBoard 后端应用入口模块 (PulseBoard Backend Application Entry Module)

自托管可用率监控服务的状态页后端，负责 FastAPI 应用的完整生命周期管理。
包含数据库初始化、计算器注册表构建、路由注册和后台任务启动。

Status-page backend of a self-hosted uptime monitoring service, responsible for the
FastAPI application lifecycle: database initialization, calculator registry
construction, route registration and background task startup.

主要功能 (Main Features):
- 数据库表自动创建 (Automatic database table creation)
- 进程级计算器注册表，挂载在 app.state 上 (Process-wide calculator registry on app.state)
- 后台任务：过期桶关闭、数据保留清理 (Background tasks: bucket closure, retention cleanup)
- 健康检查 (Health checks)
"""
import asyncio
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from pulseboard.core.config import settings as app_settings
from pulseboard.core.database import Base, async_session, engine
from pulseboard.core.exceptions import register_exception_handlers
# 导入所有模型以确保 SQLAlchemy 表注册 (Import all models to ensure SQLAlchemy table registration)
from pulseboard.models import Heartbeat, UptimeStat  # noqa: F401
from pulseboard.routers import status_page
from pulseboard.services.buckets import Resolution
from pulseboard.services.calculator import CalculatorRegistry
from pulseboard.services.query_planner import AdaptiveQueryPlanner
from pulseboard.services.stores import BucketStore, RawEventLog
from pulseboard.tasks.bucket_closer import bucket_closer_loop
from pulseboard.tasks.stat_retention import stat_retention_loop

logger = logging.getLogger(__name__)


def build_registry(session_factory=async_session) -> CalculatorRegistry:
    """根据配置构建存储、查询规划器和计算器注册表 (Build stores, planner and registry)"""
    bucket_store = BucketStore(session_factory)
    event_log = RawEventLog(session_factory)
    planner = AdaptiveQueryPlanner(
        bucket_store, event_log,
        concurrency=app_settings.query_concurrency,
        heartbeat_limit=app_settings.heartbeat_list_limit,
    )
    return CalculatorRegistry(
        bucket_store, event_log, planner=planner,
        window_sizes={
            Resolution.MINUTE: app_settings.minute_window_size,
            Resolution.HOUR: app_settings.hour_window_size,
            Resolution.DAY: app_settings.day_window_size,
        },
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    应用生命周期管理器 (Application Lifecycle Manager)

    启动时创建表结构、构建注册表并启动后台任务；关闭时取消任务并释放连接池。

    Creates tables, builds the registry and starts background tasks at startup;
    cancels the tasks and disposes the connection pool at shutdown.
    """
    # 自动创建数据库表结构 (Automatically create database table structure)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    registry = build_registry()
    app.state.registry = registry
    app.state.event_log = registry.event_log
    logger.info("PulseBoard started")

    # 过期桶关闭任务 (Bucket closure task)
    closer_task = asyncio.create_task(bucket_closer_loop(registry))

    # 数据保留清理任务 (Retention cleanup task)
    retention_task = asyncio.create_task(stat_retention_loop(registry.bucket_store, registry.event_log))

    yield

    # 关闭阶段：取消后台任务并释放资源 (Shutdown: cancel tasks and release resources)
    closer_task.cancel()
    retention_task.cancel()
    await registry.flush_all()
    await engine.dispose()


# 创建 FastAPI 应用实例 (Create FastAPI application instance)
app = FastAPI(
    title="PulseBoard",
    description="Uptime aggregation and status page backend | 可用率聚合与状态页后端",
    version="0.1.0",
    lifespan=lifespan,
)

# 注册全局异常处理器 (Register global exception handlers)
register_exception_handlers(app)

# 状态页数据允许跨域读取，生产环境限制为前端域名 (Status page data is readable cross-origin)
is_production = app_settings.environment.lower() == "production"
allowed_origins = ["*"] if not is_production else [os.getenv("FRONTEND_URL", "http://localhost:3001")]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

app.include_router(status_page.router)  # 状态页与可用率 (Status page and uptime)


@app.get("/health")
@app.get("/api/v1/health")
async def health():
    """
    健康检查接口 (Health Check Endpoint)

    Returns:
        dict: 包含各组件状态和时间戳的健康检查结果 (Health check results with component status and timestamp)
    """
    checks = {"api": "ok"}

    # 数据库连通性检查 (Database connectivity check)
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except Exception:
        logger.exception("Database health check failed")
        checks["database"] = "error"

    status = "ok" if all(v == "ok" for v in checks.values()) else "degraded"

    return {
        "status": status,
        "checks": checks,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


def run():
    """命令行入口：使用 uvicorn 启动服务 (Console entry point: serve with uvicorn)"""
    import uvicorn
    host = os.environ.get("PULSEBOARD_HOST", "0.0.0.0")
    port = int(os.environ.get("PULSEBOARD_PORT", "8001"))
    uvicorn.run("pulseboard.main:app", host=host, port=port, log_level="info")


if __name__ == "__main__":
    run()
