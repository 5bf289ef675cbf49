"""
数据库连接模块 (Database Connection Module)

基于 SQLAlchemy 2.0 异步模式创建数据库引擎和会话管理，为心跳日志和聚合桶提供持久化支持。
包含异步引擎创建、会话工厂配置和 ORM 基类定义。存储层每次调用打开一个短会话。

Creates database engine and session management based on SQLAlchemy 2.0 async mode,
providing persistence for the raw heartbeat log and aggregate buckets. The stores open
one short-lived session per call.
"""
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from pulseboard.core.config import settings

# 创建异步数据库引擎 (Create Async Database Engine)
engine = create_async_engine(
    settings.database_url,
    echo=settings.db_echo,
)

# 创建异步会话工厂 (Create Async Session Factory)
# 配置会话不在提交后过期，保持对象状态以便后续访问
async_session = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False  # 提交后不过期对象，便于访问已保存的数据 (Don't expire objects after commit)
)


class Base(DeclarativeBase):
    """
    ORM 模型基类 (ORM Model Base Class)

    SQLAlchemy 2.0 的声明式基类，心跳表和聚合桶表都继承此类。

    SQLAlchemy 2.0 declarative base class that the heartbeat and bucket tables inherit from.
    """
    pass

