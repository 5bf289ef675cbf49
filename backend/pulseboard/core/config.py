"""
应用配置模块 (Application Configuration Module)

使用 Pydantic Settings 管理 PulseBoard 的所有配置项，支持从 .env 文件和环境变量读取。
提供数据库连接、滑动窗口容量、查询并发限制、数据保留周期等配置管理。

Uses Pydantic Settings to manage all configuration items for PulseBoard,
supporting reading from .env files and environment variables. Covers database
connections, sliding window capacities, query concurrency limits and retention periods.
"""
import logging

from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    应用全局配置类 (Application Global Configuration Class)

    字段名自动映射同名环境变量（不区分大小写），支持 .env 文件加载。

    Field names automatically map to same-named environment variables (case insensitive),
    supporting .env file loading.
    """

    # 数据库配置 (Database Configuration)
    postgres_host: str = "localhost"  # PostgreSQL 主机地址 (PostgreSQL Host)
    postgres_port: int = 5432  # PostgreSQL 端口号 (PostgreSQL Port)
    postgres_db: str = "pulseboard"  # 数据库名称 (Database Name)
    postgres_user: str = "pulseboard"  # 数据库用户名 (Database Username)
    postgres_password: str = "pulseboard_dev_password"  # 数据库密码 (Database Password)
    # 完整连接串，设置后忽略上面的 PostgreSQL 字段 (Full URL, overrides the fields above)
    database_url_override: str = ""
    db_echo: bool = False  # 是否输出 SQL 日志 (Echo SQL statements)

    # 滑动窗口容量 (Sliding Window Capacities)
    minute_window_size: int = 1440  # 24 小时的分钟桶 (24h of minute buckets)
    hour_window_size: int = 720  # 30 天的小时桶 (30d of hour buckets)
    day_window_size: int = 365  # 1 年的天桶 (1y of day buckets)

    # 查询配置 (Query Configuration)
    query_concurrency: int = 8  # 同时执行的区间查询上限 (Max concurrent range queries)
    heartbeat_list_limit: int = 100  # 心跳模式返回的最近心跳数 (Recent heartbeats in heartbeat mode)

    # 后台任务配置 (Background Task Configuration)
    bucket_flush_interval: int = 60  # 关闭过期桶的间隔秒数 (Seconds between bucket closure sweeps)
    stat_retention_interval: int = 3600  # 数据清理间隔秒数 (Seconds between retention sweeps)

    # 数据保留配置 (Retention Configuration)
    heartbeat_retention_days: int = 180  # 原始心跳保留天数 (Raw heartbeat retention)
    minute_stat_retention_days: int = 2  # 分钟桶保留天数 (Minute bucket retention)
    hour_stat_retention_days: int = 90  # 小时桶保留天数，需覆盖混合模式的 60 天 (Hour bucket retention)

    environment: str = "development"  # 运行环境：development/production (Runtime Environment)

    @property
    def database_url(self) -> str:
        """
        构造异步数据库连接 URL (Build Async Database Connection URL)

        未设置 DATABASE_URL_OVERRIDE 时，根据 PostgreSQL 参数生成 asyncpg 连接字符串。

        Falls back to an asyncpg connection string built from the PostgreSQL fields
        when DATABASE_URL_OVERRIDE is not set.
        """
        if self.database_url_override:
            return self.database_url_override
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}  # Pydantic 配置：自动加载 .env 文件 (Pydantic Config: Auto-load .env file)


# 全局配置实例 (Global Configuration Instance)
settings = Settings()

if settings.minute_window_size < 1440:
    logger.warning(
        "MINUTE_WINDOW_SIZE=%s 小于 24 小时，24h 可用率将回退到数据库查询 "
        "| MINUTE_WINDOW_SIZE below 24h, 24h uptime will fall back to the bucket store",
        settings.minute_window_size,
    )
