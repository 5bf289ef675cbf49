"""
数据保留任务模块。

定期删除超过保留期限的原始心跳、分钟桶和小时桶，防止数据无限增长。
天桶永久保留。保留期限通过环境变量 HEARTBEAT_RETENTION_DAYS、
MINUTE_STAT_RETENTION_DAYS、HOUR_STAT_RETENTION_DAYS 配置。
"""
import asyncio
import logging
import time
from datetime import datetime, timezone, timedelta
from typing import Dict, Optional

from pulseboard.core.config import settings
from pulseboard.services.buckets import Resolution
from pulseboard.services.stores import BucketStore, RawEventLog

logger = logging.getLogger(__name__)


async def cleanup_expired_stats(bucket_store: BucketStore, event_log: RawEventLog,
                                now: Optional[int] = None) -> Dict[str, int]:
    """
    执行一次过期数据清理。

    Returns:
        Dict[str, int]: 各类数据删除行数
    """
    now_ts = int(time.time()) if now is None else now
    heartbeat_cutoff = datetime.fromtimestamp(now_ts, tz=timezone.utc) - timedelta(days=settings.heartbeat_retention_days)

    stats = {
        "heartbeats": await event_log.delete_before(heartbeat_cutoff),
        "minute": await bucket_store.delete_before(
            Resolution.MINUTE, now_ts - settings.minute_stat_retention_days * 86400),
        "hour": await bucket_store.delete_before(
            Resolution.HOUR, now_ts - settings.hour_stat_retention_days * 86400),
    }
    logger.info(f"Retention cleanup completed. Total records cleaned: {sum(stats.values())}, Details: {stats}")
    return stats


async def stat_retention_loop(bucket_store: BucketStore, event_log: RawEventLog,
                              interval: Optional[int] = None):
    """数据保留后台循环，默认每小时执行一次。"""
    if interval is None:
        interval = settings.stat_retention_interval
    logger.info(
        f"Starting retention loop: heartbeats {settings.heartbeat_retention_days}d, "
        f"minute stats {settings.minute_stat_retention_days}d, hour stats {settings.hour_stat_retention_days}d"
    )
    while True:
        try:
            await cleanup_expired_stats(bucket_store, event_log)
        except Exception as e:
            logger.exception(f"Retention cleanup error: {e}")
        await asyncio.sleep(interval)
