"""
过期桶关闭任务模块。

桶的关闭本是惰性的（下一次写入或读取时触发）。该任务定期扫描所有计算器，
使长时间没有新心跳的监控项也能按时产生定稿的分钟/小时/天聚合行。
"""
import asyncio
import logging

from pulseboard.core.config import settings
from pulseboard.services.calculator import CalculatorRegistry

logger = logging.getLogger(__name__)


async def bucket_closer_loop(registry: CalculatorRegistry, interval: int | None = None):
    """过期桶关闭后台循环。"""
    if interval is None:
        interval = settings.bucket_flush_interval
    logger.info(f"Bucket closer started, interval={interval}s")
    while True:
        try:
            count = await registry.flush_all()
            logger.debug(f"Bucket closer: flushed {count} calculators")
        except Exception:
            logger.exception("Error in bucket closer")
        await asyncio.sleep(interval)
