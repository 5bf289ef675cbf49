"""
数据模型包 (Data Models Package)

集中导出所有 SQLAlchemy ORM 模型：原始心跳日志和分钟/小时/天聚合桶。

Centrally exports all SQLAlchemy ORM models: the raw heartbeat log and the
minute/hour/day aggregate buckets.
"""
from pulseboard.models.heartbeat import Heartbeat
from pulseboard.models.uptime_stat import UptimeStat

__all__ = ["Heartbeat", "UptimeStat"]
