"""
自适应区间查询规划器 (Adaptive Range Query Planner)

根据请求的时间跨度选择分钟 / 小时 / 天粒度（或混合模式），从 "现在" 向回按 UTC 边界
对齐地构建时间线，缺失的桶以 UNKNOWN 占位，使响应大小有界且可预测。

Chooses minute / hour / day granularity (or a hybrid) for a requested span, walks
backward from "now" aligned to UTC bucket boundaries and fills every missing bucket
with an UNKNOWN placeholder, so the payload size is bounded and predictable.

分档策略 (Tiering policy):
- range_days <= 0   : 心跳模式，最近 100 条原始心跳
- range_days <= 1   : 分钟粒度，max(1, floor(range_days * 1440)) 个点，上限 1440
- range_days <= 60  : 混合模式，较早部分按小时聚合 + 最近 24 小时原始心跳
- range_days >  60  : 天粒度，min(ceil(range_days), 365) 个点
"""
import asyncio
import logging
import math
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from pulseboard.services.buckets import (
    Bucket, HeartbeatStatus, Resolution, derive_status, from_timestamp, isoformat, system_clock,
)
from pulseboard.services.reconciliation import TieredResolver
from pulseboard.services.stores import BucketStore, RawEventLog

logger = logging.getLogger(__name__)

MINUTES_PER_DAY = 1440
MAX_MINUTE_POINTS = 1440
HYBRID_MAX_DAYS = 60
MAX_OLDER_HOURS = 1416  # 59 天，最近 24 小时由原始心跳覆盖
MAX_DAY_POINTS = 365
RECENT_DETAIL_SECONDS = 24 * 3600
UNKNOWN_MESSAGE = "no data available"

AGGREGATION_PERIODS = {
    "heartbeat": "individual heartbeats",
    "minute": "1 minute per bar",
    "hybrid": "hourly + recent detailed",
    "day": "1 day per bar",
}


@dataclass(frozen=True)
class QueryPlan:
    """一次区间查询的执行计划。hybrid 模式下 count 为较早部分的小时点数。"""
    mode: str
    resolution: Optional[Resolution]
    count: int

    @property
    def aggregation(self) -> Dict[str, str]:
        return {"type": self.mode, "period": AGGREGATION_PERIODS[self.mode]}


@dataclass
class TimelineResult:
    """时间线查询结果：按时间升序的点、整体可用率和聚合元数据。"""
    points: List[dict]
    uptime: float
    aggregation: Dict[str, str] = field(default_factory=dict)


def plan_range(range_days: float, heartbeat_limit: int = 100) -> QueryPlan:
    """根据请求跨度（天，可为小数）选择粒度和点数。"""
    if range_days is None or range_days <= 0:
        return QueryPlan(mode="heartbeat", resolution=None, count=heartbeat_limit)
    if range_days <= 1:
        count = min(max(1, math.floor(range_days * MINUTES_PER_DAY)), MAX_MINUTE_POINTS)
        return QueryPlan(mode="minute", resolution=Resolution.MINUTE, count=count)
    if range_days <= HYBRID_MAX_DAYS:
        older_hours = min(math.ceil((range_days - 1) * 24), MAX_OLDER_HOURS)
        return QueryPlan(mode="hybrid", resolution=Resolution.HOUR, count=older_hours)
    return QueryPlan(mode="day", resolution=Resolution.DAY, count=min(math.ceil(range_days), MAX_DAY_POINTS))


def timeline_uptime(points: List[dict]) -> float:
    """UP 点数 / 输出点总数（UNKNOWN 也计入分母），空时间线为 0。"""
    if not points:
        return 0.0
    up = sum(1 for p in points if p["status"] == HeartbeatStatus.UP)
    return up / len(points)


def unknown_point(resolution: Resolution, start: int) -> dict:
    point = {
        "status": int(HeartbeatStatus.UNKNOWN),
        "time": isoformat(start),
        "ping": None,
        "msg": UNKNOWN_MESSAGE,
    }
    if resolution is Resolution.DAY:
        point["date"] = from_timestamp(start).strftime("%Y-%m-%d")
    return point


def aggregate_point(resolution: Resolution, bucket: Bucket, status: HeartbeatStatus) -> dict:
    point = {
        "status": int(status),
        "time": isoformat(bucket.start),
        "ping": round(bucket.avg_ping) if bucket.avg_ping is not None else None,
        "msg": None,
        "uptime": bucket.uptime,
    }
    if resolution is Resolution.DAY:
        point["date"] = from_timestamp(bucket.start).strftime("%Y-%m-%d")
    return point


class AdaptiveQueryPlanner:
    """
    时间线构建器。最新（未关闭）的桶通过分层对账解析，较早的桶一次区间扫描从聚合存储读取。
    并发的区间查询由信号量限制，避免压垮聚合存储。
    """

    def __init__(self, bucket_store: BucketStore, event_log: RawEventLog,
                 resolver: Optional[TieredResolver] = None,
                 clock: Optional[Callable[[], int]] = None,
                 concurrency: int = 8, heartbeat_limit: int = 100):
        self.bucket_store = bucket_store
        self.event_log = event_log
        self.resolver = resolver or TieredResolver.default(bucket_store, event_log)
        self.clock = clock or system_clock
        self.heartbeat_limit = heartbeat_limit
        self._semaphore = asyncio.Semaphore(concurrency)

    async def build_timeline(self, monitor_id: int, resolution: Resolution, count: int,
                             now_ts: Optional[int] = None) -> List[dict]:
        """
        以 now 所在桶结尾、长度恰为 count 的时间线，按时间升序。

        调用方需先关闭已结束的桶（UptimeCalculator.flush），否则刚结束的桶会显示为 UNKNOWN。
        """
        if count < 1:
            return []
        async with self._semaphore:
            return await self._timeline(monitor_id, resolution, count,
                                        self.clock() if now_ts is None else now_ts)

    async def _timeline(self, monitor_id: int, resolution: Resolution, count: int, now_ts: int) -> List[dict]:
        step = resolution.seconds
        newest = resolution.floor(now_ts)
        oldest = newest - (count - 1) * step

        rows = {}
        if count > 1:
            rows = {b.start: b for b in await self.bucket_store.range(monitor_id, resolution, oldest, newest)}

        points: List[dict] = []
        for i in range(count):
            start = oldest + i * step
            if start == newest:
                resolved = await self.resolver.resolve(monitor_id, resolution, start)
                if resolved is None:
                    points.append(unknown_point(resolution, start))
                else:
                    points.append(aggregate_point(resolution, resolved.bucket, resolved.status))
                continue
            bucket = rows.get(start)
            if bucket is None:
                points.append(unknown_point(resolution, start))
            else:
                points.append(aggregate_point(resolution, bucket, derive_status(bucket)))
        return points

    async def _hybrid(self, monitor_id: int, older_hours: int, now_ts: int) -> List[dict]:
        """较早部分按小时聚合（均已关闭），最近 24 小时逐条原样输出心跳，旧在前新在后。"""
        older: List[dict] = []
        if older_hours > 0:
            last_hour = Resolution.HOUR.floor(now_ts - RECENT_DETAIL_SECONDS)
            first_hour = last_hour - (older_hours - 1) * Resolution.HOUR.seconds
            rows = {b.start: b for b in await self.bucket_store.range(
                monitor_id, Resolution.HOUR, first_hour, last_hour + Resolution.HOUR.seconds)}
            for i in range(older_hours):
                start = first_hour + i * Resolution.HOUR.seconds
                bucket = rows.get(start)
                if bucket is None:
                    older.append(unknown_point(Resolution.HOUR, start))
                else:
                    older.append(aggregate_point(Resolution.HOUR, bucket, derive_status(bucket)))

        recent = await self.event_log.range(
            monitor_id,
            from_timestamp(now_ts - RECENT_DETAIL_SECONDS),
            from_timestamp(now_ts + 1),
            include_late=True,
        )
        return older + [hb.to_public_json() for hb in recent]

    async def reconcile(self, calculator, range_days: float) -> TimelineResult:
        """
        为一个监控项生成自适应时间线和整体可用率。

        Args:
            calculator: 该监控项的 UptimeCalculator（用于关闭过期桶和 24h 可用率）
            range_days: 请求跨度（天），<= 0 表示心跳模式
        """
        plan = plan_range(range_days, self.heartbeat_limit)
        monitor_id = calculator.monitor_id
        async with self._semaphore:
            now_ts = await calculator.flush()
            if plan.mode == "heartbeat":
                beats = await self.event_log.recent(monitor_id, plan.count)
                points = [hb.to_public_json() for hb in beats]
                uptime = await calculator.fixed_window_uptime("24h")
                return TimelineResult(points=points, uptime=uptime, aggregation=plan.aggregation)
            if plan.mode == "hybrid":
                points = await self._hybrid(monitor_id, plan.count, now_ts)
            else:
                points = await self._timeline(monitor_id, plan.resolution, plan.count, now_ts)

        logger.debug(f"Monitor {monitor_id}: {plan.mode} timeline with {len(points)} points for {range_days} days")
        return TimelineResult(points=points, uptime=timeline_uptime(points), aggregation=plan.aggregation)
