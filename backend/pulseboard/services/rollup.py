"""
分辨率汇总引擎 (Resolution Roll-up Engine)

每个监控项一个实例。每次写入心跳时更新当前分钟桶；时间跨过桶边界时（在下一次写入
或读取时惰性检测），把已结束的桶定稿、持久化，并按代数和折叠进上一级桶：
分钟 → 小时 → 天。

One instance per monitor. Each ingested heartbeat updates the open minute bucket;
once time crosses a bucket boundary (detected lazily on the next ingest or read)
the elapsed bucket is finalized, persisted exactly once, and folded into its parent
by direct summation: minute → hour → day.

不变量 (Invariants):
- 父桶只由已关闭的子桶求和得到，不会从原始心跳重新计算；
- 每个已关闭的桶只持久化一次，重复关闭为空操作；
- 已关闭的桶不可变，迟到心跳只写入原始事件日志并标记 late。
"""
import logging
import math
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, List, Optional

from pulseboard.core.exceptions import InvalidHeartbeat, LateHeartbeat
from pulseboard.services.buckets import (
    UTC, HEARTBEAT_STATUSES, Bucket, HeartbeatStatus, Resolution, sum_buckets,
)
from pulseboard.services.stores import (
    BucketStore, HeartbeatRecord, RawEventLog, fold_heartbeats, window_bounds,
)

logger = logging.getLogger(__name__)

BucketListener = Callable[[Bucket], None]


def validate_heartbeat(heartbeat: HeartbeatRecord) -> HeartbeatRecord:
    """
    校验并规范化心跳：时间转换为秒精度的 UTC（无时区按 UTC），状态码必须是 0-3，
    延迟为空或非负有限数。不合法时抛出 InvalidHeartbeat。
    """
    if not isinstance(heartbeat.time, datetime):
        raise InvalidHeartbeat("heartbeat time is missing or malformed",
                               detail=f"monitor {heartbeat.monitor_id}: time={heartbeat.time!r}")
    try:
        status = HeartbeatStatus(int(heartbeat.status))
    except (TypeError, ValueError):
        status = None
    if status not in HEARTBEAT_STATUSES:
        raise InvalidHeartbeat("heartbeat status must be one of DOWN/UP/PENDING/MAINTENANCE",
                               detail=f"monitor {heartbeat.monitor_id}: status={heartbeat.status!r}")
    if heartbeat.ping is not None:
        if not isinstance(heartbeat.ping, (int, float)) or not math.isfinite(heartbeat.ping) or heartbeat.ping < 0:
            raise InvalidHeartbeat("heartbeat ping must be a non-negative number",
                                   detail=f"monitor {heartbeat.monitor_id}: ping={heartbeat.ping!r}")

    time = heartbeat.time
    if time.tzinfo is None:
        time = time.replace(tzinfo=UTC)
    time = time.astimezone(UTC).replace(microsecond=0)
    return replace(heartbeat, time=time, status=status)


class RollupEngine:
    """单个监控项的分钟/小时/天汇总状态机。"""

    def __init__(self, monitor_id: int, bucket_store: BucketStore, event_log: RawEventLog,
                 listener: Optional[BucketListener] = None):
        self.monitor_id = monitor_id
        self._store = bucket_store
        self._event_log = event_log
        self._listener = listener
        self._open: Dict[Resolution, Optional[Bucket]] = {r: None for r in Resolution}
        self._last_closed: Dict[Resolution, Optional[int]] = {r: None for r in Resolution}
        self._last_ts: Optional[int] = None

    def open_bucket(self, resolution: Resolution) -> Optional[Bucket]:
        return self._open[resolution]

    def is_closed(self, resolution: Resolution, start: int) -> bool:
        marker = self._last_closed[resolution]
        return marker is not None and start <= marker

    def _notify(self, bucket: Bucket) -> None:
        if self._listener is not None:
            self._listener(bucket)

    async def ingest(self, heartbeat: HeartbeatRecord) -> Bucket:
        """
        写入一次心跳，返回被更新的分钟桶。

        Raises:
            InvalidHeartbeat: 心跳格式不合法（不写入任何存储）
            LateHeartbeat: 所属分钟桶已关闭（已写入原始日志并标记 late）
            StorageFailure: 原始日志或聚合桶存储不可用
        """
        if heartbeat.monitor_id != self.monitor_id:
            raise InvalidHeartbeat(f"heartbeat for monitor {heartbeat.monitor_id} routed to monitor {self.monitor_id}")
        try:
            record = validate_heartbeat(heartbeat)
        except InvalidHeartbeat as e:
            logger.warning(f"Rejected heartbeat for monitor {self.monitor_id}: {e.message} ({e.detail})")
            raise

        ts = record.timestamp
        minute_start = Resolution.MINUTE.floor(ts)
        open_minute = self._open[Resolution.MINUTE]
        out_of_order = (
            self._last_ts is not None and ts < self._last_ts
            and (open_minute is None or open_minute.start != minute_start)
        )
        if self.is_closed(Resolution.MINUTE, minute_start) or out_of_order:
            await self._event_log.append(replace(record, late=True))
            logger.warning(
                f"Late heartbeat for monitor {self.monitor_id} at {record.time.isoformat()}: "
                f"minute bucket already closed, recorded in raw log only"
            )
            raise LateHeartbeat(
                "heartbeat arrived after its minute bucket closed",
                detail=f"monitor {self.monitor_id}: time={record.time.isoformat()}",
            )

        await self._event_log.append(record)
        await self.close_elapsed(ts)

        bucket = self._open[Resolution.MINUTE]
        if bucket is None:
            bucket = Bucket(monitor_id=self.monitor_id, resolution=Resolution.MINUTE, start=minute_start)
            self._open[Resolution.MINUTE] = bucket
        bucket.add(record.status, record.ping)
        self._last_ts = ts if self._last_ts is None else max(self._last_ts, ts)
        self._notify(bucket)
        return bucket

    async def close_elapsed(self, now_ts: int) -> List[Bucket]:
        """关闭所有在 now_ts 之前已结束的桶（先分钟、再小时、最后天），返回本次关闭的桶。"""
        closed: List[Bucket] = []
        for resolution in (Resolution.MINUTE, Resolution.HOUR, Resolution.DAY):
            bucket = self._open[resolution]
            if bucket is not None and bucket.end <= now_ts:
                await self._close(bucket, closed)
        return closed

    async def _close(self, bucket: Bucket, closed: List[Bucket]) -> None:
        resolution = bucket.resolution
        if self.is_closed(resolution, bucket.start):
            if self._open[resolution] is bucket:
                self._open[resolution] = None
            logger.debug(f"Bucket {bucket.key} already closed, skipping")
            return

        parent_resolution = resolution.parent
        if parent_resolution is not None:
            parent = self._open[parent_resolution]
            if parent is not None and parent.start != parent_resolution.floor(bucket.start):
                # 旧的父桶必然已结束，先把它定稿
                await self._close(parent, closed)

        await self._store.save(bucket)
        self._last_closed[resolution] = bucket.start
        if self._open[resolution] is bucket:
            self._open[resolution] = None
        closed.append(bucket)
        self._notify(bucket)

        if parent_resolution is None:
            return
        parent = self._open[parent_resolution]
        if parent is None:
            parent = Bucket(
                monitor_id=self.monitor_id,
                resolution=parent_resolution,
                start=parent_resolution.floor(bucket.start),
            )
            self._open[parent_resolution] = parent
        parent.merge(bucket)
        self._notify(parent)

    async def restore(self) -> None:
        """
        进程重启后恢复状态：读取各级最近定稿的桶作为关闭标记，
        并用已持久化的子桶和原始心跳重建仍未关闭的分钟/小时/天桶。
        """
        for resolution in Resolution:
            rows = await self._store.latest(self.monitor_id, resolution, 1)
            self._last_closed[resolution] = rows[-1].start if rows else None

        latest = await self._event_log.latest(self.monitor_id)
        if latest is None:
            return
        self._last_ts = latest.timestamp

        minute_start = Resolution.MINUTE.floor(self._last_ts)
        if not self.is_closed(Resolution.MINUTE, minute_start):
            begin, end = window_bounds(Resolution.MINUTE, minute_start)
            beats = await self._event_log.range(self.monitor_id, begin, end)
            self._open[Resolution.MINUTE] = fold_heartbeats(
                self.monitor_id, Resolution.MINUTE, minute_start, beats)

        for resolution in (Resolution.HOUR, Resolution.DAY):
            start = resolution.floor(self._last_ts)
            if self.is_closed(resolution, start):
                continue
            children = await self._store.range(
                self.monitor_id, resolution.child, start, start + resolution.seconds)
            self._open[resolution] = sum_buckets(self.monitor_id, resolution, start, children)

        logger.info(
            f"Restored roll-up state for monitor {self.monitor_id}: last heartbeat at {latest.time.isoformat()}"
        )
