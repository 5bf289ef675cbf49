"""
聚合桶与状态类型 (Bucket and Status Types)

分钟/小时/天三级聚合共用的值类型：心跳状态码、分辨率、聚合桶以及桶状态判定规则。
所有时间以 Unix 秒表示，桶起始时间按分辨率对齐到 UTC 纪元边界。

Value types shared by the minute/hour/day roll-ups: heartbeat status codes,
resolutions, aggregate buckets and the bucket status rule. Times are Unix seconds;
bucket starts are aligned to the resolution's UTC epoch boundary.
"""
from __future__ import annotations

import enum
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Iterable, Optional

UTC = timezone.utc


class HeartbeatStatus(enum.IntEnum):
    """心跳与时间线状态码。UNKNOWN 只出现在查询结果中，不是合法的心跳状态。"""
    DOWN = 0
    UP = 1
    PENDING = 2
    MAINTENANCE = 3
    UNKNOWN = 4


# 调度器可写入的心跳状态 (Statuses a scheduler may report)
HEARTBEAT_STATUSES = frozenset({
    HeartbeatStatus.DOWN, HeartbeatStatus.UP,
    HeartbeatStatus.PENDING, HeartbeatStatus.MAINTENANCE,
})


class Resolution(str, enum.Enum):
    """聚合分辨率。"""
    MINUTE = "minute"
    HOUR = "hour"
    DAY = "day"

    @property
    def seconds(self) -> int:
        return _RESOLUTION_SECONDS[self]

    @property
    def parent(self) -> Optional["Resolution"]:
        """上一级（更粗）分辨率，天没有上级。"""
        return _PARENT.get(self)

    @property
    def child(self) -> Optional["Resolution"]:
        """下一级（更细）分辨率，分钟没有下级。"""
        return _CHILD.get(self)

    def floor(self, ts: int) -> int:
        """将 Unix 秒向下对齐到本分辨率的桶起始时间。"""
        ts = int(ts)
        return ts - ts % self.seconds


_RESOLUTION_SECONDS = {
    Resolution.MINUTE: 60,
    Resolution.HOUR: 3600,
    Resolution.DAY: 86400,
}
_PARENT = {Resolution.MINUTE: Resolution.HOUR, Resolution.HOUR: Resolution.DAY}
_CHILD = {Resolution.HOUR: Resolution.MINUTE, Resolution.DAY: Resolution.HOUR}


def to_timestamp(value: datetime) -> int:
    """datetime → Unix 秒，无时区的时间按 UTC 处理。"""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return int(value.timestamp())


def system_clock() -> int:
    """当前 Unix 秒，计算器与规划器的默认时钟。"""
    return int(time.time())


def from_timestamp(ts: int) -> datetime:
    return datetime.fromtimestamp(ts, tz=UTC)


def isoformat(ts: int) -> str:
    """Unix 秒 → ISO-8601 UTC 字符串，如 2026-03-10T10:00:00.000Z。"""
    return from_timestamp(ts).strftime("%Y-%m-%dT%H:%M:%S.000Z")


@dataclass(slots=True)
class Bucket:
    """
    单个监控项在一个时间区间内的聚合统计。

    up + down 只统计非维护、非待定的心跳；maintenance 单独计数，永不混入 up/down。
    weight 是参与 avg_ping 的延迟样本数，合并时按其加权平均。
    """
    monitor_id: int
    resolution: Resolution
    start: int
    up: int = 0
    down: int = 0
    maintenance: int = 0
    avg_ping: Optional[float] = None
    weight: int = 0

    @property
    def end(self) -> int:
        return self.start + self.resolution.seconds

    @property
    def key(self) -> tuple[int, str, int]:
        return self.monitor_id, self.resolution.value, self.start

    @property
    def uptime(self) -> Optional[float]:
        """up / (up + down)，没有有效样本时为 None。"""
        total = self.up + self.down
        if total == 0:
            return None
        return self.up / total

    def add(self, status: int, ping: Optional[float] = None) -> None:
        """折叠一次心跳，延迟使用增量均值公式更新。"""
        if status == HeartbeatStatus.UP:
            self.up += 1
        elif status == HeartbeatStatus.DOWN:
            self.down += 1
        elif status == HeartbeatStatus.MAINTENANCE:
            self.maintenance += 1

        if ping is not None:
            self.weight += 1
            if self.avg_ping is None:
                self.avg_ping = float(ping)
            else:
                self.avg_ping += (ping - self.avg_ping) / self.weight

    def merge(self, other: "Bucket") -> None:
        """把子桶（或同级桶）按代数和合并进来。"""
        self.up += other.up
        self.down += other.down
        self.maintenance += other.maintenance
        if other.weight and other.avg_ping is not None:
            if self.avg_ping is None or self.weight == 0:
                self.avg_ping = other.avg_ping
            else:
                self.avg_ping += (other.avg_ping - self.avg_ping) * other.weight / (self.weight + other.weight)
            self.weight += other.weight

    def copy(self) -> "Bucket":
        return replace(self)


def sum_buckets(monitor_id: int, resolution: Resolution, start: int,
                children: Iterable[Bucket]) -> Optional[Bucket]:
    """将若干子桶求和成一个 resolution 级别的桶，没有子桶时返回 None。"""
    total: Optional[Bucket] = None
    for child in children:
        if total is None:
            total = Bucket(monitor_id=monitor_id, resolution=resolution, start=start)
        total.merge(child)
    return total


def derive_status(bucket: Bucket) -> HeartbeatStatus:
    """
    已定稿桶的状态判定，所有调用方共用：

    - maintenance > 0 → MAINTENANCE
    - down > up / 2 → DOWN（UP 需要严格多数）
    - up > 0 → UP
    - 否则 → PENDING（没有有效样本）
    """
    if bucket.maintenance > 0:
        return HeartbeatStatus.MAINTENANCE
    if bucket.down * 2 > bucket.up:
        return HeartbeatStatus.DOWN
    if bucket.up > 0:
        return HeartbeatStatus.UP
    return HeartbeatStatus.PENDING
