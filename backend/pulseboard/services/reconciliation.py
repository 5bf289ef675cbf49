"""
分层对账解析器 (Tiered Reconciliation Resolver)

为尚未定稿的"当前桶"（今天 / 当前小时 / 当前分钟）在任意时刻给出正确的聚合值。
按固定优先级依次尝试各层数据源，命中即止：

1. FinalizedTier：已定稿的同级聚合行
2. FinerTier：区间内已定稿的下一级子桶求和，加上尚未关闭的尾部（分钟无下级，跳过）
3. RawEventTier：直接扫描原始事件日志从头计算

全部无数据时返回 None（即 UNKNOWN，而不是 0）。某一层存储出错视为该层缺失并继续下一层；
只有所有适用层都失败时才抛出 StorageFailure。

Produces the value of a not-yet-finalized bucket by trying an explicit, ordered list
of tier strategies. A tier failing with a storage error is skipped; only total
failure across every applicable tier surfaces as StorageFailure.
"""
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

from pulseboard.core.exceptions import StorageFailure, TierUnavailable
from pulseboard.services.buckets import (
    Bucket, HeartbeatStatus, Resolution, derive_status, from_timestamp, sum_buckets,
)
from pulseboard.services.stores import BucketStore, RawEventLog, fold_heartbeats, window_bounds

logger = logging.getLogger(__name__)


@dataclass
class ResolvedBucket:
    """对账结果：聚合值、展示状态以及命中的数据层。"""
    bucket: Bucket
    status: HeartbeatStatus
    source: str

    @property
    def finalized(self) -> bool:
        return self.source == FinalizedTier.name


class ResolverTier:
    """对账层策略基类：返回 Bucket 或 None，存储出错时抛出 TierUnavailable。"""
    name = "tier"

    def applies(self, resolution: Resolution) -> bool:
        return True

    async def resolve(self, monitor_id: int, resolution: Resolution, start: int) -> Optional[Bucket]:
        raise NotImplementedError


class FinalizedTier(ResolverTier):
    """已定稿的同级聚合行。"""
    name = "finalized"

    def __init__(self, bucket_store: BucketStore):
        self.bucket_store = bucket_store

    async def resolve(self, monitor_id: int, resolution: Resolution, start: int) -> Optional[Bucket]:
        try:
            return await self.bucket_store.get(monitor_id, resolution, start)
        except StorageFailure as e:
            raise TierUnavailable(self.name, e) from e


class FinerTier(ResolverTier):
    """
    把区间内已定稿的下一级子桶求和，再加上最后一个已定稿子桶之后仍未关闭的尾部
    （从原始事件日志计算），合成一个等价的桶。没有任何已定稿子桶时交给下一层。
    """
    name = "finer"

    def __init__(self, bucket_store: BucketStore, event_log: Optional[RawEventLog] = None):
        self.bucket_store = bucket_store
        self.event_log = event_log

    def applies(self, resolution: Resolution) -> bool:
        return resolution.child is not None

    async def resolve(self, monitor_id: int, resolution: Resolution, start: int) -> Optional[Bucket]:
        end = start + resolution.seconds
        try:
            children = await self.bucket_store.range(monitor_id, resolution.child, start, end)
        except StorageFailure as e:
            raise TierUnavailable(self.name, e) from e
        total = sum_buckets(monitor_id, resolution, start, children)
        if total is None or self.event_log is None:
            return total

        tail_start = children[-1].end
        if tail_start < end:
            try:
                beats = await self.event_log.range(
                    monitor_id, from_timestamp(tail_start), from_timestamp(end))
            except StorageFailure as e:
                raise TierUnavailable(self.name, e) from e
            tail = fold_heartbeats(monitor_id, resolution, start, beats)
            if tail is not None:
                total.merge(tail)
        return total


class RawEventTier(ResolverTier):
    """扫描原始事件日志，从头计算 up/down/maintenance/avg_ping。"""
    name = "raw"

    def __init__(self, event_log: RawEventLog):
        self.event_log = event_log

    async def resolve(self, monitor_id: int, resolution: Resolution, start: int) -> Optional[Bucket]:
        begin, end = window_bounds(resolution, start)
        try:
            beats = await self.event_log.range(monitor_id, begin, end)
        except StorageFailure as e:
            raise TierUnavailable(self.name, e) from e
        return fold_heartbeats(monitor_id, resolution, start, beats)


class TieredResolver:
    """按顺序尝试各层策略的对账器。"""

    def __init__(self, tiers: Sequence[ResolverTier], event_log: RawEventLog):
        self.tiers: List[ResolverTier] = list(tiers)
        self.event_log = event_log

    @classmethod
    def default(cls, bucket_store: BucketStore, event_log: RawEventLog) -> "TieredResolver":
        return cls(
            [FinalizedTier(bucket_store), FinerTier(bucket_store, event_log), RawEventTier(event_log)],
            event_log,
        )

    async def resolve(self, monitor_id: int, resolution: Resolution, start: int) -> Optional[ResolvedBucket]:
        """
        解析 [start, start + resolution) 桶的值。

        Returns:
            ResolvedBucket，区间内没有任何数据时返回 None
        Raises:
            StorageFailure: 所有适用层都读取失败
        """
        attempted = 0
        failures: List[TierUnavailable] = []
        for tier in self.tiers:
            if not tier.applies(resolution):
                continue
            attempted += 1
            try:
                bucket = await tier.resolve(monitor_id, resolution, start)
            except TierUnavailable as e:
                logger.warning(
                    f"Reconciliation tier '{tier.name}' unavailable for monitor {monitor_id} "
                    f"{resolution.value} bucket {start}: {e.cause}"
                )
                failures.append(e)
                continue
            if bucket is None:
                continue
            if tier.name == FinalizedTier.name:
                return ResolvedBucket(bucket=bucket, status=derive_status(bucket), source=tier.name)
            status = await self._current_status(monitor_id, resolution, start, bucket)
            return ResolvedBucket(bucket=bucket, status=status, source=tier.name)

        if attempted and len(failures) == attempted:
            raise StorageFailure(
                "all reconciliation tiers failed",
                detail="; ".join(str(f) for f in failures),
            )
        return None

    async def _current_status(self, monitor_id: int, resolution: Resolution, start: int,
                              bucket: Bucket) -> HeartbeatStatus:
        """
        未定稿桶的状态以区间内最近一次心跳为准，反映"当前正在发生什么"；
        读不到单条心跳时回退到多数表决规则。
        """
        begin, end = window_bounds(resolution, start)
        try:
            latest = await self.event_log.latest(monitor_id, begin, end)
        except StorageFailure:
            logger.warning(f"Latest heartbeat unavailable for monitor {monitor_id}, using majority rule")
            latest = None
        if latest is not None:
            return HeartbeatStatus(latest.status)
        return derive_status(bucket)
