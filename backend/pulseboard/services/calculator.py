"""
单监控项可用率计算器与注册表 (Per-Monitor Uptime Calculator and Registry)

UptimeCalculator 为每个监控项常驻内存，持有分钟/小时/天三个定长滑动窗口，
24h / 7d / 30d / 1y 固定窗口可用率直接从窗口计算，无需访问数据库；窗口之外的部分
透明回退到聚合存储。

CalculatorRegistry 是进程级的 monitor_id → UptimeCalculator 映射，首次访问时惰性创建
并从聚合存储预热，进程生命周期内不淘汰。它是显式注入的服务（在应用启动时构建一次），
测试可以构建互相隔离的实例。

并发模型 (Concurrency model):
- 每个计算器一把 asyncio.Lock：写入心跳、关闭桶、修改窗口都在锁内完成，
  读取方在同一把锁内复制快照，永远看不到写到一半的桶；
- 注册表只在创建计算器时按 monitor_id 加锁（双重检查），已有计算器的读写不经过注册表锁。
"""
import asyncio
import logging
from collections import defaultdict, deque
from typing import Callable, Deque, Dict, List, Optional, Tuple

from pulseboard.core.exceptions import ValidationError
from pulseboard.services.buckets import Bucket, Resolution, sum_buckets, system_clock
from pulseboard.services.query_planner import AdaptiveQueryPlanner
from pulseboard.services.rollup import RollupEngine
from pulseboard.services.stores import BucketStore, HeartbeatRecord, RawEventLog

logger = logging.getLogger(__name__)

# 固定窗口：标签 → (分辨率, 桶数)
FIXED_WINDOWS: Dict[str, Tuple[Resolution, int]] = {
    "24h": (Resolution.MINUTE, 1440),
    "7d": (Resolution.HOUR, 7 * 24),
    "30d": (Resolution.HOUR, 30 * 24),
    "1y": (Resolution.DAY, 365),
}

DEFAULT_WINDOW_SIZES: Dict[Resolution, int] = {
    Resolution.MINUTE: 1440,
    Resolution.HOUR: 720,
    Resolution.DAY: 365,
}


class UptimeCalculator:
    """单个监控项的可用率计算器。"""

    def __init__(self, monitor_id: int, bucket_store: BucketStore, event_log: RawEventLog,
                 planner: AdaptiveQueryPlanner,
                 clock: Optional[Callable[[], int]] = None,
                 window_sizes: Optional[Dict[Resolution, int]] = None):
        self.monitor_id = monitor_id
        self.bucket_store = bucket_store
        self.planner = planner
        self.clock = clock or system_clock
        sizes = {**DEFAULT_WINDOW_SIZES, **(window_sizes or {})}
        self._windows: Dict[Resolution, Deque[Bucket]] = {
            r: deque(maxlen=sizes[r]) for r in Resolution
        }
        self._lock = asyncio.Lock()
        self._engine = RollupEngine(monitor_id, bucket_store, event_log, listener=self._push)

    def _push(self, bucket: Bucket) -> None:
        """把受影响的桶放入滑动窗口：键相同则原地替换，否则追加（满时淘汰最旧的）。"""
        window = self._windows[bucket.resolution]
        if window and window[-1].start == bucket.start:
            window[-1] = bucket
        elif not window or window[-1].start < bucket.start:
            window.append(bucket)
        else:
            for i, entry in enumerate(window):
                if entry.start == bucket.start:
                    window[i] = bucket
                    break

    async def hydrate(self) -> None:
        """从聚合存储加载最近的桶填充窗口，并恢复未关闭的桶。"""
        async with self._lock:
            for resolution, window in self._windows.items():
                window.clear()
                window.extend(await self.bucket_store.latest(self.monitor_id, resolution, window.maxlen))
            await self._engine.restore()
            for resolution in Resolution:
                bucket = self._engine.open_bucket(resolution)
                if bucket is not None:
                    self._push(bucket)

    async def update(self, heartbeat: HeartbeatRecord) -> Bucket:
        """写入一次心跳，返回被更新的分钟桶的副本。"""
        async with self._lock:
            bucket = await self._engine.ingest(heartbeat)
            return bucket.copy()

    async def flush(self, now: Optional[int] = None) -> int:
        """关闭 now 之前已结束的所有桶，返回使用的 now（Unix 秒）。"""
        now_ts = self.clock() if now is None else now
        async with self._lock:
            await self._engine.close_elapsed(now_ts)
        return now_ts

    def _snapshot_unlocked(self, resolution: Resolution) -> List[Bucket]:
        return [b.copy() for b in self._windows[resolution]]

    async def snapshot(self, resolution: Resolution) -> List[Bucket]:
        """窗口内所有桶的副本，按时间升序。"""
        async with self._lock:
            return self._snapshot_unlocked(resolution)

    async def fixed_window_uptime(self, label: str) -> float:
        """
        固定窗口可用率 up / (up + down)，没有样本时为 0。

        Args:
            label: "24h" / "7d" / "30d" / "1y"
        """
        if label not in FIXED_WINDOWS:
            raise ValidationError(f"unsupported uptime window: {label}",
                                  detail=f"expected one of {', '.join(FIXED_WINDOWS)}")
        resolution, span = FIXED_WINDOWS[label]
        now_ts = self.clock()

        async with self._lock:
            await self._engine.close_elapsed(now_ts)
            range_start = resolution.floor(now_ts) - (span - 1) * resolution.seconds
            window = self._windows[resolution]
            entries = [b.copy() for b in window if b.start >= range_start]
            # 尚未折叠进本级窗口的更细粒度未关闭桶
            child = resolution.child
            while child is not None:
                open_child = self._engine.open_bucket(child)
                if open_child is not None and open_child.start >= range_start:
                    entries.append(open_child.copy())
                child = child.child
            evicted_before = window[0].start if len(window) == window.maxlen else None

        if evicted_before is not None and evicted_before > range_start:
            entries.extend(await self.bucket_store.range(
                self.monitor_id, resolution, range_start, evicted_before))

        total = sum_buckets(self.monitor_id, resolution, range_start, entries)
        if total is None or total.up + total.down == 0:
            return 0.0
        return total.up / (total.up + total.down)

    async def data_array(self, count: int, resolution: Resolution) -> List[dict]:
        """最近 count 个 resolution 粒度的点，以 now 结尾，缺失处为 UNKNOWN。"""
        now_ts = await self.flush()
        return await self.planner.build_timeline(self.monitor_id, resolution, count, now_ts)


class CalculatorRegistry:
    """进程级计算器注册表，按 monitor_id 惰性创建。"""

    def __init__(self, bucket_store: BucketStore, event_log: RawEventLog,
                 planner: Optional[AdaptiveQueryPlanner] = None,
                 clock: Optional[Callable[[], int]] = None,
                 window_sizes: Optional[Dict[Resolution, int]] = None):
        self.bucket_store = bucket_store
        self.event_log = event_log
        self.clock = clock or system_clock
        self.planner = planner or AdaptiveQueryPlanner(bucket_store, event_log, clock=self.clock)
        self.window_sizes = window_sizes
        self._calculators: Dict[int, UptimeCalculator] = {}
        self._creation_locks: Dict[int, asyncio.Lock] = defaultdict(asyncio.Lock)

    def __len__(self) -> int:
        return len(self._calculators)

    def __contains__(self, monitor_id: int) -> bool:
        return monitor_id in self._calculators

    async def get(self, monitor_id: int) -> UptimeCalculator:
        """返回已有计算器，首次访问时创建并预热（同一 monitor_id 只创建一次）。"""
        calculator = self._calculators.get(monitor_id)
        if calculator is not None:
            return calculator
        async with self._creation_locks[monitor_id]:
            calculator = self._calculators.get(monitor_id)
            if calculator is None:
                calculator = UptimeCalculator(
                    monitor_id, self.bucket_store, self.event_log, self.planner,
                    clock=self.clock, window_sizes=self.window_sizes,
                )
                await calculator.hydrate()
                self._calculators[monitor_id] = calculator
                logger.info(f"Created uptime calculator for monitor {monitor_id}")
        return calculator

    async def ingest(self, monitor_id: int, heartbeat: HeartbeatRecord) -> Bucket:
        """调度器入口：把一次心跳交给对应监控项的计算器。"""
        calculator = await self.get(monitor_id)
        return await calculator.update(heartbeat)

    async def reconcile(self, monitor_id: int, range_days: float):
        """自适应时间线查询，返回 TimelineResult。"""
        calculator = await self.get(monitor_id)
        return await self.planner.reconcile(calculator, range_days)

    async def flush_all(self) -> int:
        """关闭所有计算器中已结束的桶，返回处理的计算器数量。"""
        calculators = list(self._calculators.values())
        for calculator in calculators:
            await calculator.flush()
        return len(calculators)
