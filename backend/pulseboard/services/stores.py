"""
存储层服务 (Storage Layer Services)

聚合桶存储（BucketStore）与原始事件日志（RawEventLog）的 SQLAlchemy 异步实现。
在存储边界把 ORM 行转换为显式的类型化记录并校验必填字段，下游不再接触 ORM 对象。
任何 SQLAlchemyError 都记录日志并转换为 StorageFailure。

SQLAlchemy async implementations of the bucket store and the raw event log.
ORM rows are converted into explicit typed records at the storage boundary, with
required fields validated there. Any SQLAlchemyError is logged and raised as
StorageFailure.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import select, delete, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pulseboard.core.exceptions import StorageFailure
from pulseboard.models.heartbeat import Heartbeat
from pulseboard.models.uptime_stat import UptimeStat
from pulseboard.services.buckets import UTC, Bucket, Resolution, to_timestamp

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HeartbeatRecord:
    """一次健康检查结果，写入后不可变。time 始终为带时区的 UTC 时间。"""
    monitor_id: int
    time: datetime
    status: int
    ping: Optional[float] = None
    msg: Optional[str] = None
    late: bool = False

    @property
    def timestamp(self) -> int:
        return to_timestamp(self.time)

    @classmethod
    def from_row(cls, row: Heartbeat) -> "HeartbeatRecord":
        if row.monitor_id is None or row.time is None or row.status is None:
            raise StorageFailure(f"heartbeat row {row.id} is missing required fields")
        time = row.time if row.time.tzinfo is not None else row.time.replace(tzinfo=UTC)
        return cls(
            monitor_id=row.monitor_id,
            time=time,
            status=row.status,
            ping=row.ping,
            msg=row.msg,
            late=bool(row.late),
        )

    def to_public_json(self) -> dict:
        """心跳模式下原样输出的单条心跳。"""
        return {
            "status": int(self.status),
            "time": self.time.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.000Z"),
            "ping": self.ping,
            "msg": self.msg,
        }


def _bucket_from_row(row: UptimeStat) -> Bucket:
    if row.monitor_id is None or row.resolution is None or row.timestamp is None:
        raise StorageFailure(f"uptime_stats row {row.id} is missing required fields")
    return Bucket(
        monitor_id=row.monitor_id,
        resolution=Resolution(row.resolution),
        start=int(row.timestamp),
        up=row.up or 0,
        down=row.down or 0,
        maintenance=row.maintenance or 0,
        avg_ping=row.avg_ping,
        weight=row.weight or 0,
    )


class BucketStore:
    """已关闭聚合桶的持久化存储，按 (monitor, resolution, timestamp) 唯一。"""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def save(self, bucket: Bucket) -> bool:
        """
        插入一个已关闭的桶。已存在同键行时不做任何修改（幂等），返回是否真正写入。
        """
        try:
            async with self.session_factory() as db:
                existing = (await db.execute(
                    select(UptimeStat.id).where(
                        UptimeStat.monitor_id == bucket.monitor_id,
                        UptimeStat.resolution == bucket.resolution.value,
                        UptimeStat.timestamp == bucket.start,
                    )
                )).scalar_one_or_none()
                if existing is not None:
                    return False
                db.add(UptimeStat(
                    monitor_id=bucket.monitor_id,
                    resolution=bucket.resolution.value,
                    timestamp=bucket.start,
                    up=bucket.up,
                    down=bucket.down,
                    maintenance=bucket.maintenance,
                    avg_ping=bucket.avg_ping,
                    weight=bucket.weight,
                ))
                try:
                    await db.commit()
                except IntegrityError:
                    # 并发写入同一个桶，保留先写入的行
                    await db.rollback()
                    return False
                return True
        except SQLAlchemyError as e:
            logger.exception(f"Failed to persist bucket {bucket.key}")
            raise StorageFailure("bucket store unavailable", detail=str(e)) from e

    async def get(self, monitor_id: int, resolution: Resolution, start: int) -> Optional[Bucket]:
        try:
            async with self.session_factory() as db:
                row = (await db.execute(
                    select(UptimeStat).where(
                        UptimeStat.monitor_id == monitor_id,
                        UptimeStat.resolution == resolution.value,
                        UptimeStat.timestamp == start,
                    )
                )).scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.exception(f"Failed to read {resolution.value} bucket {start} of monitor {monitor_id}")
            raise StorageFailure("bucket store unavailable", detail=str(e)) from e
        return _bucket_from_row(row) if row is not None else None

    async def range(self, monitor_id: int, resolution: Resolution, start: int, end: int,
                    descending: bool = False) -> List[Bucket]:
        """区间扫描 [start, end)，按桶起始时间排序。"""
        order = UptimeStat.timestamp.desc() if descending else UptimeStat.timestamp.asc()
        try:
            async with self.session_factory() as db:
                rows = (await db.execute(
                    select(UptimeStat).where(
                        UptimeStat.monitor_id == monitor_id,
                        UptimeStat.resolution == resolution.value,
                        UptimeStat.timestamp >= start,
                        UptimeStat.timestamp < end,
                    ).order_by(order)
                )).scalars().all()
        except SQLAlchemyError as e:
            logger.exception(f"Failed to scan {resolution.value} buckets of monitor {monitor_id}")
            raise StorageFailure("bucket store unavailable", detail=str(e)) from e
        return [_bucket_from_row(r) for r in rows]

    async def latest(self, monitor_id: int, resolution: Resolution, limit: int) -> List[Bucket]:
        """最近 limit 个桶，按时间升序返回，用于滑动窗口预热。"""
        try:
            async with self.session_factory() as db:
                rows = (await db.execute(
                    select(UptimeStat).where(
                        UptimeStat.monitor_id == monitor_id,
                        UptimeStat.resolution == resolution.value,
                    ).order_by(UptimeStat.timestamp.desc()).limit(limit)
                )).scalars().all()
        except SQLAlchemyError as e:
            logger.exception(f"Failed to load recent {resolution.value} buckets of monitor {monitor_id}")
            raise StorageFailure("bucket store unavailable", detail=str(e)) from e
        return [_bucket_from_row(r) for r in reversed(rows)]

    async def delete_before(self, resolution: Resolution, cutoff: int) -> int:
        """删除起始时间早于 cutoff 的桶，返回删除行数。"""
        try:
            async with self.session_factory() as db:
                result = await db.execute(
                    delete(UptimeStat).where(
                        UptimeStat.resolution == resolution.value,
                        UptimeStat.timestamp < cutoff,
                    )
                )
                await db.commit()
                return result.rowcount or 0
        except SQLAlchemyError as e:
            logger.exception(f"Failed to delete {resolution.value} buckets before {cutoff}")
            raise StorageFailure("bucket store unavailable", detail=str(e)) from e


class RawEventLog:
    """原始心跳的追加写日志，可按监控项和时间区间查询。"""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def append(self, record: HeartbeatRecord) -> None:
        try:
            async with self.session_factory() as db:
                db.add(Heartbeat(
                    monitor_id=record.monitor_id,
                    time=record.time,
                    status=int(record.status),
                    ping=record.ping,
                    msg=record.msg,
                    late=record.late,
                ))
                await db.commit()
        except SQLAlchemyError as e:
            logger.exception(f"Failed to append heartbeat of monitor {record.monitor_id}")
            raise StorageFailure("raw event log unavailable", detail=str(e)) from e

    async def range(self, monitor_id: int, start: datetime, end: datetime,
                    descending: bool = False, include_late: bool = False,
                    limit: Optional[int] = None) -> List[HeartbeatRecord]:
        """时间区间 [start, end) 内的心跳，默认排除迟到心跳。"""
        order = Heartbeat.time.desc() if descending else Heartbeat.time.asc()
        query = select(Heartbeat).where(
            Heartbeat.monitor_id == monitor_id,
            Heartbeat.time >= start,
            Heartbeat.time < end,
        )
        if not include_late:
            query = query.where(Heartbeat.late == False)  # noqa: E712
        query = query.order_by(order, Heartbeat.id.desc() if descending else Heartbeat.id.asc())
        if limit is not None:
            query = query.limit(limit)
        try:
            async with self.session_factory() as db:
                rows = (await db.execute(query)).scalars().all()
        except SQLAlchemyError as e:
            logger.exception(f"Failed to scan heartbeats of monitor {monitor_id}")
            raise StorageFailure("raw event log unavailable", detail=str(e)) from e
        return [HeartbeatRecord.from_row(r) for r in rows]

    async def latest(self, monitor_id: int, start: Optional[datetime] = None,
                     end: Optional[datetime] = None) -> Optional[HeartbeatRecord]:
        """区间内（不传则全部）最新的一条非迟到心跳。"""
        query = select(Heartbeat).where(
            Heartbeat.monitor_id == monitor_id,
            Heartbeat.late == False,  # noqa: E712
        )
        if start is not None:
            query = query.where(Heartbeat.time >= start)
        if end is not None:
            query = query.where(Heartbeat.time < end)
        query = query.order_by(Heartbeat.time.desc(), Heartbeat.id.desc()).limit(1)
        try:
            async with self.session_factory() as db:
                row = (await db.execute(query)).scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.exception(f"Failed to read latest heartbeat of monitor {monitor_id}")
            raise StorageFailure("raw event log unavailable", detail=str(e)) from e
        return HeartbeatRecord.from_row(row) if row is not None else None

    async def recent(self, monitor_id: int, limit: int = 100) -> List[HeartbeatRecord]:
        """最近 limit 条心跳（含迟到心跳），按时间升序返回。"""
        try:
            async with self.session_factory() as db:
                rows = (await db.execute(
                    select(Heartbeat).where(Heartbeat.monitor_id == monitor_id)
                    .order_by(Heartbeat.time.desc(), Heartbeat.id.desc()).limit(limit)
                )).scalars().all()
        except SQLAlchemyError as e:
            logger.exception(f"Failed to read recent heartbeats of monitor {monitor_id}")
            raise StorageFailure("raw event log unavailable", detail=str(e)) from e
        return [HeartbeatRecord.from_row(r) for r in reversed(rows)]

    async def count(self, monitor_id: int, include_late: bool = True) -> int:
        query = select(func.count()).select_from(Heartbeat).where(Heartbeat.monitor_id == monitor_id)
        if not include_late:
            query = query.where(Heartbeat.late == False)  # noqa: E712
        try:
            async with self.session_factory() as db:
                return (await db.execute(query)).scalar() or 0
        except SQLAlchemyError as e:
            logger.exception(f"Failed to count heartbeats of monitor {monitor_id}")
            raise StorageFailure("raw event log unavailable", detail=str(e)) from e

    async def delete_before(self, cutoff: datetime) -> int:
        try:
            async with self.session_factory() as db:
                result = await db.execute(delete(Heartbeat).where(Heartbeat.time < cutoff))
                await db.commit()
                return result.rowcount or 0
        except SQLAlchemyError as e:
            logger.exception(f"Failed to delete heartbeats before {cutoff}")
            raise StorageFailure("raw event log unavailable", detail=str(e)) from e


def fold_heartbeats(monitor_id: int, resolution: Resolution, start: int,
                    heartbeats: List[HeartbeatRecord]) -> Optional[Bucket]:
    """从原始心跳从头计算一个桶，没有心跳时返回 None。"""
    if not heartbeats:
        return None
    bucket = Bucket(monitor_id=monitor_id, resolution=resolution, start=start)
    for hb in heartbeats:
        bucket.add(hb.status, hb.ping)
    return bucket


def window_bounds(resolution: Resolution, start: int) -> tuple[datetime, datetime]:
    """桶的 [start, end) 区间，转换为 UTC datetime 便于查询原始日志。"""
    begin = datetime.fromtimestamp(start, tz=UTC)
    return begin, begin + timedelta(seconds=resolution.seconds)
