"""存储层测试 — 聚合桶存储与原始事件日志。"""
from dataclasses import replace

import pytest

from pulseboard.core.exceptions import StorageFailure
from pulseboard.models.heartbeat import Heartbeat
from pulseboard.services.buckets import Bucket, Resolution, from_timestamp
from pulseboard.services.stores import BucketStore, HeartbeatRecord, RawEventLog

from tests.conftest import BASE_TS, broken_session_factory, make_heartbeat


class TestBucketStore:
    @pytest.mark.asyncio
    async def test_save_is_insert_if_absent(self, bucket_store):
        first = Bucket(monitor_id=1, resolution=Resolution.MINUTE, start=BASE_TS, up=3, avg_ping=5.0, weight=3)
        assert await bucket_store.save(first) is True
        assert await bucket_store.save(replace(first, up=99)) is False
        stored = await bucket_store.get(1, Resolution.MINUTE, BASE_TS)
        assert stored == first

    @pytest.mark.asyncio
    async def test_range_is_half_open_and_ordered(self, bucket_store):
        for i in range(5):
            await bucket_store.save(Bucket(monitor_id=1, resolution=Resolution.HOUR, start=BASE_TS + i * 3600, up=i))
        await bucket_store.save(Bucket(monitor_id=2, resolution=Resolution.HOUR, start=BASE_TS, up=1))

        rows = await bucket_store.range(1, Resolution.HOUR, BASE_TS + 3600, BASE_TS + 4 * 3600)
        assert [b.up for b in rows] == [1, 2, 3]
        rows = await bucket_store.range(1, Resolution.HOUR, BASE_TS, BASE_TS + 5 * 3600, descending=True)
        assert [b.up for b in rows] == [4, 3, 2, 1, 0]

    @pytest.mark.asyncio
    async def test_latest_returns_ascending_tail(self, bucket_store):
        for i in range(5):
            await bucket_store.save(Bucket(monitor_id=1, resolution=Resolution.MINUTE, start=BASE_TS + i * 60))
        rows = await bucket_store.latest(1, Resolution.MINUTE, 2)
        assert [b.start for b in rows] == [BASE_TS + 180, BASE_TS + 240]

    @pytest.mark.asyncio
    async def test_failures_become_storage_failure(self):
        store = BucketStore(broken_session_factory)
        with pytest.raises(StorageFailure):
            await store.get(1, Resolution.MINUTE, BASE_TS)
        with pytest.raises(StorageFailure):
            await store.save(Bucket(monitor_id=1, resolution=Resolution.MINUTE, start=BASE_TS))


class TestRawEventLog:
    @pytest.mark.asyncio
    async def test_range_excludes_late_by_default(self, event_log):
        await event_log.append(make_heartbeat(1, BASE_TS + 5))
        await event_log.append(replace(make_heartbeat(1, BASE_TS + 6), late=True))
        await event_log.append(make_heartbeat(1, BASE_TS + 60))

        begin, end = from_timestamp(BASE_TS), from_timestamp(BASE_TS + 60)
        assert len(await event_log.range(1, begin, end)) == 1
        assert len(await event_log.range(1, begin, end, include_late=True)) == 2

    @pytest.mark.asyncio
    async def test_latest_skips_late(self, event_log):
        await event_log.append(make_heartbeat(1, BASE_TS + 5))
        await event_log.append(replace(make_heartbeat(1, BASE_TS + 50), late=True))
        latest = await event_log.latest(1)
        assert latest.timestamp == BASE_TS + 5
        assert latest.time.tzinfo is not None

    @pytest.mark.asyncio
    async def test_recent_is_limited_and_ascending(self, event_log):
        for i in range(5):
            await event_log.append(make_heartbeat(1, BASE_TS + i, msg=f"check {i}"))
        recent = await event_log.recent(1, limit=3)
        assert [hb.msg for hb in recent] == ["check 2", "check 3", "check 4"]

    def test_row_with_missing_fields_is_rejected(self):
        row = Heartbeat(id=1, monitor_id=1, time=None, status=1)
        with pytest.raises(StorageFailure):
            HeartbeatRecord.from_row(row)

    @pytest.mark.asyncio
    async def test_failures_become_storage_failure(self):
        log = RawEventLog(broken_session_factory)
        with pytest.raises(StorageFailure):
            await log.append(make_heartbeat(1, BASE_TS))
        with pytest.raises(StorageFailure):
            await log.recent(1)
