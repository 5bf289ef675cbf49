"""分辨率汇总引擎测试 — 桶关闭、父级折叠、迟到心跳、校验与重启恢复。"""
import math
from datetime import datetime

import pytest

from pulseboard.core.exceptions import InvalidHeartbeat, LateHeartbeat
from pulseboard.services.buckets import HeartbeatStatus, Resolution
from pulseboard.services.rollup import RollupEngine, validate_heartbeat
from pulseboard.services.stores import HeartbeatRecord

from tests.conftest import BASE_TS, make_heartbeat


@pytest.fixture
def rollup(bucket_store, event_log):
    return RollupEngine(1, bucket_store, event_log)


class TestValidateHeartbeat:
    def test_naive_time_is_treated_as_utc(self):
        record = HeartbeatRecord(monitor_id=1, time=datetime(2026, 3, 10, 10, 0, 5, 123456), status=1)
        normalized = validate_heartbeat(record)
        assert normalized.timestamp == BASE_TS + 5
        assert normalized.time.microsecond == 0
        assert normalized.status is HeartbeatStatus.UP

    @pytest.mark.parametrize("status", [4, 7, -1, "up", None])
    def test_rejects_unknown_status(self, status):
        with pytest.raises(InvalidHeartbeat):
            validate_heartbeat(make_heartbeat(1, BASE_TS, status=status))

    @pytest.mark.parametrize("ping", [-1.0, math.nan, math.inf])
    def test_rejects_bad_ping(self, ping):
        with pytest.raises(InvalidHeartbeat):
            validate_heartbeat(make_heartbeat(1, BASE_TS, ping=ping))

    def test_rejects_missing_time(self):
        record = HeartbeatRecord(monitor_id=1, time=None, status=1)
        with pytest.raises(InvalidHeartbeat):
            validate_heartbeat(record)


class TestIngest:
    @pytest.mark.asyncio
    async def test_heartbeats_fold_into_open_minute(self, rollup, bucket_store, event_log):
        await rollup.ingest(make_heartbeat(1, BASE_TS + 5, ping=10))
        bucket = await rollup.ingest(make_heartbeat(1, BASE_TS + 30, ping=20))
        assert bucket.start == BASE_TS
        assert bucket.up == 2
        assert bucket.avg_ping == pytest.approx(15.0)
        assert await event_log.count(1) == 2
        # 未关闭的桶不落库
        assert await bucket_store.get(1, Resolution.MINUTE, BASE_TS) is None

    @pytest.mark.asyncio
    async def test_crossing_minute_closes_and_folds_into_hour(self, rollup, bucket_store):
        await rollup.ingest(make_heartbeat(1, BASE_TS + 5))
        await rollup.ingest(make_heartbeat(1, BASE_TS + 30, status=HeartbeatStatus.DOWN))
        await rollup.ingest(make_heartbeat(1, BASE_TS + 65))

        stored = await bucket_store.get(1, Resolution.MINUTE, BASE_TS)
        assert (stored.up, stored.down) == (1, 1)
        assert rollup.is_closed(Resolution.MINUTE, BASE_TS)
        hour = rollup.open_bucket(Resolution.HOUR)
        assert hour.start == BASE_TS
        assert (hour.up, hour.down) == (1, 1)
        assert rollup.open_bucket(Resolution.MINUTE).start == BASE_TS + 60

    @pytest.mark.asyncio
    async def test_parent_equals_sum_of_children(self, rollup, bucket_store):
        for i in range(120):
            status = HeartbeatStatus.DOWN if i % 7 == 0 else HeartbeatStatus.UP
            await rollup.ingest(make_heartbeat(1, BASE_TS + i * 60 + 10, status=status, ping=float(i)))
        await rollup.close_elapsed(BASE_TS + 2 * 3600 + 1)

        for hour_start in (BASE_TS, BASE_TS + 3600):
            hour = await bucket_store.get(1, Resolution.HOUR, hour_start)
            minutes = await bucket_store.range(1, Resolution.MINUTE, hour_start, hour_start + 3600)
            assert len(minutes) == 60
            assert hour.up == sum(m.up for m in minutes)
            assert hour.down == sum(m.down for m in minutes)
            assert hour.weight == sum(m.weight for m in minutes)
            expected_ping = sum(m.avg_ping * m.weight for m in minutes) / hour.weight
            assert hour.avg_ping == pytest.approx(expected_ping)

        day = rollup.open_bucket(Resolution.DAY)
        assert day.up + day.down == 120

    @pytest.mark.asyncio
    async def test_gap_closes_every_elapsed_level(self, rollup, bucket_store):
        await rollup.ingest(make_heartbeat(1, BASE_TS + 5))
        # 跨过两天后再写入
        await rollup.ingest(make_heartbeat(1, BASE_TS + 2 * 86400 + 5))

        day_start = Resolution.DAY.floor(BASE_TS)
        assert (await bucket_store.get(1, Resolution.MINUTE, BASE_TS)).up == 1
        assert (await bucket_store.get(1, Resolution.HOUR, BASE_TS)).up == 1
        assert (await bucket_store.get(1, Resolution.DAY, day_start)).up == 1
        assert rollup.open_bucket(Resolution.HOUR) is None
        assert rollup.open_bucket(Resolution.DAY) is None

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, rollup, bucket_store):
        await rollup.ingest(make_heartbeat(1, BASE_TS + 5))
        first = await rollup.close_elapsed(BASE_TS + 61)
        second = await rollup.close_elapsed(BASE_TS + 61)
        assert [b.resolution for b in first] == [Resolution.MINUTE]
        assert second == []
        rows = await bucket_store.range(1, Resolution.MINUTE, BASE_TS, BASE_TS + 3600)
        assert len(rows) == 1
        # 重复保存同一个桶不会覆盖
        assert await bucket_store.save(first[0]) is False

    @pytest.mark.asyncio
    async def test_late_heartbeat_is_logged_but_not_aggregated(self, rollup, bucket_store, event_log):
        await rollup.ingest(make_heartbeat(1, BASE_TS + 5))
        await rollup.ingest(make_heartbeat(1, BASE_TS + 65))

        with pytest.raises(LateHeartbeat):
            await rollup.ingest(make_heartbeat(1, BASE_TS + 10, status=HeartbeatStatus.DOWN))

        stored = await bucket_store.get(1, Resolution.MINUTE, BASE_TS)
        assert (stored.up, stored.down) == (1, 0)
        assert await event_log.count(1) == 3
        assert await event_log.count(1, include_late=False) == 2
        recent = await event_log.recent(1)
        assert [hb.late for hb in recent] == [False, True, False]

    @pytest.mark.asyncio
    async def test_out_of_order_within_open_minute_is_accepted(self, rollup):
        await rollup.ingest(make_heartbeat(1, BASE_TS + 40))
        bucket = await rollup.ingest(make_heartbeat(1, BASE_TS + 20))
        assert bucket.up == 2
        assert rollup.open_bucket(Resolution.MINUTE).start == BASE_TS

    @pytest.mark.asyncio
    async def test_invalid_heartbeat_touches_no_store(self, rollup, event_log):
        with pytest.raises(InvalidHeartbeat):
            await rollup.ingest(make_heartbeat(1, BASE_TS, status=9))
        assert await event_log.count(1) == 0

    @pytest.mark.asyncio
    async def test_wrong_monitor_rejected(self, rollup):
        with pytest.raises(InvalidHeartbeat):
            await rollup.ingest(make_heartbeat(2, BASE_TS))

    @pytest.mark.asyncio
    async def test_listener_sees_every_change(self, bucket_store, event_log):
        seen = []
        rollup = RollupEngine(1, bucket_store, event_log, listener=lambda b: seen.append((b.resolution, b.start)))
        await rollup.ingest(make_heartbeat(1, BASE_TS + 5))
        await rollup.ingest(make_heartbeat(1, BASE_TS + 65))
        assert seen == [
            (Resolution.MINUTE, BASE_TS),
            (Resolution.MINUTE, BASE_TS),
            (Resolution.HOUR, BASE_TS),
            (Resolution.MINUTE, BASE_TS + 60),
        ]


class TestRestore:
    @pytest.mark.asyncio
    async def test_restore_rebuilds_open_buckets(self, rollup, bucket_store, event_log):
        await rollup.ingest(make_heartbeat(1, BASE_TS + 5))
        await rollup.ingest(make_heartbeat(1, BASE_TS + 65))
        await rollup.ingest(make_heartbeat(1, BASE_TS + 70, status=HeartbeatStatus.DOWN))

        restarted = RollupEngine(1, bucket_store, event_log)
        await restarted.restore()

        assert restarted.is_closed(Resolution.MINUTE, BASE_TS)
        minute = restarted.open_bucket(Resolution.MINUTE)
        assert (minute.start, minute.up, minute.down) == (BASE_TS + 60, 1, 1)
        hour = restarted.open_bucket(Resolution.HOUR)
        assert (hour.start, hour.up, hour.down) == (BASE_TS, 1, 0)

        with pytest.raises(LateHeartbeat):
            await restarted.ingest(make_heartbeat(1, BASE_TS + 30))

        await restarted.ingest(make_heartbeat(1, BASE_TS + 130))
        stored = await bucket_store.get(1, Resolution.MINUTE, BASE_TS + 60)
        assert (stored.up, stored.down) == (1, 1)
        hour = restarted.open_bucket(Resolution.HOUR)
        assert (hour.up, hour.down) == (2, 1)

    @pytest.mark.asyncio
    async def test_restore_without_history(self, rollup):
        await rollup.restore()
        for resolution in Resolution:
            assert rollup.open_bucket(resolution) is None
