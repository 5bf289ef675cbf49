"""后台任务测试 — bucket_closer, stat_retention。"""
import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from pulseboard.services.buckets import Bucket, Resolution
from pulseboard.tasks.bucket_closer import bucket_closer_loop
from pulseboard.tasks.stat_retention import cleanup_expired_stats, stat_retention_loop

from tests.conftest import BASE_TS, make_heartbeat

DAY = 86400


def bucket(resolution: Resolution, start: int) -> Bucket:
    return Bucket(monitor_id=1, resolution=resolution, start=resolution.floor(start), up=1)


# ─── Bucket Closer ─────────────────────────────────────────────────

class TestBucketCloser:
    @pytest.mark.asyncio
    async def test_closes_idle_monitors(self, registry, bucket_store, clock):
        await registry.ingest(1, make_heartbeat(1, BASE_TS + 5))
        clock.set(BASE_TS + 3601)

        task = asyncio.create_task(bucket_closer_loop(registry, interval=0.01))
        await asyncio.sleep(0.2)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert (await bucket_store.get(1, Resolution.MINUTE, BASE_TS)).up == 1
        assert (await bucket_store.get(1, Resolution.HOUR, BASE_TS)).up == 1

    @pytest.mark.asyncio
    async def test_survives_errors(self):
        registry = MagicMock()
        registry.flush_all = AsyncMock(side_effect=RuntimeError("boom"))

        task = asyncio.create_task(bucket_closer_loop(registry, interval=0.01))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert registry.flush_all.await_count >= 2


# ─── Stat Retention ────────────────────────────────────────────────

class TestStatRetention:
    @pytest.mark.asyncio
    async def test_cleanup_respects_retention(self, bucket_store, event_log):
        for b in (
            bucket(Resolution.MINUTE, BASE_TS - 3 * DAY),
            bucket(Resolution.MINUTE, BASE_TS - DAY),
            bucket(Resolution.HOUR, BASE_TS - 100 * DAY),
            bucket(Resolution.HOUR, BASE_TS - 10 * DAY),
            bucket(Resolution.DAY, BASE_TS - 400 * DAY),
        ):
            assert await bucket_store.save(b)
        await event_log.append(make_heartbeat(1, BASE_TS - 200 * DAY))
        await event_log.append(make_heartbeat(1, BASE_TS - DAY))

        stats = await cleanup_expired_stats(bucket_store, event_log, now=BASE_TS)
        assert stats == {"heartbeats": 1, "minute": 1, "hour": 1}

        assert len(await bucket_store.latest(1, Resolution.MINUTE, 10)) == 1
        assert len(await bucket_store.latest(1, Resolution.HOUR, 10)) == 1
        # 天桶永久保留
        assert len(await bucket_store.latest(1, Resolution.DAY, 10)) == 1
        assert await event_log.count(1) == 1

    @pytest.mark.asyncio
    async def test_cleanup_nothing_expired(self, bucket_store, event_log):
        stats = await cleanup_expired_stats(bucket_store, event_log, now=BASE_TS)
        assert stats == {"heartbeats": 0, "minute": 0, "hour": 0}

    @pytest.mark.asyncio
    async def test_loop_runs_cleanup(self, bucket_store, event_log):
        await bucket_store.save(bucket(Resolution.MINUTE, BASE_TS - 30 * DAY))

        task = asyncio.create_task(stat_retention_loop(bucket_store, event_log, interval=3600))
        await asyncio.sleep(0.2)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert await bucket_store.latest(1, Resolution.MINUTE, 10) == []
