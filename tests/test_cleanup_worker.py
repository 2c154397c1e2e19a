"""Tests for the background cleanup worker."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

from conftest import FakeClock
from taskkeeper.service import cleanup_worker as cleanup_module
from taskkeeper.service.cleanup_worker import CleanupWorker
from taskkeeper.service.rate_limit import RateLimiter, RateLimiterRegistry, RateLimitPolicy
from taskkeeper.storage.memory import MemoryStore
from taskkeeper.storage.models import utcnow


def stale_registry():
    """A registry holding one key whose window opened three windows ago."""
    clock = FakeClock(1_000.0)
    limiter = RateLimiter(RateLimitPolicy(3, 60), name="login", clock=clock)
    limiter.is_allowed("10.0.0.1")
    clock.advance(180)
    return RateLimiterRegistry({"login": limiter}), limiter


async def expired_store():
    clock = FakeClock(utcnow())
    store = MemoryStore(clock=clock)
    await store.create_session("users:1")
    clock.advance(timedelta(days=8))
    return store


class TestLifecycle:
    async def test_start_and_stop(self):
        registry, _ = stale_registry()
        worker = CleanupWorker(registry, tick=0.01)

        await worker.start()
        assert worker.running
        await worker.stop()

        assert not worker.running
        assert worker._task is None

    async def test_second_start_is_ignored(self):
        registry, _ = stale_registry()
        worker = CleanupWorker(registry, tick=0.01)

        await worker.start()
        task = worker._task
        await worker.start()

        assert worker._task is task
        await worker.stop()

    async def test_stop_without_start_is_safe(self):
        registry, _ = stale_registry()
        await CleanupWorker(registry).stop()

    async def test_loop_runs_both_sweeps_on_schedule(self):
        registry, limiter = stale_registry()
        store = await expired_store()
        worker = CleanupWorker(
            registry, store, rate_limit_interval=0, session_interval=0, tick=0.01
        )

        await worker.start()
        await asyncio.sleep(0.1)
        await worker.stop()

        assert len(limiter) == 0
        assert store.sessions == {}

    async def test_session_sweep_waits_for_its_interval(self):
        registry, limiter = stale_registry()
        store = await expired_store()
        worker = CleanupWorker(
            registry, store, rate_limit_interval=0, session_interval=3600, tick=0.01
        )

        await worker.start()
        await asyncio.sleep(0.1)
        await worker.stop()

        assert len(limiter) == 0
        assert len(store.sessions) == 1


class TestSweeps:
    async def test_run_once(self):
        registry, _ = stale_registry()
        store = await expired_store()

        assert await CleanupWorker(registry, store).run_once() == (1, 1)

    async def test_run_once_without_store(self):
        registry, _ = stale_registry()

        assert await CleanupWorker(registry).run_once() == (1, None)

    def test_rate_limit_sweep_failure_is_logged(self):
        registry = MagicMock()
        registry.cleanup_all.side_effect = RuntimeError("boom")

        with patch.object(cleanup_module, "logger") as logger:
            assert CleanupWorker(registry).sweep_rate_limits() == 0

        logger.error.assert_called_once()
        assert logger.error.call_args.args[0] == "rate_limit_sweep_failed"

    async def test_session_sweep_failure_is_logged(self):
        registry, _ = stale_registry()
        store = MagicMock()
        store.cleanup_expired_sessions = AsyncMock(side_effect=ConnectionError("down"))

        with patch.object(cleanup_module, "logger") as logger:
            assert await CleanupWorker(registry, store).sweep_sessions() is None

        logger.error.assert_called_once()
        assert logger.error.call_args.kwargs["error_type"] == "ConnectionError"

    async def test_failing_sweep_does_not_stop_the_loop(self):
        registry = MagicMock()
        registry.cleanup_all.side_effect = RuntimeError("boom")
        worker = CleanupWorker(registry, rate_limit_interval=0, tick=0.01)

        with patch.object(cleanup_module, "logger"):
            await worker.start()
            await asyncio.sleep(0.1)
            assert worker.running
            await worker.stop()

        assert registry.cleanup_all.call_count > 1
