"""Background sweeps for rate-limit windows and expired sessions.

The worker wakes once a second to check its stop flag, so ``stop()`` returns
within about a second. Rate-limit eviction runs every
``rate_limit_interval`` seconds; the expired-session sweep has its own
(longer) cadence.
"""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING, Callable, Optional

from taskkeeper.logging import get_logger

if TYPE_CHECKING:
    from taskkeeper.service.rate_limit import RateLimiterRegistry
    from taskkeeper.storage.memory import MemoryStore
    from taskkeeper.storage.surreal import SurrealStore

logger = get_logger(__name__)

DEFAULT_RATE_LIMIT_INTERVAL_SECONDS = 60
DEFAULT_SESSION_INTERVAL_SECONDS = 60 * 60
STOP_CHECK_SECONDS = 1.0


class CleanupWorker:
    def __init__(
        self,
        limiters: "RateLimiterRegistry",
        store: Optional["SurrealStore | MemoryStore"] = None,
        *,
        rate_limit_interval: float = DEFAULT_RATE_LIMIT_INTERVAL_SECONDS,
        session_interval: float = DEFAULT_SESSION_INTERVAL_SECONDS,
        tick: float = STOP_CHECK_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.limiters = limiters
        self.store = store
        self.rate_limit_interval = rate_limit_interval
        self.session_interval = session_interval
        self.tick = tick
        self._clock = clock
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._last_rate_limit_run = 0.0
        self._last_session_run = 0.0

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the background worker."""
        if self._running:
            logger.warning("cleanup_worker_already_running")
            return

        self._running = True
        now = self._clock()
        self._last_rate_limit_run = now
        self._last_session_run = now
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            "cleanup_worker_started",
            rate_limit_interval=self.rate_limit_interval,
            session_interval=self.session_interval,
        )

    async def stop(self) -> None:
        """Signal the loop to exit and wait for it."""
        self._running = False
        if self._task:
            task, self._task = self._task, None
            try:
                await asyncio.wait_for(task, timeout=self.tick * 5)
            except asyncio.TimeoutError:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        logger.info("cleanup_worker_stopped")

    async def _run_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.tick)
            if not self._running:
                break
            now = self._clock()
            if now - self._last_rate_limit_run >= self.rate_limit_interval:
                self._last_rate_limit_run = now
                self.sweep_rate_limits()
            if self.store is not None and now - self._last_session_run >= self.session_interval:
                self._last_session_run = now
                await self.sweep_sessions()

    def sweep_rate_limits(self) -> int:
        try:
            evicted = self.limiters.cleanup_all()
        except Exception as exc:
            logger.error(
                "rate_limit_sweep_failed",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return 0
        if evicted:
            logger.info("rate_limit_sweep", evicted=evicted)
        return evicted

    async def sweep_sessions(self) -> Optional[int]:
        if self.store is None:
            return None
        try:
            removed = await self.store.cleanup_expired_sessions()
        except Exception as exc:
            logger.error(
                "session_sweep_failed",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return None
        if removed:
            logger.info("session_sweep", removed=removed)
        return removed

    async def run_once(self) -> tuple[int, Optional[int]]:
        """Run both sweeps immediately, outside the schedule."""
        return self.sweep_rate_limits(), await self.sweep_sessions()
