"""Per-key fixed-window admission control.

Each protected endpoint class gets its own ``RateLimiter`` with its own
policy. Keys are client IPs. A key's window resets wholesale once
``window_seconds`` have elapsed since it opened; keys idle for more than two
windows are evicted by ``cleanup``.
"""

from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, Optional

from taskkeeper.logging import get_logger

logger = get_logger(__name__)

LOGIN = "login"
SIGNUP = "signup"
FORGOT_PASSWORD = "forgot_password"


@dataclass(frozen=True)
class RateLimitPolicy:
    max_requests: int
    window_seconds: int

    def __post_init__(self) -> None:
        if self.max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if self.window_seconds < 1:
            raise ValueError("window_seconds must be at least 1")


@dataclass
class _Window:
    count: int
    window_start: float


class RateLimiter:
    """Fixed-window counter guarded by a single lock.

    The lock is never held across I/O, so callers may use the limiter from
    both request handlers and the background sweep.
    """

    def __init__(
        self,
        policy: RateLimitPolicy,
        *,
        name: str = "default",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.policy = policy
        self.name = name
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[str, _Window] = {}

    def is_allowed(self, key: str) -> bool:
        now = self._clock()
        with self._lock:
            try:
                entry = self._entries.get(key)
                if entry is None:
                    self._entries[key] = _Window(count=1, window_start=now)
                    return True
                # A clock stepping backwards yields a negative delta, which
                # stays inside the current window.
                if now - entry.window_start >= self.policy.window_seconds:
                    entry.count = 1
                    entry.window_start = now
                    return True
                if entry.count >= self.policy.max_requests:
                    logger.info(
                        "rate_limit_denied",
                        limiter=self.name,
                        key=key,
                        count=entry.count,
                    )
                    return False
                entry.count += 1
                return True
            except MemoryError:
                logger.error("rate_limit_bookkeeping_failed", limiter=self.name, key=key)
                return True

    def get_remaining(self, key: str) -> int:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return self.policy.max_requests
            if now - entry.window_start >= self.policy.window_seconds:
                return self.policy.max_requests
            return max(0, self.policy.max_requests - entry.count)

    def retry_after(self, key: str) -> int:
        """Seconds until ``key`` starts a fresh window (0 if it already can)."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return 0
            elapsed = now - entry.window_start
            if elapsed >= self.policy.window_seconds:
                return 0
            if elapsed < 0:
                return self.policy.window_seconds
            return max(1, math.ceil(self.policy.window_seconds - elapsed))

    def cleanup(self) -> int:
        """Evict keys whose window opened more than two windows ago."""
        cutoff = self._clock() - 2 * self.policy.window_seconds
        with self._lock:
            stale = [key for key, entry in self._entries.items() if entry.window_start < cutoff]
            for key in stale:
                del self._entries[key]
        if stale:
            logger.debug("rate_limit_cleanup", limiter=self.name, evicted=len(stale))
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries


class RateLimiterRegistry:
    """The set of limiters owned by one application instance."""

    def __init__(self, limiters: Optional[Dict[str, RateLimiter]] = None) -> None:
        self._limiters: Dict[str, RateLimiter] = dict(limiters or {})

    @classmethod
    def from_settings(cls, settings, *, clock: Callable[[], float] = time.time) -> "RateLimiterRegistry":
        window = settings.rate_limit_window_seconds
        policies = {
            LOGIN: RateLimitPolicy(settings.login_rate_limit, window),
            SIGNUP: RateLimitPolicy(settings.signup_rate_limit, window),
            FORGOT_PASSWORD: RateLimitPolicy(settings.forgot_password_rate_limit, window),
        }
        return cls(
            {name: RateLimiter(policy, name=name, clock=clock) for name, policy in policies.items()}
        )

    def get(self, name: str) -> RateLimiter:
        try:
            return self._limiters[name]
        except KeyError:
            raise KeyError(f"no rate limiter named {name!r}") from None

    def __iter__(self) -> Iterator[RateLimiter]:
        return iter(list(self._limiters.values()))

    def cleanup_all(self) -> int:
        return sum(limiter.cleanup() for limiter in self)


__all__ = [
    "FORGOT_PASSWORD",
    "LOGIN",
    "SIGNUP",
    "RateLimitPolicy",
    "RateLimiter",
    "RateLimiterRegistry",
]
