"""Request rate limiting for the sync endpoint.

``RateLimiter`` is an explicit dependency: the application constructs one in
``create_app`` and stores it on ``app.state``.  The in-memory fixed-window
implementation is suitable for a single process; a shared backend can be
swapped in by implementing :meth:`RateLimiter.hit`.
"""

from __future__ import annotations

import abc
import math
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

DEFAULT_MAX_REQUESTS = 10
DEFAULT_WINDOW_SECONDS = 60.0


@dataclass(frozen=True)
class RateLimitDecision:
    """Result of counting one request against a key."""

    allowed: bool
    limit: int
    remaining: int
    reset_at: float  # epoch seconds

    def retry_after_seconds(self, now: float) -> int:
        return max(1, math.ceil(self.reset_at - now))

    def headers(self, now: float) -> dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": datetime.fromtimestamp(self.reset_at, UTC).isoformat(),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after_seconds(now))
        return headers


class RateLimiter(abc.ABC):
    """Counts requests per key and decides whether each is allowed."""

    @abc.abstractmethod
    async def hit(self, key: str) -> RateLimitDecision:
        ...


class InMemoryRateLimiter(RateLimiter):
    """Fixed-window counter held in process memory.

    Expired windows are pruned lazily on each hit, so no background task is
    needed.
    """

    def __init__(
        self,
        max_requests: int = DEFAULT_MAX_REQUESTS,
        window_s: float = DEFAULT_WINDOW_SECONDS,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_requests <= 0:
            raise ValueError("max_requests must be positive")
        if window_s <= 0:
            raise ValueError("window_s must be positive")
        self.max_requests = max_requests
        self.window_s = window_s
        self._clock = clock
        self._windows: dict[str, tuple[int, float]] = {}

    async def hit(self, key: str) -> RateLimitDecision:
        now = self._clock()
        self._prune(now)

        count, reset_at = self._windows.get(key, (0, now + self.window_s))
        if count >= self.max_requests:
            return RateLimitDecision(
                allowed=False, limit=self.max_requests, remaining=0, reset_at=reset_at
            )

        count += 1
        self._windows[key] = (count, reset_at)
        return RateLimitDecision(
            allowed=True,
            limit=self.max_requests,
            remaining=self.max_requests - count,
            reset_at=reset_at,
        )

    def _prune(self, now: float) -> None:
        expired = [key for key, (_, reset_at) in self._windows.items() if now >= reset_at]
        for key in expired:
            del self._windows[key]
