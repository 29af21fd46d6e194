from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Optional, Protocol, Tuple

from authledger.logging import get_logger
from authledger.storage.models import utcnow

logger = get_logger(__name__)


class RateLimitBackend(Protocol):
    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> Tuple[bool, int, int]:
        ...

    async def check_window_limit(
        self, key: str, limit: int, window_seconds: int
    ) -> Tuple[bool, int, int]:
        ...


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_seconds: int = 0


class RateLimiter:
    """Request limits backed by Redis when available, else by process memory.

    ``check`` is a token bucket that refills continuously, suited to bursty
    traffic such as logins. ``check_window`` is a hard cap: at most ``limit``
    requests until ``window_seconds`` have passed since the first one.
    """

    def __init__(
        self,
        cache: Optional[RateLimitBackend] = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.cache = cache
        self._clock = clock
        self._local_buckets: Dict[str, Tuple[float, datetime]] = {}
        self._local_windows: Dict[str, Tuple[int, datetime]] = {}
        self._local_lock = asyncio.Lock()

    @staticmethod
    def _window(key: str, window_seconds: int) -> int:
        if window_seconds <= 0:
            logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
            return 60
        return window_seconds

    async def check(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> RateLimitDecision:
        if limit <= 0:
            return RateLimitDecision(allowed=True, remaining=limit)
        window_seconds = self._window(key, window_seconds)
        if self.cache is not None:
            allowed, remaining, reset_seconds = await self.cache.check_rate_limit(
                key, limit, window_seconds, cost=cost
            )
            return RateLimitDecision(allowed, remaining, reset_seconds)

        now = self._clock()
        refill_rate = float(limit) / float(window_seconds)
        async with self._local_lock:
            tokens, last_ts = self._local_buckets.get(key, (float(limit), now))
            elapsed = max(0.0, (now - last_ts).total_seconds())
            tokens = min(float(limit), tokens + elapsed * refill_rate)
            allowed = tokens >= cost
            if allowed:
                tokens -= cost
            self._local_buckets[key] = (tokens, now)
            reset_seconds = int((cost - tokens) / refill_rate) + 1 if not allowed else 0
        return RateLimitDecision(allowed, int(tokens), reset_seconds)

    async def check_window(self, key: str, limit: int, window_seconds: int) -> RateLimitDecision:
        if limit <= 0:
            return RateLimitDecision(allowed=True, remaining=limit)
        window_seconds = self._window(key, window_seconds)
        if self.cache is not None:
            allowed, remaining, reset_seconds = await self.cache.check_window_limit(
                key, limit, window_seconds
            )
            return RateLimitDecision(allowed, remaining, reset_seconds)

        now = self._clock()
        async with self._local_lock:
            count, started = self._local_windows.get(key, (0, now))
            elapsed = (now - started).total_seconds()
            if elapsed >= window_seconds:
                count, started, elapsed = 0, now, 0.0
            if count >= limit:
                return RateLimitDecision(False, 0, max(1, math.ceil(window_seconds - elapsed)))
            count += 1
            self._local_windows[key] = (count, started)
        return RateLimitDecision(True, limit - count, 0)

    def reset(self) -> None:
        self._local_buckets.clear()
        self._local_windows.clear()
