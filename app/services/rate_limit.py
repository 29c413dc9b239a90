# services/rate_limit.py - Per-user moving window limiter
# ============================================================================

import time
from typing import Callable, Optional

from fastapi.concurrency import run_in_threadpool
from limits import RateLimitItemPerSecond
from limits.storage import Storage, storage_from_string
from limits.strategies import MovingWindowRateLimiter

from app.core.config import settings

_storage: Optional[Storage] = None


def get_limiter_storage() -> Storage:
    """Counters in process memory, or in redis when REDIS_URL is set."""
    global _storage
    if _storage is None:
        _storage = storage_from_string(settings.REDIS_URL or "memory://")
    return _storage


def set_limiter_storage(storage: Optional[Storage]):
    global _storage
    _storage = storage


class SlidingWindowRateLimiter:
    """
    Allow at most ``limit`` hits per ``window_seconds`` for each key.

    Limits are read on every call so a changed setting applies immediately.
    """

    def __init__(
        self,
        limit: Callable[[], int],
        window_seconds: Callable[[], int],
        storage: Optional[Storage] = None,
        namespace: str = "ai",
    ):
        self._limit = limit
        self._window = window_seconds
        self._storage = storage
        self._namespace = namespace

    @property
    def strategy(self) -> MovingWindowRateLimiter:
        return MovingWindowRateLimiter(self._storage or get_limiter_storage())

    def _item(self) -> RateLimitItemPerSecond:
        return RateLimitItemPerSecond(self._limit(), self._window())

    async def hit(self, key: str) -> bool:
        """Record a hit for ``key``; False means the window is already full."""
        return await run_in_threadpool(self.strategy.hit, self._item(), self._namespace, key)

    async def retry_after(self, key: str) -> int:
        stats = await run_in_threadpool(self.strategy.get_window_stats, self._item(), self._namespace, key)
        return max(1, int(stats.reset_time - time.time()) + 1)

    async def reset(self, key: str):
        await run_in_threadpool(self.strategy.clear, self._item(), self._namespace, key)
