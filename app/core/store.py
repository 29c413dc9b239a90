# core/store.py - Transient key/value state (conversation state, OAuth state)
# ============================================================================
#
# Nothing stored here is durable. A single-instance deployment uses the
# in-memory expiring map; setting REDIS_URL switches every caller to a shared
# redis instance without changing call sites.

import json
import logging
import time
from typing import Any, Dict, Optional, Tuple

import redis.asyncio as redis

from app.core.config import settings

logger = logging.getLogger(__name__)


class TransientStore:
    """get / set / delete / sweep over JSON-serialisable values."""

    backend = "abstract"

    async def get(self, key: str) -> Optional[Any]:
        raise NotImplementedError

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        raise NotImplementedError

    async def delete(self, key: str) -> None:
        raise NotImplementedError

    async def pop(self, key: str) -> Optional[Any]:
        value = await self.get(key)
        if value is not None:
            await self.delete(key)
        return value

    async def sweep(self) -> int:
        """Drop expired entries, returning how many were removed."""
        raise NotImplementedError

    async def close(self) -> None:
        return None


class MemoryStore(TransientStore):
    backend = "memory"

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._data: Dict[str, Tuple[Any, float]] = {}

    async def get(self, key):
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._clock():
            del self._data[key]
            return None
        return value

    async def set(self, key, value, ttl_seconds):
        self._data[key] = (value, self._clock() + ttl_seconds)

    async def delete(self, key):
        self._data.pop(key, None)

    async def pop(self, key):
        value = await self.get(key)
        self._data.pop(key, None)
        return value

    async def sweep(self):
        now = self._clock()
        expired = [k for k, (_, expires_at) in self._data.items() if expires_at <= now]
        for key in expired:
            del self._data[key]
        return len(expired)

    def __len__(self):
        return len(self._data)


class RedisStore(TransientStore):
    backend = "redis"

    def __init__(self, client: redis.Redis, prefix: str = "marketplace:"):
        self._client = client
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str) -> "RedisStore":
        return cls(redis.from_url(url, decode_responses=True))

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def get(self, key):
        raw = await self._client.get(self._key(key))
        if raw is None:
            return None
        return json.loads(raw)

    async def set(self, key, value, ttl_seconds):
        await self._client.set(self._key(key), json.dumps(value), ex=max(1, int(ttl_seconds)))

    async def delete(self, key):
        await self._client.delete(self._key(key))

    async def pop(self, key):
        raw = await self._client.getdel(self._key(key))
        if raw is None:
            return None
        return json.loads(raw)

    async def sweep(self):
        # redis expires keys itself
        return 0

    async def close(self):
        await self._client.aclose()


_store: Optional[TransientStore] = None


def get_store() -> TransientStore:
    global _store
    if _store is None:
        if settings.REDIS_URL:
            _store = RedisStore.from_url(settings.REDIS_URL)
        else:
            _store = MemoryStore()
        logger.info(f"Transient store backend: {_store.backend}")
    return _store


def set_store(store: Optional[TransientStore]):
    global _store
    _store = store
