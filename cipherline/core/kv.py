from __future__ import annotations

import logging
import time
from typing import Dict, Optional, Tuple

from redis.asyncio import Redis

log = logging.getLogger("cipherline.kv")


class KeyValueStore:
    """Atomic per-key get/set/delete shared by every server instance.

    ttl is in whole seconds; None keeps the key until it is deleted.
    """

    async def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    async def set(self, key: str, value: str, *, ttl: Optional[int] = None) -> None:
        raise NotImplementedError

    async def add(self, key: str, value: str, *, ttl: Optional[int] = None) -> bool:
        """Set only if absent. Returns True if this call wrote the key."""
        raise NotImplementedError

    async def delete(self, key: str) -> None:
        raise NotImplementedError


class RedisKeyValue(KeyValueStore):
    def __init__(self, client: Redis) -> None:
        self._redis = client

    async def get(self, key: str) -> Optional[str]:
        value = await self._redis.get(key)
        if value is None:
            return None
        return value.decode("utf-8") if isinstance(value, bytes) else value

    async def set(self, key: str, value: str, *, ttl: Optional[int] = None) -> None:
        await self._redis.set(key, value, ex=ttl)

    async def add(self, key: str, value: str, *, ttl: Optional[int] = None) -> bool:
        return bool(await self._redis.set(key, value, ex=ttl, nx=True))

    async def delete(self, key: str) -> None:
        await self._redis.delete(key)


class MemoryKeyValue(KeyValueStore):
    """Process-local store. Instances sharing one object behave like one Redis."""

    def __init__(self) -> None:
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}

    def _live(self, key: str) -> Optional[str]:
        item = self._data.get(key)
        if item is None:
            return None
        value, expires = item
        if expires is not None and expires <= time.monotonic():
            del self._data[key]
            return None
        return value

    def _expiry(self, ttl: Optional[int]) -> Optional[float]:
        return None if ttl is None else time.monotonic() + ttl

    async def get(self, key: str) -> Optional[str]:
        return self._live(key)

    async def set(self, key: str, value: str, *, ttl: Optional[int] = None) -> None:
        self._data[key] = (value, self._expiry(ttl))

    async def add(self, key: str, value: str, *, ttl: Optional[int] = None) -> bool:
        if self._live(key) is not None:
            return False
        self._data[key] = (value, self._expiry(ttl))
        return True

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)


__all__ = ["KeyValueStore", "RedisKeyValue", "MemoryKeyValue"]
