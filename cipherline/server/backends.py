from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from redis.asyncio import Redis

from cipherline.core.bus import Broker, MemoryBroker, RedisBroker
from cipherline.core.kv import KeyValueStore, MemoryKeyValue, RedisKeyValue
from cipherline.core.queue import JobQueue, MemoryJobQueue, RedisJobQueue

from .config import Settings

log = logging.getLogger("cipherline.server.backends")


@dataclass
class Backends:
    kv: KeyValueStore
    broker: Broker
    queue: JobQueue
    redis: Optional[Redis] = None

    async def close(self) -> None:
        if self.redis is not None:
            await self.redis.aclose()


def build_backends(settings: Settings) -> Backends:
    """Shared clients for one process: Redis when configured, in-memory otherwise."""
    if settings.in_memory:
        log.warning("No redis_url configured: single-instance mode with in-memory presence, bus and queue")
        return Backends(
            kv=MemoryKeyValue(),
            broker=MemoryBroker(),
            queue=MemoryJobQueue(visibility_timeout=settings.worker.visibility_timeout_secs),
        )
    client = Redis.from_url(settings.redis_url)
    return Backends(
        kv=RedisKeyValue(client),
        broker=RedisBroker(client),
        queue=RedisJobQueue(
            client,
            name=settings.queue_name,
            visibility_timeout=settings.worker.visibility_timeout_secs,
        ),
        redis=client,
    )


__all__ = ["Backends", "build_backends"]
