from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Deque, Dict, List, Optional, Tuple

from pydantic import ValidationError
from redis.asyncio import Redis

from ..utils import codec
from .proto import Job, QueuedJob

"""
Durable job queue
-----------------
Every state change (new message, delivered, read) is enqueued here in addition
to being published on the relay bus. A reserved job is leased to its worker
for visibility_timeout seconds. If the lease runs out before the worker
completes, retries or fails the job, the next reserve() on any worker puts it
back in front of the waiting jobs. A worker that dies mid-job therefore only
delays the job. Handlers must be idempotent, since a slow worker and the one
that took over its lease can both apply the same job.

Redis layout for queue <name>:
  <name>:waiting   list, LPUSH in / RPOP out (FIFO)
  <name>:active    sorted set of reserved entries, score = lease expiry
  <name>:delayed   sorted set, score = unix time the retry becomes due
  <name>:failed    list of entries that exhausted their attempts
"""

log = logging.getLogger("cipherline.queue")

DEFAULT_QUEUE = "messages"
DEFAULT_VISIBILITY_TIMEOUT = 30.0
POLL_INTERVAL = 0.05

# KEYS: delayed, waiting, active   ARGV: now
_RECLAIM = """
local due = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1])
for _, raw in ipairs(due) do
  redis.call('ZREM', KEYS[1], raw)
  redis.call('LPUSH', KEYS[2], raw)
end
local expired = redis.call('ZRANGEBYSCORE', KEYS[3], '-inf', ARGV[1])
for _, raw in ipairs(expired) do
  redis.call('ZREM', KEYS[3], raw)
  redis.call('RPUSH', KEYS[2], raw)
end
"""

_REQUEUE_EXPIRED = _RECLAIM + "return #expired\n"

# ARGV: now, lease expiry
_RESERVE = _RECLAIM + """
local raw = redis.call('RPOP', KEYS[2])
if raw then
  redis.call('ZADD', KEYS[3], ARGV[2], raw)
end
return raw
"""


def _decode(raw: bytes | str) -> QueuedJob:
    entry = QueuedJob.model_validate(codec.loads(raw))
    entry._raw = raw if isinstance(raw, bytes) else raw.encode("utf-8")
    return entry


class JobQueue:
    async def enqueue(self, job: Job) -> str:
        raise NotImplementedError

    async def reserve(self, timeout: float = 1.0) -> Optional[QueuedJob]:
        raise NotImplementedError

    async def complete(self, entry: QueuedJob) -> None:
        raise NotImplementedError

    async def retry(self, entry: QueuedJob, delay: float) -> None:
        raise NotImplementedError

    async def fail(self, entry: QueuedJob) -> None:
        raise NotImplementedError

    async def failed(self) -> List[QueuedJob]:
        raise NotImplementedError

    async def depth(self) -> int:
        """Jobs waiting or scheduled for retry."""
        raise NotImplementedError

    async def requeue_stalled(self) -> int:
        """Return reservations whose lease ran out to the queue."""
        raise NotImplementedError


class RedisJobQueue(JobQueue):
    def __init__(
        self,
        client: Redis,
        *,
        name: str = DEFAULT_QUEUE,
        visibility_timeout: float = DEFAULT_VISIBILITY_TIMEOUT,
    ) -> None:
        self._redis = client
        self.name = name
        self.visibility_timeout = visibility_timeout
        self._waiting = f"{name}:waiting"
        self._active = f"{name}:active"
        self._delayed = f"{name}:delayed"
        self._failed = f"{name}:failed"
        self._keys = [self._delayed, self._waiting, self._active]
        self._reserve = client.register_script(_RESERVE)
        self._requeue = client.register_script(_REQUEUE_EXPIRED)

    async def enqueue(self, job: Job) -> str:
        entry = QueuedJob(job=job)
        await self._redis.lpush(self._waiting, codec.dumps(entry))
        log.debug("Enqueued %s job %s", job.kind, entry.id)
        return entry.id

    async def reserve(self, timeout: float = 1.0) -> Optional[QueuedJob]:
        deadline = time.monotonic() + timeout
        while True:
            now = time.time()
            raw = await self._reserve(keys=self._keys, args=[now, now + self.visibility_timeout])
            if raw:
                break
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(POLL_INTERVAL, remaining))
        try:
            return _decode(raw)
        except (ValueError, ValidationError):
            log.error("Unreadable job moved to %s: %r", self._failed, raw[:200])
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.zrem(self._active, raw)
                pipe.lpush(self._failed, raw)
                await pipe.execute()
            return None

    async def complete(self, entry: QueuedJob) -> None:
        await self._redis.zrem(self._active, entry._raw)

    async def retry(self, entry: QueuedJob, delay: float) -> None:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.zrem(self._active, entry._raw)
            pipe.zadd(self._delayed, {codec.dumps(entry): time.time() + delay})
            await pipe.execute()

    async def fail(self, entry: QueuedJob) -> None:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.zrem(self._active, entry._raw)
            pipe.lpush(self._failed, codec.dumps(entry))
            await pipe.execute()

    async def failed(self) -> List[QueuedJob]:
        return [_decode(raw) for raw in await self._redis.lrange(self._failed, 0, -1)]

    async def depth(self) -> int:
        return await self._redis.llen(self._waiting) + await self._redis.zcard(self._delayed)

    async def requeue_stalled(self) -> int:
        moved = int(await self._requeue(keys=self._keys, args=[time.time()]))
        if moved:
            log.warning("Requeued %d stalled job(s) from %s", moved, self._active)
        return moved


class MemoryJobQueue(JobQueue):
    """Single-process queue with the same lease/retry semantics."""

    def __init__(self, *, visibility_timeout: float = DEFAULT_VISIBILITY_TIMEOUT) -> None:
        self.visibility_timeout = visibility_timeout
        self._waiting: Deque[QueuedJob] = deque()
        self._active: Dict[str, Tuple[float, QueuedJob]] = {}
        self._delayed: List[Tuple[float, QueuedJob]] = []
        self._failed: List[QueuedJob] = []
        self._wakeup = asyncio.Event()

    def _push(self, entry: QueuedJob) -> None:
        self._waiting.append(entry)
        self._wakeup.set()

    def _reclaim(self) -> int:
        now = time.monotonic()
        due = [item for item in self._delayed if item[0] <= now]
        for item in due:
            self._delayed.remove(item)
            self._push(item[1])
        expired = [job_id for job_id, (lease, _) in self._active.items() if lease <= now]
        for job_id in expired:
            _, entry = self._active.pop(job_id)
            self._waiting.appendleft(entry)
        if expired:
            self._wakeup.set()
        return len(expired)

    def _next_event(self) -> Optional[float]:
        times = [ready for ready, _ in self._delayed] + [lease for lease, _ in self._active.values()]
        return min(times) if times else None

    async def enqueue(self, job: Job) -> str:
        entry = QueuedJob(job=job)
        self._push(entry)
        log.debug("Enqueued %s job %s", job.kind, entry.id)
        return entry.id

    async def reserve(self, timeout: float = 1.0) -> Optional[QueuedJob]:
        deadline = time.monotonic() + timeout
        while True:
            self._reclaim()
            if self._waiting:
                entry = self._waiting.popleft()
                self._active[entry.id] = (time.monotonic() + self.visibility_timeout, entry)
                return entry
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            next_event = self._next_event()
            if next_event is not None:
                remaining = min(remaining, max(0.0, next_event - time.monotonic()))
            self._wakeup.clear()
            try:
                await asyncio.wait_for(self._wakeup.wait(), remaining)
            except asyncio.TimeoutError:
                pass

    def _release(self, entry: QueuedJob) -> None:
        held = self._active.get(entry.id)
        if held is not None and held[1] is entry:
            del self._active[entry.id]

    async def complete(self, entry: QueuedJob) -> None:
        self._release(entry)

    async def retry(self, entry: QueuedJob, delay: float) -> None:
        self._release(entry)
        self._delayed.append((time.monotonic() + delay, entry))

    async def fail(self, entry: QueuedJob) -> None:
        self._release(entry)
        self._failed.append(entry)

    async def failed(self) -> List[QueuedJob]:
        return list(self._failed)

    async def depth(self) -> int:
        return len(self._waiting) + len(self._delayed)

    async def requeue_stalled(self) -> int:
        moved = self._reclaim()
        if moved:
            log.warning("Requeued %d stalled job(s)", moved)
        return moved


__all__ = ["JobQueue", "RedisJobQueue", "MemoryJobQueue", "DEFAULT_QUEUE", "DEFAULT_VISIBILITY_TIMEOUT"]
