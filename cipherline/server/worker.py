from __future__ import annotations

import asyncio
import logging
from typing import Optional

from cipherline.core.proto import Job, QueuedJob, StoreMessageJob, UpdateStatusJob
from cipherline.core.queue import JobQueue
from cipherline.core.store import MessageStore

log = logging.getLogger("cipherline.server.worker")


class PersistenceWorker:
    """Drains the durable queue into the message store.

    A job that raises is retried with exponential backoff; after max_attempts
    it is parked on the failed list and logged at ERROR for an operator.
    Retried jobs are applied again from scratch, which is safe because both
    job kinds are idempotent.
    """

    def __init__(
        self,
        queue: JobQueue,
        store: MessageStore,
        *,
        max_attempts: int = 5,
        backoff_base: float = 0.5,
        backoff_max: float = 30.0,
        poll_timeout: float = 1.0,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.queue = queue
        self.store = store
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.poll_timeout = poll_timeout

    def backoff(self, attempts: int) -> float:
        return min(self.backoff_max, self.backoff_base * (2 ** max(0, attempts - 1)))

    async def apply(self, job: Job) -> None:
        if isinstance(job, StoreMessageJob):
            if await self.store.upsert(job.message):
                log.info("Message %s stored", job.message.message_id)
        elif isinstance(job, UpdateStatusJob):
            if await self.store.update_status(job.message_id, job.status, actor=job.actor):
                log.info("Message %s status updated to %s", job.message_id, job.status.value)
        else:
            raise TypeError(f"unknown job type {type(job).__name__}")

    async def process_one(self, timeout: Optional[float] = None) -> bool:
        """Handle at most one job. Returns False if none was available."""
        entry = await self.queue.reserve(self.poll_timeout if timeout is None else timeout)
        if entry is None:
            return False
        await self._execute(entry)
        return True

    async def _execute(self, entry: QueuedJob) -> None:
        try:
            await self.apply(entry.job)
        except Exception as exc:
            entry.attempts += 1
            entry.last_error = f"{type(exc).__name__}: {exc}"
            if entry.attempts >= self.max_attempts:
                await self.queue.fail(entry)
                log.error(
                    "Job %s (%s) failed permanently after %d attempt(s): %s",
                    entry.id, entry.job.kind, entry.attempts, entry.last_error,
                )
            else:
                delay = self.backoff(entry.attempts)
                await self.queue.retry(entry, delay)
                log.warning(
                    "Job %s (%s) attempt %d failed, retrying in %.2fs: %s",
                    entry.id, entry.job.kind, entry.attempts, delay, entry.last_error,
                )
            return
        await self.queue.complete(entry)
        log.debug("Job %s completed", entry.id)

    async def drain(self) -> int:
        """Process until nothing is immediately available."""
        handled = 0
        while await self.process_one(timeout=0):
            handled += 1
        return handled

    async def run(self, stop_event: asyncio.Event) -> None:
        stalled = await self.queue.requeue_stalled()
        log.info("Persistence worker started (%d stalled job(s) requeued)", stalled)
        while not stop_event.is_set():
            try:
                await self.process_one()
            except asyncio.CancelledError:
                raise
            except Exception:
                # queue backend unavailable; a reserved job returns when its lease expires
                log.exception("Worker loop error")
                await asyncio.sleep(self.poll_timeout)
        log.info("Persistence worker stopped")


__all__ = ["PersistenceWorker"]
