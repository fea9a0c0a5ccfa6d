import asyncio

import pytest

from cipherline.core import crypto, proto
from cipherline.server.worker import PersistenceWorker


def _message(keys, message_id="m1"):
    return proto.Message(
        message_id=message_id,
        sender="alice",
        receiver="bob",
        envelope=crypto.encrypt(b"hello", keys.public_key),
    )


@pytest.fixture
def worker(queue, store):
    return PersistenceWorker(queue, store, max_attempts=3, backoff_base=0, poll_timeout=0.05)


# -----------------------------
# Queue semantics
# -----------------------------

@pytest.mark.asyncio
async def test_queue_is_fifo(queue):
    first = await queue.enqueue(proto.UpdateStatusJob(message_id="a", status="read"))
    second = await queue.enqueue(proto.UpdateStatusJob(message_id="b", status="read"))
    assert await queue.depth() == 2
    assert (await queue.reserve(0)).id == first
    assert (await queue.reserve(0)).id == second
    assert await queue.reserve(0) is None
    assert await queue.depth() == 0


@pytest.mark.asyncio
async def test_reserve_waits_for_enqueue(queue):
    waiter = asyncio.create_task(queue.reserve(1.0))
    await asyncio.sleep(0)
    job_id = await queue.enqueue(proto.UpdateStatusJob(message_id="a", status="delivered"))
    entry = await waiter
    assert entry is not None and entry.id == job_id


@pytest.mark.asyncio
async def test_reserved_job_keeps_its_payload(queue, bob_keys):
    msg = _message(bob_keys)
    await queue.enqueue(proto.StoreMessageJob(message=msg))
    entry = await queue.reserve(0)
    assert entry.job.message == msg
    assert entry.attempts == 0


@pytest.mark.asyncio
async def test_live_lease_is_not_requeued(queue):
    job_id = await queue.enqueue(proto.UpdateStatusJob(message_id="a", status="delivered"))
    assert (await queue.reserve(0)).id == job_id

    assert await queue.requeue_stalled() == 0
    assert await queue.reserve(0) is None


@pytest.mark.asyncio
async def test_expired_lease_is_reclaimed_by_reserve(queue_factory):
    q = queue_factory(visibility_timeout=0.05)
    job_id = await q.enqueue(proto.UpdateStatusJob(message_id="a", status="delivered"))
    assert (await q.reserve(0)).id == job_id
    assert await q.reserve(0) is None

    retaken = await q.reserve(1.0)
    assert retaken is not None and retaken.id == job_id


@pytest.mark.asyncio
async def test_reclaimed_job_goes_ahead_of_waiting_jobs(queue_factory):
    q = queue_factory(visibility_timeout=0.05)
    stalled = await q.enqueue(proto.UpdateStatusJob(message_id="a", status="read"))
    await q.reserve(0)
    later = await q.enqueue(proto.UpdateStatusJob(message_id="b", status="read"))
    await asyncio.sleep(0.1)

    assert await q.requeue_stalled() == 1
    assert (await q.reserve(0)).id == stalled
    assert (await q.reserve(0)).id == later


@pytest.mark.asyncio
async def test_completed_job_is_not_reclaimed(queue_factory):
    q = queue_factory(visibility_timeout=0.05)
    await q.enqueue(proto.UpdateStatusJob(message_id="a", status="read"))
    await q.complete(await q.reserve(0))
    await asyncio.sleep(0.1)
    assert await q.requeue_stalled() == 0
    assert await q.reserve(0) is None


@pytest.mark.asyncio
async def test_retry_is_delayed(queue):
    await queue.enqueue(proto.UpdateStatusJob(message_id="a", status="delivered"))
    entry = await queue.reserve(0)
    entry.attempts += 1
    await queue.retry(entry, 0.05)
    assert await queue.depth() == 1
    assert await queue.reserve(0) is None

    again = await queue.reserve(1.0)
    assert again.id == entry.id
    assert again.attempts == 1


@pytest.mark.asyncio
async def test_failed_jobs_are_kept(queue):
    await queue.enqueue(proto.UpdateStatusJob(message_id="a", status="read"))
    entry = await queue.reserve(0)
    entry.last_error = "boom"
    await queue.fail(entry)
    assert [f.last_error for f in await queue.failed()] == ["boom"]
    assert await queue.depth() == 0
    assert await queue.requeue_stalled() == 0


# -----------------------------
# Worker
# -----------------------------

@pytest.mark.asyncio
async def test_backoff_is_exponential_and_capped(queue, store):
    w = PersistenceWorker(queue, store, backoff_base=0.5, backoff_max=30.0)
    assert [w.backoff(n) for n in (1, 2, 3, 4)] == [0.5, 1.0, 2.0, 4.0]
    assert w.backoff(20) == 30.0


@pytest.mark.asyncio
async def test_max_attempts_must_be_positive(queue, store):
    with pytest.raises(ValueError):
        PersistenceWorker(queue, store, max_attempts=0)


@pytest.mark.asyncio
async def test_duplicate_store_jobs_write_one_row(worker, queue, store, bob_keys):
    msg = _message(bob_keys)
    await queue.enqueue(proto.StoreMessageJob(message=msg))
    await queue.enqueue(proto.StoreMessageJob(message=msg))
    assert await worker.drain() == 2
    assert [m.message_id for m in await store.find_by_participant("bob")] == ["m1"]
    assert await queue.failed() == []


@pytest.mark.asyncio
async def test_receipts_out_of_order_keep_highest_status(worker, queue, store, bob_keys):
    await queue.enqueue(proto.StoreMessageJob(message=_message(bob_keys)))
    await queue.enqueue(proto.UpdateStatusJob(message_id="m1", status="read", actor="bob"))
    await queue.enqueue(proto.UpdateStatusJob(message_id="m1", status="delivered", actor="bob"))
    await worker.drain()
    assert (await store.get("m1")).status is proto.MessageStatus.READ


@pytest.mark.asyncio
async def test_receipt_before_store_is_retried(worker, queue, store, bob_keys):
    await queue.enqueue(proto.UpdateStatusJob(message_id="m1", status="delivered", actor="bob"))
    await queue.enqueue(proto.StoreMessageJob(message=_message(bob_keys)))
    await worker.drain()

    assert (await store.get("m1")).status is proto.MessageStatus.DELIVERED
    assert await queue.failed() == []
    assert await queue.depth() == 0


@pytest.mark.asyncio
async def test_job_fails_permanently_after_max_attempts(worker, queue, store, caplog):
    await queue.enqueue(proto.UpdateStatusJob(message_id="ghost", status="read"))
    with caplog.at_level("ERROR", logger="cipherline.server.worker"):
        await worker.drain()

    failed = await queue.failed()
    assert len(failed) == 1
    assert failed[0].attempts == 3
    assert "MessageNotFound" in failed[0].last_error
    assert await queue.depth() == 0
    assert any("failed permanently" in r.message for r in caplog.records)


@pytest.mark.asyncio
async def test_run_stops_on_event(queue, store, bob_keys):
    w = PersistenceWorker(queue, store, poll_timeout=0.01)
    stop = asyncio.Event()
    task = asyncio.create_task(w.run(stop))
    await queue.enqueue(proto.StoreMessageJob(message=_message(bob_keys)))

    for _ in range(100):
        if await store.get("m1") is not None:
            break
        await asyncio.sleep(0.01)
    stop.set()
    await asyncio.wait_for(task, 1.0)
    assert await store.get("m1") is not None


@pytest.mark.asyncio
async def test_running_worker_takes_over_an_abandoned_job(queue_factory, store, bob_keys):
    queue = queue_factory(visibility_timeout=0.1)
    await queue.enqueue(proto.StoreMessageJob(message=_message(bob_keys)))
    # another consumer reserves the job and never acknowledges it
    assert await queue.reserve(0) is not None

    w = PersistenceWorker(queue, store, poll_timeout=0.02)
    stop = asyncio.Event()
    task = asyncio.create_task(w.run(stop))
    try:
        for _ in range(200):
            if await store.get("m1") is not None:
                break
            await asyncio.sleep(0.01)
    finally:
        stop.set()
        await asyncio.wait_for(task, 1.0)

    assert await store.get("m1") is not None
    assert await queue.depth() == 0
    assert await queue.failed() == []
    assert await queue.requeue_stalled() == 0
