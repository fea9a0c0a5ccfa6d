import pytest

from cipherline.core import crypto, proto
from cipherline.core.store import MessageNotFound


def _message(keys, message_id, sender="alice", receiver="bob", created_at=1000):
    return proto.Message(
        message_id=message_id,
        sender=sender,
        receiver=receiver,
        envelope=crypto.encrypt(b"payload", keys.public_key),
        created_at=created_at,
    )


@pytest.mark.asyncio
async def test_upsert_is_idempotent(store, bob_keys):
    msg = _message(bob_keys, "m1")
    assert await store.upsert(msg) is True
    assert await store.upsert(msg) is False

    stored = await store.get("m1")
    assert stored == msg
    assert stored.status is proto.MessageStatus.SENT


@pytest.mark.asyncio
async def test_get_unknown_returns_none(store):
    assert await store.get("missing") is None


@pytest.mark.asyncio
async def test_status_only_moves_forward(store, bob_keys):
    await store.upsert(_message(bob_keys, "m1"))

    assert await store.update_status("m1", proto.MessageStatus.READ) is True
    assert await store.update_status("m1", proto.MessageStatus.DELIVERED) is False
    assert await store.update_status("m1", proto.MessageStatus.READ) is False
    assert (await store.get("m1")).status is proto.MessageStatus.READ


@pytest.mark.asyncio
async def test_status_sequence(store, bob_keys):
    await store.upsert(_message(bob_keys, "m1"))
    assert await store.update_status("m1", "delivered") is True
    assert (await store.get("m1")).status is proto.MessageStatus.DELIVERED
    assert await store.update_status("m1", "read") is True
    assert (await store.get("m1")).status is proto.MessageStatus.READ


@pytest.mark.asyncio
async def test_update_missing_message_raises(store):
    with pytest.raises(MessageNotFound):
        await store.update_status("nope", proto.MessageStatus.DELIVERED)


@pytest.mark.asyncio
async def test_only_receiver_can_advance_status(store, bob_keys):
    await store.upsert(_message(bob_keys, "m1"))
    assert await store.update_status("m1", "read", actor="mallory") is False
    assert await store.update_status("m1", "read", actor="alice") is False
    assert (await store.get("m1")).status is proto.MessageStatus.SENT
    assert await store.update_status("m1", "read", actor="bob") is True


@pytest.mark.asyncio
async def test_find_by_participant_orders_by_creation(store, alice_keys, bob_keys):
    await store.upsert(_message(bob_keys, "late", created_at=3000))
    await store.upsert(_message(alice_keys, "reply", sender="bob", receiver="alice", created_at=2000))
    await store.upsert(_message(bob_keys, "early", created_at=1000))
    await store.upsert(_message(bob_keys, "other", sender="carol", receiver="dave", created_at=1500))

    alice = await store.find_by_participant("alice")
    assert [m.message_id for m in alice] == ["early", "reply", "late"]
    assert await store.find_by_participant("nobody") == []


@pytest.mark.asyncio
async def test_closed_store_refuses_use(tmp_path):
    from cipherline.core.store import MessageStore

    s = MessageStore(tmp_path / "x.db")
    with pytest.raises(RuntimeError):
        await s.get("m1")
