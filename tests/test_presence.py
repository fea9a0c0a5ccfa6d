import asyncio

import pytest

from cipherline.core.directory import ROUTE_PREFIX, MessageRoutes, Route
from cipherline.core.presence import ONLINE_PREFIX


@pytest.mark.asyncio
async def test_presence_lifecycle(presence, kv):
    assert await presence.is_online("alice") is False

    await presence.set_online("alice", "relay-1:c1")
    assert await presence.is_online("alice") is True
    assert await presence.lookup("alice") == "relay-1:c1"
    assert await kv.get(f"{ONLINE_PREFIX}alice") == "relay-1:c1"

    await presence.clear_online("alice")
    assert await presence.is_online("alice") is False
    assert await presence.lookup("alice") is None


@pytest.mark.asyncio
async def test_last_write_wins_and_clear_is_unconditional(presence):
    await presence.set_online("alice", "relay-1:c1")
    await presence.set_online("alice", "relay-2:c9")
    assert await presence.lookup("alice") == "relay-2:c9"

    # the older connection disconnecting still clears the entry
    await presence.clear_online("alice")
    assert await presence.is_online("alice") is False


@pytest.mark.asyncio
async def test_clear_unknown_user_is_noop(presence):
    await presence.clear_online("nobody")
    assert await presence.is_online("nobody") is False


@pytest.mark.asyncio
async def test_empty_user_id_rejected(presence):
    with pytest.raises(ValueError):
        await presence.set_online("", "relay-1:c1")


@pytest.mark.asyncio
async def test_directory_publish_and_lookup(directory, alice_keys):
    assert await directory.lookup("alice") is None
    await directory.publish("alice", alice_keys.public_key)
    assert await directory.lookup("alice") == alice_keys.public_key


@pytest.mark.asyncio
async def test_kv_add_only_writes_absent_keys(kv):
    assert await kv.add("k", "first") is True
    assert await kv.add("k", "second") is False
    assert await kv.get("k") == "first"

    await kv.delete("k")
    assert await kv.add("k", "third", ttl=60) is True
    assert await kv.get("k") == "third"


@pytest.mark.asyncio
async def test_route_claim_and_lookup(routes):
    assert await routes.lookup("m1") is None
    assert await routes.claim("m1", "alice", "bob") is True
    assert await routes.lookup("m1") == Route("alice", "bob")
    # resending the same message keeps the claim
    assert await routes.claim("m1", "alice", "bob") is True


@pytest.mark.asyncio
async def test_conflicting_route_claim_is_refused(routes):
    assert await routes.claim("m1", "alice", "bob") is True
    assert await routes.claim("m1", "mallory", "bob") is False
    assert await routes.claim("m1", "alice", "carol") is False
    assert await routes.lookup("m1") == Route("alice", "bob")


@pytest.mark.asyncio
async def test_unreadable_route_is_ignored(routes, kv, caplog):
    await kv.set(f"{ROUTE_PREFIX}m1", "not json")
    with caplog.at_level("WARNING", logger="cipherline.directory"):
        assert await routes.lookup("m1") is None
    assert any("Unreadable route" in r.message for r in caplog.records)


@pytest.mark.asyncio
async def test_routes_expire(kv):
    routes = MessageRoutes(kv, ttl_secs=1)
    await routes.claim("m1", "alice", "bob")
    await asyncio.sleep(1.1)
    assert await routes.lookup("m1") is None
    assert await routes.claim("m1", "mallory", "bob") is True
