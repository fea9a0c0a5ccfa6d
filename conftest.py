import fakeredis
import pytest
import pytest_asyncio

from cipherline.core import crypto
from cipherline.core.auth import TokenAuthenticator
from cipherline.core.bus import MemoryBroker, RedisBroker, RelayBus
from cipherline.core.directory import KeyDirectory, MessageRoutes
from cipherline.core.kv import MemoryKeyValue, RedisKeyValue
from cipherline.core.presence import PresenceRegistry
from cipherline.core.queue import MemoryJobQueue, RedisJobQueue
from cipherline.core.store import MessageStore


@pytest.fixture(scope="session")
def alice_keys():
    return crypto.generate_key_pair()


@pytest.fixture(scope="session")
def bob_keys():
    return crypto.generate_key_pair()


# Shared state (presence, directory, routes, bus, queue) runs once against the
# in-process backends and once against a fake Redis server.
@pytest.fixture(params=["memory", "redis"])
def backend(request):
    return request.param


@pytest_asyncio.fixture
async def redis_client(backend):
    if backend != "redis":
        yield None
        return
    client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer())
    try:
        yield client
    finally:
        await client.aclose()


@pytest.fixture
def kv(backend, redis_client):
    return RedisKeyValue(redis_client) if backend == "redis" else MemoryKeyValue()


@pytest.fixture
def presence(kv):
    return PresenceRegistry(kv)


@pytest.fixture
def directory(kv):
    return KeyDirectory(kv)


@pytest.fixture
def routes(kv):
    return MessageRoutes(kv)


@pytest.fixture
def broker(backend, redis_client):
    return RedisBroker(redis_client) if backend == "redis" else MemoryBroker()


@pytest.fixture
def bus(broker):
    return RelayBus(broker)


@pytest.fixture
def queue_factory(backend, redis_client):
    def make(**kwargs):
        if backend == "redis":
            return RedisJobQueue(redis_client, **kwargs)
        return MemoryJobQueue(**kwargs)
    return make


@pytest.fixture
def queue(queue_factory):
    return queue_factory()


@pytest.fixture
def authenticator():
    return TokenAuthenticator("test-secret-0123456789abcdef0123456789")


@pytest_asyncio.fixture
async def store(tmp_path):
    async with MessageStore(tmp_path / "messages.db") as s:
        yield s
