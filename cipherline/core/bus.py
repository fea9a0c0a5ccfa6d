from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List

from pydantic import ValidationError
from redis.asyncio import Redis

from ..utils import codec
from .proto import PUBLICATION_ADAPTER, MessagePublication, Publication, StatusPublication

"""
Relay bus
---------
One pub/sub channel shared by every server instance. Each instance publishes
the events its own connections produce and subscribes to everything; routing is
decided on receipt, never at publish time:

  message       -> receiveMessage to the receiver's local connections
  statusUpdate  -> statusUpdate to the message sender's local connections

Delivery is best-effort. If the target has no connection on an instance that
instance does nothing; the durable queue is what guarantees persistence.
"""

log = logging.getLogger("cipherline.bus")

DEFAULT_CHANNEL = "chat"


# ---------------------------------------------------------------------------
# Brokers
# ---------------------------------------------------------------------------

class Subscription:
    def __aiter__(self) -> AsyncIterator[bytes]:
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError


class Broker:
    async def publish(self, channel: str, data: bytes) -> None:
        raise NotImplementedError

    async def subscribe(self, channel: str) -> Subscription:
        raise NotImplementedError


class _RedisSubscription(Subscription):
    def __init__(self, pubsub, channel: str) -> None:
        self._pubsub = pubsub
        self._channel = channel

    async def __aiter__(self):
        async for item in self._pubsub.listen():
            if item.get("type") == "message":
                yield item["data"]

    async def close(self) -> None:
        try:
            await self._pubsub.unsubscribe(self._channel)
        finally:
            await self._pubsub.aclose()


class RedisBroker(Broker):
    def __init__(self, client: Redis) -> None:
        self._redis = client

    async def publish(self, channel: str, data: bytes) -> None:
        await self._redis.publish(channel, data)

    async def subscribe(self, channel: str) -> Subscription:
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(channel)
        return _RedisSubscription(pubsub, channel)


_CLOSED = object()


class _MemorySubscription(Subscription):
    def __init__(self, broker: "MemoryBroker", channel: str) -> None:
        self._broker = broker
        self._channel = channel
        self.queue: asyncio.Queue = asyncio.Queue()

    async def __aiter__(self):
        while True:
            item = await self.queue.get()
            if item is _CLOSED:
                return
            yield item

    async def close(self) -> None:
        subs = self._broker.subscribers.get(self._channel, [])
        if self in subs:
            subs.remove(self)
        self.queue.put_nowait(_CLOSED)


class MemoryBroker(Broker):
    """In-process fan-out to every live subscription, in publish order."""

    def __init__(self) -> None:
        self.subscribers: Dict[str, List[_MemorySubscription]] = {}

    async def publish(self, channel: str, data: bytes) -> None:
        for sub in list(self.subscribers.get(channel, [])):
            sub.queue.put_nowait(data)

    async def subscribe(self, channel: str) -> Subscription:
        sub = _MemorySubscription(self, channel)
        self.subscribers.setdefault(channel, []).append(sub)
        return sub


# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Delivery:
    user_id: str
    event: str
    body: Dict[str, Any]


def route(publication: Publication) -> Delivery:
    if isinstance(publication, MessagePublication):
        body = {
            "messageId": publication.message_id,
            "sender": publication.sender,
            "receiver": publication.receiver,
            **publication.envelope.to_wire(),
            "createdAt": publication.created_at,
        }
        return Delivery(publication.receiver, "receiveMessage", body)
    if isinstance(publication, StatusPublication):
        body = {
            "messageId": publication.message_id,
            "status": publication.status.value,
            "sender": publication.recipient_of_event,
        }
        return Delivery(publication.recipient_of_event, "statusUpdate", body)
    raise TypeError(f"unroutable publication {type(publication).__name__}")


def decode_publication(raw: bytes | str) -> Publication:
    try:
        return PUBLICATION_ADAPTER.validate_python(codec.loads(raw))
    except ValidationError as exc:
        raise ValueError(f"invalid publication: {exc.error_count()} error(s)") from exc


# ---------------------------------------------------------------------------
# Bus
# ---------------------------------------------------------------------------

class BusSubscription:
    """Decoded view over a broker subscription; malformed items are skipped."""

    def __init__(self, raw: Subscription) -> None:
        self._raw = raw

    async def __aiter__(self):
        async for data in self._raw:
            try:
                yield decode_publication(data)
            except ValueError as exc:
                log.warning("Dropped malformed bus item: %s", exc)

    async def close(self) -> None:
        await self._raw.close()


class RelayBus:
    def __init__(self, broker: Broker, *, channel: str = DEFAULT_CHANNEL) -> None:
        self.broker = broker
        self.channel = channel

    async def publish(self, publication: Publication) -> None:
        await self.broker.publish(self.channel, codec.dumps(publication))
        log.debug("Published %s on %s", publication.type, self.channel)

    async def subscribe(self) -> BusSubscription:
        return BusSubscription(await self.broker.subscribe(self.channel))


__all__ = [
    "Broker",
    "Subscription",
    "RedisBroker",
    "MemoryBroker",
    "Delivery",
    "route",
    "decode_publication",
    "BusSubscription",
    "RelayBus",
    "DEFAULT_CHANNEL",
]
