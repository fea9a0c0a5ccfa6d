from __future__ import annotations

import logging
from typing import NamedTuple, Optional

from ..utils import codec
from .kv import KeyValueStore

log = logging.getLogger("cipherline.directory")

PUBLIC_KEY_PREFIX = "publicKey:"
ROUTE_PREFIX = "route:"
DEFAULT_ROUTE_TTL = 7 * 86400


class KeyDirectory:
    """Public keys registered by clients, trusted on first use."""

    def __init__(self, kv: KeyValueStore, *, prefix: str = PUBLIC_KEY_PREFIX) -> None:
        self._kv = kv
        self._prefix = prefix

    async def publish(self, user_id: str, public_key: str) -> None:
        await self._kv.set(f"{self._prefix}{user_id}", public_key)
        log.info("Cached public key for %s", user_id)

    async def lookup(self, user_id: str) -> Optional[str]:
        return await self._kv.get(f"{self._prefix}{user_id}")


class Route(NamedTuple):
    sender: str
    receiver: str


class MessageRoutes:
    """Who sent each recent message to whom, shared by every instance.

    A receipt may only be relayed in real time when it comes from the receiver
    recorded here. The first claim of a messageId wins until the entry expires.
    """

    def __init__(self, kv: KeyValueStore, *, prefix: str = ROUTE_PREFIX, ttl_secs: int = DEFAULT_ROUTE_TTL) -> None:
        self._kv = kv
        self._prefix = prefix
        self.ttl_secs = ttl_secs

    async def claim(self, message_id: str, sender: str, receiver: str) -> bool:
        """Record the route. False if message_id already belongs to a different route."""
        key = f"{self._prefix}{message_id}"
        value = codec.dumps({"sender": sender, "receiver": receiver}).decode("utf-8")
        if await self._kv.add(key, value, ttl=self.ttl_secs):
            return True
        existing = await self.lookup(message_id)
        # a resend of the same message keeps its claim
        return existing == Route(sender, receiver)

    async def lookup(self, message_id: str) -> Optional[Route]:
        raw = await self._kv.get(f"{self._prefix}{message_id}")
        if raw is None:
            return None
        try:
            data = codec.loads(raw)
            return Route(data["sender"], data["receiver"])
        except (ValueError, KeyError, TypeError):
            log.warning("Unreadable route entry for %s", message_id)
            return None


__all__ = ["KeyDirectory", "MessageRoutes", "Route", "PUBLIC_KEY_PREFIX", "ROUTE_PREFIX"]
