from __future__ import annotations

import logging
from typing import Optional

from .kv import KeyValueStore

"""
Presence registry
-----------------
Maps a user to the connection that currently owns their session, in a store
every server instance can see. Entries are written on connect and deleted on
disconnect.

There is no coupling to the relay bus: two connects for the same user on
different instances race and the last SET wins. The loser's disconnect later
clears the entry unconditionally, so a user can briefly read as offline while a
live connection still exists; routing never consults this registry, only the
status lookups do.
"""

log = logging.getLogger("cipherline.presence")

ONLINE_PREFIX = "online:"


class PresenceRegistry:
    def __init__(self, kv: KeyValueStore, *, prefix: str = ONLINE_PREFIX) -> None:
        self._kv = kv
        self._prefix = prefix

    def _key(self, user_id: str) -> str:
        return f"{self._prefix}{user_id}"

    async def set_online(self, user_id: str, connection_ref: str) -> None:
        if not user_id:
            raise ValueError("user_id is required")
        await self._kv.set(self._key(user_id), connection_ref)
        log.info("User %s online via %s", user_id, connection_ref)

    async def lookup(self, user_id: str) -> Optional[str]:
        return await self._kv.get(self._key(user_id))

    async def is_online(self, user_id: str) -> bool:
        return await self.lookup(user_id) is not None

    async def clear_online(self, user_id: str) -> None:
        await self._kv.delete(self._key(user_id))
        log.info("User %s offline", user_id)


__all__ = ["PresenceRegistry", "ONLINE_PREFIX"]
