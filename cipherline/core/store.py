from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

import aiosqlite

from .proto import EncryptedEnvelope, Message, MessageStatus

log = logging.getLogger("cipherline.store")

SCHEMA_PATH = Path(__file__).with_name("schema.sql")

_COLUMNS = "message_id, sender, receiver, encrypted_message, encrypted_key, iv, status, created_at"
_STATUS_RANK_SQL = "CASE status WHEN 'sent' THEN 0 WHEN 'delivered' THEN 1 WHEN 'read' THEN 2 END"


class MessageNotFound(LookupError):
    pass


def _row_to_message(row: aiosqlite.Row) -> Message:
    return Message(
        message_id=row["message_id"],
        sender=row["sender"],
        receiver=row["receiver"],
        envelope=EncryptedEnvelope(
            ciphertext=row["encrypted_message"],
            wrapped_key=row["encrypted_key"],
            iv=row["iv"],
        ),
        status=row["status"],
        created_at=row["created_at"],
    )


class MessageStore:
    """Durable message log on SQLite. Records are never deleted here."""

    def __init__(self, path: str | Path = "cipherline.db") -> None:
        self.path = str(path)
        self._db: Optional[aiosqlite.Connection] = None

    async def open(self) -> "MessageStore":
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(self.path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.executescript(SCHEMA_PATH.read_text(encoding="utf-8"))
        await self._db.commit()
        return self

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> "MessageStore":
        return await self.open()

    async def __aexit__(self, *exc) -> None:
        await self.close()

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("message store is not open")
        return self._db

    async def upsert(self, message: Message) -> bool:
        """Insert unless message_id already exists. Returns True if a row was written."""
        env = message.envelope
        cur = await self.db.execute(
            f"INSERT OR IGNORE INTO messages({_COLUMNS}) VALUES(?,?,?,?,?,?,?,?)",
            (
                message.message_id,
                message.sender,
                message.receiver,
                env.ciphertext,
                env.wrapped_key,
                env.iv,
                message.status.value,
                message.created_at,
            ),
        )
        await self.db.commit()
        inserted = cur.rowcount == 1
        if not inserted:
            log.debug("Message %s already stored", message.message_id)
        return inserted

    async def update_status(
        self,
        message_id: str,
        status: MessageStatus,
        *,
        actor: Optional[str] = None,
    ) -> bool:
        """Move status forward along sent -> delivered -> read.

        The rank comparison happens inside the UPDATE, so a late or duplicated
        receipt can never move a message backwards. Returns True if the row
        changed. Raises MessageNotFound if the message is not stored (yet).
        """
        status = MessageStatus(status)
        sql = f"UPDATE messages SET status = ? WHERE message_id = ? AND {_STATUS_RANK_SQL} < ?"
        params: list = [status.value, message_id, status.rank]
        if actor is not None:
            sql += " AND receiver = ?"
            params.append(actor)
        cur = await self.db.execute(sql, params)
        await self.db.commit()
        if cur.rowcount:
            return True

        row = await (
            await self.db.execute("SELECT receiver, status FROM messages WHERE message_id = ?", (message_id,))
        ).fetchone()
        if row is None:
            raise MessageNotFound(message_id)
        if actor is not None and row["receiver"] != actor:
            log.warning("Ignored %s receipt for %s from non-receiver %s", status.value, message_id, actor)
        else:
            log.debug("Status of %s stays %s (got %s)", message_id, row["status"], status.value)
        return False

    async def get(self, message_id: str) -> Optional[Message]:
        cur = await self.db.execute(f"SELECT {_COLUMNS} FROM messages WHERE message_id = ?", (message_id,))
        row = await cur.fetchone()
        return _row_to_message(row) if row else None

    async def find_by_participant(self, user_id: str) -> List[Message]:
        cur = await self.db.execute(
            f"SELECT {_COLUMNS} FROM messages WHERE sender = ? OR receiver = ? "
            "ORDER BY created_at ASC, rowid ASC",
            (user_id, user_id),
        )
        return [_row_to_message(row) for row in await cur.fetchall()]


__all__ = ["MessageStore", "MessageNotFound", "SCHEMA_PATH"]
