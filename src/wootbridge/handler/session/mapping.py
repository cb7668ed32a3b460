"""Persistent chat mappings: local chat id -> (contact id, conversation id).

Two stores ship with the bridge:

    InMemoryMappingStore  - dict, lost on restart (tests, single process)
    SQLiteMappingStore    - one table in a local SQLite file

The SQLite store runs its blocking ``sqlite3`` calls in a worker thread
via ``asyncio.to_thread`` so the event loop never blocks on disk I/O.
"""

from __future__ import annotations

import asyncio
import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

from loguru import logger


@dataclass(frozen=True)
class ChatMapping:
    chat_id: str
    contact_id: int
    conversation_id: int
    updated_at: float = 0.0


class BaseMappingStore(ABC):
    """At most one mapping per chat id; last write wins."""

    @abstractmethod
    async def get(self, chat_id: str) -> ChatMapping | None:
        ...

    @abstractmethod
    async def upsert(self, chat_id: str, contact_id: int, conversation_id: int) -> None:
        ...

    @abstractmethod
    async def delete(self, chat_id: str) -> None:
        ...

    async def close(self) -> None:
        return None


class InMemoryMappingStore(BaseMappingStore):
    def __init__(self) -> None:
        self._mappings: dict[str, ChatMapping] = {}

    async def get(self, chat_id: str) -> ChatMapping | None:
        return self._mappings.get(chat_id)

    async def upsert(self, chat_id: str, contact_id: int, conversation_id: int) -> None:
        self._mappings[chat_id] = ChatMapping(
            chat_id=chat_id,
            contact_id=contact_id,
            conversation_id=conversation_id,
            updated_at=time.time(),
        )

    async def delete(self, chat_id: str) -> None:
        self._mappings.pop(chat_id, None)

    def __len__(self) -> int:
        return len(self._mappings)


_SCHEMA = """
CREATE TABLE IF NOT EXISTS chat_mappings (
    chat_id         TEXT PRIMARY KEY,
    contact_id      INTEGER NOT NULL,
    conversation_id INTEGER NOT NULL,
    updated_at      REAL NOT NULL
)
"""

_UPSERT = """
INSERT INTO chat_mappings (chat_id, contact_id, conversation_id, updated_at)
VALUES (?, ?, ?, ?)
ON CONFLICT(chat_id) DO UPDATE SET
    contact_id = excluded.contact_id,
    conversation_id = excluded.conversation_id,
    updated_at = excluded.updated_at
"""


class SQLiteMappingStore(BaseMappingStore):
    """Mappings persisted in a single SQLite table."""

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = Path(db_path).expanduser()
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            if str(self._db_path) != ":memory:":
                self._db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
            self._conn.execute(_SCHEMA)
            self._conn.commit()
            logger.info(f"Mapping store opened at {self._db_path}")
        return self._conn

    def _get_sync(self, chat_id: str) -> ChatMapping | None:
        with self._lock:
            row = self._connection().execute(
                "SELECT chat_id, contact_id, conversation_id, updated_at "
                "FROM chat_mappings WHERE chat_id = ?",
                (chat_id,),
            ).fetchone()
        if row is None:
            return None
        return ChatMapping(*row)

    def _upsert_sync(self, chat_id: str, contact_id: int, conversation_id: int) -> None:
        with self._lock:
            conn = self._connection()
            conn.execute(_UPSERT, (chat_id, contact_id, conversation_id, time.time()))
            conn.commit()

    def _delete_sync(self, chat_id: str) -> None:
        with self._lock:
            conn = self._connection()
            conn.execute("DELETE FROM chat_mappings WHERE chat_id = ?", (chat_id,))
            conn.commit()

    async def get(self, chat_id: str) -> ChatMapping | None:
        return await asyncio.to_thread(self._get_sync, chat_id)

    async def upsert(self, chat_id: str, contact_id: int, conversation_id: int) -> None:
        await asyncio.to_thread(self._upsert_sync, chat_id, contact_id, conversation_id)

    async def delete(self, chat_id: str) -> None:
        await asyncio.to_thread(self._delete_sync, chat_id)

    async def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
