"""Expiring key/value stores for contact and conversation lookups.

``TTLCache`` is a single partition: a dict of entries with an absolute
expiry, guarded by a lock so it can be shared between concurrent tasks
(and threads). A read past expiry is a miss and evicts the entry right
away. The background sweep only reclaims memory.

``ResolutionCache`` owns one partition per entity kind with independent
TTLs, plus the sweeper task. Each integration instance owns its own
``ResolutionCache``; nothing here is process-global.
"""

from __future__ import annotations

import asyncio
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from loguru import logger

from wootbridge.constants import (
    CONTACT_KEY_PREFIX,
    CONVERSATION_KEY_PREFIX,
    DEFAULT_CONTACT_TTL,
    DEFAULT_CONVERSATION_TTL,
    DEFAULT_SWEEP_INTERVAL,
)

Clock = Callable[[], float]


@dataclass
class CacheEntry:
    value: Any
    expires_at: float


class TTLCache:
    """Thread-safe dict with per-entry expiry."""

    def __init__(
        self,
        default_ttl: float,
        *,
        name: str = "cache",
        clock: Clock = time.monotonic,
    ) -> None:
        if default_ttl <= 0:
            raise ValueError(f"default_ttl must be positive, got {default_ttl}")
        self.name = name
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> tuple[Any, bool]:
        """Return ``(value, True)`` on a live hit, ``(None, False)`` otherwise."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None, False
            if self._clock() >= entry.expires_at:
                del self._entries[key]
                logger.trace("{} | expired {}", self.name, key)
                return None, False
            return entry.value, True

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        if ttl <= 0:
            raise ValueError(f"ttl must be positive, got {ttl}")
        with self._lock:
            self._entries[key] = CacheEntry(value=value, expires_at=self._clock() + ttl)

    def delete(self, key: str) -> bool:
        """Remove ``key``. Returns True if it was present."""
        with self._lock:
            return self._entries.pop(key, None) is not None

    def delete_where(self, predicate: Callable[[Any], bool]) -> int:
        """Remove every entry whose value matches ``predicate``."""
        with self._lock:
            doomed = [k for k, e in self._entries.items() if predicate(e.value)]
            for key in doomed:
                del self._entries[key]
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def purge_expired(self) -> int:
        """Drop all expired entries and return how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if now >= e.expires_at]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class ResolutionCache:
    """Contact and conversation partitions plus the periodic sweeper."""

    def __init__(
        self,
        contact_ttl: float = DEFAULT_CONTACT_TTL,
        conversation_ttl: float = DEFAULT_CONVERSATION_TTL,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
        *,
        clock: Clock = time.monotonic,
    ) -> None:
        self.contacts = TTLCache(contact_ttl, name="contacts", clock=clock)
        self.conversations = TTLCache(
            conversation_ttl, name="conversations", clock=clock
        )
        self._sweep_interval = sweep_interval
        self._sweep_task: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    @staticmethod
    def contact_key(identity: str) -> str:
        return f"{CONTACT_KEY_PREFIX}:{identity}"

    @staticmethod
    def conversation_key(chat_id: str, inbox_id: int) -> str:
        return f"{CONVERSATION_KEY_PREFIX}:{chat_id}:{inbox_id}"

    # ------------------------------------------------------------------
    # Contacts
    # ------------------------------------------------------------------

    def get_contact(self, identity: str) -> tuple[Any, bool]:
        return self.contacts.get(self.contact_key(identity))

    def set_contact(self, identity: str, contact: Any) -> None:
        self.contacts.set(self.contact_key(identity), contact)

    def invalidate_contact(self, identity: str) -> None:
        self.contacts.delete(self.contact_key(identity))

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    def get_conversation(self, chat_id: str, inbox_id: int) -> tuple[Any, bool]:
        return self.conversations.get(self.conversation_key(chat_id, inbox_id))

    def set_conversation(self, chat_id: str, inbox_id: int, conversation: Any) -> None:
        self.conversations.set(self.conversation_key(chat_id, inbox_id), conversation)

    def invalidate_conversation(self, chat_id: str, inbox_id: int) -> None:
        self.conversations.delete(self.conversation_key(chat_id, inbox_id))

    def evict_conversation_id(self, conversation_id: int) -> int:
        """Evict every cached entry pointing at ``conversation_id``."""
        removed = self.conversations.delete_where(
            lambda conv: getattr(conv, "id", None) == conversation_id
        )
        if removed:
            logger.debug(
                "Evicted {} cache entr(ies) for conversation {}",
                removed,
                conversation_id,
            )
        return removed

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def clear(self) -> None:
        self.contacts.clear()
        self.conversations.clear()

    def sweep(self) -> int:
        """Run one sweep over both partitions."""
        removed = self.contacts.purge_expired() + self.conversations.purge_expired()
        if removed:
            logger.debug("Cache sweep removed {} expired entries", removed)
        return removed

    def start(self) -> None:
        """Start the background sweeper on the running event loop."""
        if self._sweep_task is not None and not self._sweep_task.done():
            return
        self._sweep_task = asyncio.create_task(self._sweep_loop(), name="cache-sweeper")

    async def close(self) -> None:
        """Stop the sweeper and drop all entries."""
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        self.clear()

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            self.sweep()

    def get_stats(self) -> dict[str, int]:
        contacts = len(self.contacts)
        conversations = len(self.conversations)
        return {
            "contact_cache_size": contacts,
            "conversation_cache_size": conversations,
            "total_size": contacts + conversations,
        }
