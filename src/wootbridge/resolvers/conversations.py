"""Conversation resolver: which helpdesk conversation does a chat thread map to?

Resolution order:
    1. Short-lived cache entry for (chat id, inbox)
    2. Persisted mapping, revalidated against the helpdesk (exists, same
       inbox, not resolved unless reopening is allowed)
    3. Discovery over the contact's conversations in the target inbox,
       most recent activity first
    4. Creation

Whenever the result did not come from a valid mapping, the new mapping is
written in the background with its own timeout. A failed write is only
logged; the next message repeats discovery.
"""

from __future__ import annotations

import asyncio

from loguru import logger

from wootbridge.constants import DEFAULT_MAPPING_WRITE_TIMEOUT
from wootbridge.errors import (
    BridgeError,
    ConversationResolutionFailed,
    HelpdeskAPIError,
    NotFoundError,
)
from wootbridge.handler.session.mapping import BaseMappingStore
from wootbridge.providers.helpdesk.base import (
    BaseHelpdeskProvider,
    RemoteContact,
    RemoteConversation,
)
from wootbridge.resolvers.cache import ResolutionCache


class ConversationResolver:
    """Finds, validates, or creates the conversation for a chat thread."""

    def __init__(
        self,
        provider: BaseHelpdeskProvider,
        mappings: BaseMappingStore,
        cache: ResolutionCache,
        *,
        reopen_conversation: bool = False,
        conversation_pending: bool = False,
        mapping_write_timeout: float = DEFAULT_MAPPING_WRITE_TIMEOUT,
    ) -> None:
        self._provider = provider
        self._mappings = mappings
        self._cache = cache
        self._reopen = reopen_conversation
        self._pending = conversation_pending
        self._write_timeout = mapping_write_timeout
        self._pending_writes: set[asyncio.Task] = set()

    async def resolve(
        self, chat_id: str, contact: RemoteContact, inbox_id: int
    ) -> RemoteConversation:
        """Return a conversation in ``inbox_id`` for ``chat_id``.

        The result never belongs to another inbox, and is only ``resolved``
        when reopening is enabled.

        Raises:
            ConversationResolutionFailed: creation failed, or the helpdesk
                answered with a conversation in the wrong inbox.
            NotFoundError: the contact no longer exists in the helpdesk.
        """
        cached, found = self._cache.get_conversation(chat_id, inbox_id)
        if found and self._eligible(cached, inbox_id):
            logger.trace("Conversation cache hit for {} -> {}", chat_id, cached.id)
            return cached

        conversation = await self._from_mapping(chat_id, inbox_id)
        if conversation is not None:
            self._cache.set_conversation(chat_id, inbox_id, conversation)
            return conversation

        conversation = await self._discover(contact, inbox_id)
        if conversation is None:
            conversation = await self._create(chat_id, contact, inbox_id)
        else:
            await self._reopen_if_resolved(conversation)

        self._cache.set_conversation(chat_id, inbox_id, conversation)
        self._persist_later(chat_id, contact.id, conversation.id)
        return conversation

    async def invalidate(self, chat_id: str, inbox_id: int) -> None:
        """Forget both the cached conversation and the stored mapping."""
        self._cache.invalidate_conversation(chat_id, inbox_id)
        try:
            await self._mappings.delete(chat_id)
        except Exception as exc:
            logger.warning(f"Could not delete mapping for {chat_id}: {exc}")

    async def drain(self) -> None:
        """Wait for background mapping writes to finish."""
        if self._pending_writes:
            await asyncio.gather(*self._pending_writes, return_exceptions=True)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _eligible(self, conversation: RemoteConversation, inbox_id: int) -> bool:
        if conversation.inbox_id != inbox_id:
            return False
        return self._reopen or not conversation.is_resolved

    # ------------------------------------------------------------------
    # Step 1: persisted mapping
    # ------------------------------------------------------------------

    async def _from_mapping(
        self, chat_id: str, inbox_id: int
    ) -> RemoteConversation | None:
        try:
            mapping = await self._mappings.get(chat_id)
        except Exception as exc:
            logger.warning(f"Mapping lookup for {chat_id} failed: {exc}")
            return None
        if mapping is None:
            return None

        try:
            conversation = await self._provider.get_conversation(mapping.conversation_id)
        except NotFoundError:
            logger.warning(
                "Mapped conversation {} for {} no longer exists",
                mapping.conversation_id,
                chat_id,
            )
            return None
        except BridgeError as exc:
            logger.warning(
                f"Could not validate mapping {chat_id} -> {mapping.conversation_id}: {exc}"
            )
            return None

        if conversation.inbox_id != inbox_id:
            logger.warning(
                "Mapping {} -> {} belongs to inbox {}, expected {}; ignoring",
                chat_id,
                conversation.id,
                conversation.inbox_id,
                inbox_id,
            )
            return None
        if conversation.is_resolved and not self._reopen:
            logger.debug(
                "Mapped conversation {} is resolved and reopening is off",
                conversation.id,
            )
            return None

        await self._reopen_if_resolved(conversation)
        return conversation

    # ------------------------------------------------------------------
    # Step 2: discovery
    # ------------------------------------------------------------------

    async def _discover(
        self, contact: RemoteContact, inbox_id: int
    ) -> RemoteConversation | None:
        try:
            conversations = await self._provider.list_contact_conversations(contact.id)
        except NotFoundError:
            raise
        except BridgeError as exc:
            logger.warning(
                f"Listing conversations of contact {contact.id} failed: {exc}"
            )
            return None

        eligible = [c for c in conversations if self._eligible(c, inbox_id)]
        if not eligible:
            return None

        with_activity = [c for c in eligible if c.last_activity_at is not None]
        if with_activity:
            chosen = max(with_activity, key=lambda c: c.last_activity_at)
        else:
            chosen = eligible[0]

        logger.debug(
            "Discovered conversation {} for contact {} ({} eligible)",
            chosen.id,
            contact.id,
            len(eligible),
        )
        return chosen

    # ------------------------------------------------------------------
    # Step 3: creation
    # ------------------------------------------------------------------

    async def _create(
        self, chat_id: str, contact: RemoteContact, inbox_id: int
    ) -> RemoteConversation:
        status = "pending" if self._pending else None
        try:
            conversation = await self._provider.create_conversation(
                contact_id=contact.id, inbox_id=inbox_id, status=status
            )
        except NotFoundError:
            # stale contact id, the caller re-resolves the contact
            raise
        except HelpdeskAPIError as err:
            raise ConversationResolutionFailed(
                chat_id, f"create_conversation(contact={contact.id}): {err}"
            ) from err

        if not conversation.inbox_id:
            conversation.inbox_id = inbox_id
        if conversation.inbox_id != inbox_id:
            raise ConversationResolutionFailed(
                chat_id,
                f"created conversation {conversation.id} landed in inbox "
                f"{conversation.inbox_id}, expected {inbox_id}",
            )
        if not conversation.id:
            raise ConversationResolutionFailed(chat_id, "conversation created without an id")

        logger.info(
            "Created conversation {} for {} (contact={})",
            conversation.id,
            chat_id,
            contact.id,
        )
        return conversation

    async def _reopen_if_resolved(self, conversation: RemoteConversation) -> None:
        if not (self._reopen and conversation.is_resolved):
            return
        status = "pending" if self._pending else "open"
        try:
            await self._provider.toggle_status(conversation.id, status)
            conversation.status = status
            logger.info("Reopened conversation {} as {}", conversation.id, status)
        except BridgeError as exc:
            logger.warning(f"Could not reopen conversation {conversation.id}: {exc}")

    # ------------------------------------------------------------------
    # Step 4: mapping persistence
    # ------------------------------------------------------------------

    def _persist_later(self, chat_id: str, contact_id: int, conversation_id: int) -> None:
        task = asyncio.create_task(
            self._persist(chat_id, contact_id, conversation_id),
            name=f"mapping-write-{chat_id}",
        )
        self._pending_writes.add(task)
        task.add_done_callback(self._pending_writes.discard)

    async def _persist(self, chat_id: str, contact_id: int, conversation_id: int) -> None:
        try:
            await asyncio.wait_for(
                self._mappings.upsert(chat_id, contact_id, conversation_id),
                timeout=self._write_timeout,
            )
            logger.debug("Mapped {} -> conversation {}", chat_id, conversation_id)
        except asyncio.TimeoutError:
            logger.warning(
                "Mapping write for {} timed out after {}s", chat_id, self._write_timeout
            )
        except Exception as exc:
            logger.warning(f"Mapping write for {chat_id} failed: {exc}")
