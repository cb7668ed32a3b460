"""Bridge loop: consumes bus messages and moves them across the bridge.

This is the core processing engine of wootbridge. It sits between the
MessageBus and the two remote sides, orchestrating per event:
    1. Identity resolution (contact)
    2. Conversation resolution (inbox-scoped thread)
    3. Text conversion between WhatsApp markup and Markdown
    4. Delivery: direct send, or the Media Dispatch Pipeline

Every event runs on its own task. Independent chats proceed in parallel;
with ``serialize_chats`` the events of one chat run one at a time in
arrival order.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from pathlib import PurePosixPath
from typing import Any
from urllib.parse import unquote, urlparse

from loguru import logger

from wootbridge.bridge.formatting import (
    group_participant_prefix,
    markdown_to_whatsapp,
    media_placeholder,
    sign,
    whatsapp_to_markdown,
)
from wootbridge.constants import (
    DEFAULT_MAX_INFLIGHT,
    DEFAULT_MIME_TYPE,
    DEFAULT_SIGN_DELIMITER,
    FILE_TYPE_MIME,
    SOURCE_ID_PREFIX,
    WHATSAPP_GROUP_SUFFIX,
    WHATSAPP_STATUS_BROADCAST,
    WHATSAPP_USER_SUFFIX,
)
from wootbridge.errors import (
    BridgeError,
    MediaDispatchError,
    NotFoundError,
    ValidationError,
)
from wootbridge.handler.channels.base import BaseChannelHandler
from wootbridge.handler.message_bus import MessageBus
from wootbridge.handler.messages import (
    HelpdeskWebhook,
    OutboundMessage,
    WebhookContact,
    WhatsAppMessage,
)
from wootbridge.media.pipeline import MediaDispatcher, MediaItem, generated_file_name
from wootbridge.providers.helpdesk.base import BaseHelpdeskProvider
from wootbridge.resolvers.cache import ResolutionCache
from wootbridge.resolvers.contacts import IdentityResolver
from wootbridge.resolvers.conversations import ConversationResolver
from wootbridge.resolvers.phone import digits_only, group_jid, jid_local_part

_STATUS_EVENTS = ("conversation_status_changed", "conversation_resolved")

# WhatsApp message type -> gateway download kind / generated file name prefix
_DOWNLOAD_KIND = {
    "image": "image",
    "sticker": "image",
    "audio": "audio",
    "ptt": "audio",
    "video": "video",
    "document": "document",
}
_FILE_PREFIX = {"ptt": "audio", "sticker": "sticker"}


class _ChatLocks:
    """One FIFO lock per chat id, dropped once nobody holds or awaits it."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class BridgeLoop:
    """Moves WhatsApp messages into the helpdesk and agent replies back out."""

    def __init__(
        self,
        message_bus: MessageBus,
        provider: BaseHelpdeskProvider,
        channel: BaseChannelHandler,
        identity: IdentityResolver,
        conversations: ConversationResolver,
        cache: ResolutionCache,
        inbound_media: MediaDispatcher,
        outbound_media: MediaDispatcher,
        inbox_id: int,
        *,
        ignore_jids: tuple[str, ...] | list[str] = (),
        sign_messages: bool = False,
        sign_delimiter: str = DEFAULT_SIGN_DELIMITER,
        serialize_chats: bool = True,
        max_inflight: int = DEFAULT_MAX_INFLIGHT,
    ) -> None:
        self.message_bus = message_bus
        self._provider = provider
        self._channel = channel
        self._identity = identity
        self._conversations = conversations
        self._cache = cache
        self._inbound_media = inbound_media
        self._outbound_media = outbound_media
        self._inbox_id = inbox_id
        self._ignore_jids = tuple(ignore_jids)
        self._sign_messages = sign_messages
        self._sign_delimiter = sign_delimiter
        self._serialize = serialize_chats
        self._inflight = asyncio.Semaphore(max_inflight)
        self._chat_locks = _ChatLocks()
        self._tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Consume inbound messages forever, one task per message."""
        logger.info("BridgeLoop started, waiting for messages")
        while True:
            message = await self.message_bus.consume_inbound()
            self.submit_inbound(message)

    def submit_inbound(self, message: WhatsAppMessage) -> asyncio.Task:
        return self._spawn(
            message.chat_id,
            lambda: self.process_inbound(message),
            f"inbound-{message.message_id}",
        )

    async def handle_outbound(self, message: OutboundMessage) -> None:
        """MessageBus subscriber: schedules the webhook and returns at once."""
        webhook = message.webhook
        key = f"conversation:{webhook.conversation_id}"
        self._spawn(key, lambda: self.process_outbound(webhook), f"outbound-{webhook.message_id}")

    def _spawn(
        self, key: str, work: Callable[[], Awaitable[None]], label: str
    ) -> asyncio.Task:
        task = asyncio.create_task(self._run_event(key, work, label), name=label)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run_event(
        self, key: str, work: Callable[[], Awaitable[None]], label: str
    ) -> None:
        # an inflight slot is only taken once the chat lock is held
        try:
            if self._serialize:
                async with self._chat_locks.hold(key):
                    async with self._inflight:
                        await work()
            else:
                async with self._inflight:
                    await work()
        except BridgeError as exc:
            logger.error(f"{label} failed: {exc}")
        except Exception:
            logger.exception(f"{label} crashed")

    async def drain(self) -> None:
        """Wait for every in-flight event task to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def stop(self) -> None:
        """Cancel in-flight events and flush pending mapping writes."""
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self._conversations.drain()
        logger.info("BridgeLoop stopped")

    @property
    def inflight(self) -> int:
        return len(self._tasks)

    # ------------------------------------------------------------------
    # WhatsApp -> helpdesk
    # ------------------------------------------------------------------

    async def process_inbound(self, message: WhatsAppMessage) -> None:
        """Deliver one WhatsApp message into its helpdesk conversation."""
        if self._should_ignore(message.chat_id):
            logger.debug("Ignoring message {} from {}", message.message_id, message.chat_id)
            return

        logger.info(
            "Processing {} {} from chat {}",
            message.message_type,
            message.message_id,
            message.chat_id,
        )
        content = self._inbound_content(message)

        try:
            await self._deliver_inbound(message, content)
        except NotFoundError as exc:
            # contact or conversation was deleted or merged in the helpdesk
            logger.warning(
                f"Helpdesk references for {message.chat_id} are stale ({exc}), re-resolving once"
            )
            self._identity.invalidate(message.chat_id, message.is_group)
            await self._conversations.invalidate(message.chat_id, self._inbox_id)
            await self._deliver_inbound(message, content)

    async def _deliver_inbound(self, message: WhatsAppMessage, content: str) -> None:
        contact = await self._identity.find_or_create(
            identity=message.chat_id,
            display_name=self._contact_name(message),
            is_group=message.is_group,
        )
        conversation = await self._conversations.resolve(
            message.chat_id, contact, self._inbox_id
        )
        message_type = "outgoing" if message.from_me else "incoming"
        source_id = f"{SOURCE_ID_PREFIX}{message.message_id}"

        if message.has_media:
            item = self._inbound_media_item(message, content, message_type, source_id)
            try:
                await self._inbound_media.dispatch(str(conversation.id), [item])
                return
            except MediaDispatchError as exc:
                if isinstance(exc.first, NotFoundError):
                    raise exc.first from exc
                logger.warning(
                    f"Media of {message.message_id} not transferred, sending placeholder: {exc}"
                )
                content = media_placeholder(message.message_type, content)

        content_attributes = None
        if message.quoted_message_id:
            content_attributes = {
                "in_reply_to_external_id": f"{SOURCE_ID_PREFIX}{message.quoted_message_id}"
            }

        await self._provider.create_message(
            conversation_id=conversation.id,
            content=content,
            message_type=message_type,
            source_id=source_id,
            content_attributes=content_attributes,
        )
        logger.debug("Message {} -> conversation {}", message.message_id, conversation.id)

    def _should_ignore(self, chat_id: str) -> bool:
        if chat_id == WHATSAPP_STATUS_BROADCAST:
            return True
        for rule in self._ignore_jids:
            if rule == WHATSAPP_GROUP_SUFFIX and WHATSAPP_GROUP_SUFFIX in chat_id:
                return True
            if rule == WHATSAPP_USER_SUFFIX and WHATSAPP_USER_SUFFIX in chat_id:
                return True
            if rule == chat_id:
                return True
        return False

    @staticmethod
    def _contact_name(message: WhatsAppMessage) -> str:
        if message.is_group:
            return f"{message.chat_name or jid_local_part(message.chat_id)} (GROUP)"
        if message.push_name and not message.from_me:
            return message.push_name
        return f"+{jid_local_part(message.chat_id)}"

    @staticmethod
    def _inbound_content(message: WhatsAppMessage) -> str:
        content = whatsapp_to_markdown(message.content)
        if message.is_group and not message.from_me:
            phone = digits_only(jid_local_part(message.sender_id))
            content = group_participant_prefix(phone, message.push_name) + content
        return content

    @staticmethod
    def _inbound_media_item(
        message: WhatsAppMessage, caption: str, message_type: str, source_id: str
    ) -> MediaItem:
        kind = _DOWNLOAD_KIND.get(message.message_type, "document")
        file_name = message.file_name or generated_file_name(
            _FILE_PREFIX.get(message.message_type, kind),
            message.mime_type,
            message.timestamp,
        )
        return MediaItem(
            file_name=file_name,
            mime_type=message.mime_type,
            message_id=message.message_id,
            media_type=kind,
            caption=caption,
            metadata={"message_type": message_type, "source_id": source_id},
        )

    # ------------------------------------------------------------------
    # helpdesk -> WhatsApp
    # ------------------------------------------------------------------

    async def process_outbound(self, webhook: HelpdeskWebhook) -> None:
        """Deliver one agent reply to its WhatsApp recipient."""
        if webhook.event in _STATUS_EVENTS:
            if webhook.conversation_id:
                self._cache.evict_conversation_id(webhook.conversation_id)
            return

        if not webhook.is_outgoing_message or webhook.private:
            logger.trace("Skipping webhook {} ({})", webhook.event, webhook.message_type)
            return
        if webhook.source_id.startswith(SOURCE_ID_PREFIX):
            logger.trace("Skipping echo of WhatsApp message {}", webhook.source_id)
            return
        if webhook.inbox_id and webhook.inbox_id != self._inbox_id:
            logger.debug(
                "Skipping webhook for inbox {} (bridge serves {})",
                webhook.inbox_id,
                self._inbox_id,
            )
            return

        content = markdown_to_whatsapp(webhook.content)
        if not content and not webhook.attachments:
            raise ValidationError(
                f"message {webhook.message_id} has neither content nor attachments"
            )

        recipient = await self._recipient_for(webhook)
        if content and self._sign_messages:
            content = sign(content, webhook.sender_name, self._sign_delimiter)

        if not webhook.attachments:
            await self._channel.send_text(recipient, content)
            logger.info("Reply {} sent to {}", webhook.message_id, recipient)
            return

        items = self._outbound_media_items(webhook, content)
        if content and not items[0].caption:
            # audio carries no caption; the text goes first on its own
            await self._channel.send_text(recipient, content)
        await self._outbound_media.dispatch(recipient, items)
        logger.info(
            "Reply {} with {} attachment(s) sent to {}",
            webhook.message_id,
            len(items),
            recipient,
        )

    async def _recipient_for(self, webhook: HelpdeskWebhook) -> str:
        """Reverse resolution: conversation -> contact -> WhatsApp address."""
        contact = webhook.contact
        if (contact is None or not (contact.phone_number or contact.identifier)) and (
            webhook.conversation_id
        ):
            conversation = await self._provider.get_conversation(webhook.conversation_id)
            if conversation.inbox_id and conversation.inbox_id != self._inbox_id:
                raise ValidationError(
                    f"conversation {conversation.id} belongs to inbox {conversation.inbox_id}"
                )
            if conversation.contact_id:
                remote = await self._provider.get_contact(conversation.contact_id)
                contact = WebhookContact(
                    id=remote.id,
                    name=remote.name,
                    phone_number=remote.phone_number,
                    identifier=remote.identifier,
                )

        if contact is not None:
            phone = digits_only(contact.phone_number)
            if phone:
                return phone
            if contact.identifier:
                if "@" in contact.identifier:
                    return contact.identifier
                return group_jid(contact.identifier)

        raise ValidationError(
            f"no WhatsApp recipient for conversation {webhook.conversation_id}"
        )

    @staticmethod
    def _outbound_media_items(webhook: HelpdeskWebhook, content: str) -> list[MediaItem]:
        items: list[MediaItem] = []
        for attachment in webhook.attachments:
            kind = attachment.file_type if attachment.file_type in FILE_TYPE_MIME else "file"
            items.append(
                MediaItem(
                    file_name=_file_name_from_url(attachment.data_url)
                    or attachment.fallback_title,
                    mime_type=FILE_TYPE_MIME.get(kind, DEFAULT_MIME_TYPE),
                    size_hint=attachment.file_size,
                    source_url=attachment.data_url,
                    media_type="document" if kind == "file" else kind,
                )
            )
        if content and items[0].kind != "audio":
            items[0].caption = content
        return items

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def get_stats(self) -> dict[str, Any]:
        return {
            "inflight": self.inflight,
            "cache": self._cache.get_stats(),
            "inbound_media": self._inbound_media.guard.get_stats(),
            "outbound_media": self._outbound_media.guard.get_stats(),
        }


def _file_name_from_url(url: str) -> str:
    if not url:
        return ""
    return unquote(PurePosixPath(urlparse(url).path).name)
