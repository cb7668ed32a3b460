# inbound (WhatsApp gateway events) and outbound (helpdesk webhooks) messages,
# decoded once at the boundary

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any

from wootbridge.constants import WHATSAPP_GROUP_SUFFIX, WHATSAPP_MEDIA_TYPES
from wootbridge.errors import ValidationError


def _str(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _obj(parent: dict[str, Any], key: str) -> dict[str, Any]:
    """``parent[key]`` as a dict; absent or null is empty, anything else is invalid."""
    value = parent.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValidationError(f"webhook field '{key}' must be an object")
    return value


# ---------------------------------------------------------------------------
# WhatsApp -> helpdesk
# ---------------------------------------------------------------------------


@dataclass
class WhatsAppMessage:
    message_id: str
    chat_id: str  # JID of the chat: the person, or the group
    sender_id: str  # JID of the author (participant in groups)
    message_type: str = "text"  # text | image | audio | ptt | video | document | sticker
    content: str = ""
    push_name: str = ""
    chat_name: str = ""
    from_me: bool = False
    timestamp: float = field(default_factory=time.time)
    mime_type: str = ""
    file_name: str = ""
    quoted_message_id: str = ""
    channel: str = "whatsapp"

    @property
    def is_group(self) -> bool:
        return WHATSAPP_GROUP_SUFFIX in self.chat_id

    @property
    def has_media(self) -> bool:
        return self.message_type in WHATSAPP_MEDIA_TYPES

    @classmethod
    def from_event(cls, event: dict[str, Any]) -> "WhatsAppMessage":
        """Decode a gateway message event.

        Accepts both the bare message object and the ``{"event": ...,
        "data": {...}}`` envelope.

        Raises:
            ValidationError: the event has no message id or chat.
        """
        data = event.get("data") if isinstance(event.get("data"), dict) else event
        message_id = _str(data.get("id"))
        chat_id = _str(data.get("from")) or _str(data.get("chat"))
        if not message_id or not chat_id:
            raise ValidationError("WhatsApp event is missing 'id' or 'from'")

        from_me = bool(data.get("fromMe"))
        if from_me and _str(data.get("to")):
            chat_id = _str(data.get("to"))

        message_type = _str(data.get("type")) or "text"
        content = _str(data.get("body"))
        if message_type != "text" and not content:
            content = _str(data.get("caption"))

        timestamp = data.get("timestamp")
        return cls(
            message_id=message_id,
            chat_id=chat_id,
            sender_id=_str(data.get("participant")) or chat_id,
            message_type=message_type,
            content=content,
            push_name=_str(data.get("pushName")),
            chat_name=_str(data.get("chatName")),
            from_me=from_me,
            timestamp=float(timestamp) if isinstance(timestamp, (int, float)) else time.time(),
            mime_type=_str(data.get("mimeType")),
            file_name=_str(data.get("fileName")),
            quoted_message_id=_str(data.get("quotedMessageId")),
        )


# ---------------------------------------------------------------------------
# helpdesk -> WhatsApp
# ---------------------------------------------------------------------------


@dataclass
class WebhookContact:
    id: int
    name: str = ""
    phone_number: str = ""
    identifier: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WebhookContact":
        return cls(
            id=_int(data.get("id")),
            name=_str(data.get("name")),
            phone_number=_str(data.get("phone_number")),
            identifier=_str(data.get("identifier")),
        )


@dataclass
class WebhookAttachment:
    id: int
    file_type: str = "file"
    data_url: str = ""
    file_size: int = 0
    fallback_title: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WebhookAttachment":
        return cls(
            id=_int(data.get("id")),
            file_type=_str(data.get("file_type")) or "file",
            data_url=_str(data.get("data_url")),
            file_size=_int(data.get("file_size")),
            fallback_title=_str(data.get("fallback_title")),
        )


@dataclass
class HelpdeskWebhook:
    """A Chatwoot webhook event with every field the bridge reads."""

    event: str
    message_id: int = 0
    message_type: str = ""
    private: bool = False
    content: str = ""
    source_id: str = ""
    conversation_id: int = 0
    conversation_status: str = ""
    inbox_id: int = 0
    contact: WebhookContact | None = None
    sender_name: str = ""
    attachments: list[WebhookAttachment] = field(default_factory=list)

    @property
    def is_outgoing_message(self) -> bool:
        return self.event == "message_created" and self.message_type == "outgoing"

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "HelpdeskWebhook":
        """Decode a raw webhook body.

        Raises:
            ValidationError: not a JSON object, no ``event``, or a nested
                field of the wrong shape.
        """
        if not isinstance(payload, dict):
            raise ValidationError("webhook payload must be a JSON object")
        event = _str(payload.get("event"))
        if not event:
            raise ValidationError("webhook payload has no 'event'")

        if event.startswith("conversation_"):
            conversation = payload
            message_id = 0
        else:
            conversation = _obj(payload, "conversation")
            message_id = _int(payload.get("id"))

        contact_raw = _obj(_obj(conversation, "meta"), "sender") or _obj(payload, "contact")
        contact = WebhookContact.from_dict(contact_raw) if contact_raw else None

        inbox_id = _int(conversation.get("inbox_id")) or _int(_obj(payload, "inbox").get("id"))
        sender = _obj(payload, "sender")

        attachments = payload.get("attachments") or []
        if not isinstance(attachments, list):
            raise ValidationError("webhook field 'attachments' must be a list")

        message_type = payload.get("message_type")
        if isinstance(message_type, int):
            message_type = {0: "incoming", 1: "outgoing", 2: "activity", 3: "template"}.get(
                message_type, ""
            )

        return cls(
            event=event,
            message_id=message_id,
            message_type=_str(message_type),
            private=bool(payload.get("private")),
            content=_str(payload.get("content")),
            source_id=_str(payload.get("source_id")),
            conversation_id=_int(conversation.get("id")),
            conversation_status=_str(conversation.get("status")),
            inbox_id=inbox_id,
            contact=contact,
            sender_name=_str(sender.get("available_name")) or _str(sender.get("name")),
            attachments=[
                WebhookAttachment.from_dict(a)
                for a in attachments
                if isinstance(a, dict)
            ],
        )


@dataclass
class OutboundMessage:
    channel: str
    webhook: HelpdeskWebhook
    metadata: dict = field(default_factory=dict)
