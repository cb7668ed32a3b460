from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from wootbridge.constants import WHATSAPP_GROUP_SUFFIX


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _as_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp()
        except ValueError:
            pass
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


# ---------------------------------------------------------------------------
# Contacts
# ---------------------------------------------------------------------------


@dataclass
class RemoteContact:
    """A correspondent as the helpdesk knows it.

    Attributes:
        id:           Helpdesk contact id (``0`` means "not a real record").
        name:         Display name.
        phone_number: E.164-like, e.g. ``"+5511999999999"`` (may be empty
                      for group contacts).
        identifier:   Opaque identifier; ``<digits>@s.whatsapp.net`` for
                      individuals, the group id for groups.
        is_group:     True when the contact stands for a WhatsApp group.
    """

    id: int
    name: str = ""
    phone_number: str = ""
    identifier: str = ""
    is_group: bool = False
    avatar_url: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RemoteContact":
        identifier = data.get("identifier") or ""
        additional = data.get("additional_attributes") or {}
        return cls(
            id=_as_int(data.get("id")),
            name=data.get("name") or "",
            phone_number=data.get("phone_number") or "",
            identifier=identifier,
            is_group=bool(additional.get("is_group"))
            or identifier.endswith(WHATSAPP_GROUP_SUFFIX),
            avatar_url=data.get("thumbnail") or data.get("avatar_url") or "",
        )


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------


@dataclass
class RemoteConversation:
    """A helpdesk thread, owned by one contact and one inbox.

    ``status`` is one of ``open``, ``pending``, ``resolved``, ``snoozed``.
    ``last_activity_at`` is a unix timestamp, or ``None`` when the
    helpdesk did not report a comparable value.
    """

    id: int
    inbox_id: int
    status: str = "open"
    contact_id: int = 0
    last_activity_at: float | None = None

    @property
    def is_resolved(self) -> bool:
        return self.status == "resolved"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RemoteConversation":
        contact_id = _as_int(data.get("contact_id"))
        if not contact_id:
            sender = (data.get("meta") or {}).get("sender") or {}
            contact_id = _as_int(sender.get("id"))
        return cls(
            id=_as_int(data.get("id")),
            inbox_id=_as_int(data.get("inbox_id")),
            status=data.get("status") or "open",
            contact_id=contact_id,
            last_activity_at=_as_float(data.get("last_activity_at")),
        )


# ---------------------------------------------------------------------------
# Messages & Inboxes
# ---------------------------------------------------------------------------


@dataclass
class Attachment:
    id: int
    file_type: str = "file"
    data_url: str = ""
    file_size: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Attachment":
        return cls(
            id=_as_int(data.get("id")),
            file_type=data.get("file_type") or "file",
            data_url=data.get("data_url") or "",
            file_size=_as_int(data.get("file_size")),
        )


@dataclass
class RemoteMessage:
    id: int
    conversation_id: int = 0
    content: str | None = None
    message_type: str | int = "incoming"
    source_id: str | None = None
    attachments: list[Attachment] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RemoteMessage":
        return cls(
            id=_as_int(data.get("id")),
            conversation_id=_as_int(data.get("conversation_id")),
            content=data.get("content"),
            message_type=data.get("message_type", "incoming"),
            source_id=data.get("source_id"),
            attachments=[
                Attachment.from_dict(a) for a in data.get("attachments") or []
            ],
        )


@dataclass
class Inbox:
    id: int
    name: str
    channel_type: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Inbox":
        return cls(
            id=_as_int(data.get("id")),
            name=data.get("name") or "",
            channel_type=data.get("channel_type") or "",
        )


# ---------------------------------------------------------------------------
# Abstract Provider
# ---------------------------------------------------------------------------


class BaseHelpdeskProvider(ABC):
    """Interface every helpdesk back-end must implement.

    Implementations translate transport failures into the
    ``wootbridge.errors`` taxonomy: ``NotFoundError`` for stale ids,
    ``DuplicateIdentityError`` for uniqueness violations on create,
    ``TransientRemoteError`` for network/5xx, ``HelpdeskAPIError`` for
    everything else.
    """

    name: str = "base"

    # --- Contacts ---

    @abstractmethod
    async def search_contacts(self, query: str) -> list[RemoteContact]:
        """Free-text contact search."""
        ...

    @abstractmethod
    async def filter_contacts(self, phone_numbers: list[str]) -> list[RemoteContact]:
        """Structured exact-match filter on ``phone_number`` (OR-joined)."""
        ...

    @abstractmethod
    async def create_contact(
        self,
        inbox_id: int,
        name: str,
        phone_number: str = "",
        identifier: str = "",
        avatar_url: str = "",
    ) -> RemoteContact:
        ...

    @abstractmethod
    async def get_contact(self, contact_id: int) -> RemoteContact:
        ...

    # --- Conversations ---

    @abstractmethod
    async def list_contact_conversations(
        self, contact_id: int
    ) -> list[RemoteConversation]:
        ...

    @abstractmethod
    async def get_conversation(self, conversation_id: int) -> RemoteConversation:
        ...

    @abstractmethod
    async def create_conversation(
        self, contact_id: int, inbox_id: int, status: str | None = None
    ) -> RemoteConversation:
        ...

    @abstractmethod
    async def toggle_status(self, conversation_id: int, status: str) -> None:
        ...

    # --- Messages ---

    @abstractmethod
    async def create_message(
        self,
        conversation_id: int,
        content: str,
        message_type: str = "incoming",
        private: bool = False,
        source_id: str | None = None,
        content_attributes: dict[str, Any] | None = None,
    ) -> RemoteMessage:
        ...

    @abstractmethod
    async def create_message_with_attachment(
        self,
        conversation_id: int,
        content: str,
        file_name: str,
        data: bytes,
        mime_type: str,
        message_type: str = "incoming",
        source_id: str | None = None,
    ) -> RemoteMessage:
        ...

    # --- Inboxes ---

    @abstractmethod
    async def list_inboxes(self) -> list[Inbox]:
        ...

    @abstractmethod
    async def create_inbox(self, name: str, webhook_url: str) -> Inbox:
        ...

    async def close(self) -> None:
        """Release any pooled connections."""
        return None
