"""Shared in-memory fakes for the helpdesk and the WhatsApp channel."""

from collections import Counter

import pytest

from wootbridge.errors import DuplicateIdentityError, GatewayError, NotFoundError, TransientRemoteError
from wootbridge.handler.channels.base import BaseChannelHandler
from wootbridge.providers.helpdesk.base import (
    BaseHelpdeskProvider,
    Inbox,
    RemoteContact,
    RemoteConversation,
    RemoteMessage,
)


class FakeHelpdesk(BaseHelpdeskProvider):
    """A helpdesk held in dicts, counting every call by method name."""

    name = "fake"

    def __init__(self):
        self.calls: Counter = Counter()
        self.contacts: dict[int, RemoteContact] = {}
        self.conversations: dict[int, RemoteConversation] = {}
        self.messages: list[dict] = []
        self.inboxes: list[Inbox] = [Inbox(id=1, name="WhatsApp", channel_type="Channel::Api")]
        self.fail_search = False
        self.race_on_create = False
        self.deleted_contacts: set[int] = set()
        self._next_id = 100
        self._clock = 1_700_000_000.0

    def _id(self) -> int:
        self._next_id += 1
        return self._next_id

    def add_contact(self, **kwargs) -> RemoteContact:
        contact = RemoteContact(id=self._id(), **kwargs)
        self.contacts[contact.id] = contact
        return contact

    def delete_contact(self, contact_id):
        """Remove a contact and its conversations, as an agent merge or delete would."""
        self.contacts.pop(contact_id, None)
        self.deleted_contacts.add(contact_id)
        for conversation_id in [
            c.id for c in self.conversations.values() if c.contact_id == contact_id
        ]:
            del self.conversations[conversation_id]

    def _require_contact(self, contact_id):
        if contact_id in self.deleted_contacts:
            raise NotFoundError("contact not found", status_code=404)

    def add_conversation(self, contact_id, inbox_id=1, status="open", last_activity_at=None):
        conversation = RemoteConversation(
            id=self._id(),
            inbox_id=inbox_id,
            status=status,
            contact_id=contact_id,
            last_activity_at=last_activity_at,
        )
        self.conversations[conversation.id] = conversation
        return conversation

    # --- Contacts ---

    async def search_contacts(self, query):
        self.calls["search_contacts"] += 1
        if self.fail_search:
            raise TransientRemoteError("search unavailable", status_code=503)
        return [
            c
            for c in self.contacts.values()
            if query in c.phone_number or query in c.identifier or query in c.name
        ]

    async def filter_contacts(self, phone_numbers):
        self.calls["filter_contacts"] += 1
        if self.fail_search:
            raise TransientRemoteError("filter unavailable", status_code=503)
        wanted = {n.lstrip("+") for n in phone_numbers}
        return [c for c in self.contacts.values() if c.phone_number.lstrip("+") in wanted]

    async def create_contact(self, inbox_id, name, phone_number="", identifier="", avatar_url=""):
        self.calls["create_contact"] += 1
        if self.race_on_create:
            # another worker created the same contact a moment earlier
            self.race_on_create = False
            self.add_contact(
                name=name,
                phone_number=phone_number,
                identifier=identifier,
                is_group=identifier.endswith("@g.us"),
            )
            raise DuplicateIdentityError(
                "Identifier has already been taken", status_code=422
            )
        return self.add_contact(
            name=name,
            phone_number=phone_number,
            identifier=identifier,
            is_group=identifier.endswith("@g.us"),
        )

    async def get_contact(self, contact_id):
        self.calls["get_contact"] += 1
        if contact_id not in self.contacts:
            raise NotFoundError("contact not found", status_code=404)
        return self.contacts[contact_id]

    # --- Conversations ---

    async def list_contact_conversations(self, contact_id):
        self.calls["list_contact_conversations"] += 1
        self._require_contact(contact_id)
        return [c for c in self.conversations.values() if c.contact_id == contact_id]

    async def get_conversation(self, conversation_id):
        self.calls["get_conversation"] += 1
        if conversation_id not in self.conversations:
            raise NotFoundError("conversation not found", status_code=404)
        return self.conversations[conversation_id]

    async def create_conversation(self, contact_id, inbox_id, status=None):
        self.calls["create_conversation"] += 1
        self._require_contact(contact_id)
        self._clock += 1
        return self.add_conversation(
            contact_id, inbox_id, status or "open", last_activity_at=self._clock
        )

    async def toggle_status(self, conversation_id, status):
        self.calls["toggle_status"] += 1
        self.conversations[conversation_id].status = status

    # --- Messages ---

    async def create_message(
        self,
        conversation_id,
        content,
        message_type="incoming",
        private=False,
        source_id=None,
        content_attributes=None,
    ):
        self.calls["create_message"] += 1
        if conversation_id not in self.conversations:
            raise NotFoundError("conversation not found", status_code=404)
        self.messages.append(
            {
                "conversation_id": conversation_id,
                "content": content,
                "message_type": message_type,
                "source_id": source_id,
                "content_attributes": content_attributes,
            }
        )
        return RemoteMessage(id=self._id(), conversation_id=conversation_id, content=content)

    async def create_message_with_attachment(
        self,
        conversation_id,
        content,
        file_name,
        data,
        mime_type,
        message_type="incoming",
        source_id=None,
    ):
        self.calls["create_message_with_attachment"] += 1
        if conversation_id not in self.conversations:
            raise NotFoundError("conversation not found", status_code=404)
        self.messages.append(
            {
                "conversation_id": conversation_id,
                "content": content,
                "file_name": file_name,
                "data": data,
                "mime_type": mime_type,
                "message_type": message_type,
                "source_id": source_id,
            }
        )
        return RemoteMessage(id=self._id(), conversation_id=conversation_id, content=content)

    # --- Inboxes ---

    async def list_inboxes(self):
        self.calls["list_inboxes"] += 1
        return list(self.inboxes)

    async def create_inbox(self, name, webhook_url):
        self.calls["create_inbox"] += 1
        inbox = Inbox(id=self._id(), name=name, channel_type="Channel::Api")
        self.inboxes.append(inbox)
        return inbox


class FakeChannel(BaseChannelHandler):
    """Records every send; serves downloads from ``media``."""

    name = "whatsapp"

    def __init__(self, bus=None):
        super().__init__(bus)
        self.sent: list[tuple] = []
        self.media: dict[str, tuple[bytes, str]] = {}

    async def connect(self):
        self._running = True

    async def disconnect(self):
        self._running = False

    async def download_media(self, message_id, media_type="document"):
        if message_id not in self.media:
            raise GatewayError(f"no media for {message_id}", status_code=404)
        return self.media[message_id]

    async def send_text(self, recipient, text):
        self.sent.append(("text", recipient, text))
        return {}

    async def send_image(self, recipient, data, mime_type, caption=""):
        self.sent.append(("image", recipient, caption))
        return {}

    async def send_audio(self, recipient, data, mime_type, ptt=True):
        self.sent.append(("audio", recipient, ""))
        return {}

    async def send_video(self, recipient, data, mime_type, caption=""):
        self.sent.append(("video", recipient, caption))
        return {}

    async def send_document(self, recipient, data, mime_type, file_name, caption=""):
        self.sent.append(("document", recipient, caption))
        return {}


@pytest.fixture
def helpdesk():
    return FakeHelpdesk()


@pytest.fixture
def channel():
    return FakeChannel()
