from .base import (
    Attachment,
    BaseHelpdeskProvider,
    Inbox,
    RemoteContact,
    RemoteConversation,
    RemoteMessage,
)
from .chatwoot_provider import ChatwootProvider

__all__ = [
    "Attachment",
    "BaseHelpdeskProvider",
    "ChatwootProvider",
    "Inbox",
    "RemoteContact",
    "RemoteConversation",
    "RemoteMessage",
]
