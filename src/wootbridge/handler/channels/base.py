# channel: connect/disconnect, download media, send text and media

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from wootbridge.handler.message_bus import MessageBus

from wootbridge.handler.messages import WhatsAppMessage


class BaseChannelHandler(ABC):
    """A message source: receives chat events and sends replies.

    ``recipient`` is always a JID (``<digits>@s.whatsapp.net`` or
    ``<id>@g.us``) or a bare phone number. Media payloads are raw bytes;
    encoding for the wire is the implementation's concern.
    """

    name: str = "base"

    def __init__(
        self,
        bus: MessageBus,
        config: dict | None = None,
    ):
        self._running = False
        self._bus = bus
        self._config = config or {}

    @abstractmethod
    async def connect(self):
        """Establish connection to the channel."""
        pass

    @abstractmethod
    async def disconnect(self):
        """Terminate connection to the channel."""
        pass

    @abstractmethod
    async def download_media(
        self, message_id: str, media_type: str = "document"
    ) -> tuple[bytes, str]:
        """Fetch the media of a received message as ``(data, mime_type)``."""
        pass

    @abstractmethod
    async def send_text(self, recipient: str, text: str) -> dict:
        pass

    @abstractmethod
    async def send_image(
        self, recipient: str, data: bytes, mime_type: str, caption: str = ""
    ) -> dict:
        pass

    @abstractmethod
    async def send_audio(
        self, recipient: str, data: bytes, mime_type: str, ptt: bool = True
    ) -> dict:
        pass

    @abstractmethod
    async def send_video(
        self, recipient: str, data: bytes, mime_type: str, caption: str = ""
    ) -> dict:
        pass

    @abstractmethod
    async def send_document(
        self,
        recipient: str,
        data: bytes,
        mime_type: str,
        file_name: str,
        caption: str = "",
    ) -> dict:
        pass

    async def _publish_inbound(self, message: WhatsAppMessage):
        """Publish an inbound message to the bus."""
        await self._bus.publish_inbound(message)

    @property
    def is_running(self) -> bool:
        """Return True if the handler is running, False otherwise."""
        return self._running
