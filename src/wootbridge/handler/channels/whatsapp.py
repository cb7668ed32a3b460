"""WhatsApp channel handler: talks to an HTTP WhatsApp gateway session.

Supports:
    - Text, image, audio (voice note), video and document sends
    - Media download for received messages
    - Decoding gateway webhook events into ``WhatsAppMessage`` on the bus
"""

from __future__ import annotations

import base64
from typing import Any

import httpx
from loguru import logger

from wootbridge.constants import (
    DEFAULT_CONTROL_PLANE_TIMEOUT,
    DEFAULT_MEDIA_UPLOAD_TIMEOUT,
    WHATSAPP_GROUP_SUFFIX,
)
from wootbridge.errors import GatewayError, ValidationError
from wootbridge.handler.message_bus import MessageBus
from wootbridge.handler.messages import WhatsAppMessage
from wootbridge.resolvers.phone import digits_only

from .base import BaseChannelHandler

_DOWNLOAD_KINDS = ("image", "video", "audio", "document")


def _data_url(data: bytes, mime_type: str) -> str:
    encoded = base64.b64encode(data).decode("ascii")
    return f"data:{mime_type or 'application/octet-stream'};base64,{encoded}"


def _phone_for(recipient: str) -> str:
    """The gateway takes bare digits for people and the full JID for groups."""
    if WHATSAPP_GROUP_SUFFIX in recipient:
        return recipient
    phone = digits_only(recipient.split("@", 1)[0])
    if not phone:
        raise ValidationError(f"invalid WhatsApp recipient {recipient!r}")
    return phone


class WhatsAppChannelHandler(BaseChannelHandler):
    """WhatsApp channel backed by one gateway session.

    Responsibilities:
        - Send text and media to a JID or phone number
        - Download media of received messages
        - Convert gateway events to WhatsAppMessage and publish to bus
    """

    name = "whatsapp"

    def __init__(
        self,
        bus: MessageBus,
        base_url: str,
        session_id: str,
        api_key: str | None = None,
        config: dict | None = None,
        *,
        timeout: float = DEFAULT_CONTROL_PLANE_TIMEOUT,
        media_timeout: float = DEFAULT_MEDIA_UPLOAD_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Args:
            bus: MessageBus instance for publishing inbound messages.
            base_url: Gateway root URL, e.g. ``http://localhost:8080``.
            session_id: Gateway session that owns the WhatsApp number.
            api_key: Session API key, sent as the ``Authorization`` header.
            config: Optional channel-specific config dict.
        """
        super().__init__(bus, config)
        self._session_base = f"{base_url.rstrip('/')}/session/{session_id}"
        self._session_id = session_id
        self._api_key = api_key
        self._timeout = timeout
        self._media_timeout = media_timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self):
        """Open the HTTP client used for gateway calls."""
        if self._running:
            logger.warning("WhatsAppChannelHandler.connect() called while already connected")
            return

        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["Authorization"] = self._api_key
        self._client = httpx.AsyncClient(
            headers=headers, timeout=self._timeout, transport=self._transport
        )
        self._running = True
        logger.info(f"WhatsApp channel connected (session={self._session_id})")

    async def disconnect(self):
        """Close the HTTP client."""
        if not self._running or self._client is None:
            return

        try:
            await self._client.aclose()
        finally:
            self._client = None
            self._running = False
            logger.info("WhatsApp channel disconnected")

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def handle_event(self, payload: dict[str, Any]) -> WhatsAppMessage | None:
        """Decode a gateway webhook event and publish it to the bus.

        Non-message events are ignored and return None.
        """
        event_type = payload.get("event") or payload.get("type_event") or "message"
        if event_type not in ("message", "Message", "messages.upsert"):
            logger.trace("Ignoring WhatsApp event {}", event_type)
            return None

        message = WhatsAppMessage.from_event(payload)
        await self._publish_inbound(message)
        logger.debug(
            f"Received {message.message_type} {message.message_id} in chat {message.chat_id}"
        )
        return message

    async def download_media(
        self, message_id: str, media_type: str = "document"
    ) -> tuple[bytes, str]:
        kind = media_type if media_type in _DOWNLOAD_KINDS else "document"
        data = await self._post(
            f"/chat/download/{kind}",
            {"message_id": message_id},
            timeout=self._media_timeout,
        )
        if not data.get("success", True) or not data.get("data"):
            raise GatewayError(
                f"download of {kind} {message_id} returned no data: "
                f"{data.get('error') or data.get('message') or 'unknown error'}"
            )
        try:
            raw = base64.b64decode(data["data"])
        except (ValueError, TypeError) as exc:
            raise GatewayError(f"download of {message_id} is not valid base64") from exc

        mime_type = data.get("mime_type") or data.get("mimetype") or ""
        logger.debug("Downloaded {} bytes of {} for {}", len(raw), mime_type, message_id)
        return raw, mime_type

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def send_text(self, recipient: str, text: str) -> dict:
        return await self._send("text", {"phone": _phone_for(recipient), "body": text})

    async def send_image(
        self, recipient: str, data: bytes, mime_type: str, caption: str = ""
    ) -> dict:
        body = {"phone": _phone_for(recipient), "image": _data_url(data, mime_type)}
        if caption:
            body["caption"] = caption
        return await self._send("image", body, media=True)

    async def send_audio(
        self, recipient: str, data: bytes, mime_type: str, ptt: bool = True
    ) -> dict:
        body = {
            "phone": _phone_for(recipient),
            "audio": _data_url(data, mime_type),
            "ptt": ptt,
        }
        return await self._send("audio", body, media=True)

    async def send_video(
        self, recipient: str, data: bytes, mime_type: str, caption: str = ""
    ) -> dict:
        body = {"phone": _phone_for(recipient), "video": _data_url(data, mime_type)}
        if caption:
            body["caption"] = caption
        return await self._send("video", body, media=True)

    async def send_document(
        self,
        recipient: str,
        data: bytes,
        mime_type: str,
        file_name: str,
        caption: str = "",
    ) -> dict:
        body = {
            "phone": _phone_for(recipient),
            "document": _data_url(data, mime_type),
            "filename": file_name or "document",
            "mimetype": mime_type,
        }
        if caption:
            body["caption"] = caption
        return await self._send("document", body, media=True)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _send(self, kind: str, body: dict, media: bool = False) -> dict:
        result = await self._post(
            f"/message/send/{kind}",
            body,
            timeout=self._media_timeout if media else self._timeout,
        )
        logger.debug(f"Sent {kind} to {body['phone']}")
        return result

    async def _post(self, path: str, body: dict, timeout: float) -> dict:
        if self._client is None:
            raise GatewayError("Cannot call gateway: handler is not connected")

        url = f"{self._session_base}{path}"
        try:
            response = await self._client.post(url, json=body, timeout=timeout)
        except httpx.TimeoutException as exc:
            raise GatewayError(f"POST {path} timed out after {timeout}s") from exc
        except httpx.HTTPError as exc:
            raise GatewayError(f"POST {path} failed: {exc}") from exc

        if response.status_code >= 400:
            try:
                detail = response.json()
            except ValueError:
                detail = response.text[:500]
            logger.error(f"Gateway {response.status_code} for POST {path}: {detail}")
            raise GatewayError(f"POST {path}: {detail}", status_code=response.status_code)

        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {"data": data}
