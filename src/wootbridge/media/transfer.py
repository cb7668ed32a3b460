"""Concrete media sources and sinks for both bridge directions.

    helpdesk -> WhatsApp:  HttpMediaSource    + WhatsAppMediaSink
    WhatsApp -> helpdesk:  GatewayMediaSource + HelpdeskMediaSink
"""

from __future__ import annotations

import httpx
from loguru import logger

from wootbridge.constants import (
    DEFAULT_MEDIA_DOWNLOAD_TIMEOUT,
    DEFAULT_MIME_TYPE,
    DEFAULT_USER_AGENT,
)
from wootbridge.errors import (
    HelpdeskAPIError,
    NotFoundError,
    RemoteTimeoutError,
    TransientRemoteError,
    ValidationError,
)
from wootbridge.handler.channels.base import BaseChannelHandler
from wootbridge.media.pipeline import (
    MediaItem,
    MediaPayload,
    MediaSink,
    MediaSource,
    media_kind,
)
from wootbridge.providers.helpdesk.base import BaseHelpdeskProvider


# ──────────────────────────────────────────────────────────────────────
# Sources
# ──────────────────────────────────────────────────────────────────────


class HttpMediaSource(MediaSource):
    """Downloads ``item.source_url`` (e.g. a helpdesk attachment URL)."""

    def __init__(
        self,
        timeout: float = DEFAULT_MEDIA_DOWNLOAD_TIMEOUT,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            headers={"User-Agent": DEFAULT_USER_AGENT, "Accept": "*/*"},
            timeout=timeout,
            follow_redirects=True,
            transport=transport,
        )

    async def fetch(self, item: MediaItem) -> MediaPayload:
        if not item.source_url:
            raise ValidationError(f"media {item.describe()} has no source URL")

        try:
            response = await self._client.get(item.source_url)
        except httpx.TimeoutException as exc:
            raise RemoteTimeoutError(
                "download timed out", method="GET", endpoint=item.source_url
            ) from exc
        except httpx.HTTPError as exc:
            raise TransientRemoteError(
                str(exc) or type(exc).__name__, method="GET", endpoint=item.source_url
            ) from exc

        status = response.status_code
        if status != 200:
            kwargs = {"status_code": status, "method": "GET", "endpoint": item.source_url}
            if status == 404:
                raise NotFoundError("media not found", **kwargs)
            if status >= 500 or status == 429:
                raise TransientRemoteError("media download failed", **kwargs)
            raise HelpdeskAPIError("media download failed", **kwargs)

        # the served content type beats the file_type guess on the item
        served = response.headers.get("content-type", "").split(";", 1)[0].strip()
        if not served or served == DEFAULT_MIME_TYPE:
            served = item.mime_type
        logger.debug("Downloaded {} bytes from {}", len(response.content), item.source_url)
        return MediaPayload(response.content, served)

    async def close(self) -> None:
        await self._client.aclose()


class GatewayMediaSource(MediaSource):
    """Downloads the media of a received WhatsApp message by its id."""

    def __init__(self, channel: BaseChannelHandler) -> None:
        self._channel = channel

    async def fetch(self, item: MediaItem) -> MediaPayload:
        if not item.message_id:
            raise ValidationError(f"media {item.describe()} has no message id")
        data, mime_type = await self._channel.download_media(item.message_id, item.kind)
        return MediaPayload(data, item.mime_type or mime_type)


# ──────────────────────────────────────────────────────────────────────
# Sinks
# ──────────────────────────────────────────────────────────────────────


class WhatsAppMediaSink(MediaSink):
    """Sends each item with the channel call matching its media kind."""

    def __init__(self, channel: BaseChannelHandler) -> None:
        self._channel = channel

    async def deliver(self, recipient: str, item: MediaItem, payload: MediaPayload) -> None:
        mime_type = payload.mime_type or item.mime_type
        kind = item.kind if item.media_type else media_kind(mime_type)

        if kind == "image":
            await self._channel.send_image(recipient, payload.data, mime_type, item.caption)
        elif kind == "audio":
            await self._channel.send_audio(recipient, payload.data, mime_type, ptt=True)
        elif kind == "video":
            await self._channel.send_video(recipient, payload.data, mime_type, item.caption)
        else:
            await self._channel.send_document(
                recipient,
                payload.data,
                mime_type,
                item.file_name or "document",
                item.caption,
            )


class HelpdeskMediaSink(MediaSink):
    """Posts each item as a message with one attachment.

    ``recipient`` is the helpdesk conversation id. ``item.metadata`` may
    carry ``message_type`` and ``source_id`` for the created message.
    """

    def __init__(self, provider: BaseHelpdeskProvider) -> None:
        self._provider = provider

    async def deliver(self, recipient: str, item: MediaItem, payload: MediaPayload) -> None:
        try:
            conversation_id = int(recipient)
        except ValueError as exc:
            raise ValidationError(f"invalid conversation id {recipient!r}") from exc

        await self._provider.create_message_with_attachment(
            conversation_id=conversation_id,
            content=item.caption,
            file_name=item.file_name or "file",
            data=payload.data,
            mime_type=payload.mime_type or item.mime_type,
            message_type=item.metadata.get("message_type", "incoming"),
            source_id=item.metadata.get("source_id"),
        )
