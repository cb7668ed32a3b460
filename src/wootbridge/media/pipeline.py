"""Media Dispatch Pipeline: move attachments from one side to the other.

Each item is fetched fully into memory (store-and-forward) and then handed
to a sink. A single item is transferred inline under the per-item
timeout. A batch goes through a bounded worker pool: item ``i`` starts no
earlier than ``i * stagger_delay`` after the batch began, waits for a
rate-limiter slot, then runs through the circuit breaker. One item's
failure never cancels its siblings; failures are collected and raised
together as ``MediaDispatchError`` once every worker has finished.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from wootbridge.constants import (
    DEFAULT_EXTENSION,
    DEFAULT_MEDIA_ITEM_TIMEOUT,
    DEFAULT_MEDIA_MAX_CONCURRENT,
    DEFAULT_MEDIA_STAGGER_DELAY,
    MEDIA_ITEM_TIMEOUT_LIMIT,
    MEDIA_MAX_CONCURRENT_LIMIT,
    MIME_EXTENSIONS,
)
from wootbridge.errors import (
    MediaDispatchError,
    MediaFailure,
    RemoteTimeoutError,
    ValidationError,
)
from wootbridge.media.limiter import MediaGuard


# ---------------------------------------------------------------------------
# Items & payloads
# ---------------------------------------------------------------------------


@dataclass
class MediaItem:
    """One attachment to move.

    Exactly one of ``data``, ``message_id`` or ``source_url`` tells the
    pipeline where the bytes come from: inline, a gateway message, or a URL.
    """

    file_name: str = ""
    mime_type: str = ""
    size_hint: int = 0
    source_url: str = ""
    data: bytes | None = None
    message_id: str = ""
    media_type: str = ""
    caption: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def kind(self) -> str:
        """``image``/``audio``/``video``/``document``."""
        if self.media_type in ("image", "audio", "video", "document"):
            return self.media_type
        return media_kind(self.mime_type)

    def describe(self) -> str:
        parts = [self.file_name or "<unnamed>"]
        if self.source_url:
            parts.append(self.source_url)
        elif self.message_id:
            parts.append(f"message {self.message_id}")
        return " ".join(parts)


@dataclass
class MediaPayload:
    data: bytes
    mime_type: str


def media_kind(mime_type: str) -> str:
    mime = (mime_type or "").lower()
    for kind in ("image", "audio", "video"):
        if mime.startswith(f"{kind}/"):
            return kind
    return "document"


def extension_for(mime_type: str) -> str:
    mime = (mime_type or "").lower()
    if mime in MIME_EXTENSIONS:
        return MIME_EXTENSIONS[mime]
    base = mime.split(";", 1)[0].strip()
    return MIME_EXTENSIONS.get(base, DEFAULT_EXTENSION)


def generated_file_name(prefix: str, mime_type: str, timestamp: float) -> str:
    """``audio_1700000000.ogg`` style names for media that arrive unnamed."""
    return f"{prefix}_{int(timestamp)}.{extension_for(mime_type)}"


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


class MediaSource(ABC):
    """Where item bytes are fetched from."""

    @abstractmethod
    async def fetch(self, item: MediaItem) -> MediaPayload:
        ...


class MediaSink(ABC):
    """Where fetched bytes are delivered to."""

    @abstractmethod
    async def deliver(self, recipient: str, item: MediaItem, payload: MediaPayload) -> None:
        ...


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


class MediaDispatcher:
    """Bounded, rate-limited, breaker-guarded transfer of media items."""

    def __init__(
        self,
        source: MediaSource,
        sink: MediaSink,
        guard: MediaGuard | None = None,
        *,
        max_concurrent: int = DEFAULT_MEDIA_MAX_CONCURRENT,
        stagger_delay: float = DEFAULT_MEDIA_STAGGER_DELAY,
        item_timeout: float = DEFAULT_MEDIA_ITEM_TIMEOUT,
        name: str = "media",
    ) -> None:
        self._source = source
        self._sink = sink
        self._guard = guard or MediaGuard()
        self._stagger = stagger_delay
        self.name = name
        self.set_max_concurrent(max_concurrent)
        self.set_item_timeout(item_timeout)

    @property
    def guard(self) -> MediaGuard:
        return self._guard

    def set_max_concurrent(self, value: int) -> None:
        if not 1 <= value <= MEDIA_MAX_CONCURRENT_LIMIT:
            raise ValidationError(
                f"max_concurrent must be within 1..{MEDIA_MAX_CONCURRENT_LIMIT}, got {value}"
            )
        self._max_concurrent = value

    def set_item_timeout(self, seconds: float) -> None:
        if not 0 < seconds <= MEDIA_ITEM_TIMEOUT_LIMIT:
            raise ValidationError(
                f"item_timeout must be within (0, {MEDIA_ITEM_TIMEOUT_LIMIT}], got {seconds}"
            )
        self._item_timeout = seconds

    async def dispatch(self, recipient: str, items: list[MediaItem]) -> None:
        """Transfer ``items`` to ``recipient``.

        Raises:
            MediaDispatchError: one or more items failed. Items that
                succeeded stay delivered.
        """
        if not items:
            return

        if len(items) == 1:
            item = items[0]
            try:
                await self._bounded_transfer(recipient, item)
            except Exception as exc:
                logger.error(f"Media {item.describe()} to {recipient} failed: {exc}")
                raise MediaDispatchError([MediaFailure(0, item, exc)], 1) from exc
            logger.debug("Media {} delivered to {}", item.describe(), recipient)
            return

        failures = await self._dispatch_batch(recipient, items)
        delivered = len(items) - len(failures)
        logger.info(
            "{} dispatch to {}: {}/{} item(s) delivered",
            self.name,
            recipient,
            delivered,
            len(items),
        )
        if failures:
            raise MediaDispatchError(failures, len(items))

    async def _dispatch_batch(
        self, recipient: str, items: list[MediaItem]
    ) -> list[MediaFailure]:
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[tuple[int, MediaItem]] = asyncio.Queue()
        for pair in enumerate(items):
            queue.put_nowait(pair)

        failures: list[MediaFailure] = []
        started = loop.time()

        async def worker() -> None:
            while True:
                try:
                    index, item = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return

                delay = started + index * self._stagger - loop.time()
                if delay > 0:
                    await asyncio.sleep(delay)

                # one budget covers both the slot wait and the transfer
                deadline = loop.time() + self._item_timeout
                try:
                    await self._guard.run(
                        lambda: self._bounded_transfer(
                            recipient, item, max(deadline - loop.time(), 0.0)
                        ),
                        wait_timeout=self._item_timeout,
                    )
                    logger.debug(
                        "Media #{} ({}) delivered to {}", index + 1, item.describe(), recipient
                    )
                except Exception as exc:
                    logger.warning(
                        f"Media #{index + 1} ({item.describe()}) to {recipient} failed: {exc}"
                    )
                    failures.append(MediaFailure(index, item, exc))

        workers = [
            asyncio.create_task(worker(), name=f"{self.name}-media-worker-{n}")
            for n in range(min(self._max_concurrent, len(items)))
        ]
        try:
            await asyncio.gather(*workers)
        finally:
            for task in workers:
                if not task.done():
                    task.cancel()
        return failures

    async def _bounded_transfer(
        self, recipient: str, item: MediaItem, budget: float | None = None
    ) -> None:
        if budget is None:
            budget = self._item_timeout
        try:
            await asyncio.wait_for(self._transfer(recipient, item), timeout=budget)
        except asyncio.TimeoutError as exc:
            raise RemoteTimeoutError(
                f"media transfer exceeded {self._item_timeout}s",
                endpoint=item.describe(),
            ) from exc

    async def _transfer(self, recipient: str, item: MediaItem) -> None:
        if item.data is not None:
            payload = MediaPayload(item.data, item.mime_type)
        else:
            payload = await self._source.fetch(item)

        if not payload.data:
            raise ValidationError(f"media data for {item.describe()} is empty")

        await self._sink.deliver(recipient, item, payload)
