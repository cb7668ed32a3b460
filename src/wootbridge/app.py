"""Application bootstrap: creates shared components and runs everything.

This is the single place that wires the CommunicationHandler, the
resolvers, the two media pipelines and the BridgeLoop together through a
shared MessageBus, then runs them concurrently.
"""

from __future__ import annotations

import asyncio
import signal
import sys
from typing import Any

from loguru import logger

from wootbridge.bridge.loop import BridgeLoop
from wootbridge.config import AppConfig, LoggingConfig, get_config
from wootbridge.handler.handler import CommunicationHandler
from wootbridge.handler.message_bus import MessageBus
from wootbridge.handler.messages import HelpdeskWebhook, WhatsAppMessage
from wootbridge.handler.session.mapping import (
    BaseMappingStore,
    InMemoryMappingStore,
    SQLiteMappingStore,
)
from wootbridge.media.limiter import CircuitBreaker, MediaGuard, RateLimiter
from wootbridge.media.pipeline import MediaDispatcher, MediaSink, MediaSource
from wootbridge.media.transfer import (
    GatewayMediaSource,
    HelpdeskMediaSink,
    HttpMediaSource,
    WhatsAppMediaSink,
)
from wootbridge.providers.helpdesk import ChatwootProvider
from wootbridge.resolvers.cache import ResolutionCache
from wootbridge.resolvers.contacts import IdentityResolver
from wootbridge.resolvers.conversations import ConversationResolver
from wootbridge.resolvers.inbox import default_webhook_url, ensure_inbox


def setup_logging(cfg: LoggingConfig) -> None:
    """One stderr sink, plus a rotating file sink when configured."""
    logger.remove()
    logger.add(sys.stderr, level=cfg.level.upper())
    if cfg.file:
        logger.add(cfg.file, level=cfg.level.upper(), rotation="10 MB", retention=5)


def build_mapping_store(config: AppConfig) -> BaseMappingStore:
    if config.mapping.backend == "memory":
        return InMemoryMappingStore()
    if config.mapping.backend == "sqlite":
        return SQLiteMappingStore(config.mapping.resolved_path)
    raise ValueError(f"Unknown mapping backend: {config.mapping.backend}")


class Application:
    """Top-level application that owns all major components.

    Architecture:
        MessageBus (shared)
            ├── CommunicationHandler  (gateway events → inbound queue,
            │                          helpdesk webhooks → outbound queue)
            └── BridgeLoop            (inbound → resolvers → helpdesk,
                                       outbound → reverse resolution → WhatsApp)
    """

    def __init__(self, config: AppConfig | None = None) -> None:
        self._config = config or get_config()
        setup_logging(self._config.logging)

        # Shared message bus: the single bridge between the edges and the loop
        self.message_bus = MessageBus()

        # Communication handler: owns the gateway channel and webhook intake
        CommunicationHandler.reset()  # ensure clean state
        self.handler = CommunicationHandler.get_instance(
            message_bus=self.message_bus, config=self._config
        )

        hd_cfg = self._config.helpdesk
        self.provider = ChatwootProvider(
            url=hd_cfg.url,
            account_id=hd_cfg.account_id,
            api_token=hd_cfg.api_token or "",
            timeout=self._config.timeouts.control_plane,
            media_timeout=self._config.timeouts.media_upload,
        )
        self.mappings = build_mapping_store(self._config)
        self.cache = ResolutionCache(
            contact_ttl=self._config.cache.contact_ttl,
            conversation_ttl=self._config.cache.conversation_ttl,
            sweep_interval=self._config.cache.sweep_interval,
        )
        self._http_media = HttpMediaSource(timeout=self._config.media.download_timeout)

        # Built in start(), once the inbox id is known
        self.bridge: BridgeLoop | None = None

        self._shutdown_event = asyncio.Event()

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def _dispatcher(self, source: MediaSource, sink: MediaSink, name: str) -> MediaDispatcher:
        media = self._config.media
        guard = MediaGuard(
            RateLimiter(media.rate_limit, media.rate_window, name=name),
            CircuitBreaker(media.breaker_threshold, media.breaker_reset_timeout, name=name),
        )
        return MediaDispatcher(
            source,
            sink,
            guard,
            max_concurrent=media.max_concurrent,
            stagger_delay=media.stagger_delay,
            item_timeout=media.item_timeout,
            name=name,
        )

    def build_bridge(self, inbox_id: int) -> BridgeLoop:
        """Assemble resolvers, dispatchers and the loop for ``inbox_id``."""
        hd_cfg = self._config.helpdesk
        channel = self.handler.channel

        identity = IdentityResolver(
            self.provider,
            self.cache,
            inbox_id,
            merge_brazil_contacts=hd_cfg.merge_brazil_contacts,
        )
        conversations = ConversationResolver(
            self.provider,
            self.mappings,
            self.cache,
            reopen_conversation=hd_cfg.reopen_conversation,
            conversation_pending=hd_cfg.conversation_pending,
            mapping_write_timeout=self._config.timeouts.mapping_write,
        )
        inbound_media = self._dispatcher(
            GatewayMediaSource(channel), HelpdeskMediaSink(self.provider), "inbound"
        )
        outbound_media = self._dispatcher(
            self._http_media, WhatsAppMediaSink(channel), "outbound"
        )

        return BridgeLoop(
            message_bus=self.message_bus,
            provider=self.provider,
            channel=channel,
            identity=identity,
            conversations=conversations,
            cache=self.cache,
            inbound_media=inbound_media,
            outbound_media=outbound_media,
            inbox_id=inbox_id,
            ignore_jids=hd_cfg.ignore_jids,
            sign_messages=hd_cfg.sign_messages,
            sign_delimiter=hd_cfg.sign_delimiter,
            serialize_chats=self._config.bridge.serialize_chats,
            max_inflight=self._config.bridge.max_inflight,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start all components and run until shutdown signal."""
        logger.info("wootbridge starting up...")

        hd_cfg = self._config.helpdesk
        inbox = await ensure_inbox(
            self.provider,
            hd_cfg.inbox_name,
            webhook_url=hd_cfg.webhook_url
            or default_webhook_url(self._config.whatsapp.session_id),
            auto_create=hd_cfg.auto_create_inbox,
        )
        self.bridge = self.build_bridge(inbox.id)

        # Install signal handlers for graceful shutdown
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._signal_handler)

        self.cache.start()

        # Connect the gateway channel and route helpdesk webhooks into the bridge
        await self.handler.start(self.bridge.handle_outbound)

        bridge_task = asyncio.create_task(self.bridge.run(), name="bridge-loop")

        logger.info(
            f"wootbridge is running (inbox '{inbox.name}', id={inbox.id}). "
            f"Press Ctrl+C to stop."
        )

        # Wait for shutdown signal
        await self._shutdown_event.wait()

        # Graceful shutdown
        logger.info("Shutting down...")
        bridge_task.cancel()
        try:
            await bridge_task
        except asyncio.CancelledError:
            pass

        await self.stop()

    async def stop(self) -> None:
        """Cancel in-flight events, flush mapping writes, close clients."""
        if self.bridge is not None:
            await self.bridge.stop()
        await self.handler.stop()
        await self.cache.close()
        await self._http_media.close()
        await self.provider.close()
        await self.mappings.close()
        logger.info("wootbridge stopped.")

    def shutdown(self) -> None:
        self._shutdown_event.set()

    def _signal_handler(self) -> None:
        """Handle SIGINT/SIGTERM by setting the shutdown event."""
        logger.info("Shutdown signal received")
        self.shutdown()

    # ------------------------------------------------------------------
    # Webhook entry points (called by the HTTP layer)
    # ------------------------------------------------------------------

    async def handle_whatsapp_event(self, payload: dict[str, Any]) -> WhatsAppMessage | None:
        return await self.handler.receive_whatsapp_event(payload)

    async def handle_helpdesk_webhook(self, payload: dict[str, Any]) -> HelpdeskWebhook:
        return await self.handler.receive_helpdesk_webhook(payload)

    def get_stats(self) -> dict[str, Any]:
        stats: dict[str, Any] = {
            "inbound_queue": self.message_bus.inbound_size,
            "outbound_queue": self.message_bus.outbound_size,
        }
        if self.bridge is not None:
            stats.update(self.bridge.get_stats())
        return stats

    def run(self) -> None:
        """Synchronous entry point: creates event loop and runs the app."""
        asyncio.run(self.start())


def main() -> None:
    Application().run()


if __name__ == "__main__":
    main()
