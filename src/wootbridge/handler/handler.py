# roles: connection with the WhatsApp gateway, webhook intake from both sides, message transport. # noqa:E501

from __future__ import annotations

import asyncio
from typing import Any

from loguru import logger

from wootbridge.config import AppConfig, get_config
from wootbridge.handler.channels.whatsapp import WhatsAppChannelHandler
from wootbridge.handler.message_bus import MessageBus, OutboundCallback
from wootbridge.handler.messages import HelpdeskWebhook, OutboundMessage, WhatsAppMessage


class CommunicationHandler:
    """Singleton orchestrator that owns the channel and the MessageBus.

    Responsibilities:
        1. **Channel connection**: instantiate and connect/disconnect the
           WhatsApp gateway channel.
        2. **Webhook intake**: decode gateway events onto the inbound queue
           and helpdesk webhooks onto the outbound queue.
        3. **Message transport**: run the outbound dispatch task that hands
           helpdesk webhooks to the bridge.
    """

    _instance: "CommunicationHandler | None" = None

    # ------------------------------------------------------------------
    # Singleton
    # ------------------------------------------------------------------

    @classmethod
    def get_instance(
        cls,
        message_bus: MessageBus | None = None,
        config: AppConfig | None = None,
    ) -> "CommunicationHandler":
        """Return the singleton CommunicationHandler, creating it on first call."""
        if cls._instance is None:
            cls._instance = cls(message_bus=message_bus, config=config)
        return cls._instance

    @classmethod
    def reset(cls):
        """Reset the singleton (useful for testing)."""
        cls._instance = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def __init__(
        self,
        message_bus: MessageBus | None = None,
        config: AppConfig | None = None,
    ):
        self._config = config or get_config()
        self.message_bus = message_bus or MessageBus()
        self.channel = self._register_channel()
        self._dispatch_task: asyncio.Task | None = None

    def _register_channel(self) -> WhatsAppChannelHandler:
        """Build the WhatsApp channel from config.

        The channel receives the shared MessageBus so it can publish
        inbound messages directly via ``_publish_inbound()``.
        """
        wa_cfg = self._config.whatsapp
        if not wa_cfg.api_key:
            logger.warning(
                f"No API key resolved for WhatsApp session '{wa_cfg.session_id}'. "
                f"Gateway calls will be unauthenticated."
            )
        handler = WhatsAppChannelHandler(
            bus=self.message_bus,
            base_url=wa_cfg.base_url,
            session_id=wa_cfg.session_id,
            api_key=wa_cfg.api_key,
            timeout=self._config.timeouts.control_plane,
            media_timeout=self._config.timeouts.media_upload,
        )
        logger.info(f"Registered channel: {handler.name} (session={wa_cfg.session_id})")
        return handler

    async def start(self, on_outbound: OutboundCallback):
        """Connect the channel and start outbound dispatch into ``on_outbound``."""
        await self.channel.connect()
        logger.info(f"Channel '{self.channel.name}' connected")

        await self.message_bus.subscribe_outbound(self.channel.name, on_outbound)

        self._dispatch_task = asyncio.create_task(
            self.message_bus.dispatch_outbound(),
            name="bus-outbound-dispatch",
        )

        logger.info("CommunicationHandler started")

    async def stop(self):
        """Stop the bus, cancel the dispatch task, disconnect the channel."""
        self.message_bus.stop()
        if self._dispatch_task is not None:
            self._dispatch_task.cancel()
            try:
                await self._dispatch_task
            except asyncio.CancelledError:
                pass
            self._dispatch_task = None

        await self.channel.disconnect()
        logger.info(f"Channel '{self.channel.name}' disconnected")
        logger.info("CommunicationHandler stopped")

    # ------------------------------------------------------------------
    # Webhook intake
    # ------------------------------------------------------------------

    async def receive_whatsapp_event(self, payload: dict[str, Any]) -> WhatsAppMessage | None:
        """Gateway webhook body -> inbound queue."""
        return await self.channel.handle_event(payload)

    async def receive_helpdesk_webhook(self, payload: dict[str, Any]) -> HelpdeskWebhook:
        """Helpdesk webhook body -> outbound queue.

        Raises:
            ValidationError: the body is not a webhook event.
        """
        webhook = HelpdeskWebhook.from_payload(payload)
        await self.message_bus.publish_outbound(
            OutboundMessage(channel=self.channel.name, webhook=webhook)
        )
        logger.debug(
            f"Queued helpdesk event {webhook.event} for conversation {webhook.conversation_id}"
        )
        return webhook
