import asyncio
from asyncio import Queue
from collections.abc import Awaitable, Callable

from loguru import logger

from .messages import OutboundMessage, WhatsAppMessage

OutboundCallback = Callable[[OutboundMessage], Awaitable[None]]


class MessageBus:
    """Two queues between the edges and the bridge.

    ``inbound`` carries WhatsApp messages towards the helpdesk,
    ``outbound`` carries helpdesk webhooks towards WhatsApp. Outbound
    subscribers are keyed by channel name.
    """

    def __init__(self, maxsize: int = 0):
        self.inbound: Queue[WhatsAppMessage] = Queue(maxsize=maxsize)
        self.outbound: Queue[OutboundMessage] = Queue(maxsize=maxsize)
        self._outbound_subscribers: dict[str, list[OutboundCallback]] = {}
        self._running = False

    async def publish_inbound(self, message: WhatsAppMessage):
        """Publish an inbound message to the bus."""
        await self.inbound.put(message)

    async def consume_inbound(self) -> WhatsAppMessage:
        """Consume an inbound message from the bus."""
        return await self.inbound.get()

    async def publish_outbound(self, message: OutboundMessage):
        """Publish an outbound message to the bus."""
        await self.outbound.put(message)

    async def consume_outbound(self) -> OutboundMessage:
        """Consume an outbound message from the bus."""
        return await self.outbound.get()

    async def subscribe_outbound(self, channel: str, callback: OutboundCallback):
        """Subscribe to outbound messages for a specific channel."""
        self._outbound_subscribers.setdefault(channel, []).append(callback)

    async def dispatch_outbound(self) -> None:
        """
        Hand outbound messages to the subscribers of their channel.
        Run this as a background task; subscribers are expected to return
        quickly (e.g. by scheduling their own task).
        """
        self._running = True
        while self._running:
            try:
                msg = await asyncio.wait_for(self.outbound.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue

            subscribers = self._outbound_subscribers.get(msg.channel, [])
            if not subscribers:
                logger.warning(f"No subscriber for outbound channel '{msg.channel}'")
            for callback in subscribers:
                try:
                    await callback(msg)
                except Exception as e:
                    logger.error(f"Error dispatching to {msg.channel}: {e}")

    def stop(self):
        """Stop the message bus."""
        self._running = False

    @property
    def inbound_size(self) -> int:
        """Return the number of messages in the inbound queue."""
        return self.inbound.qsize()

    @property
    def outbound_size(self) -> int:
        """Return the number of messages in the outbound queue."""
        return self.outbound.qsize()
