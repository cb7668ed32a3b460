"""Inbox bootstrap: find the configured inbox by name, optionally creating it."""

from __future__ import annotations

from loguru import logger

from wootbridge.constants import DEFAULT_LOCAL_WEBHOOK_BASE
from wootbridge.errors import ValidationError
from wootbridge.providers.helpdesk.base import BaseHelpdeskProvider, Inbox


def default_webhook_url(session_id: str, base_url: str = "") -> str:
    base = (base_url or DEFAULT_LOCAL_WEBHOOK_BASE).rstrip("/")
    return f"{base}/chatwoot/webhook/{session_id}"


async def ensure_inbox(
    provider: BaseHelpdeskProvider,
    name: str,
    *,
    webhook_url: str,
    auto_create: bool = False,
) -> Inbox:
    """Return the inbox called ``name``.

    Raises:
        ValidationError: the inbox does not exist and ``auto_create`` is off.
    """
    if not name:
        raise ValidationError("inbox name must not be empty")

    for inbox in await provider.list_inboxes():
        if inbox.name == name:
            logger.info(f"Using inbox '{name}' (id={inbox.id})")
            return inbox

    if not auto_create:
        raise ValidationError(f"inbox '{name}' not found and auto_create is disabled")

    logger.info(f"Inbox '{name}' not found, creating it (webhook={webhook_url})")
    return await provider.create_inbox(name, webhook_url)
