"""Chatwoot helpdesk provider over the account-scoped REST API.

Talks to ``{url}/api/v1/accounts/{account_id}`` with the static
``api_access_token`` header. Every response is decoded once into the
dataclasses of ``providers.helpdesk.base``; every failure leaves this
module as a ``wootbridge.errors`` type.
"""

from __future__ import annotations

from typing import Any

import httpx
from loguru import logger

from wootbridge.constants import (
    DEFAULT_CONTROL_PLANE_TIMEOUT,
    DEFAULT_MEDIA_UPLOAD_TIMEOUT,
)
from wootbridge.errors import (
    DuplicateIdentityError,
    HelpdeskAPIError,
    NotFoundError,
    RemoteTimeoutError,
    TransientRemoteError,
)
from wootbridge.providers.helpdesk.base import (
    BaseHelpdeskProvider,
    Inbox,
    RemoteContact,
    RemoteConversation,
    RemoteMessage,
)

_MAX_ERROR_BODY = 500


class ChatwootProvider(BaseHelpdeskProvider):
    """Helpdesk provider for Chatwoot (and API-compatible forks)."""

    name: str = "chatwoot"

    def __init__(
        self,
        url: str,
        account_id: int | str,
        api_token: str,
        *,
        timeout: float = DEFAULT_CONTROL_PLANE_TIMEOUT,
        media_timeout: float = DEFAULT_MEDIA_UPLOAD_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_base = f"{url.rstrip('/')}/api/v1/accounts/{account_id}"
        self._timeout = timeout
        self._media_timeout = media_timeout
        self._client = httpx.AsyncClient(
            headers={"api_access_token": api_token, "Accept": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Contacts
    # ------------------------------------------------------------------

    async def search_contacts(self, query: str) -> list[RemoteContact]:
        data = await self._request("GET", "/contacts/search", params={"q": query})
        return [RemoteContact.from_dict(c) for c in self._payload_list(data)]

    async def filter_contacts(self, phone_numbers: list[str]) -> list[RemoteContact]:
        if not phone_numbers:
            return []
        filters: list[dict[str, Any]] = []
        for i, number in enumerate(phone_numbers):
            entry: dict[str, Any] = {
                "attribute_key": "phone_number",
                "filter_operator": "equal_to",
                "values": [number.lstrip("+")],
            }
            # the last condition carries no operator
            if i < len(phone_numbers) - 1:
                entry["query_operator"] = "OR"
            filters.append(entry)

        data = await self._request("POST", "/contacts/filter", json={"payload": filters})
        return [RemoteContact.from_dict(c) for c in self._payload_list(data)]

    async def create_contact(
        self,
        inbox_id: int,
        name: str,
        phone_number: str = "",
        identifier: str = "",
        avatar_url: str = "",
    ) -> RemoteContact:
        body: dict[str, Any] = {"inbox_id": inbox_id, "name": name}
        if phone_number:
            body["phone_number"] = phone_number
        if identifier:
            body["identifier"] = identifier
        if avatar_url:
            body["avatar_url"] = avatar_url

        data = await self._request("POST", "/contacts", json=body)
        payload = self._payload(data)
        if isinstance(payload, dict) and isinstance(payload.get("contact"), dict):
            payload = payload["contact"]
        contact = RemoteContact.from_dict(payload if isinstance(payload, dict) else {})
        if not contact.id:
            raise HelpdeskAPIError(
                "contact created without an id",
                method="POST",
                endpoint="/contacts",
            )
        logger.info(f"Created Chatwoot contact {contact.id} ({contact.name})")
        return contact

    async def get_contact(self, contact_id: int) -> RemoteContact:
        data = await self._request("GET", f"/contacts/{contact_id}")
        payload = self._payload(data)
        return RemoteContact.from_dict(payload if isinstance(payload, dict) else {})

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    async def list_contact_conversations(
        self, contact_id: int
    ) -> list[RemoteConversation]:
        data = await self._request("GET", f"/contacts/{contact_id}/conversations")
        return [RemoteConversation.from_dict(c) for c in self._payload_list(data)]

    async def get_conversation(self, conversation_id: int) -> RemoteConversation:
        data = await self._request("GET", f"/conversations/{conversation_id}")
        return RemoteConversation.from_dict(data or {})

    async def create_conversation(
        self, contact_id: int, inbox_id: int, status: str | None = None
    ) -> RemoteConversation:
        body: dict[str, Any] = {"contact_id": contact_id, "inbox_id": inbox_id}
        if status:
            body["status"] = status
        data = await self._request("POST", "/conversations", json=body)
        conversation = RemoteConversation.from_dict(data or {})
        logger.info(
            "Created Chatwoot conversation {} (contact={}, inbox={})",
            conversation.id,
            contact_id,
            inbox_id,
        )
        return conversation

    async def toggle_status(self, conversation_id: int, status: str) -> None:
        await self._request(
            "POST",
            f"/conversations/{conversation_id}/toggle_status",
            json={"status": status},
        )

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def create_message(
        self,
        conversation_id: int,
        content: str,
        message_type: str = "incoming",
        private: bool = False,
        source_id: str | None = None,
        content_attributes: dict[str, Any] | None = None,
    ) -> RemoteMessage:
        body: dict[str, Any] = {
            "content": content,
            "message_type": message_type,
            "private": private,
        }
        if source_id:
            body["source_id"] = source_id
        if content_attributes:
            body["content_attributes"] = content_attributes

        data = await self._request(
            "POST", f"/conversations/{conversation_id}/messages", json=body
        )
        return RemoteMessage.from_dict(data or {})

    async def create_message_with_attachment(
        self,
        conversation_id: int,
        content: str,
        file_name: str,
        data: bytes,
        mime_type: str,
        message_type: str = "incoming",
        source_id: str | None = None,
    ) -> RemoteMessage:
        fields = {"message_type": message_type}
        if content:
            fields["content"] = content
        if source_id:
            fields["source_id"] = source_id

        result = await self._request(
            "POST",
            f"/conversations/{conversation_id}/messages",
            data=fields,
            files={"attachments[]": (file_name, data, mime_type)},
            timeout=self._media_timeout,
        )
        logger.debug(
            "Uploaded attachment {} ({} bytes) to conversation {}",
            file_name,
            len(data),
            conversation_id,
        )
        return RemoteMessage.from_dict(result or {})

    # ------------------------------------------------------------------
    # Inboxes
    # ------------------------------------------------------------------

    async def list_inboxes(self) -> list[Inbox]:
        data = await self._request("GET", "/inboxes")
        return [Inbox.from_dict(i) for i in self._payload_list(data)]

    async def create_inbox(self, name: str, webhook_url: str) -> Inbox:
        body = {
            "name": name,
            "channel": {"type": "api", "webhook_url": webhook_url},
        }
        data = await self._request("POST", "/inboxes", json=body)
        inbox = Inbox.from_dict(data or {})
        logger.info(f"Created Chatwoot inbox '{inbox.name}' (id={inbox.id})")
        return inbox

    # ------------------------------------------------------------------
    # Internal: transport + error mapping
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        endpoint: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
        data: dict[str, Any] | None = None,
        files: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Any:
        url = f"{self._api_base}{endpoint}"
        logger.debug("Chatwoot request | {} {}", method, endpoint)

        try:
            response = await self._client.request(
                method,
                url,
                params=params,
                json=json,
                data=data,
                files=files,
                timeout=timeout or self._timeout,
            )
        except httpx.TimeoutException as exc:
            raise RemoteTimeoutError(
                f"timed out after {timeout or self._timeout}s",
                method=method,
                endpoint=endpoint,
            ) from exc
        except httpx.HTTPError as exc:
            raise TransientRemoteError(
                str(exc) or type(exc).__name__,
                method=method,
                endpoint=endpoint,
            ) from exc

        if response.status_code >= 400:
            error = self._error_for(response, method, endpoint)
            logger.warning(f"Chatwoot error: {error}")
            raise error

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise HelpdeskAPIError(
                f"invalid JSON response: {response.text[:_MAX_ERROR_BODY]}",
                status_code=response.status_code,
                method=method,
                endpoint=endpoint,
            ) from exc

    @staticmethod
    def _error_for(
        response: httpx.Response, method: str, endpoint: str
    ) -> HelpdeskAPIError:
        """Map an error response onto the exception taxonomy."""
        status = response.status_code
        message = ""
        try:
            body = response.json()
        except ValueError:
            body = None

        if isinstance(body, dict):
            parts: list[str] = []
            for key in ("message", "error"):
                if isinstance(body.get(key), str) and body[key]:
                    parts.append(body[key])
            errors = body.get("errors")
            if isinstance(errors, list):
                parts.extend(str(e) for e in errors)
            elif isinstance(errors, dict):
                parts.extend(f"{k} {v}" for k, v in errors.items())
            message = "; ".join(parts)
        if not message:
            message = response.text[:_MAX_ERROR_BODY] or response.reason_phrase

        kwargs = {"status_code": status, "method": method, "endpoint": endpoint}
        if status == 404:
            return NotFoundError(message, **kwargs)
        if status in (400, 409, 422) and HelpdeskAPIError.is_duplicate_message(message):
            return DuplicateIdentityError(message, **kwargs)
        if status >= 500 or status == 429:
            return TransientRemoteError(message, **kwargs)
        return HelpdeskAPIError(message, **kwargs)

    @staticmethod
    def _payload(data: Any) -> Any:
        """Unwrap Chatwoot's ``{"payload": ...}`` envelope if present."""
        if isinstance(data, dict) and "payload" in data:
            return data["payload"]
        return data

    @classmethod
    def _payload_list(cls, data: Any) -> list[dict[str, Any]]:
        payload = cls._payload(data)
        if isinstance(payload, list):
            return [item for item in payload if isinstance(item, dict)]
        return []
