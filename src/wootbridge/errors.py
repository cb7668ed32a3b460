"""Exception hierarchy shared by the bridge.

Remote clients translate transport and HTTP failures into these types at
the boundary, so resolvers and the media pipeline never see ``httpx``
exceptions.

    BridgeError
     ├── HelpdeskAPIError          non-2xx from the helpdesk
     │    ├── NotFoundError        stale id, re-resolve
     │    ├── DuplicateIdentityError
     │    └── TransientRemoteError network / 5xx
     │         └── RemoteTimeoutError
     ├── GatewayError              WhatsApp gateway failure
     ├── ValidationError
     ├── RateLimitedLocally
     ├── CircuitOpenError
     ├── ContactResolutionFailed
     ├── ConversationResolutionFailed
     └── MediaDispatchError
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from wootbridge.media.pipeline import MediaItem

_DUPLICATE_MARKERS = ("already been taken", "duplicate")


class BridgeError(Exception):
    """Base class for every error raised by wootbridge."""


# ──────────────────────────────────────────────────────────────────────
# Remote errors
# ──────────────────────────────────────────────────────────────────────


class HelpdeskAPIError(BridgeError):
    """A helpdesk call returned a non-success status."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        method: str = "",
        endpoint: str = "",
    ) -> None:
        self.message = message
        self.status_code = status_code
        self.method = method
        self.endpoint = endpoint
        super().__init__(self._format())

    def _format(self) -> str:
        where = f"{self.method} {self.endpoint}".strip()
        status = f"HTTP {self.status_code}" if self.status_code else "no response"
        if where:
            return f"{where}: {status}: {self.message}"
        return f"{status}: {self.message}"

    @staticmethod
    def is_duplicate_message(message: str) -> bool:
        """Return True if an error message reports a uniqueness violation."""
        lowered = message.lower()
        return any(marker in lowered for marker in _DUPLICATE_MARKERS)


class NotFoundError(HelpdeskAPIError):
    """The referenced remote resource does not exist (anymore)."""


class DuplicateIdentityError(HelpdeskAPIError):
    """A create call lost a race against another creator."""


class TransientRemoteError(HelpdeskAPIError):
    """Network failure or 5xx. Safe to retry or degrade."""


class RemoteTimeoutError(TransientRemoteError):
    """A remote call exceeded its time budget."""


class GatewayError(BridgeError):
    """The WhatsApp gateway refused or failed a request."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        self.message = message
        self.status_code = status_code
        prefix = f"HTTP {status_code}: " if status_code else ""
        super().__init__(f"{prefix}{message}")


# ──────────────────────────────────────────────────────────────────────
# Local errors
# ──────────────────────────────────────────────────────────────────────


class ValidationError(BridgeError):
    """Malformed input. Fatal to the single call."""


class RateLimitedLocally(BridgeError):
    """A bounded wait for a rate-limiter slot ran out."""


class CircuitOpenError(BridgeError):
    """The circuit breaker refused the call."""

    def __init__(self, name: str, retry_in: float | None = None) -> None:
        self.name = name
        self.retry_in = retry_in
        hint = f" (retry in {retry_in:.1f}s)" if retry_in else ""
        super().__init__(f"{name}: unavailable, retry later{hint}")


# ──────────────────────────────────────────────────────────────────────
# Resolution / dispatch errors
# ──────────────────────────────────────────────────────────────────────


class ContactResolutionFailed(BridgeError):
    """No contact could be found or created for an identity."""

    def __init__(self, identity: str, reason: str) -> None:
        self.identity = identity
        self.reason = reason
        super().__init__(f"contact resolution failed for {identity!r}: {reason}")


class ConversationResolutionFailed(BridgeError):
    """No conversation could be found or created for a chat."""

    def __init__(self, chat_id: str, reason: str) -> None:
        self.chat_id = chat_id
        self.reason = reason
        super().__init__(f"conversation resolution failed for {chat_id!r}: {reason}")


@dataclass
class MediaFailure:
    """One failed item of a media dispatch."""

    index: int
    item: MediaItem
    error: BaseException

    def describe(self) -> str:
        return f"item #{self.index + 1} ({self.item.describe()}): {self.error}"


class MediaDispatchError(BridgeError):
    """At least one media item failed. Successful siblings are kept."""

    def __init__(self, failures: list[MediaFailure], total: int) -> None:
        if not failures:
            raise ValueError("MediaDispatchError requires at least one failure")
        self.failures = failures
        self.total = total
        first = failures[0].describe()
        more = f" (+{len(failures) - 1} more)" if len(failures) > 1 else ""
        super().__init__(
            f"{len(failures)}/{total} media item(s) failed: {first}{more}"
        )

    @property
    def first(self) -> BaseException:
        """The representative (first recorded) error."""
        return self.failures[0].error
