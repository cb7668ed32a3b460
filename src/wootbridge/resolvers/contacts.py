"""Identity resolver: find-or-create the helpdesk contact for a WhatsApp identity.

Flow per call:
    1. Normalize the identity (digits for people, raw id for groups)
    2. Cache lookup
    3. Remote search: structured phone filter for people, free-text for groups
    4. Best-match tie-break among candidates
    5. Create on miss; a duplicate-identifier error means another task won
       the race, so search again and return what it created
    6. Write through to the cache
"""

from __future__ import annotations

from loguru import logger

from wootbridge.errors import (
    BridgeError,
    ContactResolutionFailed,
    DuplicateIdentityError,
    HelpdeskAPIError,
)
from wootbridge.providers.helpdesk.base import BaseHelpdeskProvider, RemoteContact
from wootbridge.resolvers.cache import ResolutionCache
from wootbridge.resolvers.phone import (
    digits_only,
    group_jid,
    normalize_identity,
    phone_variations,
    to_e164,
    user_jid,
)


class IdentityResolver:
    """Maps WhatsApp identities onto helpdesk contacts for one inbox."""

    def __init__(
        self,
        provider: BaseHelpdeskProvider,
        cache: ResolutionCache,
        inbox_id: int,
        *,
        merge_brazil_contacts: bool = True,
    ) -> None:
        self._provider = provider
        self._cache = cache
        self._inbox_id = inbox_id
        self._merge_brazil = merge_brazil_contacts

    async def find_or_create(
        self,
        identity: str,
        display_name: str = "",
        avatar_url: str = "",
        is_group: bool = False,
    ) -> RemoteContact:
        """Return the authoritative contact for ``identity``, creating it if needed.

        Raises:
            ValidationError: ``identity`` normalizes to nothing.
            ContactResolutionFailed: creation failed for a reason other than
                a duplicate, or the duplicate could not be found afterwards.
        """
        normalized = normalize_identity(identity, is_group)

        cached, found = self._cache.get_contact(normalized)
        if found:
            logger.trace("Contact cache hit for {}", normalized)
            return cached

        contact = await self._find(normalized, is_group)
        if contact is None:
            contact = await self._create(normalized, display_name, avatar_url, is_group)

        self._cache.set_contact(normalized, contact)
        return contact

    def invalidate(self, identity: str, is_group: bool = False) -> None:
        self._cache.invalidate_contact(normalize_identity(identity, is_group))

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def _find(self, normalized: str, is_group: bool) -> RemoteContact | None:
        if is_group:
            candidates = await self._search(normalized)
            return self._best_match(candidates, [], normalized)

        variations = self._variations(normalized)
        candidates = await self._filter(variations)
        return self._best_match(candidates, variations, normalized)

    def _variations(self, digits: str) -> list[str]:
        return phone_variations(to_e164(digits), brazil=self._merge_brazil)

    async def _search(self, query: str) -> list[RemoteContact]:
        """Free-text search; failures degrade to "no candidate"."""
        try:
            return await self._provider.search_contacts(query)
        except BridgeError as exc:
            logger.warning(f"Contact search for '{query}' failed, treating as miss: {exc}")
            return []

    async def _filter(self, variations: list[str]) -> list[RemoteContact]:
        """Structured phone filter; failures degrade to "no candidate"."""
        try:
            return await self._provider.filter_contacts(variations)
        except BridgeError as exc:
            logger.warning(
                f"Contact filter for {variations} failed, treating as miss: {exc}"
            )
            return []

    def _best_match(
        self,
        candidates: list[RemoteContact],
        variations: list[str],
        normalized: str,
    ) -> RemoteContact | None:
        if not candidates:
            return None
        if len(candidates) == 1:
            return candidates[0]

        logger.debug(
            "{} candidate contacts for {}, applying tie-break",
            len(candidates),
            normalized,
        )

        # Same subscriber registered with and without the extra ninth digit:
        # the longer, more specific number wins.
        if len(variations) > 1:
            matching = [c for c in candidates if c.phone_number in variations]
            if matching:
                return max(matching, key=lambda c: len(digits_only(c.phone_number)))

        if variations:
            for number in sorted(variations, key=len, reverse=True):
                jid = user_jid(number.lstrip("+"))
                for contact in candidates:
                    if contact.phone_number == number or contact.identifier == jid:
                        return contact
        else:
            wanted = {normalized, group_jid(normalized)}
            for contact in candidates:
                if contact.identifier in wanted:
                    return contact

        return candidates[0]

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def _create(
        self,
        normalized: str,
        display_name: str,
        avatar_url: str,
        is_group: bool,
    ) -> RemoteContact:
        if is_group:
            name = display_name or normalized
            phone_number = ""
            identifier = group_jid(normalized)
        else:
            name = display_name or to_e164(normalized)
            phone_number = to_e164(normalized)
            identifier = user_jid(normalized)

        try:
            contact = await self._provider.create_contact(
                inbox_id=self._inbox_id,
                name=name,
                phone_number=phone_number,
                identifier=identifier,
                avatar_url=avatar_url,
            )
        except DuplicateIdentityError as err:
            logger.warning(
                f"Contact {normalized} already exists (concurrent create), searching again"
            )
            contact = await self._find_after_duplicate(normalized, is_group)
            if contact is None:
                raise ContactResolutionFailed(
                    normalized, "duplicate reported but no contact found on retry"
                ) from err
            return contact
        except HelpdeskAPIError as err:
            raise ContactResolutionFailed(normalized, f"create_contact: {err}") from err

        logger.info("Created contact {} for {}", contact.id, normalized)
        return contact

    async def _find_after_duplicate(
        self, normalized: str, is_group: bool
    ) -> RemoteContact | None:
        """Structured filter first, free-text search as the fallback."""
        if not is_group:
            variations = self._variations(normalized)
            match = self._best_match(await self._filter(variations), variations, normalized)
            if match is not None:
                return match
            query = to_e164(normalized)
        else:
            variations = []
            query = normalized

        return self._best_match(await self._search(query), variations, normalized)
