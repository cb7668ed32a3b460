"""Identity normalization helpers for WhatsApp JIDs and phone numbers."""

from __future__ import annotations

import re

from wootbridge.constants import (
    BRAZIL_COUNTRY_PREFIX,
    WHATSAPP_GROUP_SUFFIX,
    WHATSAPP_USER_SUFFIX,
)
from wootbridge.errors import ValidationError

_DEVICE_SUFFIX = re.compile(r":\d+$")
_NON_DIGITS = re.compile(r"\D")


def is_group_jid(jid: str) -> bool:
    return WHATSAPP_GROUP_SUFFIX in jid


def jid_local_part(jid: str) -> str:
    """``"5511999999999:12@s.whatsapp.net"`` -> ``"5511999999999"``."""
    local = jid.split("@", 1)[0]
    return _DEVICE_SUFFIX.sub("", local)


def normalize_identity(raw: str, is_group: bool) -> str:
    """Strip protocol suffixes; individuals keep digits only.

    Group identities keep their raw identifier (minus the ``@g.us``
    suffix) since they are not phone numbers.

    Raises:
        ValidationError: nothing usable is left.
    """
    local = jid_local_part((raw or "").strip())
    if is_group:
        normalized = local.strip()
    else:
        normalized = _NON_DIGITS.sub("", local)
    if not normalized:
        raise ValidationError(f"cannot derive an identity from {raw!r}")
    return normalized


def to_e164(digits: str) -> str:
    return f"+{digits}"


def user_jid(digits: str) -> str:
    return f"{digits}{WHATSAPP_USER_SUFFIX}"


def group_jid(group_id: str) -> str:
    if group_id.endswith(WHATSAPP_GROUP_SUFFIX):
        return group_id
    return f"{group_id}{WHATSAPP_GROUP_SUFFIX}"


def phone_variations(e164: str, *, brazil: bool = True) -> list[str]:
    """Return ``e164`` plus the with/without-ninth-digit Brazilian variant.

    ``+55 AA 9NNNNNNNN`` (14 chars) and ``+55 AA NNNNNNNN`` (13 chars)
    name the same mobile subscriber.
    """
    numbers = [e164]
    if not brazil or not e164.startswith(BRAZIL_COUNTRY_PREFIX):
        return numbers
    if len(e164) == 14:
        numbers.append(e164[:5] + e164[6:])
    elif len(e164) == 13:
        numbers.append(e164[:5] + "9" + e164[5:])
    return numbers


def digits_only(value: str) -> str:
    return _NON_DIGITS.sub("", value or "")
