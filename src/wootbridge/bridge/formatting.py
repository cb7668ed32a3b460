"""Text conversion between WhatsApp inline markup and helpdesk Markdown.

WhatsApp          Markdown
*bold*      <->   **bold**
_italic_    <->   *italic*
~strike~    <->   ~~strike~~

Each direction is one regex pass with an alternation, so a marker that
was just produced is never converted a second time.
"""

from __future__ import annotations

import re

from wootbridge.constants import DEFAULT_SIGN_DELIMITER

_WA_MARKUP = re.compile(
    r"(?<![\w*])\*(?=\S)([^*\n]+?)(?<=\S)\*(?![\w*])"
    r"|(?<![\w_])_(?=\S)([^_\n]+?)(?<=\S)_(?![\w_])"
    r"|(?<![\w~])~(?=\S)([^~\n]+?)(?<=\S)~(?![\w~])"
)

_MD_MARKUP = re.compile(
    r"\*\*(?=\S)(.+?)(?<=\S)\*\*"
    r"|(?<![\w*])\*(?=\S)([^*\n]+?)(?<=\S)\*(?![\w*])"
    r"|~~(?=\S)(.+?)(?<=\S)~~"
)


def whatsapp_to_markdown(text: str) -> str:
    def _swap(match: re.Match) -> str:
        bold, italic, strike = match.groups()
        if bold is not None:
            return f"**{bold}**"
        if italic is not None:
            return f"*{italic}*"
        return f"~~{strike}~~"

    return _WA_MARKUP.sub(_swap, text or "")


def markdown_to_whatsapp(text: str) -> str:
    def _swap(match: re.Match) -> str:
        bold, italic, strike = match.groups()
        if bold is not None:
            return f"*{bold}*"
        if italic is not None:
            return f"_{italic}_"
        return f"~{strike}~"

    return _MD_MARKUP.sub(_swap, text or "")


def format_phone(digits: str) -> str:
    """Human-readable phone; Brazilian numbers get ``+55 (11) 99999-9999``."""
    if digits.startswith("55") and len(digits) == 13:
        return f"+55 ({digits[2:4]}) {digits[4:9]}-{digits[9:]}"
    if digits.startswith("55") and len(digits) == 12:
        return f"+55 ({digits[2:4]}) {digits[4:8]}-{digits[8:]}"
    return f"+{digits}"


def group_participant_prefix(phone_digits: str, name: str) -> str:
    label = format_phone(phone_digits)
    if name:
        label = f"{label} - {name}"
    return f"**{label}:**\n\n"


def sign(content: str, sender_name: str, delimiter: str = DEFAULT_SIGN_DELIMITER) -> str:
    if not sender_name:
        return content
    return f"*{sender_name}:*{delimiter}{content}"


def media_placeholder(message_type: str, caption: str = "") -> str:
    """Text sent to the helpdesk when a media item could not be transferred."""
    label = f"📎 [{message_type}]"
    return f"{label} {caption}".strip() if caption else label
