"""Runtime configuration for the bridge.

Settings live in ``configs/config.json`` and are parsed into frozen
dataclasses, one per section (helpdesk, whatsapp, cache, media, ...).
Core components never call ``get_config()`` themselves; the application
reads it once and hands each section to the component that needs it.

Secrets
-------
A value spelled like an environment variable (``"CHATWOOT_API_TOKEN"``)
is looked up in ``os.environ`` after ``.env`` has been loaded, so tokens
never have to be written into the JSON file.
"""

from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from loguru import logger

from wootbridge.constants import (
    CONFIG_FILENAME,
    DEFAULT_BREAKER_RESET_TIMEOUT,
    DEFAULT_BREAKER_THRESHOLD,
    DEFAULT_CONTACT_TTL,
    DEFAULT_CONTROL_PLANE_TIMEOUT,
    DEFAULT_CONVERSATION_TTL,
    DEFAULT_MAPPING_DB,
    DEFAULT_MAPPING_WRITE_TIMEOUT,
    DEFAULT_MAX_INFLIGHT,
    DEFAULT_MEDIA_DOWNLOAD_TIMEOUT,
    DEFAULT_MEDIA_ITEM_TIMEOUT,
    DEFAULT_MEDIA_MAX_CONCURRENT,
    DEFAULT_MEDIA_RATE_LIMIT,
    DEFAULT_MEDIA_RATE_WINDOW,
    DEFAULT_MEDIA_STAGGER_DELAY,
    DEFAULT_MEDIA_UPLOAD_TIMEOUT,
    DEFAULT_SIGN_DELIMITER,
    DEFAULT_SWEEP_INTERVAL,
)

# Pattern to detect env-var-style values: UPPER_SNAKE_CASE with optional digits
_ENV_VAR_PATTERN = re.compile(r"^[A-Z][A-Z0-9_]{2,}$")


# ──────────────────────────────────────────────────────────────────────
# Secret Resolution
# ──────────────────────────────────────────────────────────────────────


def resolve_secret(value: str) -> str | None:
    """Return the environment value for an UPPER_SNAKE reference, else ``value``.

    An unset reference yields None so callers can tell "not configured"
    apart from an empty literal.
    """
    if not isinstance(value, str) or not value:
        return value

    if _ENV_VAR_PATTERN.match(value):
        resolved = os.environ.get(value)
        if resolved is None:
            logger.warning(
                "Environment variable {} is referenced in config but not set", value
            )
        return resolved

    # Literal value (not an env-var reference)
    return value


# ──────────────────────────────────────────────────────────────────────
# Config Dataclasses
# ──────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class HelpdeskConfig:
    """Chatwoot account, inbox and conversation policy."""

    url: str
    account_id: int
    api_token: str | None = None  # Already resolved from env
    inbox_name: str = "WhatsApp"
    webhook_url: str = ""
    auto_create_inbox: bool = False
    reopen_conversation: bool = False
    conversation_pending: bool = False
    merge_brazil_contacts: bool = True
    sign_messages: bool = False
    sign_delimiter: str = DEFAULT_SIGN_DELIMITER
    ignore_jids: tuple[str, ...] = ()


@dataclass(frozen=True)
class WhatsAppConfig:
    """WhatsApp gateway session."""

    base_url: str
    session_id: str
    api_key: str | None = None  # Already resolved from env


@dataclass(frozen=True)
class CacheConfig:
    contact_ttl: float = DEFAULT_CONTACT_TTL
    conversation_ttl: float = DEFAULT_CONVERSATION_TTL
    sweep_interval: float = DEFAULT_SWEEP_INTERVAL


@dataclass(frozen=True)
class MediaConfig:
    max_concurrent: int = DEFAULT_MEDIA_MAX_CONCURRENT
    stagger_delay: float = DEFAULT_MEDIA_STAGGER_DELAY
    item_timeout: float = DEFAULT_MEDIA_ITEM_TIMEOUT
    download_timeout: float = DEFAULT_MEDIA_DOWNLOAD_TIMEOUT
    rate_limit: int = DEFAULT_MEDIA_RATE_LIMIT
    rate_window: float = DEFAULT_MEDIA_RATE_WINDOW
    breaker_threshold: int = DEFAULT_BREAKER_THRESHOLD
    breaker_reset_timeout: float = DEFAULT_BREAKER_RESET_TIMEOUT


@dataclass(frozen=True)
class TimeoutConfig:
    control_plane: float = DEFAULT_CONTROL_PLANE_TIMEOUT
    media_upload: float = DEFAULT_MEDIA_UPLOAD_TIMEOUT
    mapping_write: float = DEFAULT_MAPPING_WRITE_TIMEOUT


@dataclass(frozen=True)
class MappingConfig:
    backend: str = "sqlite"  # "sqlite" | "memory"
    sqlite_path: str = DEFAULT_MAPPING_DB

    @property
    def resolved_path(self) -> Path:
        """Return the SQLite path as an absolute, expanded Path."""
        return Path(self.sqlite_path).expanduser().resolve()


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    file: str | None = None


@dataclass(frozen=True)
class BridgeConfig:
    serialize_chats: bool = True
    max_inflight: int = DEFAULT_MAX_INFLIGHT


@dataclass
class AppConfig:
    """Root config object holding all resolved configuration."""

    helpdesk: HelpdeskConfig
    whatsapp: WhatsAppConfig
    cache: CacheConfig = field(default_factory=CacheConfig)
    media: MediaConfig = field(default_factory=MediaConfig)
    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)
    mapping: MappingConfig = field(default_factory=MappingConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    bridge: BridgeConfig = field(default_factory=BridgeConfig)


# ──────────────────────────────────────────────────────────────────────
# Config Loading
# ──────────────────────────────────────────────────────────────────────

_config: AppConfig | None = None


def _find_project_root() -> Path:
    """Return the nearest ancestor of this package that holds ``configs/``."""
    here = Path(__file__).resolve().parent
    for candidate in (here, *here.parents):
        if (candidate / "configs").is_dir():
            return candidate
    raise FileNotFoundError(f"No 'configs/' directory above {here}")


def _load_raw_config(path: str | Path | None = None) -> dict[str, Any]:
    """Load and return the raw config.json dict."""
    if path is None:
        path = os.environ.get("WOOTBRIDGE_CONFIG") or _find_project_root() / CONFIG_FILENAME
    config_path = Path(path)

    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path, encoding="utf-8") as f:
        data = json.load(f)

    logger.info(f"Loaded config from {config_path}")
    return data


def _section(raw: dict[str, Any], cls: type, name: str) -> Any:
    """Build a flat dataclass section, keeping defaults for missing keys."""
    values = raw.get(name, {})
    known = {f for f in cls.__dataclass_fields__}
    unknown = set(values) - known
    if unknown:
        logger.warning(f"Ignoring unknown keys in config section '{name}': {sorted(unknown)}")
    return cls(**{k: v for k, v in values.items() if k in known})


def _parse_config(raw: dict[str, Any]) -> AppConfig:
    """Parse raw config dict into typed AppConfig."""

    # --- Helpdesk ---
    hd_raw = raw.get("helpdesk", {})
    if not hd_raw.get("url") or not hd_raw.get("account_id"):
        raise ValueError("config 'helpdesk' requires 'url' and 'account_id'")

    helpdesk = HelpdeskConfig(
        url=hd_raw["url"],
        account_id=int(hd_raw["account_id"]),
        api_token=resolve_secret(hd_raw.get("api_token", "")),
        inbox_name=hd_raw.get("inbox_name", "WhatsApp"),
        webhook_url=hd_raw.get("webhook_url", ""),
        auto_create_inbox=hd_raw.get("auto_create_inbox", False),
        reopen_conversation=hd_raw.get("reopen_conversation", False),
        conversation_pending=hd_raw.get("conversation_pending", False),
        merge_brazil_contacts=hd_raw.get("merge_brazil_contacts", True),
        sign_messages=hd_raw.get("sign_messages", False),
        sign_delimiter=hd_raw.get("sign_delimiter", DEFAULT_SIGN_DELIMITER),
        ignore_jids=tuple(hd_raw.get("ignore_jids", [])),
    )

    # --- WhatsApp ---
    wa_raw = raw.get("whatsapp", {})
    if not wa_raw.get("base_url") or not wa_raw.get("session_id"):
        raise ValueError("config 'whatsapp' requires 'base_url' and 'session_id'")

    whatsapp = WhatsAppConfig(
        base_url=wa_raw["base_url"],
        session_id=str(wa_raw["session_id"]),
        api_key=resolve_secret(wa_raw.get("api_key", "")),
    )

    return AppConfig(
        helpdesk=helpdesk,
        whatsapp=whatsapp,
        cache=_section(raw, CacheConfig, "cache"),
        media=_section(raw, MediaConfig, "media"),
        timeouts=_section(raw, TimeoutConfig, "timeouts"),
        mapping=_section(raw, MappingConfig, "mapping"),
        logging=_section(raw, LoggingConfig, "logging"),
        bridge=_section(raw, BridgeConfig, "bridge"),
    )


def get_config(*, reload: bool = False, path: str | Path | None = None) -> AppConfig:
    """Return the singleton AppConfig, loading it on first call.

    Args:
        reload: Force re-read from disk (useful for testing).
        path: Explicit config file; defaults to ``$WOOTBRIDGE_CONFIG`` or
              ``configs/config.json`` under the project root.
    """
    global _config

    if _config is None or reload:
        from dotenv import load_dotenv

        load_dotenv()  # populate os.environ from .env

        raw = _load_raw_config(path)
        _config = _parse_config(raw)
        logger.debug(
            f"Config loaded: inbox '{_config.helpdesk.inbox_name}', "
            f"session '{_config.whatsapp.session_id}'"
        )

    return _config
