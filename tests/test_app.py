"""Tests for config loading, the CommunicationHandler and Application wiring."""

import asyncio
import json
from unittest.mock import AsyncMock, patch

import pytest

from wootbridge.app import Application, build_mapping_store
from wootbridge.bridge.loop import BridgeLoop
from wootbridge.config import (
    AppConfig,
    HelpdeskConfig,
    MappingConfig,
    WhatsAppConfig,
    get_config,
    resolve_secret,
)
from wootbridge.errors import ValidationError
from wootbridge.handler.handler import CommunicationHandler
from wootbridge.handler.session.mapping import InMemoryMappingStore, SQLiteMappingStore
from wootbridge.providers.helpdesk import Inbox


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def app_config():
    return AppConfig(
        helpdesk=HelpdeskConfig(url="http://cw.local", account_id=1, api_token="tok"),
        whatsapp=WhatsAppConfig(base_url="http://gw.local", session_id="s1", api_key="key"),
        mapping=MappingConfig(backend="memory"),
    )


@pytest.fixture(autouse=True)
def _reset_handler():
    CommunicationHandler.reset()
    yield
    CommunicationHandler.reset()


def _write_config(tmp_path, **overrides):
    raw = {
        "helpdesk": {
            "url": "http://cw.local",
            "account_id": "3",
            "api_token": "WOOTBRIDGE_TEST_TOKEN",
            "ignore_jids": ["@g.us"],
        },
        "whatsapp": {"base_url": "http://gw.local", "session_id": 42},
        "media": {"max_concurrent": 5, "not_a_field": 1},
    }
    raw.update(overrides)
    path = tmp_path / "config.json"
    path.write_text(json.dumps(raw))
    return path


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

class TestConfig:
    """Loading and secret resolution."""

    def test_resolve_secret(self, monkeypatch):
        monkeypatch.setenv("WOOTBRIDGE_SECRET", "s3cret")
        assert resolve_secret("WOOTBRIDGE_SECRET") == "s3cret"
        assert resolve_secret("literal-value") == "literal-value"
        monkeypatch.delenv("WOOTBRIDGE_SECRET")
        assert resolve_secret("WOOTBRIDGE_SECRET") is None

    def test_load_from_file(self, tmp_path, monkeypatch):
        monkeypatch.setenv("WOOTBRIDGE_TEST_TOKEN", "abc")
        config = get_config(reload=True, path=_write_config(tmp_path))

        assert config.helpdesk.account_id == 3
        assert config.helpdesk.api_token == "abc"
        assert config.helpdesk.ignore_jids == ("@g.us",)
        assert config.whatsapp.session_id == "42"
        assert config.media.max_concurrent == 5
        assert config.cache.contact_ttl == 600
        assert config.bridge.serialize_chats is True

    def test_singleton(self, tmp_path):
        path = _write_config(tmp_path)
        first = get_config(reload=True, path=path)
        assert get_config() is first

    def test_missing_helpdesk_section(self, tmp_path):
        with pytest.raises(ValueError):
            get_config(reload=True, path=_write_config(tmp_path, helpdesk={}))

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            get_config(reload=True, path=tmp_path / "nope.json")


# ---------------------------------------------------------------------------
# Handler
# ---------------------------------------------------------------------------

class TestCommunicationHandler:
    """Channel registration and webhook intake."""

    def test_uses_global_config_by_default(self, app_config):
        with patch("wootbridge.handler.handler.get_config", return_value=app_config):
            handler = CommunicationHandler.get_instance()
        assert handler.channel.name == "whatsapp"
        assert CommunicationHandler.get_instance() is handler

    @pytest.mark.asyncio
    async def test_helpdesk_webhook_goes_to_outbound_queue(self, app_config):
        handler = CommunicationHandler(config=app_config)
        webhook = await handler.receive_helpdesk_webhook(
            {"event": "message_created", "message_type": "outgoing", "conversation": {"id": 4}}
        )
        queued = await handler.message_bus.consume_outbound()
        assert queued.webhook is webhook
        assert queued.channel == "whatsapp"

    @pytest.mark.asyncio
    async def test_invalid_webhook_rejected(self, app_config):
        handler = CommunicationHandler(config=app_config)
        with pytest.raises(ValidationError):
            await handler.receive_helpdesk_webhook({"no": "event"})
        assert handler.message_bus.outbound_size == 0

    @pytest.mark.asyncio
    async def test_start_routes_outbound_to_callback(self, app_config):
        handler = CommunicationHandler(config=app_config)
        callback = AsyncMock()

        await handler.start(callback)
        await handler.receive_helpdesk_webhook(
            {"event": "message_created", "conversation": {"id": 4}}
        )
        for _ in range(50):
            await asyncio.sleep(0.01)
            if callback.await_count:
                break
        await handler.stop()

        callback.assert_awaited_once()
        assert not handler.channel.is_running


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------

class TestApplication:
    """Wiring without network access."""

    def test_mapping_backends(self, app_config, tmp_path):
        assert isinstance(build_mapping_store(app_config), InMemoryMappingStore)

        app_config.mapping = MappingConfig(backend="sqlite", sqlite_path=str(tmp_path / "m.db"))
        assert isinstance(build_mapping_store(app_config), SQLiteMappingStore)

        app_config.mapping = MappingConfig(backend="redis")
        with pytest.raises(ValueError):
            build_mapping_store(app_config)

    @pytest.mark.asyncio
    async def test_build_bridge_and_entry_points(self, app_config):
        app = Application(app_config)
        app.bridge = app.build_bridge(inbox_id=1)
        assert isinstance(app.bridge, BridgeLoop)

        message = await app.handle_whatsapp_event(
            {"id": "A1", "from": "5511999998888@s.whatsapp.net", "body": "oi"}
        )
        assert message.message_id == "A1"
        assert app.message_bus.inbound_size == 1

        await app.handle_helpdesk_webhook({"event": "conversation_resolved", "id": 3})
        stats = app.get_stats()
        assert stats["outbound_queue"] == 1
        assert stats["inbound_media"]["circuit_breaker"]["state"] == "closed"

        await app.stop()

    @pytest.mark.asyncio
    async def test_start_bootstraps_inbox_and_shuts_down(self, app_config):
        app = Application(app_config)
        app.provider.list_inboxes = AsyncMock(
            return_value=[Inbox(id=5, name="WhatsApp")]
        )
        app.provider.close = AsyncMock()

        runner = asyncio.create_task(app.start())
        for _ in range(50):
            await asyncio.sleep(0.01)
            if app.bridge is not None:
                break
        app.shutdown()
        await asyncio.wait_for(runner, timeout=2.0)

        assert app.bridge is not None
        app.provider.close.assert_awaited_once()
