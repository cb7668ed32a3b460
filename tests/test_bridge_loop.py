"""End-to-end tests for BridgeLoop against the in-memory helpdesk and channel."""

import asyncio

import httpx
import pytest

from wootbridge.bridge.loop import BridgeLoop
from wootbridge.errors import MediaDispatchError, ValidationError
from wootbridge.handler.message_bus import MessageBus
from wootbridge.handler.messages import HelpdeskWebhook, OutboundMessage, WhatsAppMessage
from wootbridge.handler.session.mapping import InMemoryMappingStore
from wootbridge.media.limiter import CircuitBreaker, MediaGuard, RateLimiter
from wootbridge.media.pipeline import MediaDispatcher
from wootbridge.media.transfer import (
    GatewayMediaSource,
    HelpdeskMediaSink,
    HttpMediaSource,
    WhatsAppMediaSink,
)
from wootbridge.resolvers.cache import ResolutionCache
from wootbridge.resolvers.contacts import IdentityResolver
from wootbridge.resolvers.conversations import ConversationResolver

CHAT = "5511999998888@s.whatsapp.net"


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

def _files(request):
    if request.url.path.endswith("missing.png"):
        return httpx.Response(404)
    return httpx.Response(200, content=b"FILE", headers={"content-type": "image/png"})


def _build(helpdesk, channel, cache=None, **kwargs):
    cache = cache or ResolutionCache()
    mappings = InMemoryMappingStore()

    def dispatcher(source, sink, name):
        return MediaDispatcher(
            source,
            sink,
            MediaGuard(RateLimiter(100, 60, name=name), CircuitBreaker(5, 60, name=name)),
            stagger_delay=0.0,
            name=name,
        )

    return BridgeLoop(
        message_bus=MessageBus(),
        provider=helpdesk,
        channel=channel,
        identity=IdentityResolver(helpdesk, cache, inbox_id=1),
        conversations=ConversationResolver(helpdesk, mappings, cache),
        cache=cache,
        inbound_media=dispatcher(
            GatewayMediaSource(channel), HelpdeskMediaSink(helpdesk), "inbound"
        ),
        outbound_media=dispatcher(
            HttpMediaSource(transport=httpx.MockTransport(_files)),
            WhatsAppMediaSink(channel),
            "outbound",
        ),
        inbox_id=1,
        **kwargs,
    )


@pytest.fixture
def bridge(helpdesk, channel):
    return _build(helpdesk, channel)


def _message(message_id="ABC", chat_id=CHAT, **kwargs):
    kwargs.setdefault("content", "hello")
    kwargs.setdefault("push_name", "Ana")
    return WhatsAppMessage(
        message_id=message_id,
        chat_id=chat_id,
        sender_id=kwargs.pop("sender_id", chat_id),
        **kwargs,
    )


def _webhook(conversation_id, **overrides):
    payload = {
        "event": "message_created",
        "id": 77,
        "message_type": "outgoing",
        "content": "**hi** there",
        "private": False,
        "source_id": None,
        "conversation": {
            "id": conversation_id,
            "inbox_id": 1,
            "status": "open",
            "meta": {"sender": {"id": 1, "phone_number": "+5511999998888"}},
        },
        "sender": {"available_name": "Agent Smith"},
        "attachments": [],
    }
    payload.update(overrides)
    return HelpdeskWebhook.from_payload(payload)


# ---------------------------------------------------------------------------
# WhatsApp -> helpdesk
# ---------------------------------------------------------------------------

class TestInbound:
    """Messages flowing into the helpdesk."""

    @pytest.mark.asyncio
    async def test_first_message_creates_then_reuses(self, bridge, helpdesk):
        await bridge.process_inbound(_message("M1"))
        await bridge.process_inbound(_message("M2", content="again"))

        assert helpdesk.calls["create_contact"] == 1
        assert helpdesk.calls["create_conversation"] == 1
        assert [m["source_id"] for m in helpdesk.messages] == ["WAID:M1", "WAID:M2"]
        assert helpdesk.messages[0]["message_type"] == "incoming"
        contact = next(iter(helpdesk.contacts.values()))
        assert contact.name == "Ana"
        assert contact.phone_number == "+5511999998888"

    @pytest.mark.asyncio
    async def test_markup_is_converted(self, bridge, helpdesk):
        await bridge.process_inbound(_message(content="*important*"))
        assert helpdesk.messages[0]["content"] == "**important**"

    @pytest.mark.asyncio
    async def test_from_me_is_outgoing(self, bridge, helpdesk):
        await bridge.process_inbound(_message(from_me=True))
        assert helpdesk.messages[0]["message_type"] == "outgoing"

    @pytest.mark.asyncio
    async def test_quoted_reply_reference(self, bridge, helpdesk):
        await bridge.process_inbound(_message(quoted_message_id="Q1"))
        assert helpdesk.messages[0]["content_attributes"] == {
            "in_reply_to_external_id": "WAID:Q1"
        }

    @pytest.mark.asyncio
    async def test_group_message_is_prefixed(self, bridge, helpdesk):
        await bridge.process_inbound(
            _message(
                chat_id="120363-1617@g.us",
                sender_id="14155550100@s.whatsapp.net",
                chat_name="Team",
                push_name="Bob",
            )
        )
        contact = next(iter(helpdesk.contacts.values()))
        assert contact.name == "Team (GROUP)"
        assert contact.identifier == "120363-1617@g.us"
        assert helpdesk.messages[0]["content"] == "**+14155550100 - Bob:**\n\nhello"

    @pytest.mark.asyncio
    async def test_ignored_chats(self, helpdesk, channel):
        bridge = _build(helpdesk, channel, ignore_jids=("@g.us",))
        await bridge.process_inbound(_message(chat_id="status@broadcast"))
        await bridge.process_inbound(_message(chat_id="120363@g.us"))
        assert helpdesk.messages == []
        assert helpdesk.calls["create_contact"] == 0

    @pytest.mark.asyncio
    async def test_media_is_uploaded(self, bridge, helpdesk, channel):
        channel.media["IMG1"] = (b"JPEG", "image/jpeg")
        await bridge.process_inbound(
            _message("IMG1", message_type="image", content="look", mime_type="image/jpeg",
                     timestamp=1700000000)
        )
        message = helpdesk.messages[0]
        assert message["data"] == b"JPEG"
        assert message["file_name"] == "image_1700000000.jpg"
        assert message["content"] == "look"
        assert message["source_id"] == "WAID:IMG1"

    @pytest.mark.asyncio
    async def test_media_failure_sends_placeholder(self, bridge, helpdesk):
        await bridge.process_inbound(_message("GONE", message_type="audio", content=""))
        assert helpdesk.messages[0]["content"] == "📎 [audio]"
        assert "data" not in helpdesk.messages[0]

    @pytest.mark.asyncio
    async def test_stale_conversation_is_re_resolved_once(self, bridge, helpdesk):
        await bridge.process_inbound(_message("M1"))
        first_conversation = helpdesk.messages[0]["conversation_id"]
        del helpdesk.conversations[first_conversation]

        await bridge.process_inbound(_message("M2"))

        assert helpdesk.calls["create_conversation"] == 2
        assert helpdesk.calls["create_contact"] == 1
        assert helpdesk.messages[-1]["conversation_id"] != first_conversation

    @pytest.mark.asyncio
    async def test_deleted_contact_is_re_resolved_once(self, helpdesk, channel):
        cache = ResolutionCache()
        bridge = _build(helpdesk, channel, cache=cache)
        await bridge.process_inbound(_message("M1"))
        (old_contact,) = helpdesk.contacts
        helpdesk.delete_contact(old_contact)
        # the conversation entry expires before the contact entry does
        cache.invalidate_conversation(CHAT, 1)

        await bridge.process_inbound(_message("M2"))

        assert helpdesk.calls["create_contact"] == 2
        last = helpdesk.messages[-1]
        assert last["source_id"] == "WAID:M2"
        assert helpdesk.conversations[last["conversation_id"]].contact_id != old_contact

    @pytest.mark.asyncio
    async def test_concurrent_first_messages_share_one_conversation(self, bridge, helpdesk):
        tasks = [bridge.submit_inbound(_message(f"M{i}")) for i in range(5)]
        await asyncio.gather(*tasks)

        assert helpdesk.calls["create_contact"] == 1
        assert helpdesk.calls["create_conversation"] == 1
        assert len(helpdesk.messages) == 5
        assert bridge.inflight == 0

    @pytest.mark.asyncio
    async def test_busy_chat_does_not_block_other_chats(self, helpdesk, channel):
        bridge = _build(helpdesk, channel, max_inflight=2)
        release = asyncio.Event()
        create_message = helpdesk.create_message

        async def gated_create_message(**kwargs):
            if kwargs["content"].startswith("busy"):
                await release.wait()
            return await create_message(**kwargs)

        helpdesk.create_message = gated_create_message
        busy = [bridge.submit_inbound(_message(f"B{i}", content=f"busy {i}")) for i in range(3)]
        await asyncio.sleep(0.05)

        other = bridge.submit_inbound(
            _message("O1", chat_id="5511888887777@s.whatsapp.net", content="hi")
        )
        await asyncio.wait_for(other, timeout=1.0)
        assert [m["source_id"] for m in helpdesk.messages] == ["WAID:O1"]

        release.set()
        await asyncio.gather(*busy)
        assert [m["source_id"] for m in helpdesk.messages[1:]] == ["WAID:B0", "WAID:B1", "WAID:B2"]

    @pytest.mark.asyncio
    async def test_run_consumes_bus(self, bridge, helpdesk):
        runner = asyncio.create_task(bridge.run())
        await bridge.message_bus.publish_inbound(_message("BUS1"))
        for _ in range(50):
            await asyncio.sleep(0.01)
            if helpdesk.messages:
                break
        runner.cancel()
        await asyncio.gather(runner, return_exceptions=True)
        await bridge.stop()
        assert helpdesk.messages[0]["source_id"] == "WAID:BUS1"


# ---------------------------------------------------------------------------
# helpdesk -> WhatsApp
# ---------------------------------------------------------------------------

class TestOutbound:
    """Agent replies flowing back to WhatsApp."""

    @pytest.mark.asyncio
    async def test_text_reply(self, bridge, channel):
        await bridge.process_outbound(_webhook(9))
        assert channel.sent == [("text", "5511999998888", "*hi* there")]

    @pytest.mark.asyncio
    async def test_signed_reply(self, helpdesk, channel):
        bridge = _build(helpdesk, channel, sign_messages=True)
        await bridge.process_outbound(_webhook(9))
        assert channel.sent[0][2] == "*Agent Smith:*\n*hi* there"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "overrides",
        [
            {"private": True},
            {"message_type": "incoming"},
            {"source_id": "WAID:ABC"},
            {"event": "message_updated"},
        ],
    )
    async def test_skipped_events(self, bridge, channel, overrides):
        await bridge.process_outbound(_webhook(9, **overrides))
        assert channel.sent == []

    @pytest.mark.asyncio
    async def test_other_inbox_is_skipped(self, bridge, channel):
        webhook = _webhook(9)
        webhook.inbox_id = 2
        await bridge.process_outbound(webhook)
        assert channel.sent == []

    @pytest.mark.asyncio
    async def test_empty_reply_rejected(self, bridge):
        with pytest.raises(ValidationError):
            await bridge.process_outbound(_webhook(9, content=""))

    @pytest.mark.asyncio
    async def test_image_with_caption(self, bridge, channel):
        await bridge.process_outbound(
            _webhook(
                9,
                attachments=[{"id": 1, "file_type": "image", "data_url": "http://cw/photo.png"}],
            )
        )
        assert channel.sent == [("image", "5511999998888", "*hi* there")]

    @pytest.mark.asyncio
    async def test_audio_sends_text_first(self, bridge, channel):
        await bridge.process_outbound(
            _webhook(
                9,
                attachments=[{"id": 1, "file_type": "audio", "data_url": "http://cw/voice.ogg"}],
            )
        )
        assert [s[0] for s in channel.sent] == ["text", "audio"]

    @pytest.mark.asyncio
    async def test_partial_attachment_failure(self, bridge, channel):
        with pytest.raises(MediaDispatchError) as exc_info:
            await bridge.process_outbound(
                _webhook(
                    9,
                    content="",
                    attachments=[
                        {"id": 1, "file_type": "image", "data_url": "http://cw/a.png"},
                        {"id": 2, "file_type": "image", "data_url": "http://cw/missing.png"},
                        {"id": 3, "file_type": "file", "data_url": "http://cw/c.pdf"},
                    ],
                )
            )
        assert [f.index for f in exc_info.value.failures] == [1]
        assert sorted(s[0] for s in channel.sent) == ["document", "image"]

    @pytest.mark.asyncio
    async def test_reverse_resolution_through_helpdesk(self, bridge, helpdesk, channel):
        contact = helpdesk.add_contact(name="Bob", phone_number="+14155550100")
        conversation = helpdesk.add_conversation(contact.id)
        webhook = _webhook(conversation.id)
        webhook.contact = None

        await bridge.process_outbound(webhook)
        assert channel.sent[0][1] == "14155550100"

    @pytest.mark.asyncio
    async def test_group_recipient(self, bridge, helpdesk, channel):
        contact = helpdesk.add_contact(name="Team", identifier="120363-1617@g.us", is_group=True)
        conversation = helpdesk.add_conversation(contact.id)
        webhook = _webhook(conversation.id)
        webhook.contact = None

        await bridge.process_outbound(webhook)
        assert channel.sent[0][1] == "120363-1617@g.us"

    @pytest.mark.asyncio
    async def test_status_change_evicts_cache(self, bridge, helpdesk):
        await bridge.process_inbound(_message("M1"))
        conversation_id = helpdesk.messages[0]["conversation_id"]
        assert bridge.get_stats()["cache"]["conversation_cache_size"] == 1

        await bridge.process_outbound(
            HelpdeskWebhook.from_payload(
                {"event": "conversation_status_changed", "id": conversation_id, "status": "resolved"}
            )
        )
        assert bridge.get_stats()["cache"]["conversation_cache_size"] == 0

    @pytest.mark.asyncio
    async def test_handle_outbound_schedules(self, bridge, channel):
        await bridge.handle_outbound(OutboundMessage(channel="whatsapp", webhook=_webhook(9)))
        await bridge.drain()
        assert channel.sent[0][0] == "text"

    @pytest.mark.asyncio
    async def test_failed_event_is_logged_not_raised(self, bridge, channel):
        await bridge.handle_outbound(
            OutboundMessage(channel="whatsapp", webhook=_webhook(9, content=""))
        )
        await bridge.drain()
        assert channel.sent == []
        assert bridge.inflight == 0
