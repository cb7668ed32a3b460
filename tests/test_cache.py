"""Unit tests for TTLCache and ResolutionCache (time is driven by a fake clock)."""

import asyncio

import pytest

from wootbridge.providers.helpdesk.base import RemoteConversation
from wootbridge.resolvers.cache import ResolutionCache, TTLCache


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return TTLCache(10.0, name="test", clock=clock)


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------

class TestTTLCache:
    """Expiry, deletion and sweeping of a single partition."""

    def test_hit_before_expiry(self, cache, clock):
        cache.set("k", "v")
        clock.advance(9.9)
        assert cache.get("k") == ("v", True)

    def test_miss_at_expiry_evicts(self, cache, clock):
        cache.set("k", "v")
        clock.advance(10.0)
        assert cache.get("k") == (None, False)
        assert len(cache) == 0

    def test_cached_none_is_a_hit(self, cache):
        cache.set("k", None)
        assert cache.get("k") == (None, True)

    def test_per_entry_ttl(self, cache, clock):
        cache.set("short", 1, ttl=1.0)
        cache.set("long", 2)
        clock.advance(5.0)
        assert cache.get("short") == (None, False)
        assert cache.get("long") == (2, True)

    def test_non_positive_ttl_rejected(self, cache):
        with pytest.raises(ValueError):
            cache.set("k", "v", ttl=0)
        with pytest.raises(ValueError):
            TTLCache(0)

    def test_delete(self, cache):
        cache.set("k", "v")
        assert cache.delete("k") is True
        assert cache.delete("k") is False
        assert cache.get("k") == (None, False)

    def test_delete_where(self, cache):
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("c", 1)
        assert cache.delete_where(lambda v: v == 1) == 2
        assert len(cache) == 1

    def test_purge_expired_only_removes_stale(self, cache, clock):
        cache.set("old", 1, ttl=1.0)
        cache.set("new", 2)
        clock.advance(2.0)
        assert cache.purge_expired() == 1
        assert cache.get("new") == (2, True)


class TestResolutionCache:
    """Partitions, keying and conversation eviction."""

    def test_partitions_have_independent_ttls(self, clock):
        cache = ResolutionCache(contact_ttl=600, conversation_ttl=300, clock=clock)
        conv = RemoteConversation(id=7, inbox_id=1)
        cache.set_contact("5511999998888", "contact")
        cache.set_conversation("5511999998888@s.whatsapp.net", 1, conv)

        clock.advance(301)
        assert cache.get_conversation("5511999998888@s.whatsapp.net", 1) == (None, False)
        assert cache.get_contact("5511999998888") == ("contact", True)

    def test_conversation_key_is_scoped_by_inbox(self, clock):
        cache = ResolutionCache(clock=clock)
        cache.set_conversation("chat@s.whatsapp.net", 1, RemoteConversation(id=7, inbox_id=1))
        assert cache.get_conversation("chat@s.whatsapp.net", 2) == (None, False)
        assert cache.conversation_key("chat", 3) == "conversation:chat:3"
        assert cache.contact_key("123") == "contact:123"

    def test_evict_conversation_id(self, clock):
        cache = ResolutionCache(clock=clock)
        cache.set_conversation("a", 1, RemoteConversation(id=7, inbox_id=1))
        cache.set_conversation("b", 1, RemoteConversation(id=8, inbox_id=1))
        assert cache.evict_conversation_id(7) == 1
        assert cache.get_conversation("a", 1) == (None, False)
        assert cache.get_conversation("b", 1)[1] is True

    def test_stats(self, clock):
        cache = ResolutionCache(clock=clock)
        cache.set_contact("1", "x")
        cache.set_conversation("c", 1, RemoteConversation(id=1, inbox_id=1))
        assert cache.get_stats() == {
            "contact_cache_size": 1,
            "conversation_cache_size": 1,
            "total_size": 2,
        }

    def test_sweep(self, clock):
        cache = ResolutionCache(contact_ttl=10, conversation_ttl=5, clock=clock)
        cache.set_contact("1", "x")
        cache.set_conversation("c", 1, "y")
        clock.advance(6)
        assert cache.sweep() == 1
        assert cache.get_stats()["total_size"] == 1

    @pytest.mark.asyncio
    async def test_sweeper_task_lifecycle(self, clock):
        cache = ResolutionCache(contact_ttl=1, sweep_interval=0.01, clock=clock)
        cache.set_contact("1", "x")
        cache.start()
        clock.advance(2)
        await asyncio.sleep(0.05)
        assert len(cache.contacts) == 0

        await cache.close()
        assert cache._sweep_task is None
