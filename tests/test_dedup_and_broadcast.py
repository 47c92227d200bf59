"""
Dedup cache expiry/eviction and broadcaster fan-out.
"""
from broadcaster import ALL_SESSIONS, Broadcaster
from dedup_cache import DedupCache
from models import ChatMessage

from conftest import FakeClock, RecordingSubscriber


class TestDedupCache:

    def test_remember_then_seen(self):
        cache = DedupCache()
        cache.remember("katie22:claiming")
        assert cache.seen("katie22:claiming")
        assert not cache.seen("bob:claiming")

    def test_entry_expires_after_ttl(self):
        clock = FakeClock()
        cache = DedupCache(ttl_seconds=300, clock=clock)
        cache.remember("k")
        clock.advance(299)
        assert cache.seen("k")
        clock.advance(1)
        assert not cache.seen("k")
        assert len(cache) == 0

    def test_oldest_evicted_past_capacity(self):
        cache = DedupCache(max_entries=2)
        cache.remember("a")
        cache.remember("b")
        cache.remember("c")
        assert len(cache) == 2
        assert not cache.seen("a")
        assert cache.seen("b") and cache.seen("c")

    def test_seen_refreshes_recency(self):
        cache = DedupCache(max_entries=2)
        cache.remember("a")
        cache.remember("b")
        cache.seen("a")
        cache.remember("c")
        assert cache.seen("a")
        assert not cache.seen("b")

    def test_filter_new(self):
        clock = FakeClock()
        cache = DedupCache(ttl_seconds=60, clock=clock)
        first = [ChatMessage("bob", "nice colors"), ChatMessage("ann", "claiming")]
        assert cache.filter_new(first) == first
        assert cache.filter_new(first) == []

        clock.advance(61)
        again = cache.filter_new([ChatMessage("ann", "claiming")])
        assert [m.username for m in again] == ["ann"]


class TestBroadcaster:

    async def test_publish_reaches_session_and_wildcard(self):
        broadcaster = Broadcaster()
        watcher, everything, other = RecordingSubscriber(), RecordingSubscriber(), RecordingSubscriber()
        broadcaster.subscribe("s1", watcher)
        broadcaster.subscribe(ALL_SESSIONS, everything)
        broadcaster.subscribe("s2", other)

        delivered = await broadcaster.publish("s1", {"type": "new_message", "message": {"username": "bob"}})

        assert delivered == 2
        assert watcher.events == [{"type": "new_message", "message": {"username": "bob"}, "sessionId": "s1"}]
        assert everything.types() == ["new_message"]
        assert other.events == []

    async def test_publish_without_subscribers(self):
        assert await Broadcaster().publish("nobody", {"type": "debug_stats"}) == 0

    async def test_failed_subscriber_is_dropped(self):
        broadcaster = Broadcaster()
        good, bad = RecordingSubscriber(), RecordingSubscriber(fail=True)
        broadcaster.subscribe("s1", good)
        broadcaster.subscribe("s1", bad)
        broadcaster.subscribe("s2", bad)

        assert await broadcaster.publish("s1", {"type": "error", "error": "x"}) == 1
        assert broadcaster.subscriber_count("s1") == 1
        assert broadcaster.subscriber_count("s2") == 0
        assert good.types() == ["error"]

    async def test_unsubscribe(self):
        broadcaster = Broadcaster()
        client = RecordingSubscriber()
        broadcaster.subscribe("s1", client)
        broadcaster.subscribe("s2", client)

        broadcaster.unsubscribe(client, "s1")
        assert broadcaster.subscriber_count("s1") == 0
        assert broadcaster.subscriber_count("s2") == 1

        broadcaster.unsubscribe(client)
        assert broadcaster.subscriber_count("s2") == 0
