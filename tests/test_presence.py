# tests/test_presence.py
"""Tests for live visitor presence and the join broadcast."""

import threading

from beaconrelay.presence import (
    Broadcaster,
    HeartbeatTick,
    PresenceTracker,
    SessionEvent,
)

GAME = "https://site.example/game"


def names(url):
    return "Cool World" if url.startswith(GAME) else None


class TestHeartbeat:
    def test_new_then_existing(self):
        tracker = PresenceTracker()

        assert tracker.heartbeat("s1", GAME, 0).is_new_session is True
        assert tracker.heartbeat("s1", GAME, 1000).is_new_session is False
        assert tracker.live_count(GAME, now_ms=1000) == 1

    def test_same_session_on_other_url_is_new(self):
        tracker = PresenceTracker()
        tracker.heartbeat("s1", GAME, 0)
        assert tracker.heartbeat("s1", f"{GAME}?s=2", 0).is_new_session is True


class TestPruning:
    """Sessions stop counting 5 seconds after their last heartbeat."""

    def test_alive_before_threshold(self):
        tracker = PresenceTracker()
        tracker.heartbeat("s1", GAME, 0)
        assert tracker.live_count(GAME, now_ms=4999) == 1

    def test_gone_at_threshold(self):
        tracker = PresenceTracker()
        tracker.heartbeat("s1", GAME, 0)
        assert tracker.live_count(GAME, now_ms=5000) == 0

    def test_gone_after_threshold(self):
        tracker = PresenceTracker()
        tracker.heartbeat("s1", GAME, 0)
        assert tracker.live_count(GAME, now_ms=5001) == 0
        assert tracker.total_online(now_ms=5001) == 0

    def test_refresh_extends_life(self):
        tracker = PresenceTracker()
        tracker.heartbeat("s1", GAME, 0)
        tracker.heartbeat("s1", GAME, 4000)
        assert tracker.live_count(GAME, now_ms=8000) == 1

    def test_uses_clock_by_default(self):
        tracker = PresenceTracker(clock=lambda: 10_000)
        tracker.heartbeat("s1", GAME, 9_000)
        tracker.heartbeat("s2", GAME, 1_000)
        assert tracker.live_count(GAME) == 1


class TestMerging:
    def test_query_variants_merge(self):
        tracker = PresenceTracker()
        tracker.heartbeat("s1", f"{GAME}?s=1", 0)
        tracker.heartbeat("s2", f"{GAME}?s=2", 0)
        tracker.heartbeat("s3", "https://other.example/", 0)

        assert tracker.live_count(GAME, now_ms=100) == 2
        assert tracker.live_count(f"{GAME}?anything", now_ms=100) == 2
        assert tracker.total_online(now_ms=100) == 3
        assert tracker.counts_by_base_url(now_ms=100) == {GAME: 2, "https://other.example/": 1}

    def test_schemeless_url_with_link_in_query_merges(self):
        tracker = PresenceTracker()
        tracker.heartbeat("s1", "https://x.com/app", 0)
        tracker.heartbeat("s2", "x.com/app?ref=https://y.com", 0)

        assert tracker.live_count("https://x.com/app", now_ms=100) == 2


class TestRecovery:
    def test_failed_update_keeps_other_sessions(self):
        tracker = PresenceTracker()
        tracker.heartbeat("s1", GAME, 0)
        tracker._sessions["https://broken.example/"] = None

        result = tracker.heartbeat("s2", "https://broken.example/", 0)

        assert result.is_new_session is False
        assert tracker._sessions[GAME][0].session_id == "s1"

    def test_name_resolver_failure_falls_back_to_host(self):
        def broken(url):
            raise RuntimeError("db down")

        tracker = PresenceTracker(name_resolver=broken)
        subscription = tracker.subscribe()
        tracker.heartbeat("s1", GAME, 0)

        assert next(subscription) == SessionEvent(listing_name="site.example", url=GAME)


class TestBroadcast:
    """Tests for join notifications."""

    def test_new_session_announced(self):
        tracker = PresenceTracker(name_resolver=names)
        subscription = tracker.subscribe()

        tracker.heartbeat("s1", f"{GAME}?s=1", 0)

        event = next(subscription)
        assert event == SessionEvent(listing_name="Cool World", url=f"{GAME}?s=1")
        assert event.to_dict() == {"listing_name": "Cool World", "url": f"{GAME}?s=1"}

    def test_existing_session_not_announced(self):
        tracker = PresenceTracker(broadcaster=Broadcaster(keepalive=0.01))
        tracker.heartbeat("s1", GAME, 0)
        subscription = tracker.subscribe()

        tracker.heartbeat("s1", GAME, 1000)

        assert isinstance(next(subscription), HeartbeatTick)

    def test_every_subscriber_receives(self):
        tracker = PresenceTracker()
        first, second = tracker.subscribe(), tracker.subscribe()

        tracker.heartbeat("s1", GAME, 0)

        assert next(first).url == GAME
        assert next(second).url == GAME

    def test_slow_subscriber_skips_oldest(self):
        broadcaster = Broadcaster(buffer_size=2)
        subscription = broadcaster.subscribe()

        for i in range(3):
            broadcaster.publish(SessionEvent(listing_name="x", url=f"u{i}"))

        assert subscription.skipped == 1
        assert next(subscription).url == "u1"
        assert next(subscription).url == "u2"

    def test_waiting_subscriber_woken(self):
        broadcaster = Broadcaster(keepalive=5)
        subscription = broadcaster.subscribe()
        received = []

        reader = threading.Thread(target=lambda: received.append(next(subscription)))
        reader.start()
        broadcaster.publish(SessionEvent(listing_name="x", url="u"))
        reader.join(timeout=5)

        assert received == [SessionEvent(listing_name="x", url="u")]

    def test_close_ends_streams_after_draining(self):
        tracker = PresenceTracker()
        subscription = tracker.subscribe()
        tracker.heartbeat("s1", GAME, 0)

        tracker.close()

        assert [e.url for e in subscription] == [GAME]
        assert tracker.broadcaster.subscriber_count == 0

    def test_subscribe_after_close_is_empty(self):
        tracker = PresenceTracker()
        tracker.close()
        assert list(tracker.subscribe()) == []

    def test_subscription_close_unsubscribes(self):
        broadcaster = Broadcaster()
        subscription = broadcaster.subscribe()
        assert broadcaster.subscriber_count == 1

        subscription.close()

        assert broadcaster.subscriber_count == 0
        assert broadcaster.publish(SessionEvent(listing_name="x", url="u")) == 0
