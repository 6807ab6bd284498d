# beaconrelay/presence.py
"""
Live visitor presence.

Sites post a heartbeat per visitor session every few seconds. Sessions are
kept in memory only, keyed by the literal URL the site reported, and are
pruned once their last heartbeat is 5 seconds old. Counts for a listing
merge every URL that shares its base URL at read time.

New sessions are announced on a broadcast channel that push streams
(server-sent events) subscribe to.
"""

import logging
import threading
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from typing import Callable, Deque, Dict, Iterator, List, Optional, Set, Union
from urllib.parse import urlsplit

from .urls import base_url, with_scheme

logger = logging.getLogger(__name__)

STALE_AFTER_MS = 5000
KEEPALIVE_SECONDS = 30.0
BUFFER_SIZE = 64


@dataclass
class SessionInfo:
    session_id: str
    last_seen_ms: int


@dataclass
class HeartbeatResult:
    is_new_session: bool


@dataclass
class SessionEvent:
    """A visitor joined a listing."""
    listing_name: str
    url: str

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)


@dataclass
class HeartbeatTick:
    """Emitted after a quiet period to keep push connections open."""


StreamItem = Union[SessionEvent, HeartbeatTick]


class Subscription:
    """
    One subscriber's view of the broadcast channel.

    Iterating yields SessionEvents as they arrive and a HeartbeatTick after
    ``keepalive`` seconds without one. The buffer is bounded: a subscriber
    that falls behind loses the oldest events (counted in ``skipped``)
    instead of holding up the publisher. Iteration stops once the
    broadcaster is closed and the buffer is drained.
    """

    def __init__(self, broadcaster: "Broadcaster", buffer_size: int, keepalive: float):
        self._broadcaster = broadcaster
        self._events: Deque[SessionEvent] = deque(maxlen=buffer_size)
        self._cond = threading.Condition()
        self._closed = False
        self.keepalive = keepalive
        self.skipped = 0

    def _push(self, event: SessionEvent):
        with self._cond:
            if len(self._events) == self._events.maxlen:
                self.skipped += 1
            self._events.append(event)
            self._cond.notify()

    def _end(self):
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def __iter__(self) -> Iterator[StreamItem]:
        return self

    def __next__(self) -> StreamItem:
        with self._cond:
            self._cond.wait_for(lambda: self._events or self._closed, timeout=self.keepalive)
            if self._events:
                return self._events.popleft()
            if self._closed:
                raise StopIteration
            return HeartbeatTick()

    def close(self):
        """Stop receiving events (client went away)."""
        self._broadcaster.unsubscribe(self)
        self._end()


class Broadcaster:
    """Fan-out channel from the presence tracker to push-stream subscribers."""

    def __init__(self, buffer_size: int = BUFFER_SIZE, keepalive: float = KEEPALIVE_SECONDS):
        self.buffer_size = buffer_size
        self.keepalive = keepalive
        self._subscribers: Set[Subscription] = set()
        self._lock = threading.Lock()
        self._closed = False

    def subscribe(self) -> Subscription:
        subscription = Subscription(self, self.buffer_size, self.keepalive)
        with self._lock:
            if self._closed:
                subscription._end()
            else:
                self._subscribers.add(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription):
        with self._lock:
            self._subscribers.discard(subscription)

    def publish(self, event: SessionEvent) -> int:
        """Deliver to every subscriber; returns how many received it."""
        with self._lock:
            subscribers = list(self._subscribers)
        for subscription in subscribers:
            subscription._push(event)
        return len(subscribers)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def close(self):
        """Tear down the channel; every subscription's iterator ends."""
        with self._lock:
            self._closed = True
            subscribers = list(self._subscribers)
            self._subscribers.clear()
        for subscription in subscribers:
            subscription._end()


def _now_ms() -> int:
    return int(time.time() * 1000)


class PresenceTracker:
    """
    In-memory session store shared by all request threads.

    Args:
        name_resolver: Maps a submitted URL to a listing name, or None
        stale_after_ms: Age at which a session stops counting
        broadcaster: Channel for new-session notifications
        clock: Returns the current time in milliseconds
    """

    def __init__(
        self,
        name_resolver: Optional[Callable[[str], Optional[str]]] = None,
        stale_after_ms: int = STALE_AFTER_MS,
        broadcaster: Optional[Broadcaster] = None,
        clock: Callable[[], int] = _now_ms,
    ):
        self.name_resolver = name_resolver
        self.stale_after_ms = stale_after_ms
        self.broadcaster = broadcaster or Broadcaster()
        self.clock = clock
        self._sessions: Dict[str, List[SessionInfo]] = {}
        self._lock = threading.Lock()

    @contextmanager
    def _guarded(self, action: str):
        """
        Hold the lock; on failure keep the last good map and carry on.

        Mutations build new lists before swapping them in, so an error
        leaves the previous contents untouched.
        """
        with self._lock:
            try:
                yield
            except Exception:
                logger.warning(f"Presence {action} failed; keeping last known sessions", exc_info=True)

    def heartbeat(self, session_id: str, url: str, timestamp_ms: int) -> HeartbeatResult:
        """Record a heartbeat; announce the session if it is new for this URL."""
        is_new = False
        with self._guarded("heartbeat"):
            entries = self._sessions.get(url, [])
            if any(s.session_id == session_id for s in entries):
                updated = [
                    SessionInfo(s.session_id, timestamp_ms) if s.session_id == session_id else s
                    for s in entries
                ]
            else:
                updated = entries + [SessionInfo(session_id, timestamp_ms)]
                is_new = True
            self._sessions[url] = updated

        if is_new:
            self.broadcaster.publish(SessionEvent(listing_name=self._listing_name(url), url=url))
        return HeartbeatResult(is_new_session=is_new)

    def _listing_name(self, url: str) -> str:
        if self.name_resolver is not None:
            try:
                name = self.name_resolver(url)
            except Exception:
                logger.warning(f"Could not resolve listing for {url}", exc_info=True)
                name = None
            if name:
                return name
        return urlsplit(with_scheme(url)).hostname or url

    def prune(self, now_ms: Optional[int] = None):
        """Drop sessions whose last heartbeat is at least stale_after_ms old."""
        now_ms = self.clock() if now_ms is None else now_ms
        with self._guarded("prune"):
            pruned = {}
            for url, entries in self._sessions.items():
                alive = [s for s in entries if now_ms - s.last_seen_ms < self.stale_after_ms]
                if alive:
                    pruned[url] = alive
            self._sessions = pruned

    def _snapshot(self, now_ms: Optional[int]) -> Dict[str, List[SessionInfo]]:
        self.prune(now_ms)
        with self._lock:
            return dict(self._sessions)

    def live_count(self, listing_url: str, now_ms: Optional[int] = None) -> int:
        """Sessions across every submitted URL sharing the listing's base URL."""
        target = base_url(listing_url)
        sessions = self._snapshot(now_ms)
        return sum(len(entries) for url, entries in sessions.items() if base_url(url) == target)

    def total_online(self, now_ms: Optional[int] = None) -> int:
        return sum(len(entries) for entries in self._snapshot(now_ms).values())

    def counts_by_base_url(self, now_ms: Optional[int] = None) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for url, entries in self._snapshot(now_ms).items():
            key = base_url(url)
            counts[key] = counts.get(key, 0) + len(entries)
        return counts

    def subscribe(self) -> Subscription:
        return self.broadcaster.subscribe()

    def close(self):
        """Shut down: end every push stream. Sessions are discarded with the process."""
        self.broadcaster.close()
