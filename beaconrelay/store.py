# beaconrelay/store.py
"""
Row store for listings, relays, follower edges and activities.

All tables live in one JSON document so a transaction that touches several
of them (a listing write plus its ledger row) is committed by a single
file replace. Unique indexes are enforced on every insert and update;
application-level counters (listing ids, ledger sequence numbers) are
advisory and these checks are what keep concurrent writers honest.

Structure:
    data_dir/
        relay.json      # {"version", "listings", "relays", "followers", "activities"}
"""

import copy
import json
import logging
import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Set, Tuple

from .activitypub.activity import Activity
from .activitypub.actor import SYSTEM_RELAY_ID, Relay
from .errors import NotFound, StorageError, UniqueViolation
from .registry.listing import Listing

logger = logging.getLogger(__name__)

STORE_VERSION = "1.0"


class Database:
    """
    Persistent tables behind one re-entrant lock.

    Every mutating method runs inside ``transaction()``; callers may open an
    outer transaction to group several writes. On an exception the
    in-memory tables are restored to the snapshot taken when the outermost
    transaction began and nothing is written.
    """

    def __init__(self, data_dir: Path | str):
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._depth = 0
        self._snapshot = None
        self._listings: Dict[int, Listing] = {}
        self._relays: Dict[int, Relay] = {}
        self._followers: Set[Tuple[int, int]] = set()
        self._activities: List[Activity] = []
        self._load()

    def _path(self) -> Path:
        return self.data_dir / "relay.json"

    def _load(self):
        """Load tables from disk."""
        path = self._path()
        if not path.exists():
            return
        try:
            with open(path) as f:
                data = json.load(f)
            self._listings = {
                row["id"]: Listing.from_dict(row) for row in data.get("listings", [])
            }
            self._relays = {row["id"]: Relay.from_dict(row) for row in data.get("relays", [])}
            self._followers = {tuple(edge) for edge in data.get("followers", [])}
            self._activities = [Activity.from_dict(row) for row in data.get("activities", [])]
        except (json.JSONDecodeError, KeyError) as e:
            raise StorageError(f"Failed to load {path}: {e}") from e

    def _save(self):
        """Write all tables, replacing the file atomically."""
        data = {
            "version": STORE_VERSION,
            "listings": [l.to_dict() for l in sorted(self._listings.values(), key=lambda l: l.id)],
            "relays": [r.to_dict() for r in sorted(self._relays.values(), key=lambda r: r.id)],
            "followers": sorted(list(edge) for edge in self._followers),
            "activities": [a.to_dict() for a in self._activities],
        }
        path = self._path()
        tmp_path = path.with_suffix(".json.tmp")
        with open(tmp_path, "w") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_path, path)

    def _take_snapshot(self):
        return copy.deepcopy(
            (self._listings, self._relays, self._followers, self._activities)
        )

    def _restore(self, snapshot):
        self._listings, self._relays, self._followers, self._activities = snapshot

    @contextmanager
    def transaction(self) -> Iterator["Database"]:
        """Group writes; all of them commit or none do."""
        with self._lock:
            if self._depth == 0:
                self._snapshot = self._take_snapshot()
            self._depth += 1
            try:
                yield self
            except BaseException:
                self._depth -= 1
                if self._depth == 0:
                    self._restore(self._snapshot)
                    self._snapshot = None
                raise
            self._depth -= 1
            if self._depth == 0:
                try:
                    self._save()
                except OSError as e:
                    self._restore(self._snapshot)
                    raise StorageError(f"Failed to write {self._path()}: {e}") from e
                finally:
                    self._snapshot = None

    # -- listings ---------------------------------------------------------

    def listing_count(self) -> int:
        with self._lock:
            return len(self._listings)

    def next_listing_id(self) -> int:
        """Next sequence number: the current row count."""
        return self.listing_count()

    def get_listing(self, listing_id: int) -> Optional[Listing]:
        with self._lock:
            return self._listings.get(listing_id)

    def require_listing(self, listing_id: int) -> Listing:
        listing = self.get_listing(listing_id)
        if listing is None:
            raise NotFound(f"No listing {listing_id}")
        return listing

    def get_listing_by_identity(self, identity: str) -> Optional[Listing]:
        with self._lock:
            for listing in self._listings.values():
                if listing.identity == identity:
                    return listing
        return None

    def get_listing_by_base_url(self, base: str) -> Optional[Listing]:
        """Oldest listing whose base URL equals ``base``."""
        with self._lock:
            matches = [l for l in self._listings.values() if l.base_url == base]
        return min(matches, key=lambda l: l.id) if matches else None

    def get_listing_by_slug(self, slug: str) -> Optional[Listing]:
        with self._lock:
            for listing in self._listings.values():
                if listing.slug == slug:
                    return listing
        return None

    def slug_exists(self, slug: str) -> bool:
        return self.get_listing_by_slug(slug) is not None

    def list_listings(self) -> List[Listing]:
        with self._lock:
            return sorted(self._listings.values(), key=lambda l: l.id)

    def _check_listing_unique(self, listing: Listing, replacing: Optional[int] = None):
        for other in self._listings.values():
            if other.id == replacing:
                continue
            if other.identity == listing.identity:
                raise UniqueViolation("listings", "identity", listing.identity)
            if other.base_url == listing.base_url:
                raise UniqueViolation("listings", "base_url", listing.base_url)
            if listing.slug and other.slug == listing.slug:
                raise UniqueViolation("listings", "slug", listing.slug)

    def insert_listing(self, listing: Listing) -> Listing:
        with self.transaction():
            if listing.id in self._listings:
                raise UniqueViolation("listings", "id", listing.id)
            self._check_listing_unique(listing)
            self._listings[listing.id] = listing
        return listing

    def update_listing(self, listing: Listing) -> Listing:
        with self.transaction():
            current = self._listings.get(listing.id)
            if current is None:
                raise NotFound(f"No listing {listing.id}")
            if current.identity != listing.identity:
                raise StorageError(f"Listing {listing.id} identity is immutable")
            self._check_listing_unique(listing, replacing=listing.id)
            self._listings[listing.id] = listing
        return listing

    # -- relays -----------------------------------------------------------

    def get_relay(self, relay_id: int) -> Optional[Relay]:
        with self._lock:
            return self._relays.get(relay_id)

    def get_system_relay(self) -> Relay:
        relay = self.get_relay(SYSTEM_RELAY_ID)
        if relay is None:
            raise StorageError("System relay has not been created")
        return relay

    def get_relay_by_identity(self, identity: str) -> Optional[Relay]:
        with self._lock:
            for relay in self._relays.values():
                if relay.identity == identity:
                    return relay
        return None

    def list_relays(self) -> List[Relay]:
        with self._lock:
            return sorted(self._relays.values(), key=lambda r: r.id)

    def insert_relay(self, relay: Relay) -> Relay:
        """Insert a relay; a negative id is replaced by the next free id."""
        with self.transaction():
            if relay.id < 0:
                relay.id = max(self._relays, default=SYSTEM_RELAY_ID) + 1
            if relay.id in self._relays:
                raise UniqueViolation("relays", "id", relay.id)
            if any(r.identity == relay.identity for r in self._relays.values()):
                raise UniqueViolation("relays", "identity", relay.identity)
            self._relays[relay.id] = relay
        return relay

    def update_relay(self, relay: Relay) -> Relay:
        with self.transaction():
            if relay.id not in self._relays:
                raise NotFound(f"No relay {relay.id}")
            self._relays[relay.id] = relay
        return relay

    # -- follower edges ---------------------------------------------------

    def add_follower(self, relay_id: int, follower_id: int) -> bool:
        """Add an edge; returns False if it already existed."""
        with self.transaction():
            if relay_id not in self._relays or follower_id not in self._relays:
                raise NotFound(f"Unknown relay in edge ({relay_id}, {follower_id})")
            edge = (relay_id, follower_id)
            if edge in self._followers:
                return False
            self._followers.add(edge)
        return True

    def followers_of(self, relay_id: int = SYSTEM_RELAY_ID) -> List[Relay]:
        with self._lock:
            ids = sorted(f for r, f in self._followers if r == relay_id)
            return [self._relays[i] for i in ids if i in self._relays]

    # -- activities -------------------------------------------------------

    def activity_count(self) -> int:
        with self._lock:
            return len(self._activities)

    def append_activity(self, activity: Activity) -> Activity:
        with self.transaction():
            if any(a.activity_id == activity.activity_id for a in self._activities):
                raise UniqueViolation("activities", "activity_id", activity.activity_id)
            self._activities.append(activity)
        return activity

    def get_activity(self, sequence: int) -> Optional[Activity]:
        with self._lock:
            if 0 <= sequence < len(self._activities):
                return self._activities[sequence]
        return None

    def list_activities(self) -> List[Activity]:
        with self._lock:
            return list(self._activities)
