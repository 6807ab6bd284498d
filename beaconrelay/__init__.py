# beaconrelay - Federated directory of live interactive sites
#
# Sites register themselves with PUT /beacon and report visitor heartbeats.
# Listings are deduplicated by base URL and republished as ActivityPub
# Create/Update activities to peer relays that follow this one.
#
# Core concepts:
# - Listing: a registered site (app / beacon / world)
# - Relay: a federation actor; relay 0 is this server's system actor
# - Activity: an append-only ledger row (Follow, Create, Update)
# - PresenceTracker: in-memory live visitor sessions
# - OwnershipVerifier: meta-tag proof of control, rewarded with a capability

from .config import Config
from .errors import RelayError
from .registry import Listing, RegistrySynchronizer, SlugAllocator, ImageMaterializer
from .activitypub import Relay, Activity, ActivityLedger, FederationFanout
from .presence import PresenceTracker
from .ownership import OwnershipVerifier
from .store import Database

__all__ = [
    "Config",
    "RelayError",
    "Listing",
    "RegistrySynchronizer",
    "SlugAllocator",
    "ImageMaterializer",
    "Relay",
    "Activity",
    "ActivityLedger",
    "FederationFanout",
    "PresenceTracker",
    "OwnershipVerifier",
    "Database",
]

__version__ = "0.1.0"
