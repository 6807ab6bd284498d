# beaconrelay/activitypub/__init__.py
"""
ActivityPub federation for the relay.

The local system actor (relay 0) is the only actor peers follow. Listing
mutations become Create/Update activities, recorded in an append-only
ledger and fanned out to every follower's inbox.

Core concepts:
- Relay: a federation actor with an RSA key pair
- Activity: a ledger row (Follow, Create, Update)
- Delivery: signs envelopes and transports them to inboxes
- InboxHandlers: applies activities received from peers
"""

from .actor import Relay, SYSTEM_RELAY_ID, generate_keypair
from .activity import (
    Activity,
    ActivityLedger,
    InboundActivity,
    FollowActivity,
    CreateActivity,
    UpdateActivity,
    parse_activity,
)
from .signatures import sign_envelope, verify_envelope
from .delivery import Delivery, DeliveryMode, DeliveryOutcome, HttpDelivery
from .fanout import FederationFanout
from .resolve import ActorResolver
from .inbox import InboxHandlers

__all__ = [
    "Relay",
    "SYSTEM_RELAY_ID",
    "generate_keypair",
    "Activity",
    "ActivityLedger",
    "InboundActivity",
    "FollowActivity",
    "CreateActivity",
    "UpdateActivity",
    "parse_activity",
    "sign_envelope",
    "verify_envelope",
    "Delivery",
    "DeliveryMode",
    "DeliveryOutcome",
    "HttpDelivery",
    "FederationFanout",
    "ActorResolver",
    "InboxHandlers",
]
