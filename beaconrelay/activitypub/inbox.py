# beaconrelay/activitypub/inbox.py
"""
Handlers for activities received from peers.

The envelope is parsed into Follow/Create/Update by its "type", the
sending actor is looked up (or fetched) and its signature checked, then
the matching handler writes relay, follower, listing and ledger rows in
one transaction. Network fetches happen before the transaction opens.
"""

import logging
from typing import Any, Callable, Dict

from ..errors import AuthError, UniqueViolation, ValidationError
from ..registry.listing import NO_IMAGE, Listing
from ..urls import host_of
from .activity import (
    ActivityLedger,
    CreateActivity,
    FollowActivity,
    InboundActivity,
    UpdateActivity,
    parse_activity,
)
from .actor import SYSTEM_RELAY_ID, Relay
from .resolve import ActorResolver
from .signatures import signed_by, verify_envelope

logger = logging.getLogger(__name__)

EnvelopeVerifier = Callable[[Dict[str, Any], str], bool]


def listing_fields_from_page(page: Dict[str, Any]) -> Dict[str, Any]:
    """Map an ActivityStreams Page onto listing columns."""
    if page.get("type") != "Page" or not page.get("id") or not page.get("content"):
        raise ValidationError("Object is not a listing Page")
    image = page.get("image")
    href = image.get("href") if isinstance(image, dict) else None
    return {
        "identity": page["id"],
        "url": page["content"],
        "name": page.get("name", ""),
        "description": page.get("summary", ""),
        "active": True,
        "image": href or NO_IMAGE,
        "adult": bool(page.get("sensitive", False)),
        "tags": page.get("tags", "") or "",
    }


class InboxHandlers:
    """
    Args:
        db: Row store
        ledger: Activity ledger
        resolver: Fetches unknown actors and by-reference objects
        verifier: Checks an envelope against a PEM public key
    """

    def __init__(
        self,
        db,
        ledger: ActivityLedger,
        resolver: ActorResolver,
        verifier: EnvelopeVerifier = verify_envelope,
    ):
        self.db = db
        self.ledger = ledger
        self.resolver = resolver
        self.verifier = verifier
        self._handlers = {
            FollowActivity: self.on_follow,
            CreateActivity: self.on_create,
            UpdateActivity: self.on_update,
        }

    def receive(self, envelope: Dict[str, Any]) -> InboundActivity:
        """
        Authenticate and apply an inbound envelope.

        Raises:
            UnknownActivityError: unsupported type
            ValidationError: malformed envelope or object
            AuthError: signature missing or invalid for the claimed actor
        """
        activity = parse_activity(envelope)
        actor = self._sender(activity.actor)
        if not signed_by(envelope, actor.identity) or not self.verifier(envelope, actor.public_key):
            raise AuthError(f"Invalid signature on {activity.kind} from {activity.actor}")

        if self._seen(activity.id):
            logger.debug(f"Ignoring duplicate {activity.kind} {activity.id}")
            return activity

        self._handlers[type(activity)](activity, actor)
        logger.info(f"Accepted {activity.kind} {activity.id} from {actor.identity}")
        return activity

    def _sender(self, identity: str) -> Relay:
        known = self.db.get_relay_by_identity(identity)
        if known is not None:
            return known
        return self.resolver.fetch_actor(identity)

    def _seen(self, activity_id: str) -> bool:
        return any(a.activity_id == activity_id for a in self.ledger.list())

    def on_follow(self, activity: FollowActivity, actor: Relay):
        system = self.db.get_system_relay()
        if activity.object_id != system.identity:
            raise ValidationError("Only the relay actor can be followed")

        with self.db.transaction():
            follower = self.db.get_relay_by_identity(actor.identity)
            if follower is None:
                follower = self.db.insert_relay(actor)
            self.ledger.record(activity.id, actor.identity, activity.object_id, activity.kind)
            self.db.add_follower(SYSTEM_RELAY_ID, follower.id)

    def _page(self, activity: InboundActivity) -> Dict[str, Any]:
        page = activity.embedded_object
        if page is None or "content" not in page:
            page = self.resolver.fetch_object(activity.object_id)
        fields = listing_fields_from_page(page)
        if host_of(fields["identity"]) != host_of(activity.actor):
            raise ValidationError(
                f"{activity.actor} may not publish objects for {fields['identity']}"
            )
        return fields

    def on_create(self, activity: CreateActivity, actor: Relay):
        self._write_listing(activity, actor, self._page(activity))

    def on_update(self, activity: UpdateActivity, actor: Relay):
        self._write_listing(activity, actor, self._page(activity))

    def _write_listing(self, activity: InboundActivity, actor: Relay, fields: Dict[str, Any]):
        """Insert or overwrite the listing a peer published, and record the activity."""
        with self.db.transaction():
            current = self.db.get_listing_by_identity(fields["identity"])
            if current is not None:
                self.db.update_listing(current.with_fields(**fields))
            else:
                listing = Listing(id=self.db.next_listing_id(), **fields)
                try:
                    self.db.insert_listing(listing)
                except UniqueViolation as e:
                    # A local row already owns this base URL; keep it.
                    logger.info(f"Skipping {fields['identity']}: {e}")
            self.ledger.record(activity.id, actor.identity, fields["identity"], activity.kind)
