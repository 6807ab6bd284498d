# beaconrelay/activitypub/fanout.py
"""
Federation fan-out.

Turns a ledger row into an outgoing envelope and hands it to the delivery
collaborator for every relay following the local system actor. Fan-out
runs after the authoritative write has committed: it is best effort and
at most once, so failures are logged and never raised to the caller.
"""

import logging
from typing import List, Optional

from .activity import Activity, ActivityLedger
from .actor import SYSTEM_RELAY_ID
from .delivery import Delivery, DeliveryMode, DeliveryOutcome

logger = logging.getLogger(__name__)


class FederationFanout:
    """
    Args:
        db: Row store (relays and follower edges are read from it)
        ledger: Activity ledger
        delivery: Signed-delivery collaborator
        mode: Default delivery mode for dispatch()
    """

    def __init__(
        self,
        db,
        ledger: ActivityLedger,
        delivery: Delivery,
        mode: DeliveryMode = DeliveryMode.SYNC,
    ):
        self.db = db
        self.ledger = ledger
        self.delivery = delivery
        self.mode = mode

    def recipients(self) -> List[str]:
        """Inboxes of every relay following the system actor."""
        return [relay.inbox for relay in self.db.followers_of(SYSTEM_RELAY_ID)]

    def dispatch(
        self,
        activity: Activity,
        recipients: Optional[List[str]] = None,
        mode: Optional[DeliveryMode] = None,
    ) -> List[DeliveryOutcome]:
        """
        Deliver an already-recorded activity.

        Args:
            activity: Ledger row (its id was assigned from the ledger length)
            recipients: Override inboxes; defaults to all followers
            mode: Override the default delivery mode

        Returns:
            Per-recipient outcomes (empty if delivery itself failed)
        """
        recipients = self.recipients() if recipients is None else recipients
        if not recipients:
            logger.debug(f"No followers to receive {activity.kind} {activity.activity_id}")
            return []

        mode = mode or self.mode
        try:
            sender = self.db.get_system_relay()
            outcomes = self.delivery.deliver(
                activity.to_activitypub(), sender, recipients, mode
            )
        except Exception as e:
            logger.warning(f"Delivery of {activity.activity_id} failed: {e}")
            return []

        for outcome in outcomes:
            if not outcome.ok:
                logger.warning(
                    f"Failed to deliver {activity.kind} {activity.activity_id} "
                    f"to {outcome.inbox}: {outcome.error}"
                )
        return outcomes

    def publish(
        self,
        kind: str,
        obj: str,
        recipients: Optional[List[str]] = None,
        mode: Optional[DeliveryMode] = None,
    ) -> Activity:
        """Append a ledger row for ``kind`` on ``obj`` and dispatch it."""
        activity = self.ledger.append(kind, obj)
        self.dispatch(activity, recipients=recipients, mode=mode)
        return activity
