# beaconrelay/activitypub/activity.py
"""
ActivityPub activities.

Two views of the same thing live here:
- Activity: a row of the append-only ledger, one per Follow/Create/Update
  this relay sent or accepted.
- InboundActivity and its subclasses: a parsed envelope received from a
  peer, discriminated by its "type" field.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Type

from ..errors import UnknownActivityError, ValidationError

AS_CONTEXT = "https://www.w3.org/ns/activitystreams"

FOLLOW = "Follow"
CREATE = "Create"
UPDATE = "Update"
KINDS = (FOLLOW, CREATE, UPDATE)


def activity_uri(actor: str, sequence: int) -> str:
    return f"{actor}/activities/{sequence}"


@dataclass
class Activity:
    """
    A ledger row.

    Attributes:
        activity_id: Protocol URI of the activity
        actor: URI of the actor performing it
        object: URI of the object acted upon
        kind: Follow, Create or Update
        created_at: Timestamp when appended
    """
    activity_id: str
    actor: str
    object: str
    kind: str
    created_at: float = field(default_factory=time.time)

    def to_activitypub(self) -> Dict[str, Any]:
        """Return the outgoing envelope (unsigned)."""
        return {
            "@context": AS_CONTEXT,
            "type": self.kind,
            "id": self.activity_id,
            "actor": self.actor,
            "object": self.object,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "activity_id": self.activity_id,
            "actor": self.actor,
            "object": self.object,
            "kind": self.kind,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Activity":
        return cls(
            activity_id=data["activity_id"],
            actor=data["actor"],
            object=data["object"],
            kind=data["kind"],
            created_at=data.get("created_at", time.time()),
        )


class ActivityLedger:
    """
    Append-only log of activities, backed by the database's activity table.

    The number of rows is authoritative for the next outgoing sequence
    number; the database's unique index on activity_id is the backstop
    when two writers read the same count.
    """

    def __init__(self, db, actor_identity: str):
        self.db = db
        self.actor_identity = actor_identity

    def append(self, kind: str, obj: str, actor: Optional[str] = None) -> Activity:
        """Append an outgoing activity, numbering it from the current row count."""
        if kind not in KINDS:
            raise ValueError(f"Unknown activity kind: {kind}")
        actor = actor or self.actor_identity
        with self.db.transaction():
            sequence = self.db.activity_count()
            activity = Activity(
                activity_id=activity_uri(self.actor_identity, sequence),
                actor=actor,
                object=obj,
                kind=kind,
            )
            self.db.append_activity(activity)
        return activity

    def record(self, activity_id: str, actor: str, obj: str, kind: str) -> Activity:
        """Append an activity received from a peer, keeping its id."""
        activity = Activity(activity_id=activity_id, actor=actor, object=obj, kind=kind)
        self.db.append_activity(activity)
        return activity

    def get(self, sequence: int) -> Optional[Activity]:
        return self.db.get_activity(sequence)

    def list(self) -> List[Activity]:
        return self.db.list_activities()

    def __len__(self) -> int:
        return self.db.activity_count()


@dataclass
class InboundActivity:
    """An activity envelope received from a peer."""
    id: str
    actor: str
    object: Any
    kind: str = ""

    @property
    def object_id(self) -> str:
        """URI of the object, whether it was sent embedded or by reference."""
        if isinstance(self.object, dict):
            return self.object.get("id", "")
        return self.object

    @property
    def embedded_object(self) -> Optional[Dict[str, Any]]:
        return self.object if isinstance(self.object, dict) else None


@dataclass
class FollowActivity(InboundActivity):
    kind: str = field(default=FOLLOW, init=False)


@dataclass
class CreateActivity(InboundActivity):
    kind: str = field(default=CREATE, init=False)


@dataclass
class UpdateActivity(InboundActivity):
    kind: str = field(default=UPDATE, init=False)


ACTIVITY_TYPES: Dict[str, Type[InboundActivity]] = {
    FOLLOW: FollowActivity,
    CREATE: CreateActivity,
    UPDATE: UpdateActivity,
}


def parse_activity(data: Any) -> InboundActivity:
    """
    Parse an inbound envelope by its "type" discriminant.

    Raises:
        UnknownActivityError: type missing or not one we accept
        ValidationError: required fields missing
    """
    if not isinstance(data, dict):
        raise ValidationError("Activity must be a JSON object")

    kind = data.get("type")
    activity_cls = ACTIVITY_TYPES.get(kind) if isinstance(kind, str) else None
    if activity_cls is None:
        raise UnknownActivityError(f"Unsupported activity type: {kind!r}")

    missing = [key for key in ("id", "actor", "object") if not data.get(key)]
    if missing:
        raise ValidationError(f"{kind} activity missing {', '.join(missing)}")

    actor = data["actor"]
    if isinstance(actor, dict):
        actor = actor.get("id", "")
    obj = data["object"]
    if not isinstance(obj, (str, dict)) or (isinstance(obj, dict) and not obj.get("id")):
        raise ValidationError(f"{kind} activity has an invalid object")

    return activity_cls(id=data["id"], actor=actor, object=obj)
