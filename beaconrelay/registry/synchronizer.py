# beaconrelay/registry/synchronizer.py
"""
Registry synchronization.

Turns listing submissions into idempotent upserts:
1. Guard against cross-site registration (Origin host must match URL host)
2. Match the submission to an existing listing by base URL
3. Create, update or leave the row alone
4. Record a Create/Update activity in the same transaction
5. Fan the activity out to followers once the transaction has committed
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from ..activitypub.activity import CREATE, UPDATE, Activity, ActivityLedger
from ..activitypub.fanout import FederationFanout
from ..errors import OriginMismatch, UniqueViolation, ValidationError
from ..urls import base_url, same_site, with_scheme
from .images import ImageMaterializer, is_inline
from .listing import MUTABLE_FIELDS, NO_IMAGE, Listing
from .slugs import SlugAllocator

logger = logging.getLogger(__name__)

# Fresh slug allocations attempted when the store reports a slug collision.
SLUG_RETRIES = 3

OWNER_EDITABLE = ("name", "description", "image", "adult", "tags")


class Outcome(Enum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


@dataclass
class UpsertResult:
    outcome: Outcome
    listing: Listing
    activity: Optional[Activity] = None


def _require(data: Dict[str, Any], key: str, kind: type):
    value = data.get(key)
    if not isinstance(value, kind):
        raise ValidationError(f"'{key}' must be a {kind.__name__}")
    return value


def _optional(data: Dict[str, Any], key: str, kind: type):
    value = data.get(key)
    if value is not None and not isinstance(value, kind):
        raise ValidationError(f"'{key}' must be a {kind.__name__}")
    return value


@dataclass
class Submission:
    """A listing registration as sent to PUT /beacon."""
    url: str
    name: str
    description: str
    active: bool
    image: Optional[str] = None
    adult: Optional[bool] = None
    tags: Optional[str] = None

    @classmethod
    def from_payload(cls, data: Any) -> "Submission":
        if not isinstance(data, dict):
            raise ValidationError("Body must be a JSON object")
        url = _require(data, "url", str).strip()
        if not url:
            raise ValidationError("'url' must not be empty")
        return cls(
            url=url,
            name=_require(data, "name", str),
            description=_require(data, "description", str),
            active=_require(data, "active", bool),
            image=_optional(data, "image", str),
            adult=_optional(data, "adult", bool),
            tags=_optional(data, "tags", str),
        )

    def incoming(self) -> Dict[str, Any]:
        """Field values this submission proposes, with defaults applied."""
        return {
            "name": self.name,
            "description": self.description,
            "active": self.active,
            "image": self.image or NO_IMAGE,
            "adult": bool(self.adult),
            "tags": self.tags or "",
        }


def _latest(current: Any, incoming: Any) -> Any:
    """Incoming wins only when it differs."""
    return incoming if incoming != current else current


class RegistrySynchronizer:
    """
    Args:
        db: Row store
        ledger: Activity ledger
        fanout: Federation fan-out
        images: Inline image materializer
        system_identity: Identity URI of the local system actor
    """

    def __init__(
        self,
        db,
        ledger: ActivityLedger,
        fanout: FederationFanout,
        images: ImageMaterializer,
        system_identity: str,
    ):
        self.db = db
        self.ledger = ledger
        self.fanout = fanout
        self.images = images
        self.system_identity = system_identity
        self.slugs = SlugAllocator(db.slug_exists)

    def listing_identity(self, listing_id: int) -> str:
        return f"{self.system_identity}/beacon/{listing_id}"

    def upsert(self, submission: Submission, origin: Optional[str]) -> UpsertResult:
        """
        Register or refresh a listing.

        Raises:
            OriginMismatch: origin host differs from the submitted URL's host
            ValidationError: undecodable inline image
            StorageError: row or ledger write failed (nothing is committed)
        """
        if not same_site(origin, submission.url):
            raise OriginMismatch(origin, submission.url)

        result = self._write(submission)
        if result.activity is not None:
            self.fanout.dispatch(result.activity)
        return result

    def _write(self, submission: Submission) -> UpsertResult:
        base = base_url(submission.url)
        for attempt in range(SLUG_RETRIES):
            try:
                with self.db.transaction():
                    current = self.db.get_listing_by_base_url(base)
                    if current is None:
                        return self._create(submission)
                    return self._apply(current, submission.incoming())
            except UniqueViolation as e:
                if e.column != "slug" or attempt == SLUG_RETRIES - 1:
                    raise
                logger.info(f"Slug {e.value!r} taken concurrently, reallocating")

    def _create(self, submission: Submission) -> UpsertResult:
        listing_id = self.db.next_listing_id()
        identity = self.listing_identity(listing_id)
        fields = submission.incoming()
        if is_inline(fields["image"]):
            fields["image"] = self.images.materialize(identity, fields["image"])

        listing = Listing(
            id=listing_id,
            identity=identity,
            url=with_scheme(submission.url),
            slug=self.slugs.allocate(submission.name),
            **fields,
        )
        self.db.insert_listing(listing)
        activity = self.ledger.append(CREATE, identity)
        logger.info(f"Created listing {listing.id} ({listing.slug}) for {listing.url}")
        return UpsertResult(Outcome.CREATED, listing, activity)

    def _resolve(self, current: Listing, incoming: Dict[str, Any]) -> Listing:
        """Merge incoming field values over the current row."""
        resolved = {
            key: _latest(getattr(current, key), incoming[key])
            for key in MUTABLE_FIELDS
            if key != "image" and key in incoming
        }

        image = current.image
        new_image = incoming.get("image", current.image)
        if new_image != current.image and new_image != NO_IMAGE:
            image = new_image
        if is_inline(image):
            image = self.images.materialize(current.identity, image)
        resolved["image"] = image

        return current.with_fields(**resolved)

    def _apply(self, current: Listing, incoming: Dict[str, Any]) -> UpsertResult:
        listing = self._resolve(current, incoming)
        if listing == current:
            return UpsertResult(Outcome.UNCHANGED, current)

        self.db.update_listing(listing)
        activity = self.ledger.append(UPDATE, listing.identity)
        logger.info(f"Updated listing {listing.id} ({listing.url})")
        return UpsertResult(Outcome.UPDATED, listing, activity)

    def edit(self, listing_id: int, changes: Dict[str, Any]) -> UpsertResult:
        """
        Apply an owner's edit; goes through the same diff, ledger and fan-out path.

        Raises:
            ValidationError: unknown field or wrong type
            NotFound: no such listing
        """
        unknown = set(changes) - set(OWNER_EDITABLE)
        if unknown:
            raise ValidationError(f"Fields not editable: {', '.join(sorted(unknown))}")
        for key, value in changes.items():
            expected = bool if key == "adult" else str
            if not isinstance(value, expected):
                raise ValidationError(f"'{key}' must be a {expected.__name__}")

        with self.db.transaction():
            current = self.db.require_listing(listing_id)
            result = self._apply(current, changes)

        if result.activity is not None:
            self.fanout.dispatch(result.activity)
        return result

    def toggle_visibility(self, listing_id: int) -> Listing:
        """Flip a listing's public visibility. Not federated."""
        with self.db.transaction():
            current = self.db.require_listing(listing_id)
            listing = self.db.update_listing(current.with_fields(visible=not current.visible))
        logger.info(f"Listing {listing.id} visible={listing.visible}")
        return listing
