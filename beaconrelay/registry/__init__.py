# beaconrelay/registry/__init__.py
"""
Listing registry.

Listings are deduplicated by base URL (scheme + host + path, query
stripped), given a unique slug, and kept in sync with resubmissions.

Example:
    sync = RegistrySynchronizer(db, ledger, fanout, images, system_identity)
    result = sync.upsert(Submission.from_payload(body), origin="https://site.example")
    result.outcome  # Outcome.CREATED, Outcome.UPDATED or Outcome.UNCHANGED
"""

from .listing import Listing, NO_IMAGE
from .slugs import SlugAllocator, slugify
from .images import ImageMaterializer
from .synchronizer import RegistrySynchronizer, Submission, Outcome, UpsertResult

__all__ = [
    "Listing",
    "NO_IMAGE",
    "SlugAllocator",
    "slugify",
    "ImageMaterializer",
    "RegistrySynchronizer",
    "Submission",
    "Outcome",
    "UpsertResult",
]
