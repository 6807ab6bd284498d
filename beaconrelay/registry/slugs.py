# beaconrelay/registry/slugs.py
"""
Slug allocation for listing pages.

Probing is only a hint: two concurrent allocations for the same name can
both see a free slug. The store's unique index on slug is authoritative
and callers retry on UniqueViolation.
"""

import random
import re
import unicodedata
from typing import Callable

FALLBACK_SLUG = "world"
MAX_SLUG_LENGTH = 80
MAX_PROBES = 100

_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def slugify(name: str) -> str:
    """
    Lowercase, ASCII, hyphen-separated form of a name.

    >>> slugify("Café  World!")
    'cafe-world'
    """
    ascii_name = unicodedata.normalize("NFKD", name).encode("ascii", "ignore").decode("ascii")
    slug = _NON_ALNUM.sub("-", ascii_name.lower()).strip("-")
    return slug[:MAX_SLUG_LENGTH].rstrip("-")


class SlugAllocator:
    """
    Picks the first free slug for a name.

    Args:
        exists: Returns True if a slug is already taken
        max_probes: Highest numeric suffix tried before falling back to a random one
    """

    def __init__(self, exists: Callable[[str], bool], max_probes: int = MAX_PROBES):
        self._exists = exists
        self.max_probes = max_probes

    def allocate(self, name: str) -> str:
        base = slugify(name) or FALLBACK_SLUG
        if not self._exists(base):
            return base

        for n in range(2, self.max_probes + 1):
            candidate = f"{base}-{n}"
            if not self._exists(candidate):
                return candidate

        return f"{base}-{random.randint(100000, 999999)}"
