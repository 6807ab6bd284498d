# beaconrelay/ownership.py
"""
Ownership verification.

A listing moves Unverified -> CodeIssued -> Verified. The owner asks for a
code, places it in a meta tag on the listing's page:

    <meta name="beacon-verification" content="CODE">

and asks us to check. A successful check stamps ``verified_at`` and mints
an owner capability scoped to that one listing.
"""

import logging
import secrets
import string
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from bs4 import BeautifulSoup

from .capability import OWNER_COOKIE, OWNER_TTL, CapabilityIssuer, cookie_header
from .client import HttpClient
from .errors import CodeMismatch, FetchFailed, NoCodeIssued, TagMissing, UpstreamError

logger = logging.getLogger(__name__)

META_NAME = "beacon-verification"
CODE_LENGTH = 32
CODE_ALPHABET = string.ascii_lowercase + string.digits

PageFetcher = Callable[[str], str]


def generate_code() -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))


def meta_tag(code: str) -> str:
    return f'<meta name="{META_NAME}" content="{code}">'


def find_verification_code(html: str) -> Optional[str]:
    """Content of the first beacon-verification meta tag as written, or None."""
    soup = BeautifulSoup(html, "html.parser")
    tag = soup.find("meta", attrs={"name": META_NAME})
    if tag is None:
        return None
    return tag.get("content", "")


@dataclass
class VerificationChallenge:
    code: str
    instructions: str

    def to_dict(self) -> Dict[str, str]:
        return {"code": self.code, "instructions": self.instructions, "meta_tag": meta_tag(self.code)}


@dataclass
class OwnerGrant:
    """Result of a successful verification."""
    token: str
    cookie: str
    listing_id: int
    slug: str


class OwnershipVerifier:
    """
    Args:
        db: Row store
        issuer: Capability issuer holding the system key pair
        fetch_page: Returns the HTML of a URL, raising UpstreamError on failure
    """

    def __init__(
        self,
        db,
        issuer: CapabilityIssuer,
        fetch_page: Optional[PageFetcher] = None,
    ):
        self.db = db
        self.issuer = issuer
        self.fetch_page = fetch_page or HttpClient(timeout=10).get_text

    def request_verification(self, listing_id: int) -> VerificationChallenge:
        """Return the listing's verification code, issuing one if none is stored."""
        with self.db.transaction():
            listing = self.db.require_listing(listing_id)
            code = listing.verification_code
            if not code:
                code = generate_code()
                self.db.update_listing(listing.with_fields(verification_code=code))
                logger.info(f"Issued verification code for listing {listing_id}")

        instructions = (
            f"Add {meta_tag(code)} to the <head> of {listing.url}, "
            f"then request verification."
        )
        return VerificationChallenge(code=code, instructions=instructions)

    def verify(self, listing_id: int) -> OwnerGrant:
        """
        Fetch the listing's page and compare its meta tag with the issued code.

        Raises:
            NotFound: no such listing
            NoCodeIssued: request_verification was never called
            FetchFailed: the page could not be fetched
            TagMissing: the page has no beacon-verification meta tag
            CodeMismatch: the tag holds a different code
        """
        listing = self.db.require_listing(listing_id)
        expected = listing.verification_code
        if not expected:
            raise NoCodeIssued()

        try:
            html = self.fetch_page(listing.url)
        except UpstreamError as e:
            raise FetchFailed(listing.url, e) from e

        found = find_verification_code(html)
        if found is None:
            raise TagMissing(expected)
        if not secrets.compare_digest(found.encode(), expected.encode()):
            raise CodeMismatch(expected, found)

        with self.db.transaction():
            current = self.db.require_listing(listing_id)
            listing = self.db.update_listing(current.with_fields(verified_at=time.time()))

        slug = listing.slug or str(listing.id)
        token = self.issuer.issue_owner(listing.id, slug)
        logger.info(f"Verified ownership of listing {listing.id} ({listing.url})")
        return OwnerGrant(
            token=token,
            cookie=cookie_header(OWNER_COOKIE, token, OWNER_TTL),
            listing_id=listing.id,
            slug=slug,
        )

    def authorize(self, cookie_header_value: Optional[str], listing_id: int) -> Dict[str, Any]:
        """
        Claims of the caller's owner capability for ``listing_id``.

        Raises:
            AuthError: missing, invalid or expired capability
            Forbidden: capability belongs to another listing
        """
        return self.issuer.require_owner(cookie_header_value, listing_id)
