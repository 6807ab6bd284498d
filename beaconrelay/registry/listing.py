# beaconrelay/registry/listing.py
"""
Listing records.

A Listing is a registered external site (app / beacon / world). The
identity is the protocol URI the federation knows it by; the base URL is
what submissions are deduplicated on.
"""

import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional

from ..urls import base_url

NO_IMAGE = "#"

# Fields a resubmission or an owner edit may change.
MUTABLE_FIELDS = ("name", "description", "active", "image", "adult", "tags")


@dataclass
class Listing:
    """
    A registered site.

    Attributes:
        id: Sequence number assigned at creation (0-based, never reused)
        identity: Protocol URI, immutable once assigned
        url: URL as first submitted
        name: Display name
        description: Free text description
        active: Whether the site reports itself as live
        image: Image URL, or NO_IMAGE
        adult: Adult content flag
        tags: Free text tags
        visible: Shown in public directory views (admin togglable)
        slug: Unique human-readable path segment
        verification_code: Pending ownership challenge
        verified_at: When ownership was last proven
        created_at: Timestamp of creation
    """
    id: int
    identity: str
    url: str
    name: str
    description: str = ""
    active: bool = True
    image: str = NO_IMAGE
    adult: bool = False
    tags: str = ""
    visible: bool = True
    slug: Optional[str] = None
    verification_code: Optional[str] = None
    verified_at: Optional[float] = None
    created_at: float = field(default_factory=time.time)

    @property
    def base_url(self) -> str:
        return base_url(self.url)

    @property
    def verified(self) -> bool:
        return self.verified_at is not None

    @property
    def page_path(self) -> str:
        """Path of the listing's public page."""
        return f"/world/{self.slug}" if self.slug else f"/app/{self.id}"

    def with_fields(self, **changes: Any) -> "Listing":
        """Copy with some fields replaced."""
        data = self.to_dict()
        data.update(changes)
        return Listing.from_dict(data)

    def to_activitypub(self) -> Dict[str, Any]:
        """ActivityStreams Page representation served to peers."""
        page = {
            "@context": "https://www.w3.org/ns/activitystreams",
            "type": "Page",
            "id": self.identity,
            "appId": self.id,
            "attributedTo": "",
            "to": [],
            "content": self.url,
            "name": self.name,
            "summary": self.description,
            "sensitive": self.adult,
            "tags": self.tags,
        }
        if self.image and self.image != NO_IMAGE:
            page["image"] = {"type": "Image", "href": self.image, "mediaType": "image/png"}
        return page

    def to_public(self) -> Dict[str, Any]:
        """JSON view for directory pages; never exposes the verification code."""
        data = self.to_dict()
        data.pop("verification_code")
        data["verified"] = self.verified
        data["page"] = self.page_path
        return data

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Listing":
        return cls(
            id=data["id"],
            identity=data["identity"],
            url=data["url"],
            name=data["name"],
            description=data.get("description", ""),
            active=data.get("active", True),
            image=data.get("image", NO_IMAGE),
            adult=data.get("adult", False),
            tags=data.get("tags", ""),
            visible=data.get("visible", True),
            slug=data.get("slug"),
            verification_code=data.get("verification_code"),
            verified_at=data.get("verified_at"),
            created_at=data.get("created_at", time.time()),
        )
