# beaconrelay/activitypub/actor.py
"""
Relay actors.

A Relay is a federation actor: either the local system actor (row 0,
holds the private key, the only actor peers may follow) or a remote peer
directory we know about because it followed us or we followed it.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

SYSTEM_RELAY_ID = 0
SYSTEM_RELAY_NAME = "relay"


def generate_keypair() -> tuple[str, str]:
    """Generate an RSA key pair, returned as (private PEM, public PEM)."""
    private_key = rsa.generate_private_key(
        public_exponent=65537,
        key_size=2048,
    )
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return private_pem.decode("utf-8"), public_pem.decode("utf-8")


@dataclass
class Relay:
    """
    A federation actor.

    Attributes:
        id: Row id; 0 is the local system actor
        identity: Actor URI
        name: Preferred username
        inbox: Inbox URL
        outbox: Outbox URL
        public_key: PEM-encoded public key
        private_key: PEM-encoded private key, only for the local actor
        local: Whether this actor lives on this server
        last_refreshed_at: When the actor document was last fetched/written
    """
    id: int
    identity: str
    name: str
    inbox: str
    outbox: str
    public_key: str
    private_key: Optional[str] = None
    local: bool = False
    last_refreshed_at: float = field(default_factory=time.time)

    @property
    def key_id(self) -> str:
        """Key ID used in signatures."""
        return f"{self.identity}#main-key"

    @property
    def followers_url(self) -> str:
        return f"{self.identity}/followers"

    def to_activitypub(self) -> Dict[str, Any]:
        """Return ActivityPub JSON-LD representation."""
        return {
            "@context": [
                "https://www.w3.org/ns/activitystreams",
                "https://w3id.org/security/v1",
            ],
            "type": "Service",
            "id": self.identity,
            "preferredUsername": self.name,
            "name": self.name,
            "inbox": self.inbox,
            "outbox": self.outbox,
            "publicKey": {
                "id": self.key_id,
                "owner": self.identity,
                "publicKeyPem": self.public_key,
            },
        }

    def to_public(self) -> Dict[str, Any]:
        """Listing view; never includes the private key."""
        data = self.to_dict()
        data.pop("private_key")
        return data

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "identity": self.identity,
            "name": self.name,
            "inbox": self.inbox,
            "outbox": self.outbox,
            "public_key": self.public_key,
            "private_key": self.private_key,
            "local": self.local,
            "last_refreshed_at": self.last_refreshed_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Relay":
        return cls(
            id=data["id"],
            identity=data["identity"],
            name=data["name"],
            inbox=data["inbox"],
            outbox=data["outbox"],
            public_key=data["public_key"],
            private_key=data.get("private_key"),
            local=data.get("local", False),
            last_refreshed_at=data.get("last_refreshed_at", time.time()),
        )

    @classmethod
    def from_activitypub(cls, doc: Dict[str, Any], relay_id: int = -1) -> "Relay":
        """
        Build a remote relay from a fetched actor document.

        The id is a placeholder until the row is inserted.
        """
        try:
            return cls(
                id=relay_id,
                identity=doc["id"],
                name=doc.get("preferredUsername") or doc.get("name") or "",
                inbox=doc["inbox"],
                outbox=doc.get("outbox", ""),
                public_key=doc["publicKey"]["publicKeyPem"],
                private_key=None,
                local=False,
            )
        except (KeyError, TypeError) as e:
            raise ValueError(f"Malformed actor document: missing {e}") from e

    @classmethod
    def create_system(cls, identity: str) -> "Relay":
        """Create the local system actor with a fresh key pair."""
        private_pem, public_pem = generate_keypair()
        return cls(
            id=SYSTEM_RELAY_ID,
            identity=identity,
            name=SYSTEM_RELAY_NAME,
            inbox=f"{identity}/inbox",
            outbox=f"{identity}/outbox",
            public_key=public_pem,
            private_key=private_pem,
            local=True,
        )
