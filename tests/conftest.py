# tests/conftest.py
"""Shared fixtures: temp dirs, RSA keys, a store with the system relay, fake delivery."""

import tempfile
from pathlib import Path
from typing import List

import pytest

from beaconrelay.activitypub.actor import SYSTEM_RELAY_ID, Relay, generate_keypair
from beaconrelay.activitypub.delivery import Delivery, DeliveryMode, DeliveryOutcome
from beaconrelay.store import Database

DOMAIN = "relay.test"
SYSTEM_IDENTITY = f"https://{DOMAIN}/relay"
PEER_IDENTITY = "https://peer.example/relay"


class FakeDelivery(Delivery):
    """Records deliveries instead of sending them."""

    def __init__(self, fail: bool = False, raise_error: bool = False):
        self.fail = fail
        self.raise_error = raise_error
        self.calls = []
        self.closed = False

    def deliver(self, envelope, sender, recipients: List[str], mode=DeliveryMode.SYNC):
        self.calls.append((envelope, sender, list(recipients), mode))
        if self.raise_error:
            raise RuntimeError("transport down")
        return [
            DeliveryOutcome(inbox=inbox, ok=not self.fail, error="refused" if self.fail else None)
            for inbox in recipients
        ]

    def close(self):
        self.closed = True


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture(scope="session")
def system_keys():
    """RSA key pair for the local system actor (generated once per run)."""
    return generate_keypair()


@pytest.fixture(scope="session")
def peer_keys():
    """RSA key pair for a remote relay."""
    return generate_keypair()


@pytest.fixture
def system_relay(system_keys):
    private_pem, public_pem = system_keys
    return Relay(
        id=SYSTEM_RELAY_ID,
        identity=SYSTEM_IDENTITY,
        name="relay",
        inbox=f"{SYSTEM_IDENTITY}/inbox",
        outbox=f"{SYSTEM_IDENTITY}/outbox",
        public_key=public_pem,
        private_key=private_pem,
        local=True,
    )


@pytest.fixture
def peer_relay(peer_keys):
    """A remote relay as we would store it (no private key)."""
    return Relay(
        id=-1,
        identity=PEER_IDENTITY,
        name="relay",
        inbox=f"{PEER_IDENTITY}/inbox",
        outbox=f"{PEER_IDENTITY}/outbox",
        public_key=peer_keys[1],
    )


@pytest.fixture
def db(temp_dir, system_relay):
    """Database holding only the system relay."""
    database = Database(temp_dir / "data")
    database.insert_relay(system_relay)
    return database


@pytest.fixture
def delivery():
    return FakeDelivery()
