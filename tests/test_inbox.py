# tests/test_inbox.py
"""Tests for inbound activities: parsing, signature checks and handlers."""

import pytest

from beaconrelay.activitypub.activity import (
    ActivityLedger,
    CreateActivity,
    FollowActivity,
    parse_activity,
)
from beaconrelay.activitypub.inbox import InboxHandlers, listing_fields_from_page
from beaconrelay.activitypub.resolve import ActorResolver, parse_handle, webfinger_document
from beaconrelay.activitypub.signatures import sign_envelope, verify_envelope
from beaconrelay.client import HttpClient
from beaconrelay.errors import AuthError, UnknownActivityError, UpstreamError, ValidationError

from conftest import PEER_IDENTITY, SYSTEM_IDENTITY


class MockResolver:
    """Mock resolver that knows one remote relay and a set of objects."""

    def __init__(self, relay):
        self.relay = relay
        self.objects = {}
        self.fetched = []

    def fetch_actor(self, identity):
        self.fetched.append(identity)
        if identity != self.relay.identity:
            raise UpstreamError(f"HTTP 404 from {identity}")
        return self.relay

    def fetch_object(self, uri):
        return self.objects[uri]


class MockClient:
    """Mock HTTP client answering GETs from a dict."""

    def __init__(self, documents):
        self.documents = documents
        self.requested = []

    def get_json(self, url, accept="application/activity+json"):
        self.requested.append(url)
        return self.documents[url]


def page(listing_id=0, name="Peer World", url="https://game.example/"):
    return {
        "type": "Page",
        "id": f"{PEER_IDENTITY}/beacon/{listing_id}",
        "content": url,
        "name": name,
        "summary": "hosted elsewhere",
        "sensitive": False,
        "tags": "vr",
    }


@pytest.fixture
def ledger(db):
    return ActivityLedger(db, SYSTEM_IDENTITY)


@pytest.fixture
def resolver(peer_relay):
    return MockResolver(peer_relay)


@pytest.fixture
def handlers(db, ledger, resolver):
    return InboxHandlers(db, ledger, resolver)


@pytest.fixture
def sign(peer_keys, peer_relay):
    def _sign(kind, obj, seq=0, actor=PEER_IDENTITY):
        envelope = {
            "@context": "https://www.w3.org/ns/activitystreams",
            "type": kind,
            "id": f"{actor}/activities/{seq}",
            "actor": actor,
            "object": obj,
        }
        return sign_envelope(envelope, peer_relay.key_id, peer_keys[0])
    return _sign


class TestParseActivity:
    """Tests for the type-discriminated parse."""

    def test_follow(self):
        activity = parse_activity({
            "type": "Follow", "id": "https://p/a/1", "actor": {"id": "https://p/relay"},
            "object": SYSTEM_IDENTITY,
        })
        assert isinstance(activity, FollowActivity)
        assert activity.actor == "https://p/relay"
        assert activity.object_id == SYSTEM_IDENTITY

    def test_create_with_embedded_object(self):
        activity = parse_activity({
            "type": "Create", "id": "https://p/a/2", "actor": "https://p/relay", "object": page(),
        })
        assert isinstance(activity, CreateActivity)
        assert activity.object_id == page()["id"]
        assert activity.embedded_object["content"] == "https://game.example/"

    def test_unknown_type_fails_loudly(self):
        with pytest.raises(UnknownActivityError):
            parse_activity({"type": "Like", "id": "x", "actor": "y", "object": "z"})
        with pytest.raises(UnknownActivityError):
            parse_activity({"id": "x", "actor": "y", "object": "z"})

    def test_missing_fields(self):
        with pytest.raises(ValidationError):
            parse_activity({"type": "Follow", "id": "x", "object": "z"})

    def test_object_without_id(self):
        with pytest.raises(ValidationError):
            parse_activity({"type": "Create", "id": "x", "actor": "y", "object": {"type": "Page"}})


class TestSignatures:
    def test_round_trip_and_tamper(self, sign, peer_keys, system_keys):
        envelope = sign("Follow", SYSTEM_IDENTITY)

        assert verify_envelope(envelope, peer_keys[1])
        assert not verify_envelope(envelope, system_keys[1])
        assert not verify_envelope(dict(envelope, object="https://elsewhere/"), peer_keys[1])
        assert not verify_envelope({k: v for k, v in envelope.items() if k != "signature"}, peer_keys[1])


class TestFollow:
    """Tests for peers following the system actor."""

    def test_follow_creates_relay_and_edge(self, handlers, db, ledger, sign):
        envelope = sign("Follow", SYSTEM_IDENTITY)

        handlers.receive(envelope)

        follower = db.get_relay_by_identity(PEER_IDENTITY)
        assert follower.id == 1
        assert follower.private_key is None
        assert [r.identity for r in db.followers_of(0)] == [PEER_IDENTITY]
        assert len(ledger) == 1
        assert ledger.get(0).activity_id == envelope["id"]
        assert ledger.get(0).kind == "Follow"

    def test_duplicate_delivery_ignored(self, handlers, db, ledger, sign):
        envelope = sign("Follow", SYSTEM_IDENTITY)
        handlers.receive(envelope)
        handlers.receive(envelope)

        assert len(ledger) == 1
        assert len(db.followers_of(0)) == 1

    def test_refollow_with_new_activity(self, handlers, db, ledger, sign, resolver):
        handlers.receive(sign("Follow", SYSTEM_IDENTITY, seq=0))
        handlers.receive(sign("Follow", SYSTEM_IDENTITY, seq=1))

        assert len(ledger) == 2
        assert len(db.followers_of(0)) == 1
        assert resolver.fetched == [PEER_IDENTITY]

    def test_bad_signature_rejected(self, handlers, db, ledger, system_relay):
        envelope = sign_envelope(
            {"type": "Follow", "id": f"{PEER_IDENTITY}/activities/0",
             "actor": PEER_IDENTITY, "object": SYSTEM_IDENTITY},
            f"{PEER_IDENTITY}#main-key",
            system_relay.private_key,
        )
        with pytest.raises(AuthError):
            handlers.receive(envelope)
        assert len(ledger) == 0
        assert db.get_relay_by_identity(PEER_IDENTITY) is None

    def test_signature_from_other_actor_rejected(self, handlers, system_relay):
        envelope = sign_envelope(
            {"type": "Follow", "id": f"{PEER_IDENTITY}/activities/0",
             "actor": PEER_IDENTITY, "object": SYSTEM_IDENTITY},
            system_relay.key_id,
            system_relay.private_key,
        )
        with pytest.raises(AuthError):
            handlers.receive(envelope)

    def test_only_system_actor_followable(self, handlers, sign):
        with pytest.raises(ValidationError):
            handlers.receive(sign("Follow", f"{SYSTEM_IDENTITY}/beacon/0"))


class TestCreateUpdate:
    """Tests for listings published by peers."""

    def test_create_inserts_listing(self, handlers, db, ledger, sign):
        handlers.receive(sign("Create", page()))

        listing = db.get_listing_by_identity(page()["id"])
        assert listing.id == 0
        assert listing.url == "https://game.example/"
        assert listing.description == "hosted elsewhere"
        assert listing.image == "#"
        assert ledger.get(0).object == page()["id"]

    def test_update_overwrites(self, handlers, db, sign):
        handlers.receive(sign("Create", page(), seq=0))
        handlers.receive(sign("Update", page(name="Renamed"), seq=1))

        assert db.listing_count() == 1
        assert db.get_listing(0).name == "Renamed"

    def test_object_by_reference(self, handlers, db, resolver, sign):
        resolver.objects[page()["id"]] = page()
        handlers.receive(sign("Create", page()["id"]))
        assert db.get_listing(0).name == "Peer World"

    def test_foreign_object_rejected(self, handlers, db, sign):
        foreign = dict(page(), id="https://victim.example/relay/beacon/0")
        with pytest.raises(ValidationError):
            handlers.receive(sign("Create", foreign))
        assert db.listing_count() == 0

    def test_page_fields(self):
        fields = listing_fields_from_page(dict(page(), image={"type": "Image", "href": "https://i/x.png"}))
        assert fields["image"] == "https://i/x.png"
        assert fields["tags"] == "vr"
        with pytest.raises(ValidationError):
            listing_fields_from_page({"type": "Note", "id": "x"})


class TestResolve:
    def test_parse_handle(self):
        assert parse_handle("relay@peer.example") == ("relay", "peer.example")
        assert parse_handle("@relay@peer.example") == ("relay", "peer.example")
        assert parse_handle("acct:relay@peer.example") == ("relay", "peer.example")
        with pytest.raises(ValidationError):
            parse_handle("peer.example")

    def test_webfinger_document(self):
        doc = webfinger_document("acct:relay@relay.test", SYSTEM_IDENTITY)
        assert doc["links"][0]["href"] == SYSTEM_IDENTITY

    def test_resolve_handle(self, peer_relay):
        wf = "https://peer.example/.well-known/webfinger?resource=acct%3Arelay%40peer.example"
        client = MockClient({
            wf: webfinger_document("acct:relay@peer.example", PEER_IDENTITY),
            PEER_IDENTITY: peer_relay.to_activitypub(),
        })

        relay = ActorResolver(client=client).resolve("relay@peer.example")

        assert relay.identity == PEER_IDENTITY
        assert relay.inbox == peer_relay.inbox
        assert relay.public_key == peer_relay.public_key
        assert client.requested == [wf, PEER_IDENTITY]

    def test_actor_id_mismatch(self, peer_relay):
        client = MockClient({"https://impostor.example/relay": peer_relay.to_activitypub()})
        with pytest.raises(UpstreamError):
            ActorResolver(client=client).fetch_actor("https://impostor.example/relay")

    def test_webfinger_not_an_object(self):
        wf = "https://peer.example/.well-known/webfinger?resource=acct%3Arelay%40peer.example"
        for body in (["not", "an", "object"], {"links": "nope"}):
            client = MockClient({wf: body})
            with pytest.raises(UpstreamError):
                ActorResolver(client=client).resolve("relay@peer.example")


class CannedClient(HttpClient):
    """HttpClient whose transport returns a fixed body."""

    def __init__(self, body: bytes):
        super().__init__()
        self.body = body

    def _request(self, method, url, body=None, headers=None):
        return self.body


class TestClientJson:
    def test_object_parsed(self):
        assert CannedClient(b'{"id": "x"}').get_json("https://peer.example/") == {"id": "x"}

    def test_non_object_rejected(self):
        for body in (b"[1, 2]", b'"relay"', b"null"):
            with pytest.raises(UpstreamError):
                CannedClient(body).get_json("https://peer.example/")

    def test_invalid_json_rejected(self):
        with pytest.raises(UpstreamError):
            CannedClient(b"<html>").get_json("https://peer.example/")
