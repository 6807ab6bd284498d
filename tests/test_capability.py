# tests/test_capability.py
"""Tests for signed capability tokens and cookies."""

import time

import pytest

from beaconrelay.capability import (
    ADMIN_COOKIE,
    OWNER_COOKIE,
    OWNER_TTL,
    CapabilityIssuer,
    cookie_header,
    decode,
    read_cookie,
)
from beaconrelay.errors import AuthError, Forbidden


@pytest.fixture
def issuer(system_keys):
    return CapabilityIssuer(*system_keys)


def owner_cookie(token: str) -> str:
    return f"theme=dark; {OWNER_COOKIE}={token}"


class TestTokens:
    def test_owner_claims(self, issuer):
        token = issuer.issue_owner(3, "cool-world")

        claims = issuer.require_owner(owner_cookie(token), 3)

        assert claims["scope"] == "owner"
        assert claims["listing_id"] == 3
        assert claims["slug"] == "cool-world"
        assert claims["exp"] > time.time() + OWNER_TTL - 60

    def test_other_listing_forbidden(self, issuer):
        token = issuer.issue_owner(3, "cool-world")

        with pytest.raises(Forbidden) as exc:
            issuer.require_owner(owner_cookie(token), 4)
        assert exc.value.status_code == 403

    def test_expired(self, issuer):
        token = issuer.issue_owner(3, "cool-world", now=time.time() - OWNER_TTL - 10)
        with pytest.raises(AuthError):
            issuer.require_owner(owner_cookie(token), 3)

    def test_admin_token_is_not_owner(self, issuer):
        token = issuer.issue_admin()
        with pytest.raises(AuthError):
            issuer.require_owner(owner_cookie(token), 3)

    def test_admin(self, issuer):
        token = issuer.issue_admin()
        assert issuer.require_admin(f"{ADMIN_COOKIE}={token}")["scope"] == "admin"

    def test_tampered_claims_rejected(self, issuer, system_keys):
        token = issuer.issue_owner(3, "a")
        forged_claims = issuer.issue_owner(4, "a").split(".")[0]
        forged = forged_claims + "." + token.split(".")[1]

        with pytest.raises(AuthError):
            decode(forged, system_keys[1], "owner")

    def test_other_key_rejected(self, issuer, peer_keys):
        token = issuer.issue_owner(3, "a")
        with pytest.raises(AuthError):
            decode(token, peer_keys[1], "owner")

    def test_malformed(self, issuer):
        with pytest.raises(AuthError):
            issuer.require_owner(owner_cookie("garbage"), 3)

    def test_missing_cookie(self, issuer):
        with pytest.raises(AuthError):
            issuer.require_owner(None, 3)
        with pytest.raises(AuthError):
            issuer.require_admin("theme=dark")


class TestCookies:
    def test_header_attributes(self):
        header = cookie_header(OWNER_COOKIE, "abc.def", OWNER_TTL)

        assert header.startswith(f"{OWNER_COOKIE}=abc.def")
        assert "HttpOnly" in header
        assert "Path=/" in header
        assert f"Max-Age={OWNER_TTL}" in header

    def test_read_cookie(self):
        assert read_cookie("a=1; b=2", "b") == "2"
        assert read_cookie("a=1", "b") is None
        assert read_cookie(None, "b") is None
