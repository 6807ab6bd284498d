# beaconrelay/capability.py
"""
Signed capability tokens.

A token is ``base64url(claims JSON) + "." + base64url(RSA-SHA256 signature)``
signed with the system actor's private key. Nothing is stored server-side:
a token is valid exactly when its signature checks out and ``exp`` has not
passed. Two scopes exist:

- admin: issued by POST /login, one day
- owner: issued by a successful ownership verification, seven days, bound
  to one listing id
"""

import base64
import binascii
import json
import time
from http.cookies import CookieError, SimpleCookie
from typing import Any, Dict, Optional

from .activitypub.signatures import sign_bytes, verify_bytes
from .errors import AuthError, Forbidden

ADMIN_SCOPE = "admin"
OWNER_SCOPE = "owner"

ADMIN_COOKIE = "relay-admin-token"
OWNER_COOKIE = "world-owner-token"

ADMIN_TTL = 24 * 60 * 60
OWNER_TTL = 7 * 24 * 60 * 60


def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64decode(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


def mint(claims: Dict[str, Any], private_key_pem: str, ttl: int, now: Optional[float] = None) -> str:
    """Sign ``claims`` with an expiry ``ttl`` seconds from now."""
    now = time.time() if now is None else now
    payload = dict(claims, exp=int(now + ttl))
    encoded = _b64encode(json.dumps(payload, sort_keys=True, separators=(",", ":")).encode())
    signature = sign_bytes(encoded.encode("ascii"), private_key_pem)
    return f"{encoded}.{_b64encode(signature)}"


def decode(token: str, public_key_pem: str, scope: str, now: Optional[float] = None) -> Dict[str, Any]:
    """
    Verify a token and return its claims.

    Raises:
        AuthError: malformed, badly signed, expired or wrong scope
    """
    now = time.time() if now is None else now
    encoded, sep, signature = token.partition(".")
    if not sep:
        raise AuthError("Malformed capability token")
    try:
        signature_bytes = _b64decode(signature)
    except (binascii.Error, ValueError) as e:
        raise AuthError("Malformed capability token") from e
    if not verify_bytes(encoded.encode("ascii", errors="replace"), signature_bytes, public_key_pem):
        raise AuthError("Invalid capability signature")

    try:
        claims = json.loads(_b64decode(encoded))
    except (binascii.Error, ValueError) as e:
        raise AuthError("Malformed capability claims") from e
    if not isinstance(claims, dict) or claims.get("scope") != scope:
        raise AuthError(f"Capability is not scoped for {scope}")
    if not isinstance(claims.get("exp"), int) or claims["exp"] <= now:
        raise AuthError("Capability has expired")
    return claims


def cookie_header(name: str, token: str, max_age: int) -> str:
    """Set-Cookie value: http-only, whole site."""
    cookie = SimpleCookie()
    cookie[name] = token
    cookie[name]["path"] = "/"
    cookie[name]["httponly"] = True
    cookie[name]["max-age"] = max_age
    cookie[name]["samesite"] = "Lax"
    return cookie[name].OutputString()


def read_cookie(cookie_header_value: Optional[str], name: str) -> Optional[str]:
    """Extract one cookie from a Cookie request header."""
    if not cookie_header_value:
        return None
    cookie = SimpleCookie()
    try:
        cookie.load(cookie_header_value)
    except CookieError:
        return None
    morsel = cookie.get(name)
    return morsel.value if morsel else None


class CapabilityIssuer:
    """
    Mints and checks admin and owner capabilities for one key pair.

    Args:
        private_key_pem: System actor private key
        public_key_pem: System actor public key
    """

    def __init__(self, private_key_pem: str, public_key_pem: str):
        self._private_key = private_key_pem
        self.public_key = public_key_pem

    def issue_admin(self, now: Optional[float] = None) -> str:
        return mint({"scope": ADMIN_SCOPE}, self._private_key, ADMIN_TTL, now)

    def issue_owner(self, listing_id: int, slug: str, now: Optional[float] = None) -> str:
        return mint(
            {"scope": OWNER_SCOPE, "listing_id": listing_id, "slug": slug},
            self._private_key,
            OWNER_TTL,
            now,
        )

    def require_admin(self, cookie_header_value: Optional[str], now: Optional[float] = None) -> Dict[str, Any]:
        token = read_cookie(cookie_header_value, ADMIN_COOKIE)
        if not token:
            raise AuthError("Admin login required")
        return decode(token, self.public_key, ADMIN_SCOPE, now)

    def require_owner(
        self,
        cookie_header_value: Optional[str],
        listing_id: int,
        now: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        Check an owner capability for ``listing_id``.

        Raises:
            AuthError: no valid owner capability
            Forbidden: valid capability minted for a different listing
        """
        token = read_cookie(cookie_header_value, OWNER_COOKIE)
        if not token:
            raise AuthError("Ownership verification required")
        claims = decode(token, self.public_key, OWNER_SCOPE, now)
        if claims.get("listing_id") != listing_id:
            raise Forbidden("Capability was issued for a different listing")
        return claims
