# beaconrelay/activitypub/resolve.py
"""
Remote actor and object resolution.

Handles are resolved with WebFinger (``relay@peer.example`` ->
``https://peer.example/.well-known/webfinger?resource=acct:relay@peer.example``),
then the actor document is fetched from the self link.
"""

import logging
from typing import Any, Dict, Optional
from urllib.parse import quote

from ..client import HttpClient
from ..errors import UpstreamError, ValidationError
from .actor import Relay

logger = logging.getLogger(__name__)

JRD_JSON = "application/jrd+json"


def parse_handle(handle: str) -> tuple[str, str]:
    """
    Split a fediverse handle into (name, domain).

    Accepts "name@domain", "@name@domain" and "acct:name@domain".
    """
    handle = handle.strip()
    if handle.startswith("acct:"):
        handle = handle[len("acct:"):]
    handle = handle.lstrip("@")
    name, sep, domain = handle.partition("@")
    if not sep or not name or not domain:
        raise ValidationError(f"Invalid handle: {handle!r}")
    return name, domain


def webfinger_document(resource: str, actor_identity: str) -> Dict[str, Any]:
    """WebFinger response pointing ``resource`` at ``actor_identity``."""
    return {
        "subject": resource,
        "links": [
            {
                "rel": "self",
                "type": "application/activity+json",
                "href": actor_identity,
            }
        ],
    }


class ActorResolver:
    """
    Args:
        client: HTTP client
        protocol: Scheme prefix used for WebFinger lookups
    """

    def __init__(self, client: Optional[HttpClient] = None, protocol: str = "https://"):
        self.client = client or HttpClient()
        self.protocol = protocol

    def fetch_actor(self, identity: str) -> Relay:
        """Fetch and parse an actor document."""
        doc = self.client.get_json(identity)
        try:
            relay = Relay.from_activitypub(doc)
        except ValueError as e:
            raise UpstreamError(str(e)) from e
        if relay.identity != identity:
            raise UpstreamError(f"Actor document at {identity} claims id {relay.identity}")
        return relay

    def resolve(self, handle: str) -> Relay:
        """Resolve a handle to a remote relay (id is unassigned)."""
        name, domain = parse_handle(handle)
        resource = f"acct:{name}@{domain}"
        url = f"{self.protocol}{domain}/.well-known/webfinger?resource={quote(resource)}"
        jrd = self.client.get_json(url, accept=JRD_JSON)
        links = jrd.get("links") if isinstance(jrd, dict) else None
        if not isinstance(links, list):
            raise UpstreamError(f"Malformed WebFinger response for {handle}")
        for link in links:
            if not isinstance(link, dict):
                continue
            if link.get("rel") == "self" and link.get("href"):
                logger.debug(f"Resolved {handle} to {link['href']}")
                return self.fetch_actor(link["href"])
        raise UpstreamError(f"No actor link in WebFinger response for {handle}")

    def fetch_object(self, uri: str) -> Dict[str, Any]:
        """Fetch an ActivityStreams object by URI."""
        return self.client.get_json(uri)
