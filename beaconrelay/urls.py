# beaconrelay/urls.py
"""
URL normalization shared by the registry and presence tracking.

The base URL (scheme + host + path, query dropped) is the deduplication
key for listings and the merge key for presence counts.
"""

import re
from typing import Optional
from urllib.parse import urlsplit, urlunsplit

SCHEME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*://")


def with_scheme(url: str) -> str:
    """Prefix https:// when the URL does not start with a scheme."""
    url = url.strip()
    if not SCHEME_RE.match(url):
        return f"https://{url}"
    return url


def base_url(url: str) -> str:
    """
    Reduce a URL to scheme://host[:port]/path.

    >>> base_url("x.com/app?s=1")
    'https://x.com/app'
    """
    parts = urlsplit(with_scheme(url))
    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), parts.path, "", ""))


def host_of(url: Optional[str]) -> str:
    """Hostname of a URL (or bare origin), lowercased, without a leading www."""
    if not url:
        return ""
    host = urlsplit(with_scheme(url)).hostname or ""
    host = host.lower()
    if host.startswith("www."):
        host = host[4:]
    return host


def same_site(origin: Optional[str], url: str) -> bool:
    """True when the request origin may register ``url``."""
    origin_host = host_of(origin)
    return bool(origin_host) and origin_host == host_of(url)
