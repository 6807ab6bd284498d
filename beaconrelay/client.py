# beaconrelay/client.py
"""
Plain HTTP client used to reach peers and listed sites.

Wraps urllib so callers get UpstreamError for every transport or status
failure instead of a mix of HTTPError/URLError/socket errors.

Usage:
    client = HttpClient(timeout=10)
    actor = client.get_json("https://peer.example/relay")
    page = client.get_text("https://site.example/")
"""

import json
import socket
from typing import Any, Dict, Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from .errors import UpstreamError

ACTIVITY_JSON = "application/activity+json"
USER_AGENT = "beaconrelay/0.1"
MAX_BODY_BYTES = 2 * 1024 * 1024


class HttpClient:
    """
    Args:
        timeout: Request timeout in seconds
    """

    def __init__(self, timeout: float = 10):
        self.timeout = timeout

    def _request(
        self,
        method: str,
        url: str,
        body: Optional[bytes] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> bytes:
        """Make an HTTP request and return the response body."""
        headers = {"User-Agent": USER_AGENT, **(headers or {})}
        req = Request(url, data=body, headers=headers, method=method)
        try:
            with urlopen(req, timeout=self.timeout) as response:
                return response.read(MAX_BODY_BYTES)
        except HTTPError as e:
            raise UpstreamError(f"HTTP {e.code} from {url}") from e
        except (URLError, socket.timeout, ConnectionError) as e:
            raise UpstreamError(f"Failed to connect to {url}: {e}") from e
        except ValueError as e:
            raise UpstreamError(f"Invalid URL {url!r}: {e}") from e

    def get_text(self, url: str) -> str:
        return self._request("GET", url, headers={"Accept": "text/html"}).decode(
            "utf-8", errors="replace"
        )

    def get_json(self, url: str, accept: str = ACTIVITY_JSON) -> Dict[str, Any]:
        body = self._request("GET", url, headers={"Accept": accept})
        try:
            data = json.loads(body.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise UpstreamError(f"Invalid JSON from {url}: {e}") from e
        if not isinstance(data, dict):
            raise UpstreamError(f"Expected a JSON object from {url}, got {type(data).__name__}")
        return data

    def post_json(self, url: str, data: Dict[str, Any], content_type: str = ACTIVITY_JSON) -> bytes:
        body = json.dumps(data).encode()
        return self._request("POST", url, body=body, headers={"Content-Type": content_type})
