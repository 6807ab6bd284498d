# beaconrelay/errors.py
"""
Error taxonomy for the relay.

Every error carries the HTTP status the server answers with. Errors that
describe an outcome the caller can act on (verification failures) also
carry a ``detail()`` dict that is merged into the JSON error body.
"""

from typing import Any, Dict, Optional


class RelayError(Exception):
    """Base class for all relay errors."""
    status_code = 500

    def detail(self) -> Dict[str, Any]:
        return {}


class ValidationError(RelayError):
    """Bad input from a client."""
    status_code = 400


class OriginMismatch(ValidationError):
    """Submission Origin header does not match the submitted URL's host."""
    status_code = 403

    def __init__(self, origin: Optional[str], url: str):
        self.origin = origin
        self.url = url
        super().__init__(f"Origin {origin!r} may not register {url!r}")


class UnknownActivityError(ValidationError):
    """Inbound envelope whose type is not Follow, Create or Update."""


class NotFound(RelayError):
    status_code = 404


class AuthError(RelayError):
    """Missing or invalid capability."""
    status_code = 401


class Forbidden(AuthError):
    """Valid capability presented for the wrong listing."""
    status_code = 403


class UpstreamError(RelayError):
    """A remote peer or site failed."""
    status_code = 502


class StorageError(RelayError):
    status_code = 500


class UniqueViolation(StorageError):
    """A row write would break a unique index."""

    def __init__(self, table: str, column: str, value: Any):
        self.table = table
        self.column = column
        self.value = value
        super().__init__(f"{table}.{column} already holds {value!r}")


class VerificationError(RelayError):
    """Ownership verification failed."""
    status_code = 400


class NoCodeIssued(VerificationError):
    def __init__(self):
        super().__init__("No verification code has been issued for this listing")


class FetchFailed(VerificationError, UpstreamError):
    status_code = 502

    def __init__(self, url: str, cause: Exception):
        self.url = url
        self.cause = cause
        super().__init__(f"Failed to fetch {url}: {cause}")

    def detail(self) -> Dict[str, Any]:
        return {"reason": "fetch_failed", "cause": str(self.cause)}


class TagMissing(VerificationError):
    def __init__(self, expected: str):
        self.expected = expected
        super().__init__("Verification meta tag not found")

    def detail(self) -> Dict[str, Any]:
        return {"reason": "tag_missing", "expected": self.expected}


class CodeMismatch(VerificationError):
    def __init__(self, expected: str, found: str):
        self.expected = expected
        self.found = found
        super().__init__("Verification code does not match")

    def detail(self) -> Dict[str, Any]:
        return {"reason": "code_mismatch", "expected": self.expected, "found": self.found}
