# beaconrelay/activitypub/signatures.py
"""
Cryptographic signatures for relay envelopes and capability tokens.

Envelopes carry an RsaSignature2017 linked-data signature. Capability
tokens reuse the same RSA-SHA256 primitive over raw bytes.
"""

import base64
import hashlib
import json
import time
from typing import Any, Dict

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding

SECURITY_CONTEXT = "https://w3id.org/security/v1"


def _canonicalize(data: Dict[str, Any]) -> str:
    """
    Canonicalize JSON for signing.

    Uses JCS (JSON Canonicalization Scheme) - sorted keys, no whitespace.
    """
    return json.dumps(data, sort_keys=True, separators=(",", ":"))


def _hash_sha256(data: str) -> bytes:
    """Hash string with SHA-256."""
    return hashlib.sha256(data.encode()).digest()


def sign_bytes(data: bytes, private_key_pem: str) -> bytes:
    """RSA-SHA256 (PKCS#1 v1.5) signature over ``data``."""
    private_key = serialization.load_pem_private_key(
        private_key_pem.encode("utf-8"),
        password=None,
    )
    return private_key.sign(data, padding.PKCS1v15(), hashes.SHA256())


def verify_bytes(data: bytes, signature: bytes, public_key_pem: str) -> bool:
    """Check an RSA-SHA256 signature; never raises on bad input."""
    try:
        public_key = serialization.load_pem_public_key(public_key_pem.encode("utf-8"))
        public_key.verify(signature, data, padding.PKCS1v15(), hashes.SHA256())
        return True
    except (InvalidSignature, ValueError, TypeError):
        return False


def _signed_data(envelope: Dict[str, Any], options: Dict[str, Any]) -> bytes:
    document = dict(envelope)
    document.pop("signature", None)
    return _hash_sha256(_canonicalize(options)) + _hash_sha256(_canonicalize(document))


def sign_envelope(envelope: Dict[str, Any], key_id: str, private_key_pem: str) -> Dict[str, Any]:
    """
    Return a copy of ``envelope`` with a linked-data signature attached.

    Args:
        envelope: Activity JSON
        key_id: Signer key id (actor URI + "#main-key")
        private_key_pem: Signer's PEM private key
    """
    created = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())
    options = {
        "@context": SECURITY_CONTEXT,
        "type": "RsaSignature2017",
        "creator": key_id,
        "created": created,
    }
    signature_bytes = sign_bytes(_signed_data(envelope, options), private_key_pem)

    signed = dict(envelope)
    signed["signature"] = {
        "type": "RsaSignature2017",
        "creator": key_id,
        "created": created,
        "signatureValue": base64.b64encode(signature_bytes).decode("utf-8"),
    }
    return signed


def verify_envelope(envelope: Dict[str, Any], public_key_pem: str) -> bool:
    """
    Verify an envelope's linked-data signature.

    Returns:
        True if the signature is present and valid for this key
    """
    signature = envelope.get("signature")
    if not isinstance(signature, dict):
        return False
    try:
        options = {
            "@context": SECURITY_CONTEXT,
            "type": signature["type"],
            "creator": signature["creator"],
            "created": signature["created"],
        }
        signature_bytes = base64.b64decode(signature["signatureValue"])
    except (KeyError, ValueError):
        return False
    return verify_bytes(_signed_data(envelope, options), signature_bytes, public_key_pem)


def signed_by(envelope: Dict[str, Any], actor_identity: str) -> bool:
    """True if the signature's creator key belongs to ``actor_identity``."""
    signature = envelope.get("signature") or {}
    creator = signature.get("creator", "") if isinstance(signature, dict) else ""
    return creator.split("#", 1)[0] == actor_identity
