"""Signature and digest utilities built on Ed25519 and SHA-256 primitives."""
from __future__ import annotations

import base64
import binascii
import hashlib
import hmac

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

ED25519_PUBLIC_KEY_BYTES = 32
ED25519_SIGNATURE_BYTES = 64


def decode_key_material(value: str, expected_length: int) -> bytes | None:
    """Decode hex or base64 key material of a fixed length.

    Returns None when the value cannot be decoded to exactly ``expected_length`` bytes.
    """
    cleaned = value.strip()
    try:
        raw = bytes.fromhex(cleaned)
    except ValueError:
        raw = b""
    if len(raw) == expected_length:
        return raw

    padding = "=" * (-len(cleaned) % 4)
    for decoder in (base64.b64decode, base64.urlsafe_b64decode):
        try:
            raw = decoder(cleaned + padding)
        except (binascii.Error, ValueError):
            continue
        if len(raw) == expected_length:
            return raw
    return None


def verify_webhook_signature(raw_body: bytes, signature: str, public_key: str) -> bool:
    """Verify an Ed25519 signature over the exact request body.

    Args:
        raw_body: Body bytes exactly as received on the wire.
        signature: Hex or base64 encoded 64-byte signature.
        public_key: Hex or base64 encoded 32-byte public key.

    Returns:
        True if the signature is valid for ``raw_body`` under ``public_key``; False otherwise.
    """
    key_bytes = decode_key_material(public_key, ED25519_PUBLIC_KEY_BYTES)
    signature_bytes = decode_key_material(signature, ED25519_SIGNATURE_BYTES)
    if key_bytes is None or signature_bytes is None:
        return False
    try:
        Ed25519PublicKey.from_public_bytes(key_bytes).verify(signature_bytes, raw_body)
        return True
    except (InvalidSignature, ValueError):
        return False


def constant_time_equals(supplied: str | None, expected: str) -> bool:
    """Compare two secrets without leaking the mismatch position."""
    if not supplied:
        return False
    return hmac.compare_digest(supplied.encode("utf-8"), expected.encode("utf-8"))


def token_digest(token: str) -> str:
    """Return the SHA-256 hex digest used to index a token server-side."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def fingerprint(value: str) -> str:
    """Return a short, log-safe fingerprint of a secret value."""
    return token_digest(value)[:12]
