"""HMAC primitives shared by inbound verification and outbound signing.

Canonical outbound string: "{timestamp}.{raw_body}"
Headers produced for outbound deliveries:
- X-Hookline-Timestamp: <timestamp>
- X-Hookline-Signature: sha256=<hex>

SECURITY: Never log secrets, computed digests, or provided signatures.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
from dataclasses import dataclass

HEADER_TIMESTAMP = "X-Hookline-Timestamp"
HEADER_SIGNATURE = "X-Hookline-Signature"

_DIGESTS = {
    "sha1": hashlib.sha1,
    "sha256": hashlib.sha256,
}


def _as_bytes(value: str | bytes) -> bytes:
    if isinstance(value, bytes):
        return value
    return value.encode("utf-8")


def constant_time_equals(expected: str | bytes, provided: str | bytes) -> bool:
    """Compare two values in time independent of where they differ.

    Both buffers are padded to the longer length and compared in full, so a
    length mismatch costs the same as a content mismatch.
    """
    a = _as_bytes(expected)
    b = _as_bytes(provided)
    length = max(len(a), len(b), 1)
    same_content = hmac.compare_digest(a.ljust(length, b"\x00"), b.ljust(length, b"\x00"))
    same_length = len(a) == len(b)
    return bool(same_content & same_length)


def hmac_digest(secret: str, message: bytes, digest: str = "sha256") -> bytes:
    """Raw HMAC digest of message."""
    try:
        digestmod = _DIGESTS[digest]
    except KeyError as e:
        raise ValueError(f"Unsupported digest: {digest}") from e
    return hmac.new(key=secret.encode("utf-8"), msg=message, digestmod=digestmod).digest()


def hmac_hex(secret: str, message: bytes, digest: str = "sha256") -> str:
    return hmac_digest(secret, message, digest).hex()


def hmac_base64(secret: str, message: bytes, digest: str = "sha256") -> str:
    return base64.b64encode(hmac_digest(secret, message, digest)).decode("ascii")


@dataclass(frozen=True)
class WebhookSignature:
    """Result of signing an outbound payload.

    Attributes:
        timestamp: Integer seconds (Unix epoch) used in signature.
        signature: Hex digest of HMAC-SHA256 signature.
        headers: Headers to include with the delivery.
    """

    timestamp: int
    signature: str
    headers: dict[str, str]


def compute_timestamped_signature(secret: str, timestamp: int, payload: bytes) -> str:
    """Hex HMAC-SHA256 over "{timestamp}.{raw_body}"."""
    canonical = f"{timestamp}.".encode() + payload
    return hmac_hex(secret, canonical)


def sign_webhook_payload(secret: str, timestamp: int, payload: bytes) -> WebhookSignature:
    """Sign an outbound payload for an external-webhook destination.

    Example:
        >>> sig = sign_webhook_payload("my-secret", 1704067200, b'{"event":"test"}')
        >>> sorted(sig.headers)
        ['X-Hookline-Signature', 'X-Hookline-Timestamp']
    """
    signature = compute_timestamped_signature(secret, timestamp, payload)
    return WebhookSignature(
        timestamp=timestamp,
        signature=signature,
        headers={
            HEADER_TIMESTAMP: str(timestamp),
            HEADER_SIGNATURE: f"sha256={signature}",
        },
    )
