"""Per-source signature verification strategies.

Each strategy authenticates a RawDelivery with the source's secret and raises
SignatureError on failure. Strategies never return partial results and never
log secrets or provided signatures.

Schemes:
- HmacBodyStrategy: HMAC over the raw body in a single header (GHL, Retell)
- BearerTokenStrategy: shared token in the Authorization header
- StripeSignatureStrategy: "t=<ts>,v1=<hex>" envelope over "{t}.{body}"
- TwilioSignatureStrategy: base64 HMAC-SHA1 over the public URL, with
  bodySHA256 binding the JSON body to the signed URL
"""

from __future__ import annotations

import hashlib
import time
from collections.abc import Callable
from typing import Protocol, runtime_checkable
from urllib.parse import parse_qs, urlsplit, urlunsplit

from hookline.errors import SignatureError
from hookline.models.events import RawDelivery
from hookline.verification.signing import (
    compute_timestamped_signature,
    constant_time_equals,
    hmac_base64,
    hmac_hex,
)

DEFAULT_TIMESTAMP_TOLERANCE_SECONDS = 300


@runtime_checkable
class VerificationStrategy(Protocol):
    """Authenticates a delivery for one source."""

    scheme: str

    def verify(self, delivery: RawDelivery, secret: str) -> None:
        """Raise SignatureError unless the delivery is authentic."""
        ...


class HmacBodyStrategy:
    """HMAC over the raw body, carried in one header.

    Args:
        header: Header name holding the signature.
        digest: "sha256" or "sha1".
        encoding: "hex" or "base64".
        prefix: Optional literal prefix on the header value (e.g. "sha256=").
    """

    scheme = "hmac"

    def __init__(
        self,
        header: str,
        digest: str = "sha256",
        encoding: str = "hex",
        prefix: str | None = None,
    ) -> None:
        if encoding not in ("hex", "base64"):
            raise ValueError(f"Unsupported encoding: {encoding}")
        self._header = header.lower()
        self._digest = digest
        self._encoding = encoding
        self._prefix = prefix

    def verify(self, delivery: RawDelivery, secret: str) -> None:
        provided = delivery.header(self._header)
        if not provided:
            raise SignatureError(delivery.source, "missing_signature")

        provided = provided.strip()
        if self._prefix and provided.startswith(self._prefix):
            provided = provided[len(self._prefix) :]

        if self._encoding == "hex":
            expected = hmac_hex(secret, delivery.body, self._digest)
            provided = provided.lower()
        else:
            expected = hmac_base64(secret, delivery.body, self._digest)

        if not constant_time_equals(expected, provided):
            raise SignatureError(delivery.source, "signature_mismatch")


class BearerTokenStrategy:
    """Shared bearer token compared in constant time."""

    scheme = "bearer"

    def __init__(self, header: str = "authorization") -> None:
        self._header = header.lower()

    def verify(self, delivery: RawDelivery, secret: str) -> None:
        value = delivery.header(self._header)
        if not value:
            raise SignatureError(delivery.source, "missing_token")

        scheme, _, token = value.strip().partition(" ")
        if scheme.lower() != "bearer" or not token:
            raise SignatureError(delivery.source, "invalid_token_format")

        if not constant_time_equals(secret, token.strip()):
            raise SignatureError(delivery.source, "token_mismatch")


class StripeSignatureStrategy:
    """Stripe-style signed envelope with timestamp tolerance.

    Header format: ``t=<timestamp>,v1=<sig>[,v1=<sig>...][,v0=<deprecated>]``.
    Every v1 candidate is compared, so rotation windows with two secrets'
    signatures both verify.
    """

    scheme = "stripe"

    def __init__(
        self,
        header: str = "stripe-signature",
        tolerance_seconds: int = DEFAULT_TIMESTAMP_TOLERANCE_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._header = header.lower()
        self._tolerance = tolerance_seconds
        self._clock = clock

    @staticmethod
    def parse_header(value: str) -> tuple[str | None, list[str]]:
        """Split the envelope into (timestamp, [v1 signatures])."""
        timestamp: str | None = None
        signatures: list[str] = []
        for item in value.split(","):
            key, sep, val = item.strip().partition("=")
            if not sep:
                continue
            if key == "t":
                timestamp = val
            elif key == "v1":
                signatures.append(val)
        return timestamp, signatures

    def verify(self, delivery: RawDelivery, secret: str) -> None:
        value = delivery.header(self._header)
        if not value:
            raise SignatureError(delivery.source, "missing_signature")

        timestamp_str, signatures = self.parse_header(value)
        if not timestamp_str or not signatures:
            raise SignatureError(delivery.source, "invalid_signature_format")

        try:
            timestamp = int(timestamp_str)
        except ValueError as e:
            raise SignatureError(delivery.source, "invalid_signature_format") from e

        if self._tolerance and abs(self._clock() - timestamp) > self._tolerance:
            raise SignatureError(delivery.source, "timestamp_skew")

        expected = compute_timestamped_signature(secret, timestamp, delivery.body)
        matched = False
        for candidate in signatures:
            # No early exit: every candidate is compared.
            matched |= constant_time_equals(expected, candidate.lower())
        if not matched:
            raise SignatureError(delivery.source, "signature_mismatch")


class TwilioSignatureStrategy:
    """Twilio request validation for JSON bodies.

    The signature is base64 HMAC-SHA1 of the full URL Twilio called. For JSON
    bodies Twilio appends ``bodySHA256=<hex>`` to that URL, which must match
    the SHA-256 of the raw body.

    Args:
        public_base_url: Externally visible scheme://host[:port] the platform
            calls. Replaces the scheme and host of the URL seen by the server
            (which may sit behind a proxy).
    """

    scheme = "twilio"

    def __init__(self, header: str = "x-twilio-signature", public_base_url: str | None = None):
        self._header = header.lower()
        self._public_base_url = public_base_url.rstrip("/") if public_base_url else None

    def signed_url(self, delivery: RawDelivery) -> str:
        parts = urlsplit(delivery.url or delivery.path)
        if self._public_base_url:
            base = urlsplit(self._public_base_url)
            return urlunsplit((base.scheme, base.netloc, parts.path, parts.query, ""))
        return urlunsplit((parts.scheme, parts.netloc, parts.path, parts.query, ""))

    def verify(self, delivery: RawDelivery, secret: str) -> None:
        provided = delivery.header(self._header)
        if not provided:
            raise SignatureError(delivery.source, "missing_signature")

        url = self.signed_url(delivery)
        body_hashes = parse_qs(urlsplit(url).query).get("bodySHA256", [])
        if len(body_hashes) != 1:
            raise SignatureError(delivery.source, "missing_body_hash")

        expected_sig = hmac_base64(secret, url.encode("utf-8"), digest="sha1")
        signature_ok = constant_time_equals(expected_sig, provided.strip())
        body_ok = constant_time_equals(
            hashlib.sha256(delivery.body).hexdigest(), body_hashes[0].lower()
        )
        if not (signature_ok & body_ok):
            raise SignatureError(delivery.source, "signature_mismatch")
