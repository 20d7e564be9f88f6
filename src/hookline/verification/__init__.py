"""Inbound signature verification and outbound signing."""

from hookline.verification.monitor import (
    LoggingAlertNotifier,
    SecurityAlert,
    SecurityAlertNotifier,
    SecurityMonitor,
)
from hookline.verification.signing import (
    HEADER_SIGNATURE,
    HEADER_TIMESTAMP,
    WebhookSignature,
    constant_time_equals,
    sign_webhook_payload,
)
from hookline.verification.strategies import (
    BearerTokenStrategy,
    HmacBodyStrategy,
    StripeSignatureStrategy,
    TwilioSignatureStrategy,
    VerificationStrategy,
)
from hookline.verification.verifier import Authentic, SignatureVerifier

__all__ = [
    "HEADER_SIGNATURE",
    "HEADER_TIMESTAMP",
    "Authentic",
    "BearerTokenStrategy",
    "HmacBodyStrategy",
    "LoggingAlertNotifier",
    "SecurityAlert",
    "SecurityAlertNotifier",
    "SecurityMonitor",
    "SignatureVerifier",
    "StripeSignatureStrategy",
    "TwilioSignatureStrategy",
    "VerificationStrategy",
    "WebhookSignature",
    "constant_time_equals",
    "sign_webhook_payload",
]
