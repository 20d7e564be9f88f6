"""Signature verifier dispatching over a {source -> strategy} map.

The map is built once at startup. A source without a configured secret fails
closed with reason "webhook_secret_not_configured"; the caller still sees a
plain 401.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass

from hookline.errors import SignatureError
from hookline.models.events import RawDelivery
from hookline.verification.strategies import VerificationStrategy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Authentic:
    """Proof that a delivery passed verification.

    Attributes:
        source: Source the delivery was verified for.
        scheme: Strategy scheme that accepted it.
    """

    source: str
    scheme: str


class SignatureVerifier:
    """Authenticates raw deliveries with the strategy registered per source."""

    def __init__(
        self,
        strategies: Mapping[str, VerificationStrategy],
        secrets: Mapping[str, str],
    ) -> None:
        self._strategies = dict(strategies)
        self._secrets = dict(secrets)

    @property
    def sources(self) -> frozenset[str]:
        return frozenset(self._strategies)

    def verify(self, delivery: RawDelivery) -> Authentic:
        """Verify a delivery.

        Args:
            delivery: The untouched inbound request.

        Returns:
            Authentic when the signature checks out.

        Raises:
            SignatureError: On any verification failure. Never retried.
        """
        strategy = self._strategies.get(delivery.source)
        if strategy is None:
            raise SignatureError(delivery.source, "unknown_source")

        secret = self._secrets.get(delivery.source)
        if not secret:
            logger.warning("No webhook secret configured for source %s", delivery.source)
            raise SignatureError(delivery.source, "webhook_secret_not_configured")

        strategy.verify(delivery, secret)
        return Authentic(source=delivery.source, scheme=strategy.scheme)
