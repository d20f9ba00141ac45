"""
Webhook signature verification and signing.

Signature scheme: ``v1=<hex HMAC-SHA256 of "{timestamp}.{payload}">``, the
same construction Stripe uses, so inbound signatures are checked with
``stripe.WebhookSignature``. Outbound deliveries are signed the same way.
"""
import hashlib
import hmac
import time
from typing import Dict, List, Optional

import stripe
import structlog

from billing_events.core.errors import InvalidSignature

logger = structlog.get_logger(__name__)

SIGNATURE_VERSION = "v1"
HEADER_ID = "X-Webhook-ID"
HEADER_TIMESTAMP = "X-Webhook-Timestamp"
HEADER_SIGNATURE = "X-Webhook-Signature"


def compute_signature(payload: bytes, timestamp: int | str, secret: str) -> str:
    signed = f"{timestamp}.".encode() + payload
    return hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()


def _parse_signatures(header: str) -> List[str]:
    """Extract every ``v1=`` value; several may be present during secret rotation."""
    signatures = []
    for part in header.replace(",", " ").split():
        version, _, value = part.partition("=")
        if version == SIGNATURE_VERSION and value:
            signatures.append(value)
    return signatures


def stripe_signature_header(timestamp: int, signatures: List[str]) -> str:
    """Combine the separate timestamp and signature headers into Stripe's format."""
    return ",".join([f"t={timestamp}"] + [f"{SIGNATURE_VERSION}={s}" for s in signatures])


class SignatureVerifier:
    """Validates inbound webhook authenticity and freshness."""

    def __init__(self, tolerance_seconds: int = 300):
        self.tolerance_seconds = tolerance_seconds

    def verify(
        self,
        payload: bytes,
        signature_header: Optional[str],
        timestamp_header: Optional[str],
        secret: str,
        now: Optional[float] = None,
    ) -> bool:
        """
        Check timestamp freshness, then the HMAC.

        Stripe's own tolerance check only rejects stale timestamps, so the
        window is enforced here in both directions and Stripe is asked for
        the constant-time signature comparison alone.

        Every failure returns False; the reason is only logged.
        """
        now = time.time() if now is None else now

        try:
            timestamp = int(timestamp_header or "")
        except ValueError:
            logger.warning("webhook_timestamp_malformed")
            return False

        if abs(now - timestamp) > self.tolerance_seconds:
            logger.warning(
                "webhook_timestamp_out_of_tolerance",
                skew_seconds=int(now - timestamp),
                tolerance_seconds=self.tolerance_seconds,
            )
            return False

        candidates = _parse_signatures(signature_header or "")
        if not candidates:
            logger.warning("webhook_signature_malformed")
            return False

        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"),
                stripe_signature_header(timestamp, candidates),
                secret,
                tolerance=None,
            )
        except UnicodeDecodeError:
            logger.warning("webhook_payload_not_utf8")
            return False
        except stripe.SignatureVerificationError as e:
            logger.warning("webhook_signature_mismatch", error=str(e))
            return False
        return True

    def verify_or_raise(
        self,
        payload: bytes,
        signature_header: Optional[str],
        timestamp_header: Optional[str],
        secret: str,
        now: Optional[float] = None,
    ) -> None:
        """
        Raises:
            InvalidSignature: If verification fails for any reason
        """
        if not self.verify(payload, signature_header, timestamp_header, secret, now=now):
            raise InvalidSignature("Webhook signature verification failed")


def sign(
    payload: bytes, secret: str, webhook_id: str, timestamp: Optional[int] = None
) -> Dict[str, str]:
    """Headers for an outbound delivery signed with the endpoint's secret."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signature = compute_signature(payload, timestamp, secret)
    return {
        HEADER_ID: webhook_id,
        HEADER_TIMESTAMP: str(timestamp),
        HEADER_SIGNATURE: f"{SIGNATURE_VERSION}={signature}",
    }
