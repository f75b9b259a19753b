"""Payment gateway callback verification.

Gateways sign the raw request body with a shared secret and send the hex
HMAC-SHA256 digest in the ``X-Signature`` header. This module checks that
signature and normalises the JSON payload into a ``GatewayEvent``.
"""

import hashlib
import hmac
import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Signature"

PAYMENT_SOURCE = "payment_gateway"
PAYOUT_SOURCE = "payout_gateway"

UNKNOWN_EVENT = "unknown"


class WebhookVerificationError(Exception):
    """Raised when a callback is missing or carries a bad signature."""

    def __init__(self, message: str, error_code: str):
        self.error_code = error_code
        super().__init__(message)


@dataclass
class GatewayEvent:
    """A normalised payment or payout gateway callback."""

    source: str
    event_type: str
    reference: Optional[str] = None
    status: Optional[str] = None
    method: Optional[str] = None

    # Hints the gateway may echo back from the original request
    escrow_id: Optional[str] = None
    payout_id: Optional[str] = None

    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def idempotency_key(self) -> str:
        """Value stored in ``webhook_events.external_reference``.

        Events without a gateway reference cannot be deduplicated by it, so
        they fall back to a digest of the payload.
        """
        if self.reference:
            return self.reference
        canonical = json.dumps(self.raw, sort_keys=True, default=str)
        digest = hashlib.sha256(canonical.encode()).hexdigest()
        return f"payload:{digest[:32]}"


def compute_signature(body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of ``body``, as gateways compute it."""
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: Optional[str], secret: Optional[str]) -> None:
    """Check the ``X-Signature`` of a callback.

    Args:
        body: Raw request body, exactly as received
        signature: Header value (``None`` when absent)
        secret: Shared secret; when unset only the header's presence is checked

    Raises:
        WebhookVerificationError: signature missing or not matching
    """
    if not signature:
        raise WebhookVerificationError("Missing signature", "MISSING_SIGNATURE")

    if not secret:
        logger.warning("WEBHOOK_SECRET not configured; accepting unverified signature")
        return

    expected = compute_signature(body, secret)
    provided = signature.strip()
    if provided.startswith("sha256="):
        provided = provided[len("sha256="):]

    if not hmac.compare_digest(expected, provided.lower()):
        raise WebhookVerificationError("Invalid signature", "INVALID_SIGNATURE")


def _optional_str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _optional_uuid(name: str, value: Any) -> Optional[str]:
    value = _optional_str(value)
    if value is None:
        return None
    try:
        return str(uuid.UUID(value))
    except ValueError:
        raise ValueError(f"{name} must be a UUID")


def parse_gateway_event(source: str, payload: Any) -> GatewayEvent:
    """Build a ``GatewayEvent`` from a decoded JSON payload.

    Gateways send ``pg_ref``; ``pg_reference`` is accepted as an alias.
    """
    if not isinstance(payload, dict):
        raise ValueError("Webhook payload must be a JSON object")

    return GatewayEvent(
        source=source,
        event_type=_optional_str(payload.get("event")) or UNKNOWN_EVENT,
        reference=_optional_str(payload.get("pg_ref") or payload.get("pg_reference")),
        status=_optional_str(payload.get("status")),
        method=_optional_str(payload.get("method")),
        escrow_id=_optional_uuid("escrow_id", payload.get("escrow_id")),
        payout_id=_optional_uuid("payout_id", payload.get("payout_id")),
        raw=payload,
    )
