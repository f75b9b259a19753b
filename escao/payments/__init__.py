"""Payment gateway integration for Escao."""

from .verification import (
    PAYMENT_SOURCE,
    PAYOUT_SOURCE,
    SIGNATURE_HEADER,
    GatewayEvent,
    WebhookVerificationError,
    compute_signature,
    parse_gateway_event,
    verify_signature,
)

__all__ = [
    "verify_signature",
    "compute_signature",
    "parse_gateway_event",
    "GatewayEvent",
    "WebhookVerificationError",
    "SIGNATURE_HEADER",
    "PAYMENT_SOURCE",
    "PAYOUT_SOURCE",
]
