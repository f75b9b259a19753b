"""Escrow, dispute, payout and KYC lifecycles.

Every status change in the service is validated here, against one table
per entity. Handlers never compare statuses by hand; they ask
``next_escrow_status`` (or its siblings) and get either the target status
or an ``InvalidTransitionError``.

Escrow graph::

    created --fund--> funded --ship--> shipped --confirm--> confirmed
    confirmed --release--> released --complete--> completed
    created --cancel--> cancelled

    funded|shipped|confirmed --dispute_release--> released
    funded|shipped|confirmed --dispute_approve--> cancelled
    funded|shipped|confirmed --dispute_reject--> completed
    funded|shipped|confirmed --refund--> cancelled
    released --payout_settled--> completed
"""

from enum import Enum


class EscrowStatus(str, Enum):
    """Escrow transaction lifecycle states."""

    CREATED = "created"
    FUNDED = "funded"
    SHIPPED = "shipped"
    CONFIRMED = "confirmed"
    RELEASED = "released"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class DisputeStatus(str, Enum):
    OPEN = "open"
    RESOLVED = "resolved"
    REJECTED = "rejected"


class DisputeDecision(str, Enum):
    """Outcomes an admin can record on a dispute."""

    FAVOR_BUYER = "favor_buyer"
    FAVOR_SELLER = "favor_seller"
    REJECTED = "rejected"
    # Admin shortcut endpoints
    APPROVED = "approved"


class PayoutStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    RESOLVED = "resolved"


class PaymentIntentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"


class KycStatus(str, Enum):
    """User-level KYC state. Only ``verified`` sellers can be paid out."""

    PENDING = "pending"
    SUBMITTED = "submitted"
    VERIFIED = "verified"
    REJECTED = "rejected"


class Role(str, Enum):
    BUYER = "buyer"
    SELLER = "seller"
    ADMIN = "admin"


ACTIVE_ESCROW_STATUSES = frozenset(
    {EscrowStatus.FUNDED, EscrowStatus.SHIPPED, EscrowStatus.CONFIRMED}
)

# action -> (allowed source statuses, target status)
ESCROW_TRANSITIONS: dict[str, tuple[frozenset[EscrowStatus], EscrowStatus]] = {
    "fund": (frozenset({EscrowStatus.CREATED}), EscrowStatus.FUNDED),
    "ship": (frozenset({EscrowStatus.FUNDED}), EscrowStatus.SHIPPED),
    "confirm": (frozenset({EscrowStatus.SHIPPED}), EscrowStatus.CONFIRMED),
    "release": (frozenset({EscrowStatus.CONFIRMED}), EscrowStatus.RELEASED),
    "complete": (frozenset({EscrowStatus.RELEASED}), EscrowStatus.COMPLETED),
    "cancel": (frozenset({EscrowStatus.CREATED}), EscrowStatus.CANCELLED),
    "dispute_release": (ACTIVE_ESCROW_STATUSES, EscrowStatus.RELEASED),
    "dispute_approve": (ACTIVE_ESCROW_STATUSES, EscrowStatus.CANCELLED),
    "dispute_reject": (ACTIVE_ESCROW_STATUSES, EscrowStatus.COMPLETED),
    "refund": (ACTIVE_ESCROW_STATUSES, EscrowStatus.CANCELLED),
    "payout_settled": (frozenset({EscrowStatus.RELEASED}), EscrowStatus.COMPLETED),
}

# Non-transition actions that still require the escrow to be in a given state
ESCROW_GUARDS: dict[str, frozenset[EscrowStatus]] = {
    "upload_receipt": frozenset({EscrowStatus.SHIPPED}),
    "open_dispute": ACTIVE_ESCROW_STATUSES,
}

DISPUTE_TRANSITIONS: dict[DisputeDecision, DisputeStatus] = {
    DisputeDecision.FAVOR_BUYER: DisputeStatus.RESOLVED,
    DisputeDecision.FAVOR_SELLER: DisputeStatus.RESOLVED,
    DisputeDecision.APPROVED: DisputeStatus.RESOLVED,
    DisputeDecision.REJECTED: DisputeStatus.REJECTED,
}

PAYOUT_TRANSITIONS: dict[PayoutStatus, frozenset[PayoutStatus]] = {
    PayoutStatus.PENDING: frozenset({PayoutStatus.SENT, PayoutStatus.RESOLVED}),
    PayoutStatus.SENT: frozenset({PayoutStatus.RESOLVED}),
    PayoutStatus.RESOLVED: frozenset(),
}


class InvalidTransitionError(Exception):
    """Raised when an action is not allowed from the current status."""

    def __init__(self, entity: str, current_status: str, action: str, message: str | None = None):
        self.entity = entity
        self.current_status = current_status
        self.action = action
        self.message = message or f"Cannot {action} {entity} in status '{current_status}'"
        super().__init__(self.message)


def _status_value(status: str | Enum) -> str:
    return status.value if isinstance(status, Enum) else status


def next_escrow_status(current: str | EscrowStatus, action: str) -> EscrowStatus:
    """Return the status ``action`` moves an escrow to, or raise."""
    if action not in ESCROW_TRANSITIONS:
        raise ValueError(f"Unknown escrow action: {action}")

    sources, target = ESCROW_TRANSITIONS[action]
    current_value = _status_value(current)
    if current_value not in {s.value for s in sources}:
        allowed = ", ".join(sorted(s.value for s in sources))
        raise InvalidTransitionError(
            "escrow",
            current_value,
            action,
            f"Escrow must be in '{allowed}' state to {action.replace('_', ' ')}",
        )
    return target


def can_transition(current: str | EscrowStatus, action: str) -> bool:
    """Check if an escrow action is valid from ``current``."""
    try:
        next_escrow_status(current, action)
    except InvalidTransitionError:
        return False
    return True


def require_escrow_status(current: str | EscrowStatus, action: str) -> None:
    """Guard a non-transition action (receipt upload, opening a dispute)."""
    allowed = ESCROW_GUARDS[action]
    current_value = _status_value(current)
    if current_value not in {s.value for s in allowed}:
        names = ", ".join(sorted(s.value for s in allowed))
        raise InvalidTransitionError(
            "escrow",
            current_value,
            action,
            f"Escrow must be in '{names}' state to {action.replace('_', ' ')}",
        )


def next_dispute_status(current: str | DisputeStatus, decision: DisputeDecision) -> DisputeStatus:
    """Disputes take exactly one decision, and only while open."""
    current_value = _status_value(current)
    if current_value != DisputeStatus.OPEN.value:
        raise InvalidTransitionError(
            "dispute", current_value, "resolve", "Dispute already resolved or closed"
        )
    return DISPUTE_TRANSITIONS[decision]


def check_payout_transition(current: str | PayoutStatus, target: PayoutStatus) -> None:
    current_value = _status_value(current)
    allowed = PAYOUT_TRANSITIONS.get(PayoutStatus(current_value), frozenset())
    if target not in allowed:
        raise InvalidTransitionError(
            "payout",
            current_value,
            target.value,
            f"Payout cannot move from '{current_value}' to '{target.value}'",
        )
