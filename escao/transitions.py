"""Database-backed escrow transitions.

Each transition is a single conditional update
(``UPDATE ... WHERE id = :id AND status = :expected``). Two concurrent
requests can both pass the pre-read, but only one of them can move the row;
the other sees no updated rows and gets an ``InvalidTransitionError``.
Audit rows and payouts are written only by the request that won.
"""

from typing import Any

from postgrest.exceptions import APIError

from supabase import Client

from .config import get_settings
from .database import (
    DISPUTES_TABLE,
    ESCROWS_TABLE,
    KYC_SUBMISSIONS_TABLE,
    PAYOUTS_TABLE,
    get_kyc_status,
    is_unique_violation,
    new_id,
    utcnow,
    write_audit_log,
)
from .lifecycle import (
    DisputeDecision,
    DisputeStatus,
    EscrowStatus,
    InvalidTransitionError,
    KycStatus,
    PayoutStatus,
    check_payout_transition,
    next_dispute_status,
    next_escrow_status,
)
from .logging_config import get_logger, log_transition

logger = get_logger("escao.transitions")

STATUS_TIMESTAMPS = {
    EscrowStatus.FUNDED: "funded_at",
    EscrowStatus.SHIPPED: "shipped_at",
    EscrowStatus.CONFIRMED: "confirmed_at",
    EscrowStatus.RELEASED: "released_at",
    EscrowStatus.COMPLETED: "completed_at",
    EscrowStatus.CANCELLED: "cancelled_at",
}


class SellerNotVerifiedError(Exception):
    """Raised when funds would move to a seller whose KYC is not verified."""

    def __init__(self, seller_id: str, message: str = "Seller is not KYC verified"):
        self.seller_id = seller_id
        self.message = message
        super().__init__(message)


# =============================================================================
# Reads
# =============================================================================


async def get_escrow(db: Client, escrow_id: str) -> dict | None:
    """Get an escrow transaction by ID."""
    result = db.table(ESCROWS_TABLE).select("*").eq("id", escrow_id).execute()
    return result.data[0] if result.data else None


async def get_open_dispute(db: Client, escrow_id: str) -> dict | None:
    """The currently open dispute of an escrow, if any."""
    result = (
        db.table(DISPUTES_TABLE)
        .select("*")
        .eq("escrow_id", escrow_id)
        .eq("status", DisputeStatus.OPEN.value)
        .limit(1)
        .execute()
    )
    return result.data[0] if result.data else None


async def has_refundable_dispute(db: Client, escrow_id: str) -> bool:
    """An escrow can be refunded while disputed or after a buyer-favoured ruling."""
    result = db.table(DISPUTES_TABLE).select("*").eq("escrow_id", escrow_id).execute()
    for dispute in result.data or []:
        if dispute["status"] == DisputeStatus.OPEN.value:
            return True
        if dispute.get("decision") == DisputeDecision.FAVOR_BUYER.value:
            return True
    return False


async def get_latest_payout(db: Client, escrow_id: str) -> dict | None:
    result = (
        db.table(PAYOUTS_TABLE)
        .select("*")
        .eq("escrow_id", escrow_id)
        .order("created_at", desc=True)
        .limit(1)
        .execute()
    )
    return result.data[0] if result.data else None


async def get_payout(db: Client, payout_id: str) -> dict | None:
    result = db.table(PAYOUTS_TABLE).select("*").eq("id", payout_id).execute()
    return result.data[0] if result.data else None


# =============================================================================
# Guards
# =============================================================================


async def ensure_no_open_dispute(db: Client, escrow: dict, action: str) -> None:
    """Party-driven transitions are frozen while a dispute is open."""
    if await get_open_dispute(db, escrow["id"]):
        raise InvalidTransitionError(
            "escrow",
            escrow["status"],
            action,
            f"Cannot {action} escrow while a dispute is open",
        )


async def ensure_seller_verified(db: Client, seller_id: str) -> None:
    """Re-read the seller's KYC status at the point of use."""
    kyc_status = await get_kyc_status(db, seller_id)
    if kyc_status != KycStatus.VERIFIED.value:
        raise SellerNotVerifiedError(seller_id)


# =============================================================================
# Transitions
# =============================================================================


async def atomic_transition(
    db: Client,
    escrow: dict,
    action: str,
    actor_id: str,
    metadata: dict[str, Any] | None = None,
    **updates,
) -> dict:
    """Apply ``action`` to ``escrow`` and append the audit row.

    Args:
        db: Database client
        escrow: Escrow row as read by the caller
        action: Key into ``ESCROW_TRANSITIONS``
        actor_id: User performing the action (``system`` for webhooks)
        metadata: Extra audit metadata
        **updates: Additional columns to set with the status

    Returns:
        The updated escrow row.

    Raises:
        InvalidTransitionError: the action is not allowed from the status the
            caller saw, or a concurrent request moved the escrow first.
    """
    expected = escrow["status"]
    target = next_escrow_status(expected, action)

    now = utcnow()
    update_data = {"status": target.value, "updated_at": now, **updates}
    update_data[STATUS_TIMESTAMPS[target]] = now

    result = (
        db.table(ESCROWS_TABLE)
        .update(update_data)
        .eq("id", escrow["id"])
        .eq("status", expected)
        .execute()
    )

    if not result.data:
        current = await get_escrow(db, escrow["id"])
        current_status = current["status"] if current else expected
        logger.warning(
            f"Race condition detected on escrow {escrow['id']}: "
            f"expected status '{expected}', found '{current_status}'"
        )
        raise InvalidTransitionError(
            "escrow",
            current_status,
            action,
            f"Escrow status changed concurrently (now '{current_status}')",
        )

    audit_metadata = {"from": expected, "to": target.value}
    audit_metadata.update(metadata or {})
    await write_audit_log(db, actor_id, action, ESCROWS_TABLE, escrow["id"], audit_metadata)
    log_transition("escrow", escrow["id"], expected, target.value, actor_id)

    return result.data[0]


async def _seller_bank_account(db: Client, seller_id: str) -> str | None:
    """Bank account from the seller's most recent verified KYC submission."""
    result = (
        db.table(KYC_SUBMISSIONS_TABLE)
        .select("bank_account")
        .eq("user_id", seller_id)
        .eq("status", KycStatus.VERIFIED.value)
        .order("submitted_at", desc=True)
        .limit(1)
        .execute()
    )
    return result.data[0].get("bank_account") if result.data else None


async def create_payout(db: Client, escrow: dict, actor_id: str) -> dict:
    """Create the pending payout of a released escrow.

    Payouts are unique per escrow; if one already exists it is returned.
    """
    data = {
        "id": new_id(),
        "escrow_id": escrow["id"],
        "seller_id": escrow["seller_id"],
        "amount": escrow["amount"],
        "currency": escrow["currency"],
        "bank_account": await _seller_bank_account(db, escrow["seller_id"]),
        "method": get_settings().payout_method,
        "status": PayoutStatus.PENDING.value,
        "pg_reference": None,
        "created_at": utcnow(),
    }
    try:
        result = db.table(PAYOUTS_TABLE).insert(data).execute()
    except APIError as e:
        if is_unique_violation(e):
            logger.info(f"Payout already exists for escrow {escrow['id']}")
            existing = await get_latest_payout(db, escrow["id"])
            if existing:
                return existing
        raise

    payout = result.data[0]
    await write_audit_log(
        db,
        actor_id,
        "payout_create",
        PAYOUTS_TABLE,
        payout["id"],
        {"escrow_id": escrow["id"], "amount": str(escrow["amount"])},
    )
    log_transition("payout", payout["id"], None, PayoutStatus.PENDING.value, actor_id)
    return payout


async def release_escrow(
    db: Client,
    escrow: dict,
    actor_id: str,
    action: str = "release",
    metadata: dict[str, Any] | None = None,
) -> tuple[dict, dict]:
    """Release funds to the seller: KYC check, transition, pending payout."""
    await ensure_seller_verified(db, escrow["seller_id"])
    released = await atomic_transition(db, escrow, action, actor_id, metadata)
    payout = await create_payout(db, released, actor_id)
    return released, payout


async def advance_payout(
    db: Client,
    payout: dict,
    target: PayoutStatus,
    actor_id: str,
    metadata: dict[str, Any] | None = None,
    **updates,
) -> dict:
    """Move a payout forward with the same compare-and-set pattern."""
    current = payout["status"]
    check_payout_transition(current, target)

    update_data = {"status": target.value, **updates}
    if target == PayoutStatus.SENT:
        update_data.setdefault("sent_at", utcnow())
    elif target == PayoutStatus.RESOLVED:
        update_data["resolved_at"] = utcnow()

    result = (
        db.table(PAYOUTS_TABLE)
        .update(update_data)
        .eq("id", payout["id"])
        .eq("status", current)
        .execute()
    )
    if not result.data:
        fresh = await get_payout(db, payout["id"])
        fresh_status = fresh["status"] if fresh else current
        raise InvalidTransitionError(
            "payout",
            fresh_status,
            target.value,
            f"Payout status changed concurrently (now '{fresh_status}')",
        )

    audit_metadata = {"from": current, "to": target.value}
    audit_metadata.update(metadata or {})
    action = "payout_resolve" if target == PayoutStatus.RESOLVED else "payout_status"
    await write_audit_log(db, actor_id, action, PAYOUTS_TABLE, payout["id"], audit_metadata)
    log_transition("payout", payout["id"], current, target.value, actor_id)
    return result.data[0]


async def complete_escrow(
    db: Client,
    escrow: dict,
    actor_id: str,
    action: str = "complete",
) -> tuple[dict, dict | None]:
    """Complete a released escrow and mark its pending payout as sent."""
    completed = await atomic_transition(db, escrow, action, actor_id)

    payout = await get_latest_payout(db, escrow["id"])
    if payout and payout["status"] == PayoutStatus.PENDING.value:
        payout = await advance_payout(db, payout, PayoutStatus.SENT, actor_id)

    return completed, payout


# =============================================================================
# Disputes
# =============================================================================


async def get_dispute(db: Client, dispute_id: str) -> dict | None:
    result = db.table(DISPUTES_TABLE).select("*").eq("id", dispute_id).execute()
    return result.data[0] if result.data else None


async def close_dispute(
    db: Client,
    dispute: dict,
    decision: DisputeDecision,
    actor_id: str,
    note: str | None = None,
) -> dict:
    """Record the one decision a dispute can take.

    Conditional on the dispute still being open, so two admins ruling at
    the same time cannot both win.
    """
    target = next_dispute_status(dispute["status"], decision)
    now = utcnow()

    result = (
        db.table(DISPUTES_TABLE)
        .update(
            {
                "status": target.value,
                "decision": decision.value,
                "resolution_note": note,
                "resolved_by": actor_id,
                "resolved_at": now,
                "updated_at": now,
            }
        )
        .eq("id", dispute["id"])
        .eq("status", DisputeStatus.OPEN.value)
        .execute()
    )
    if not result.data:
        fresh = await get_dispute(db, dispute["id"])
        raise InvalidTransitionError(
            "dispute",
            fresh["status"] if fresh else dispute["status"],
            "resolve",
            "Dispute already resolved or closed",
        )

    await write_audit_log(
        db,
        actor_id,
        "resolve_dispute",
        DISPUTES_TABLE,
        dispute["id"],
        {"decision": decision.value, "escrow_id": dispute["escrow_id"], "note": note},
    )
    log_transition("dispute", dispute["id"], dispute["status"], target.value, actor_id)
    return result.data[0]
