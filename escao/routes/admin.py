"""Admin routes for marketplace operations.

These routes require a token with the admin role. Forced transitions here
are idempotent: repeating an action whose target state is already reached
succeeds without writing anything.
"""

from datetime import datetime
from typing import Literal

from fastapi import APIRouter, HTTPException, Query, status

from ..auth import AdminUser
from ..database import (
    DISPUTES_TABLE,
    ESCROWS_TABLE,
    KYC_SUBMISSIONS_TABLE,
    USERS_TABLE,
    Database,
    find_user_ids_by_email,
    get_users_by_ids,
    list_audit_logs,
)
from ..lifecycle import (
    DisputeDecision,
    DisputeStatus,
    EscrowStatus,
    InvalidTransitionError,
    KycStatus,
    PayoutStatus,
    next_escrow_status,
)
from ..logging_config import get_logger
from ..models import (
    AuditLogOut,
    PayoutResolve,
    ResourceId,
    to_dispute_out,
    to_escrow_out,
    to_kyc_out,
    to_payout_out,
)
from ..transitions import (
    advance_payout,
    atomic_transition,
    close_dispute,
    complete_escrow,
    get_latest_payout,
    get_open_dispute,
    get_payout,
    has_refundable_dispute,
)
from .disputes import dispute_detail, load_dispute_with_escrow
from .escrow import escrow_response, load_escrow, release_with_payout

logger = get_logger("escao.admin")

router = APIRouter(prefix="/api/admin", tags=["admin"])

EscrowSort = Literal["newest", "oldest", "amount_desc", "amount_asc"]

SORT_ORDER: dict[str, tuple[str, bool]] = {
    "newest": ("created_at", True),
    "oldest": ("created_at", False),
    "amount_desc": ("amount", True),
    "amount_asc": ("amount", False),
}


# =============================================================================
# Helpers
# =============================================================================


async def _user_ids_matching(
    db,
    role: str | None = None,
    email: str | None = None,
) -> list[str] | None:
    """IDs of users matching role/email filters, or None when unfiltered."""
    if not role and not email:
        return None

    query = db.table(USERS_TABLE).select("id")
    if role:
        query = query.eq("role", role)
    if email:
        query = query.ilike("email", f"%{email}%")
    result = query.execute()
    return [row["id"] for row in result.data or []]


def _page(rows: list, key: str, total: int, limit: int, offset: int) -> dict:
    return {key: rows, "total": total, "limit": limit, "offset": offset}


# =============================================================================
# Listings
# =============================================================================


@router.get("/kyc")
async def list_pending_kyc(
    admin: AdminUser,
    db: Database,
    role: Literal["seller", "buyer", "all"] = Query("all"),
    email: str | None = Query(None, max_length=255),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    """Pending KYC submissions, oldest first, with the submitting user."""
    logger.info(f"GET /admin/kyc | admin={admin.user_id} | role={role} | email={email}")

    user_ids = await _user_ids_matching(db, None if role == "all" else role, email)
    if user_ids is not None and not user_ids:
        return _page([], "submissions", 0, limit, offset)

    query = (
        db.table(KYC_SUBMISSIONS_TABLE)
        .select("*", count="exact")
        .eq("status", KycStatus.PENDING.value)
    )
    if user_ids is not None:
        query = query.in_("user_id", user_ids)
    result = query.order("submitted_at").range(offset, offset + limit - 1).execute()

    submissions = result.data or []
    users = await get_users_by_ids(db, [s["user_id"] for s in submissions])
    rows = []
    for submission in submissions:
        user = users.get(submission["user_id"], {})
        rows.append(
            {
                **to_kyc_out(submission).model_dump(),
                "email": user.get("email"),
                "role": user.get("role"),
            }
        )
    return _page(rows, "submissions", result.count or 0, limit, offset)


@router.get("/escrows")
async def list_all_escrows(
    admin: AdminUser,
    db: Database,
    status_filter: EscrowStatus | None = Query(None, alias="status"),
    buyer: str | None = Query(None, description="Buyer email contains"),
    seller: str | None = Query(None, description="Seller email contains"),
    created_from: datetime | None = Query(None),
    created_to: datetime | None = Query(None),
    sort: EscrowSort = Query("newest"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    """All escrows with filters on status, party email and creation date."""
    logger.info(f"GET /admin/escrows | admin={admin.user_id} | status={status_filter} | sort={sort}")

    query = db.table(ESCROWS_TABLE).select("*", count="exact")
    if status_filter:
        query = query.eq("status", status_filter.value)
    for column, fragment in (("buyer_id", buyer), ("seller_id", seller)):
        if fragment:
            ids = await find_user_ids_by_email(db, fragment)
            if not ids:
                return _page([], "escrows", 0, limit, offset)
            query = query.in_(column, ids)
    if created_from:
        query = query.gte("created_at", created_from.isoformat())
    if created_to:
        query = query.lte("created_at", created_to.isoformat())

    column, desc = SORT_ORDER[sort]
    result = query.order(column, desc=desc).range(offset, offset + limit - 1).execute()

    escrows = result.data or []
    users = await get_users_by_ids(db, [u for e in escrows for u in (e["buyer_id"], e["seller_id"])])
    return _page([to_escrow_out(e, users) for e in escrows], "escrows", result.count or 0, limit, offset)


@router.get("/disputes")
async def list_disputes(
    admin: AdminUser,
    db: Database,
    status_filter: DisputeStatus | None = Query(None, alias="status"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    """Disputes, newest first, joined with their escrows."""
    query = db.table(DISPUTES_TABLE).select("*", count="exact")
    if status_filter:
        query = query.eq("status", status_filter.value)
    result = query.order("created_at", desc=True).range(offset, offset + limit - 1).execute()

    disputes = result.data or []
    escrow_ids = list({d["escrow_id"] for d in disputes})
    escrows = {}
    if escrow_ids:
        escrow_result = db.table(ESCROWS_TABLE).select("*").in_("id", escrow_ids).execute()
        escrows = {e["id"]: e for e in escrow_result.data or []}
    users = await get_users_by_ids(
        db, [u for e in escrows.values() for u in (e["buyer_id"], e["seller_id"])]
    )

    rows = [to_dispute_out(d, escrows.get(d["escrow_id"]), users) for d in disputes]
    return _page(rows, "disputes", result.count or 0, limit, offset)


@router.get("/disputes/{dispute_id}")
async def get_dispute_admin(dispute_id: ResourceId, admin: AdminUser, db: Database):
    dispute, escrow = await load_dispute_with_escrow(db, dispute_id)
    return await dispute_detail(db, dispute, escrow)


@router.get("/audit-logs")
async def get_audit_logs(
    admin: AdminUser,
    db: Database,
    entity: str | None = Query(None),
    entity_id: str | None = Query(None),
    actor_id: str | None = Query(None),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    """Audit trail, newest first."""
    rows, total = await list_audit_logs(db, entity, entity_id, actor_id, limit, offset)
    logs = [AuditLogOut(**{k: v for k, v in r.items() if k in AuditLogOut.model_fields}) for r in rows]
    return _page(logs, "logs", total, limit, offset)


# =============================================================================
# Dispute Shortcuts
# =============================================================================


async def _settle_dispute(
    db,
    dispute_id: str,
    admin_id: str,
    decision: DisputeDecision,
    escrow_action: str,
    target: EscrowStatus,
) -> dict:
    """Close a dispute and force its escrow to ``target``.

    A dispute already closed the same way with its escrow at ``target``
    is reported as done.
    """
    dispute, escrow = await load_dispute_with_escrow(db, dispute_id)
    dispute_target = (
        DisputeStatus.REJECTED if decision == DisputeDecision.REJECTED else DisputeStatus.RESOLVED
    )
    verb = "approved" if decision == DisputeDecision.APPROVED else "rejected"

    if dispute["status"] == dispute_target.value and escrow["status"] == target.value:
        logger.info(f"Dispute {dispute_id} already {verb}")
        return {
            "message": f"Dispute already {verb}",
            "dispute": to_dispute_out(dispute, escrow),
            "escrow": await escrow_response(db, escrow),
        }

    if dispute["status"] not in (DisputeStatus.OPEN.value, dispute_target.value):
        raise InvalidTransitionError(
            "dispute", dispute["status"], verb, f"Dispute already closed as '{dispute['status']}'"
        )
    if escrow["status"] != target.value:
        next_escrow_status(escrow["status"], escrow_action)
    if dispute["status"] == DisputeStatus.OPEN.value:
        dispute = await close_dispute(db, dispute, decision, admin_id)
    if escrow["status"] != target.value:
        escrow = await atomic_transition(
            db, escrow, escrow_action, admin_id, {"dispute_id": dispute_id}
        )

    return {
        "message": f"Dispute {verb}",
        "dispute": to_dispute_out(dispute, escrow),
        "escrow": await escrow_response(db, escrow),
    }


@router.post("/disputes/{dispute_id}/approve")
async def approve_dispute(dispute_id: ResourceId, admin: AdminUser, db: Database):
    """Uphold a dispute: the dispute is resolved and the escrow cancelled."""
    logger.info(f"POST /admin/disputes/{dispute_id}/approve | admin={admin.user_id}")
    return await _settle_dispute(
        db, dispute_id, admin.user_id, DisputeDecision.APPROVED, "dispute_approve", EscrowStatus.CANCELLED
    )


@router.post("/disputes/{dispute_id}/reject")
async def reject_dispute(dispute_id: ResourceId, admin: AdminUser, db: Database):
    """Dismiss a dispute: the dispute is rejected and the escrow completed."""
    logger.info(f"POST /admin/disputes/{dispute_id}/reject | admin={admin.user_id}")
    return await _settle_dispute(
        db, dispute_id, admin.user_id, DisputeDecision.REJECTED, "dispute_reject", EscrowStatus.COMPLETED
    )


# =============================================================================
# Escrow Actions
# =============================================================================


@router.post("/escrows/{escrow_id}/release")
async def admin_release_escrow(escrow_id: ResourceId, admin: AdminUser, db: Database):
    """Release an escrow to its seller. Idempotent once released."""
    logger.info(f"POST /admin/escrows/{escrow_id}/release | admin={admin.user_id}")
    escrow = await load_escrow(db, escrow_id)
    return await release_with_payout(db, escrow, admin.user_id)


@router.post("/escrows/{escrow_id}/complete")
async def admin_complete_escrow(escrow_id: ResourceId, admin: AdminUser, db: Database):
    """Complete a released escrow and mark its payout as sent."""
    logger.info(f"POST /admin/escrows/{escrow_id}/complete | admin={admin.user_id}")
    escrow = await load_escrow(db, escrow_id)

    if escrow["status"] == EscrowStatus.COMPLETED.value:
        payout = await get_latest_payout(db, escrow_id)
        return {
            "message": "Escrow already completed",
            "escrow": await escrow_response(db, escrow),
            "payout": to_payout_out(payout) if payout else None,
        }

    completed, payout = await complete_escrow(db, escrow, admin.user_id)
    return {
        "message": "Escrow completed",
        "escrow": await escrow_response(db, completed),
        "payout": to_payout_out(payout) if payout else None,
    }


@router.post("/escrows/{escrow_id}/refund")
async def admin_refund_escrow(escrow_id: ResourceId, admin: AdminUser, db: Database):
    """
    Refund the buyer by cancelling a disputed escrow.

    Requires an open dispute or one resolved in the buyer's favour. An open
    dispute is closed as ``favor_buyer`` on the way. A cancelled escrow only
    counts as already refunded when a dispute was ruled for the buyer.
    """
    logger.info(f"POST /admin/escrows/{escrow_id}/refund | admin={admin.user_id}")
    escrow = await load_escrow(db, escrow_id)

    refundable = await has_refundable_dispute(db, escrow_id)
    if escrow["status"] == EscrowStatus.CANCELLED.value and refundable:
        return {"message": "Escrow already refunded", "escrow": await escrow_response(db, escrow)}

    next_escrow_status(escrow["status"], "refund")
    if not refundable:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Refund requires an open dispute or a ruling in the buyer's favour",
        )

    open_dispute = await get_open_dispute(db, escrow_id)
    if open_dispute:
        await close_dispute(db, open_dispute, DisputeDecision.FAVOR_BUYER, admin.user_id, "Refunded")

    refunded = await atomic_transition(db, escrow, "refund", admin.user_id)
    return {"message": "Escrow refunded", "escrow": await escrow_response(db, refunded)}


# =============================================================================
# Payouts
# =============================================================================


@router.post("/payouts/{payout_id}/resolve")
async def resolve_payout(
    payout_id: ResourceId,
    admin: AdminUser,
    db: Database,
    resolve_request: PayoutResolve | None = None,
):
    """Mark a payout as resolved after manual follow-up. Idempotent."""
    logger.info(f"POST /admin/payouts/{payout_id}/resolve | admin={admin.user_id}")

    payout = await get_payout(db, payout_id)
    if not payout:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payout not found")

    if payout["status"] == PayoutStatus.RESOLVED.value:
        return {"message": "Payout already resolved", "payout": to_payout_out(payout)}

    note = resolve_request.note if resolve_request else None
    resolved = await advance_payout(db, payout, PayoutStatus.RESOLVED, admin.user_id, {"note": note})
    return {"message": "Payout resolved", "payout": to_payout_out(resolved)}
