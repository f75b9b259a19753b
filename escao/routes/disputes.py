"""Dispute routes: details, evidence and admin resolution."""

from fastapi import APIRouter, HTTPException, Request, status

from ..auth import AdminUser, AuthContext, CurrentUser
from ..database import (
    EVIDENCE_TABLE,
    Database,
    get_users_by_ids,
    new_id,
    utcnow,
    write_audit_log,
)
from ..lifecycle import DisputeDecision, DisputeStatus, next_dispute_status, next_escrow_status
from ..logging_config import get_logger
from ..models import (
    DisputeResolve,
    EvidenceCreate,
    ResourceId,
    to_dispute_out,
    to_escrow_out,
    to_evidence_out,
    to_payout_out,
)
from ..rate_limit import limiter
from ..transitions import (
    close_dispute,
    ensure_seller_verified,
    get_dispute,
    get_escrow,
    release_escrow,
)

logger = get_logger("escao.disputes")
router = APIRouter(prefix="/api/disputes", tags=["disputes"])


# =============================================================================
# Database Operations
# =============================================================================


async def list_evidence(db, dispute_id: str) -> list[dict]:
    result = (
        db.table(EVIDENCE_TABLE)
        .select("*")
        .eq("dispute_id", dispute_id)
        .order("created_at")
        .execute()
    )
    return result.data or []


async def create_evidence(db, dispute_id: str, uploaded_by: str, data: EvidenceCreate) -> dict | None:
    evidence = {
        "id": new_id(),
        "dispute_id": dispute_id,
        "file_url": data.file_url,
        "note": data.note,
        "uploaded_by": uploaded_by,
        "created_at": utcnow(),
    }
    result = db.table(EVIDENCE_TABLE).insert(evidence).execute()
    return result.data[0] if result.data else None


# =============================================================================
# Helpers
# =============================================================================


async def load_dispute_with_escrow(db, dispute_id: str) -> tuple[dict, dict]:
    """Get a dispute and its escrow, or raise 404."""
    dispute = await get_dispute(db, dispute_id)
    if not dispute:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Dispute not found")

    escrow = await get_escrow(db, dispute["escrow_id"])
    if not escrow:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Escrow not found")
    return dispute, escrow


def require_participant(auth: AuthContext, escrow: dict) -> None:
    if not auth.is_admin and not auth.is_party(escrow):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not a party to this dispute",
        )


async def dispute_detail(db, dispute: dict, escrow: dict) -> dict:
    """Dispute with escrow, party emails and evidence."""
    users = await get_users_by_ids(db, [escrow["buyer_id"], escrow["seller_id"]])
    evidence = await list_evidence(db, dispute["id"])
    return {
        "dispute": to_dispute_out(dispute, escrow, users),
        "evidence": [to_evidence_out(e) for e in evidence],
    }


# =============================================================================
# Routes
# =============================================================================


@router.get("/{dispute_id}")
async def get_dispute_details(dispute_id: ResourceId, auth: CurrentUser, db: Database):
    """Dispute details and evidence, for the escrow's parties and admins."""
    dispute, escrow = await load_dispute_with_escrow(db, dispute_id)
    require_participant(auth, escrow)
    return await dispute_detail(db, dispute, escrow)


@router.post("/{dispute_id}/evidence", status_code=status.HTTP_201_CREATED)
@limiter.limit("20/minute")
async def add_evidence(
    request: Request,
    dispute_id: ResourceId,
    evidence_request: EvidenceCreate,
    auth: CurrentUser,
    db: Database,
):
    """Attach evidence to an open dispute. Only escrow parties may add evidence."""
    dispute, escrow = await load_dispute_with_escrow(db, dispute_id)
    if not auth.is_party(escrow):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only escrow parties can add evidence",
        )

    if dispute["status"] != DisputeStatus.OPEN.value:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Dispute is not open",
        )

    evidence = await create_evidence(db, dispute_id, auth.user_id, evidence_request)
    if not evidence:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to store evidence",
        )

    await write_audit_log(
        db,
        auth.user_id,
        "add_evidence",
        EVIDENCE_TABLE,
        evidence["id"],
        {"dispute_id": dispute_id, "file_url": evidence_request.file_url},
    )
    logger.info(f"POST /disputes/{dispute_id}/evidence | user={auth.user_id}")

    return {"message": "Evidence added", "evidence": to_evidence_out(evidence)}


@router.post("/{dispute_id}/resolve")
async def resolve_dispute(
    dispute_id: ResourceId,
    resolve_request: DisputeResolve,
    admin: AdminUser,
    db: Database,
):
    """
    Rule on an open dispute (admin only).

    - favor_seller: releases the escrow to the seller and creates the payout
      (seller KYC must be verified)
    - favor_buyer: the dispute is resolved and the escrow is left as is, so
      the admin can follow up with a refund
    - rejected: the dispute is closed and the escrow lifecycle resumes
    """
    logger.info(
        f"POST /disputes/{dispute_id}/resolve | admin={admin.user_id} | decision={resolve_request.decision}"
    )

    dispute, escrow = await load_dispute_with_escrow(db, dispute_id)
    decision = DisputeDecision(resolve_request.decision)

    # Validate everything up front so a failed release cannot leave the
    # dispute closed
    next_dispute_status(dispute["status"], decision)
    if decision == DisputeDecision.FAVOR_SELLER:
        await ensure_seller_verified(db, escrow["seller_id"])
        next_escrow_status(escrow["status"], "dispute_release")

    resolved = await close_dispute(db, dispute, decision, admin.user_id, resolve_request.note)

    payout = None
    if decision == DisputeDecision.FAVOR_SELLER:
        escrow, payout = await release_escrow(
            db,
            escrow,
            admin.user_id,
            action="dispute_release",
            metadata={"dispute_id": dispute_id},
        )

    users = await get_users_by_ids(db, [escrow["buyer_id"], escrow["seller_id"]])
    response = {
        "message": f"Dispute resolved: {decision.value}",
        "dispute": to_dispute_out(resolved, escrow, users),
        "escrow": to_escrow_out(escrow, users),
    }
    if payout:
        response["payout"] = to_payout_out(payout)
    return response
