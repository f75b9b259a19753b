"""Escrow transaction routes.

Every party-driven step of the escrow lifecycle lives here. Status checks
go through ``escao.lifecycle`` and the actual update through
``atomic_transition``, so a request that loses a race gets a 400 instead of
overwriting the winner.
"""

from fastapi import APIRouter, HTTPException, Query, Request, status
from postgrest.exceptions import APIError

from ..auth import AuthContext, CurrentUser
from ..config import get_settings
from ..database import (
    DISPUTES_TABLE,
    ESCROWS_TABLE,
    PAYMENT_INTENTS_TABLE,
    Database,
    get_user,
    get_users_by_ids,
    is_unique_violation,
    new_id,
    utcnow,
    write_audit_log,
)
from ..lifecycle import (
    DisputeStatus,
    EscrowStatus,
    InvalidTransitionError,
    PaymentIntentStatus,
    Role,
    next_escrow_status,
    require_escrow_status,
)
from ..logging_config import get_logger
from ..models import (
    DisputeOpen,
    EscrowCreate,
    FundEscrow,
    ReceiptUpload,
    ResourceId,
    ShipEscrow,
    to_dispute_out,
    to_escrow_out,
    to_payment_intent_out,
    to_payout_out,
)
from ..rate_limit import limiter
from ..transitions import (
    atomic_transition,
    create_payout,
    ensure_no_open_dispute,
    ensure_seller_verified,
    get_escrow,
    get_latest_payout,
    get_open_dispute,
    release_escrow,
)

logger = get_logger("escao.escrow")
router = APIRouter(prefix="/api/escrow", tags=["escrow"])

RELEASED_STATUSES = (EscrowStatus.RELEASED.value, EscrowStatus.COMPLETED.value)


# =============================================================================
# Database Operations
# =============================================================================


async def create_escrow(db, buyer_id: str, seller_id: str, amount, currency: str) -> dict | None:
    now = utcnow()
    data = {
        "id": new_id(),
        "buyer_id": buyer_id,
        "seller_id": seller_id,
        "amount": str(amount),
        "currency": currency,
        "status": EscrowStatus.CREATED.value,
        "created_at": now,
        "updated_at": now,
    }
    result = db.table(ESCROWS_TABLE).insert(data).execute()
    return result.data[0] if result.data else None


async def list_escrows(
    db,
    status_filter: str | None = None,
    buyer_id: str | None = None,
    seller_id: str | None = None,
    limit: int = 20,
    offset: int = 0,
) -> tuple[list[dict], int]:
    """List escrows with optional filters, newest first."""
    query = db.table(ESCROWS_TABLE).select("*", count="exact")

    if status_filter:
        query = query.eq("status", status_filter)
    if buyer_id:
        query = query.eq("buyer_id", buyer_id)
    if seller_id:
        query = query.eq("seller_id", seller_id)

    query = query.order("created_at", desc=True).range(offset, offset + limit - 1)
    result = query.execute()

    return result.data or [], result.count or 0


async def get_payment_intent_by_reference(db, pg_reference: str) -> dict | None:
    result = (
        db.table(PAYMENT_INTENTS_TABLE)
        .select("*")
        .eq("pg_reference", pg_reference)
        .execute()
    )
    return result.data[0] if result.data else None


async def create_payment_intent(
    db,
    escrow_id: str,
    method: str | None,
    pg_reference: str,
    qr_code_url: str | None = None,
    raw_payload: dict | None = None,
) -> dict:
    """Record a paid payment intent. ``pg_reference`` is unique."""
    now = utcnow()
    data = {
        "id": new_id(),
        "escrow_id": escrow_id,
        "method": method,
        "pg_reference": pg_reference,
        "qr_code_url": qr_code_url,
        "status": PaymentIntentStatus.PAID.value,
        "paid_at": now,
        "raw_payload": raw_payload,
        "created_at": now,
    }
    result = db.table(PAYMENT_INTENTS_TABLE).insert(data).execute()
    return result.data[0]


async def create_dispute(db, escrow_id: str, opened_by: str, reason: str) -> dict | None:
    now = utcnow()
    data = {
        "id": new_id(),
        "escrow_id": escrow_id,
        "opened_by": opened_by,
        "reason": reason,
        "status": DisputeStatus.OPEN.value,
        "created_at": now,
        "updated_at": now,
    }
    result = db.table(DISPUTES_TABLE).insert(data).execute()
    return result.data[0] if result.data else None


# =============================================================================
# Helpers
# =============================================================================


async def load_escrow(db, escrow_id: str) -> dict:
    """Get an escrow or raise 404."""
    escrow = await get_escrow(db, escrow_id)
    if not escrow:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Escrow not found")
    return escrow


def require_party(auth: AuthContext, escrow: dict, allow_admin: bool = False) -> None:
    if auth.is_party(escrow) or (allow_admin and auth.is_admin):
        return
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="Not a party to this escrow",
    )


def require_buyer(auth: AuthContext, escrow: dict, action: str) -> None:
    if auth.user_id != escrow["buyer_id"]:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Only the buyer can {action} this escrow",
        )


async def escrow_response(db, escrow: dict):
    """Escrow response model with both party emails."""
    users = await get_users_by_ids(db, [escrow["buyer_id"], escrow["seller_id"]])
    return to_escrow_out(escrow, users)


async def release_with_payout(db, escrow: dict, actor_id: str) -> dict:
    """Release an escrow and build the response.

    The seller's KYC is checked first, whatever the escrow status. An
    escrow that is already released (or completed) is returned as is,
    after creating its payout if an earlier release stopped short of it.
    """
    await ensure_seller_verified(db, escrow["seller_id"])

    if escrow["status"] in RELEASED_STATUSES:
        payout = await get_latest_payout(db, escrow["id"])
        if not payout:
            logger.warning(f"Escrow {escrow['id']} released without a payout; creating it")
            payout = await create_payout(db, escrow, actor_id)
        return {
            "message": "Escrow already released",
            "escrow": await escrow_response(db, escrow),
            "payout": to_payout_out(payout),
        }

    await ensure_no_open_dispute(db, escrow, "release")
    released, payout = await release_escrow(db, escrow, actor_id)
    logger.info(f"Escrow released | id={escrow['id']} | by={actor_id} | payout={payout['id']}")

    return {
        "message": "Funds released",
        "escrow": await escrow_response(db, released),
        "payout": to_payout_out(payout),
    }


def _resolve_parties(auth: AuthContext, create_request: EscrowCreate) -> tuple[str, str]:
    """Work out (buyer_id, seller_id) with the caller as one of them."""
    if auth.role == Role.BUYER.value:
        if create_request.buyer_id and create_request.buyer_id != auth.user_id:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Buyers can only create escrows as the buyer",
            )
        counterparty = create_request.seller_id or create_request.counterparty_id
        return auth.user_id, counterparty

    if auth.role == Role.SELLER.value:
        if create_request.seller_id and create_request.seller_id != auth.user_id:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Sellers can only create escrows as the seller",
            )
        counterparty = create_request.buyer_id or create_request.counterparty_id
        return counterparty, auth.user_id

    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="Only buyers or sellers can create escrows",
    )


# =============================================================================
# Routes
# =============================================================================


@router.post("", status_code=status.HTTP_201_CREATED)
@limiter.limit("20/minute")
async def create_escrow_transaction(
    request: Request,
    create_request: EscrowCreate,
    auth: CurrentUser,
    db: Database,
):
    """
    Create an escrow between the caller and a counterparty.

    The counterparty must exist and hold the opposite role.
    """
    logger.info(f"POST /escrow | user={auth.user_id} | amount={create_request.amount}")

    buyer_id, seller_id = _resolve_parties(auth, create_request)
    counterparty_id = seller_id if buyer_id == auth.user_id else buyer_id

    if not counterparty_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Counterparty is required",
        )
    if counterparty_id == auth.user_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Buyer and seller must be different users",
        )

    counterparty = await get_user(db, counterparty_id)
    if not counterparty:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Counterparty not found")

    expected_role = Role.SELLER.value if counterparty_id == seller_id else Role.BUYER.value
    if counterparty["role"] != expected_role:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Counterparty must be a {expected_role}",
        )

    currency = create_request.currency or get_settings().default_currency
    escrow = await create_escrow(db, buyer_id, seller_id, create_request.amount, currency)
    if not escrow:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create escrow",
        )

    await write_audit_log(
        db,
        auth.user_id,
        "create",
        ESCROWS_TABLE,
        escrow["id"],
        {"amount": str(create_request.amount), "currency": currency},
    )
    logger.info(f"Escrow created | id={escrow['id']} | buyer={buyer_id} | seller={seller_id}")

    return {"message": "Escrow created", "escrow": await escrow_response(db, escrow)}


@router.get("")
async def list_my_escrows(
    auth: CurrentUser,
    db: Database,
    status_filter: EscrowStatus | None = Query(None, alias="status"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    """Escrows where the caller is the buyer or the seller."""
    status_value = status_filter.value if status_filter else None

    as_buyer, buyer_total = await list_escrows(
        db, status_value, buyer_id=auth.user_id, limit=limit + offset
    )
    as_seller, seller_total = await list_escrows(
        db, status_value, seller_id=auth.user_id, limit=limit + offset
    )

    # Merge and dedupe, newest first
    seen = set()
    escrows = []
    for escrow in sorted(as_buyer + as_seller, key=lambda e: e.get("created_at") or "", reverse=True):
        if escrow["id"] not in seen:
            seen.add(escrow["id"])
            escrows.append(escrow)
    # Buyer and seller are never the same user, so the counts do not overlap
    total = buyer_total + seller_total
    page = escrows[offset : offset + limit]

    users = await get_users_by_ids(db, [u for e in page for u in (e["buyer_id"], e["seller_id"])])
    return {
        "escrows": [to_escrow_out(e, users) for e in page],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@router.get("/{escrow_id}")
async def get_escrow_details(escrow_id: ResourceId, auth: CurrentUser, db: Database):
    """Escrow details, visible to its parties and admins."""
    escrow = await load_escrow(db, escrow_id)
    require_party(auth, escrow, allow_admin=True)

    payout = await get_latest_payout(db, escrow_id)
    dispute = await get_open_dispute(db, escrow_id)
    return {
        "escrow": await escrow_response(db, escrow),
        "payout": to_payout_out(payout) if payout else None,
        "open_dispute": to_dispute_out(dispute) if dispute else None,
    }


@router.post("/{escrow_id}/fund")
@limiter.limit("10/minute")
async def fund_escrow(
    request: Request,
    escrow_id: ResourceId,
    fund_request: FundEscrow,
    auth: CurrentUser,
    db: Database,
):
    """
    Record payment of an escrow.

    Stores a paid payment intent under ``pg_reference`` and moves the escrow
    from 'created' to 'funded'.
    """
    logger.info(f"POST /escrow/{escrow_id}/fund | user={auth.user_id} | ref={fund_request.pg_reference}")

    escrow = await load_escrow(db, escrow_id)
    require_party(auth, escrow, allow_admin=True)
    next_escrow_status(escrow["status"], "fund")

    if await get_payment_intent_by_reference(db, fund_request.pg_reference):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Payment reference already used",
        )

    funded = await atomic_transition(
        db,
        escrow,
        "fund",
        auth.user_id,
        {"method": fund_request.method, "pg_reference": fund_request.pg_reference},
    )

    try:
        intent = await create_payment_intent(
            db,
            escrow_id,
            fund_request.method,
            fund_request.pg_reference,
            fund_request.qr_code_url,
        )
    except APIError as e:
        if not is_unique_violation(e):
            raise
        # The gateway callback for this reference landed first
        intent = await get_payment_intent_by_reference(db, fund_request.pg_reference)

    return {
        "message": "Escrow funded",
        "escrow": await escrow_response(db, funded),
        "payment_intent": to_payment_intent_out(intent),
    }


@router.post("/{escrow_id}/ship")
@limiter.limit("10/minute")
async def ship_escrow(
    request: Request,
    escrow_id: ResourceId,
    ship_request: ShipEscrow,
    auth: CurrentUser,
    db: Database,
):
    """Mark goods as shipped. Only the escrow's KYC-verified seller can ship."""
    logger.info(f"POST /escrow/{escrow_id}/ship | user={auth.user_id}")

    escrow = await load_escrow(db, escrow_id)
    if auth.role != Role.SELLER.value or auth.user_id != escrow["seller_id"]:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only the seller can ship this escrow",
        )

    await ensure_seller_verified(db, escrow["seller_id"])
    await ensure_no_open_dispute(db, escrow, "ship")

    shipped = await atomic_transition(
        db,
        escrow,
        "ship",
        auth.user_id,
        {"tracking_number": ship_request.tracking_number},
        tracking_number=ship_request.tracking_number,
        seller_proof_url=ship_request.proof_url,
        seller_receipt_number=ship_request.receipt_number,
    )
    return {"message": "Escrow marked as shipped", "escrow": await escrow_response(db, shipped)}


@router.post("/{escrow_id}/receipt")
async def upload_receipt(
    escrow_id: ResourceId,
    receipt_request: ReceiptUpload,
    auth: CurrentUser,
    db: Database,
):
    """Attach the buyer's proof of delivery. The status does not change."""
    escrow = await load_escrow(db, escrow_id)
    require_buyer(auth, escrow, "upload a receipt for")
    require_escrow_status(escrow["status"], "upload_receipt")

    result = (
        db.table(ESCROWS_TABLE)
        .update({"buyer_proof_url": receipt_request.proof_url, "updated_at": utcnow()})
        .eq("id", escrow_id)
        .eq("status", EscrowStatus.SHIPPED.value)
        .execute()
    )
    if not result.data:
        current = await get_escrow(db, escrow_id)
        raise InvalidTransitionError(
            "escrow",
            current["status"] if current else escrow["status"],
            "upload_receipt",
            "Escrow status changed concurrently",
        )

    await write_audit_log(
        db,
        auth.user_id,
        "upload_receipt",
        ESCROWS_TABLE,
        escrow_id,
        {"proof_url": receipt_request.proof_url},
    )
    return {"message": "Receipt uploaded", "escrow": await escrow_response(db, result.data[0])}


@router.post("/{escrow_id}/confirm")
async def confirm_escrow(escrow_id: ResourceId, auth: CurrentUser, db: Database):
    """Buyer confirms the goods arrived."""
    escrow = await load_escrow(db, escrow_id)
    require_buyer(auth, escrow, "confirm")
    await ensure_no_open_dispute(db, escrow, "confirm")

    confirmed = await atomic_transition(db, escrow, "confirm", auth.user_id)
    return {"message": "Receipt confirmed", "escrow": await escrow_response(db, confirmed)}


@router.post("/{escrow_id}/release")
async def release_escrow_funds(escrow_id: ResourceId, auth: CurrentUser, db: Database):
    """
    Release funds to the seller and create the pending payout.

    Allowed for admins and the escrow's buyer. The seller's KYC is checked
    before anything else. Releasing an already released escrow succeeds
    without side effects.
    """
    escrow = await load_escrow(db, escrow_id)
    if not auth.is_admin and auth.user_id != escrow["buyer_id"]:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only an admin or the buyer can release this escrow",
        )

    return await release_with_payout(db, escrow, auth.user_id)


@router.post("/{escrow_id}/cancel")
async def cancel_escrow(escrow_id: ResourceId, auth: CurrentUser, db: Database):
    """Cancel an unfunded escrow. Either party may cancel."""
    escrow = await load_escrow(db, escrow_id)
    require_party(auth, escrow)

    cancelled = await atomic_transition(db, escrow, "cancel", auth.user_id)
    return {"message": "Escrow cancelled", "escrow": await escrow_response(db, cancelled)}


@router.post("/{escrow_id}/dispute", status_code=status.HTTP_201_CREATED)
@limiter.limit("5/minute")
async def open_dispute(
    request: Request,
    escrow_id: ResourceId,
    dispute_request: DisputeOpen,
    auth: CurrentUser,
    db: Database,
):
    """
    Open a dispute on an active escrow.

    The escrow status is unchanged, but ship, confirm and release are
    blocked until an admin rules on the dispute.
    """
    logger.info(f"POST /escrow/{escrow_id}/dispute | user={auth.user_id}")

    escrow = await load_escrow(db, escrow_id)
    require_party(auth, escrow)
    require_escrow_status(escrow["status"], "open_dispute")

    if await get_open_dispute(db, escrow_id):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="A dispute is already open for this escrow",
        )

    try:
        dispute = await create_dispute(db, escrow_id, auth.user_id, dispute_request.reason)
    except APIError as e:
        if is_unique_violation(e):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="A dispute is already open for this escrow",
            )
        raise

    await write_audit_log(
        db,
        auth.user_id,
        "open_dispute",
        DISPUTES_TABLE,
        dispute["id"],
        {"escrow_id": escrow_id, "reason": dispute_request.reason},
    )
    logger.info(f"Dispute opened | id={dispute['id']} | escrow={escrow_id} | by={auth.user_id}")

    return {"message": "Dispute opened", "dispute": to_dispute_out(dispute, escrow)}
