"""User profile and KYC routes."""

from fastapi import APIRouter, HTTPException, Request, status

from ..auth import AdminUser, CurrentUser
from ..database import (
    KYC_SUBMISSIONS_TABLE,
    USERS_TABLE,
    Database,
    get_user,
    new_id,
    set_kyc_status,
    utcnow,
    write_audit_log,
)
from ..lifecycle import KycStatus
from ..logging_config import get_logger
from ..models import KycSubmit, KycVerify, ResourceId, to_kyc_out, to_user_out
from ..rate_limit import limiter

logger = get_logger("escao.users")
router = APIRouter(prefix="/api/users", tags=["users"])


# =============================================================================
# Database Operations
# =============================================================================


async def create_kyc_submission(db, user_id: str, data: KycSubmit) -> dict | None:
    """Store a pending KYC submission."""
    submission = {
        "id": new_id(),
        "user_id": user_id,
        "full_name": data.full_name,
        "id_number": data.id_number,
        "document_url": data.document_url,
        "selfie_url": data.selfie_url,
        "bank_account": data.bank_account,
        "status": KycStatus.PENDING.value,
        "submitted_at": utcnow(),
    }
    result = db.table(KYC_SUBMISSIONS_TABLE).insert(submission).execute()
    return result.data[0] if result.data else None


async def list_kyc_submissions(db, user_id: str) -> list[dict]:
    result = (
        db.table(KYC_SUBMISSIONS_TABLE)
        .select("*")
        .eq("user_id", user_id)
        .order("submitted_at", desc=True)
        .execute()
    )
    return result.data or []


async def review_pending_submissions(
    db,
    user_id: str,
    decision: str,
    reviewer_id: str,
    note: str | None,
) -> list[dict]:
    """Apply a review decision to every pending submission of a user.

    Returns the updated rows; empty when nothing was pending.
    """
    result = (
        db.table(KYC_SUBMISSIONS_TABLE)
        .update(
            {
                "status": decision,
                "note": note,
                "reviewed_by": reviewer_id,
                "reviewed_at": utcnow(),
            }
        )
        .eq("user_id", user_id)
        .eq("status", KycStatus.PENDING.value)
        .execute()
    )
    return result.data or []


# =============================================================================
# Routes
# =============================================================================


@router.get("/me")
async def get_profile(auth: CurrentUser, db: Database):
    """Current user's profile, including KYC status."""
    user = await get_user(db, auth.user_id)
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return {"user": to_user_out(user)}


@router.post("/kyc", status_code=status.HTTP_201_CREATED)
@limiter.limit("5/minute")
async def submit_kyc(
    request: Request,
    kyc_request: KycSubmit,
    auth: CurrentUser,
    db: Database,
):
    """
    Submit identity documents for review.

    Moves the user to ``submitted``. A user already under review or
    already verified cannot submit again.
    """
    user = await get_user(db, auth.user_id)
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")

    if user["kyc_status"] in (KycStatus.SUBMITTED.value, KycStatus.VERIFIED.value):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"KYC already {user['kyc_status']}",
        )

    submission = await create_kyc_submission(db, auth.user_id, kyc_request)
    if not submission:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to store KYC submission",
        )

    await set_kyc_status(db, auth.user_id, KycStatus.SUBMITTED.value)
    await write_audit_log(
        db,
        auth.user_id,
        "kyc_submit",
        KYC_SUBMISSIONS_TABLE,
        submission["id"],
        {"user_id": auth.user_id},
    )
    logger.info(f"POST /users/kyc | user={auth.user_id} | submission={submission['id']}")

    return {
        "message": "KYC submitted",
        "submission": to_kyc_out(submission),
        "kyc_status": KycStatus.SUBMITTED.value,
    }


@router.get("/kyc")
async def get_my_kyc(auth: CurrentUser, db: Database):
    """The caller's own KYC submissions, newest first."""
    user = await get_user(db, auth.user_id)
    submissions = await list_kyc_submissions(db, auth.user_id)
    return {
        "kyc_status": user["kyc_status"] if user else None,
        "submissions": [to_kyc_out(s) for s in submissions],
    }


@router.post("/{user_id}/kyc/verify")
async def verify_kyc(
    user_id: ResourceId,
    verify_request: KycVerify,
    admin: AdminUser,
    db: Database,
):
    """Approve or reject a user's pending KYC submission (admin only)."""
    user = await get_user(db, user_id)
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")

    reviewed = await review_pending_submissions(
        db, user_id, verify_request.decision, admin.user_id, verify_request.note
    )
    if not reviewed:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No pending KYC submission for this user",
        )

    updated = await set_kyc_status(db, user_id, verify_request.decision)
    await write_audit_log(
        db,
        admin.user_id,
        "kyc_verify",
        USERS_TABLE,
        user_id,
        {
            "decision": verify_request.decision,
            "submissions": [s["id"] for s in reviewed],
            "note": verify_request.note,
        },
    )
    logger.info(
        f"POST /users/{user_id}/kyc/verify | admin={admin.user_id} | decision={verify_request.decision}"
    )

    return {
        "message": f"KYC {verify_request.decision}",
        "user": to_user_out(updated or {**user, "kyc_status": verify_request.decision}),
    }
