"""Pydantic models for API requests and responses."""

from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, Literal

from fastapi import Path
from pydantic import BaseModel, Field, field_validator

from .lifecycle import DisputeStatus, EscrowStatus, KycStatus, PayoutStatus

RoleName = Literal["buyer", "seller", "admin"]

# Every primary key is a Postgres UUID
UUID_PATTERN = r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"

ResourceId = Annotated[str, Path(pattern=UUID_PATTERN)]

# =============================================================================
# Auth Models
# =============================================================================


class UserRegister(BaseModel):
    """Request to register a new user."""

    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=8, max_length=128)
    role: RoleName

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        v = v.strip().lower()
        if "@" not in v:
            raise ValueError("Invalid email address")
        return v


class UserLogin(BaseModel):
    """Request for an access token."""

    email: str
    password: str

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        return v.strip().lower()


class RefreshRequest(BaseModel):
    """Refresh token, optional when sent as a cookie."""

    refresh_token: str | None = None


class UserOut(BaseModel):
    id: str
    email: str
    role: RoleName
    kyc_status: KycStatus = KycStatus.PENDING
    created_at: datetime | None = None


class AuthResponse(BaseModel):
    """Register/login/refresh response."""

    message: str
    user: UserOut
    token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


# =============================================================================
# KYC Models
# =============================================================================


class KycSubmit(BaseModel):
    """Identity documents for KYC review."""

    full_name: str = Field(..., min_length=1, max_length=255)
    id_number: str = Field(..., min_length=1, max_length=64)
    document_url: str = Field(..., min_length=1)
    selfie_url: str | None = None
    bank_account: str | None = Field(None, max_length=64)


class KycVerify(BaseModel):
    """Admin decision on a pending KYC submission."""

    decision: Literal["verified", "rejected"]
    note: str | None = None


class KycSubmissionOut(BaseModel):
    id: str
    user_id: str
    full_name: str
    id_number: str
    document_url: str
    selfie_url: str | None = None
    bank_account: str | None = None
    status: str
    note: str | None = None
    submitted_at: datetime | None = None
    reviewed_at: datetime | None = None


# =============================================================================
# Escrow Models
# =============================================================================


class EscrowCreate(BaseModel):
    """Request to create an escrow.

    The caller is one party; the other is named either explicitly
    (``buyer_id``/``seller_id``) or as ``counterparty_id``.
    """

    buyer_id: str | None = Field(None, pattern=UUID_PATTERN)
    seller_id: str | None = Field(None, pattern=UUID_PATTERN)
    counterparty_id: str | None = Field(None, pattern=UUID_PATTERN)
    amount: Decimal = Field(..., gt=0, max_digits=18, decimal_places=2)
    currency: str | None = Field(None, min_length=3, max_length=3)

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: str | None) -> str | None:
        return v.upper() if v else v


class FundEscrow(BaseModel):
    method: str = Field(..., min_length=1, max_length=32)
    pg_reference: str = Field(..., min_length=1, max_length=128)
    qr_code_url: str | None = None


class ShipEscrow(BaseModel):
    tracking_number: str | None = Field(None, max_length=128)
    proof_url: str | None = None
    receipt_number: str | None = Field(None, max_length=128)


class ReceiptUpload(BaseModel):
    """Buyer's proof of delivery."""

    proof_url: str = Field(..., min_length=1)


class EscrowOut(BaseModel):
    id: str
    buyer_id: str
    seller_id: str
    amount: Decimal
    currency: str
    status: EscrowStatus
    buyer_email: str | None = None
    seller_email: str | None = None
    tracking_number: str | None = None
    seller_proof_url: str | None = None
    seller_receipt_number: str | None = None
    buyer_proof_url: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    funded_at: datetime | None = None
    shipped_at: datetime | None = None
    confirmed_at: datetime | None = None
    released_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None


class PaymentIntentOut(BaseModel):
    id: str
    escrow_id: str
    method: str | None = None
    pg_reference: str
    qr_code_url: str | None = None
    status: str
    paid_at: datetime | None = None


class PayoutOut(BaseModel):
    id: str
    escrow_id: str
    seller_id: str | None = None
    amount: Decimal | None = None
    currency: str | None = None
    bank_account: str | None = None
    method: str | None = None
    pg_reference: str | None = None
    status: PayoutStatus
    created_at: datetime | None = None
    sent_at: datetime | None = None
    resolved_at: datetime | None = None


# =============================================================================
# Dispute Models
# =============================================================================


class DisputeOpen(BaseModel):
    reason: str = Field(..., min_length=1, max_length=2000)


class EvidenceCreate(BaseModel):
    file_url: str = Field(..., min_length=1)
    note: str | None = Field(None, max_length=2000)


class DisputeResolve(BaseModel):
    """Admin ruling on an open dispute."""

    decision: Literal["favor_buyer", "favor_seller", "rejected"]
    note: str | None = None


class PayoutResolve(BaseModel):
    note: str | None = None


class DisputeOut(BaseModel):
    id: str
    escrow_id: str
    opened_by: str | None = None
    reason: str | None = None
    status: DisputeStatus
    decision: str | None = None
    resolution_note: str | None = None
    escrow_status: EscrowStatus | None = None
    amount: Decimal | None = None
    currency: str | None = None
    buyer_id: str | None = None
    buyer_email: str | None = None
    seller_id: str | None = None
    seller_email: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    resolved_at: datetime | None = None


class EvidenceOut(BaseModel):
    id: str
    dispute_id: str
    file_url: str
    note: str | None = None
    uploaded_by: str
    created_at: datetime | None = None


class AuditLogOut(BaseModel):
    id: str
    actor_id: str
    action: str
    entity: str
    entity_id: str
    metadata: dict[str, Any] = {}
    created_at: datetime | None = None


# =============================================================================
# Converters
# =============================================================================


def to_user_out(user: dict) -> UserOut:
    return UserOut(
        id=user["id"],
        email=user["email"],
        role=user["role"],
        kyc_status=user.get("kyc_status") or KycStatus.PENDING,
        created_at=user.get("created_at"),
    )


def to_escrow_out(escrow: dict, users: dict[str, dict] | None = None) -> EscrowOut:
    """Convert a DB escrow row to its response model.

    ``users`` (keyed by ID) adds the party emails when available.
    """
    users = users or {}
    data = {k: v for k, v in escrow.items() if k in EscrowOut.model_fields}
    data["amount"] = Decimal(str(escrow["amount"]))
    data["buyer_email"] = users.get(escrow["buyer_id"], {}).get("email")
    data["seller_email"] = users.get(escrow["seller_id"], {}).get("email")
    return EscrowOut(**data)


def to_payout_out(payout: dict) -> PayoutOut:
    data = {k: v for k, v in payout.items() if k in PayoutOut.model_fields}
    if payout.get("amount") is not None:
        data["amount"] = Decimal(str(payout["amount"]))
    return PayoutOut(**data)


def to_dispute_out(
    dispute: dict,
    escrow: dict | None = None,
    users: dict[str, dict] | None = None,
) -> DisputeOut:
    """Convert a dispute row, joined with its escrow and party emails."""
    users = users or {}
    data = {k: v for k, v in dispute.items() if k in DisputeOut.model_fields}
    if escrow:
        data.update(
            escrow_status=escrow["status"],
            amount=Decimal(str(escrow["amount"])),
            currency=escrow["currency"],
            buyer_id=escrow["buyer_id"],
            seller_id=escrow["seller_id"],
            buyer_email=users.get(escrow["buyer_id"], {}).get("email"),
            seller_email=users.get(escrow["seller_id"], {}).get("email"),
        )
    return DisputeOut(**data)


def to_evidence_out(evidence: dict) -> EvidenceOut:
    return EvidenceOut(**{k: v for k, v in evidence.items() if k in EvidenceOut.model_fields})


def to_kyc_out(submission: dict) -> KycSubmissionOut:
    return KycSubmissionOut(
        **{k: v for k, v in submission.items() if k in KycSubmissionOut.model_fields}
    )


def to_payment_intent_out(intent: dict) -> PaymentIntentOut:
    return PaymentIntentOut(
        **{k: v for k, v in intent.items() if k in PaymentIntentOut.model_fields}
    )
