"""Database utilities for Supabase integration."""

import uuid
from datetime import datetime, timezone
from typing import Annotated, Any

from fastapi import Depends
from postgrest.exceptions import APIError

from supabase import Client, create_client

from .config import Settings, get_settings

_supabase_client: Client | None = None


def get_supabase_client(settings: Settings | None = None) -> Client:
    """Get cached Supabase client."""
    global _supabase_client
    if _supabase_client is None:
        if settings is None:
            settings = get_settings()
        # Prefer new secret key, fall back to legacy service_role_key
        api_key = settings.supabase_secret_key or settings.supabase_service_role_key
        if not api_key:
            raise ValueError("Either SUPABASE_SECRET_KEY or SUPABASE_SERVICE_ROLE_KEY must be set")
        _supabase_client = create_client(settings.supabase_url, api_key)
    return _supabase_client


def get_db(settings: Annotated[Settings, Depends(get_settings)]) -> Client:
    """FastAPI dependency for Supabase client."""
    return get_supabase_client(settings)


# Type alias for dependency injection
Database = Annotated[Client, Depends(get_db)]


# =============================================================================
# Table Names
# =============================================================================

USERS_TABLE = "users"
KYC_SUBMISSIONS_TABLE = "kyc_submissions"
ESCROWS_TABLE = "escrow_transactions"
PAYMENT_INTENTS_TABLE = "payment_intents"
PAYOUTS_TABLE = "payouts"
DISPUTES_TABLE = "disputes"
EVIDENCE_TABLE = "evidence"
AUDIT_LOGS_TABLE = "audit_logs"
WEBHOOK_EVENTS_TABLE = "webhook_events"

# Postgres SQLSTATE for unique_violation
UNIQUE_VIOLATION = "23505"


def new_id() -> str:
    """Generate a primary key for a new row."""
    return str(uuid.uuid4())


def utcnow() -> str:
    """Current UTC time as an ISO-8601 string, the format PostgREST accepts."""
    return datetime.now(timezone.utc).isoformat()


def is_unique_violation(error: Exception) -> bool:
    """Check whether a PostgREST error was raised by a unique constraint."""
    return isinstance(error, APIError) and error.code == UNIQUE_VIOLATION


# =============================================================================
# User Operations
# =============================================================================


async def create_user(db: Client, email: str, password_hash: str, role: str) -> dict | None:
    """Create a new user with KYC not yet submitted."""
    now = utcnow()
    data = {
        "id": new_id(),
        "email": email,
        "password_hash": password_hash,
        "role": role,
        "kyc_status": "pending",
        "created_at": now,
        "updated_at": now,
    }
    result = db.table(USERS_TABLE).insert(data).execute()
    return result.data[0] if result.data else None


async def get_user(db: Client, user_id: str) -> dict | None:
    """Get a user by ID."""
    result = db.table(USERS_TABLE).select("*").eq("id", user_id).execute()
    return result.data[0] if result.data else None


async def get_user_by_email(db: Client, email: str) -> dict | None:
    """Get a user by (normalised) email address."""
    result = db.table(USERS_TABLE).select("*").eq("email", email).limit(1).execute()
    return result.data[0] if result.data else None


async def get_users_by_ids(db: Client, user_ids: list[str]) -> dict[str, dict]:
    """Batch fetch users, keyed by ID."""
    ids = [uid for uid in set(user_ids) if uid]
    if not ids:
        return {}
    result = db.table(USERS_TABLE).select("id, email, role, kyc_status").in_("id", ids).execute()
    return {row["id"]: row for row in result.data or []}


async def find_user_ids_by_email(db: Client, fragment: str) -> list[str]:
    """IDs of users whose email contains ``fragment`` (case-insensitive)."""
    result = db.table(USERS_TABLE).select("id").ilike("email", f"%{fragment}%").execute()
    return [row["id"] for row in result.data or []]


async def get_kyc_status(db: Client, user_id: str) -> str | None:
    """Read a user's current KYC status straight from the store."""
    result = db.table(USERS_TABLE).select("kyc_status").eq("id", user_id).execute()
    return result.data[0]["kyc_status"] if result.data else None


async def set_kyc_status(db: Client, user_id: str, kyc_status: str) -> dict | None:
    """Update a user's KYC status."""
    result = (
        db.table(USERS_TABLE)
        .update({"kyc_status": kyc_status, "updated_at": utcnow()})
        .eq("id", user_id)
        .execute()
    )
    return result.data[0] if result.data else None


# =============================================================================
# Audit Log
# =============================================================================


async def write_audit_log(
    db: Client,
    actor_id: str,
    action: str,
    entity: str,
    entity_id: str,
    metadata: dict[str, Any] | None = None,
) -> dict | None:
    """Append an audit row. Every mutating action writes one."""
    data = {
        "id": new_id(),
        "actor_id": actor_id,
        "action": action,
        "entity": entity,
        "entity_id": entity_id,
        "metadata": metadata or {},
        "created_at": utcnow(),
    }
    result = db.table(AUDIT_LOGS_TABLE).insert(data).execute()
    return result.data[0] if result.data else None


async def list_audit_logs(
    db: Client,
    entity: str | None = None,
    entity_id: str | None = None,
    actor_id: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[dict], int]:
    """List audit rows, newest first."""
    query = db.table(AUDIT_LOGS_TABLE).select("*", count="exact")
    if entity:
        query = query.eq("entity", entity)
    if entity_id:
        query = query.eq("entity_id", entity_id)
    if actor_id:
        query = query.eq("actor_id", actor_id)

    result = query.order("created_at", desc=True).range(offset, offset + limit - 1).execute()
    return result.data or [], result.count or 0
