"""Payment and payout gateway callbacks.

Every delivery is first recorded in ``webhook_events``. The unique key on
(source, event_type, external_reference) makes redelivery of a processed
event a no-op: the insert fails and the handler answers "Event already
processed". A redelivered event whose first attempt never finished
(``processed`` still false) is handled again.
"""

import json

from fastapi import APIRouter, HTTPException, Request, status
from postgrest.exceptions import APIError

from ..config import get_settings
from ..database import (
    ESCROWS_TABLE,
    PAYMENT_INTENTS_TABLE,
    PAYOUTS_TABLE,
    WEBHOOK_EVENTS_TABLE,
    Database,
    is_unique_violation,
    new_id,
    utcnow,
    write_audit_log,
)
from ..lifecycle import (
    EscrowStatus,
    InvalidTransitionError,
    PaymentIntentStatus,
    PayoutStatus,
)
from ..logging_config import get_logger, log_webhook_event
from ..payments import (
    PAYMENT_SOURCE,
    PAYOUT_SOURCE,
    SIGNATURE_HEADER,
    GatewayEvent,
    WebhookVerificationError,
    parse_gateway_event,
    verify_signature,
)
from ..payments.verification import UNKNOWN_EVENT
from ..transitions import advance_payout, atomic_transition, get_escrow, get_payout
from .escrow import create_payment_intent, get_payment_intent_by_reference

logger = get_logger("escao.webhooks")
router = APIRouter(prefix="/webhooks", tags=["webhooks"])

SYSTEM_ACTOR = "system"
PAYMENT_SUCCEEDED = "payment_succeeded"


# =============================================================================
# Helpers
# =============================================================================


async def read_verified_event(request: Request, source: str) -> GatewayEvent:
    """Check the signature on the raw body, then parse it."""
    body = await request.body()
    try:
        verify_signature(body, request.headers.get(SIGNATURE_HEADER), get_settings().webhook_secret)
    except WebhookVerificationError as e:
        log_webhook_event(source, UNKNOWN_EVENT, None, e.error_code.lower())
        code = (
            status.HTTP_400_BAD_REQUEST
            if e.error_code == "MISSING_SIGNATURE"
            else status.HTTP_401_UNAUTHORIZED
        )
        raise HTTPException(status_code=code, detail=str(e))

    try:
        return parse_gateway_event(source, json.loads(body))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid payload: {e}")


async def record_event(db, event: GatewayEvent) -> dict | None:
    """Insert the event; None when an earlier delivery was fully processed.

    An unfinished earlier delivery returns its row so the caller retries it.
    """
    data = {
        "id": new_id(),
        "source": event.source,
        "event_type": event.event_type,
        "external_reference": event.idempotency_key,
        "payload": event.raw,
        "processed": False,
        "created_at": utcnow(),
    }
    try:
        result = db.table(WEBHOOK_EVENTS_TABLE).insert(data).execute()
    except APIError as e:
        if not is_unique_violation(e):
            raise
        existing = await get_event(db, event)
        if existing is None or existing.get("processed"):
            return None
        logger.info(
            f"Retrying unprocessed {event.source} event {event.event_type} | ref={event.idempotency_key}"
        )
        return existing
    return result.data[0] if result.data else data


async def get_event(db, event: GatewayEvent) -> dict | None:
    result = (
        db.table(WEBHOOK_EVENTS_TABLE)
        .select("*")
        .eq("source", event.source)
        .eq("event_type", event.event_type)
        .eq("external_reference", event.idempotency_key)
        .execute()
    )
    return result.data[0] if result.data else None


async def mark_processed(db, event_row: dict) -> None:
    db.table(WEBHOOK_EVENTS_TABLE).update({"processed": True}).eq("id", event_row["id"]).execute()


async def get_payout_by_reference(db, pg_reference: str) -> dict | None:
    result = db.table(PAYOUTS_TABLE).select("*").eq("pg_reference", pg_reference).execute()
    return result.data[0] if result.data else None


async def fund_from_webhook(db, escrow_id: str, pg_reference: str) -> dict | None:
    """Move the escrow from 'created' to 'funded' unless someone already did."""
    escrow = await get_escrow(db, escrow_id)
    if not escrow:
        logger.warning(f"Payment {pg_reference} references missing escrow {escrow_id}")
        return None
    if escrow["status"] != EscrowStatus.CREATED.value:
        return escrow

    try:
        return await atomic_transition(
            db, escrow, "fund", SYSTEM_ACTOR, {"pg_reference": pg_reference, "via": "webhook"}
        )
    except InvalidTransitionError as e:
        # Funded concurrently through the API
        logger.info(f"Escrow {escrow_id} not funded by webhook: {e.message}")
        return await get_escrow(db, escrow_id)


async def settle_payout_escrow(db, escrow_id: str, payout_id: str) -> dict | None:
    """Complete a released escrow once its payout is confirmed sent."""
    escrow = await get_escrow(db, escrow_id)
    if not escrow or escrow["status"] != EscrowStatus.RELEASED.value:
        return escrow

    try:
        return await atomic_transition(
            db, escrow, "payout_settled", SYSTEM_ACTOR, {"payout_id": payout_id}
        )
    except InvalidTransitionError as e:
        logger.info(f"Escrow {escrow_id} not settled by webhook: {e.message}")
        return await get_escrow(db, escrow_id)


# =============================================================================
# Routes
# =============================================================================


@router.post("/payments")
async def payment_webhook(request: Request, db: Database):
    """
    Payment gateway callback.

    ``payment_succeeded`` marks the payment intent for ``pg_ref`` as paid
    (creating it when the payload names an ``escrow_id``) and funds the
    escrow. A payment for a cancelled escrow is flagged for reconciliation.
    Other event types are recorded only.
    """
    event = await read_verified_event(request, PAYMENT_SOURCE)
    logger.info(f"POST /webhooks/payments | event={event.event_type} | ref={event.reference}")

    if event.event_type == PAYMENT_SUCCEEDED and not event.reference:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="pg_ref is required")

    event_row = await record_event(db, event)
    if event_row is None:
        log_webhook_event(event.source, event.event_type, event.reference, "duplicate")
        return {"message": "Event already processed"}

    if event.event_type != PAYMENT_SUCCEEDED:
        await mark_processed(db, event_row)
        log_webhook_event(event.source, event.event_type, event.reference, "recorded")
        return {"message": "Event recorded"}

    # Set once this delivery is the one that marks the payment paid
    received = False
    intent = await get_payment_intent_by_reference(db, event.reference)
    if not intent and event.escrow_id:
        try:
            intent = await create_payment_intent(
                db, event.escrow_id, event.method, event.reference, raw_payload=event.raw
            )
            received = True
        except APIError as e:
            if not is_unique_violation(e):
                raise
            intent = await get_payment_intent_by_reference(db, event.reference)

    if not intent:
        log_webhook_event(event.source, event.event_type, event.reference, "unmatched")
        return {"message": "No matching payment intent"}

    if intent["status"] != PaymentIntentStatus.PAID.value:
        result = (
            db.table(PAYMENT_INTENTS_TABLE)
            .update(
                {"status": PaymentIntentStatus.PAID.value, "paid_at": utcnow(), "raw_payload": event.raw}
            )
            .eq("id", intent["id"])
            .eq("status", intent["status"])
            .execute()
        )
        received = bool(result.data)

    if received:
        await write_audit_log(
            db,
            SYSTEM_ACTOR,
            "payment_received",
            PAYMENT_INTENTS_TABLE,
            intent["id"],
            {"pg_reference": event.reference, "escrow_id": intent["escrow_id"]},
        )
    escrow = await fund_from_webhook(db, intent["escrow_id"], event.reference)

    if escrow and escrow["status"] == EscrowStatus.CANCELLED.value:
        # Cancelled escrows cannot be funded; the payment is returned by hand
        logger.warning(
            f"Payment {event.reference} received for cancelled escrow {escrow['id']}; needs reconciliation"
        )
        await write_audit_log(
            db,
            SYSTEM_ACTOR,
            "payment_on_cancelled",
            ESCROWS_TABLE,
            escrow["id"],
            {"pg_reference": event.reference, "payment_intent_id": intent["id"]},
        )
        await mark_processed(db, event_row)
        log_webhook_event(event.source, event.event_type, event.reference, "cancelled_escrow")
        return {
            "message": "Payment received for cancelled escrow",
            "escrow_id": escrow["id"],
            "escrow_status": escrow["status"],
            "needs_reconciliation": True,
        }

    await mark_processed(db, event_row)
    log_webhook_event(event.source, event.event_type, event.reference, "processed")

    return {
        "message": "Payment processed",
        "escrow_id": intent["escrow_id"],
        "escrow_status": escrow["status"] if escrow else None,
    }


@router.post("/payouts")
async def payout_webhook(request: Request, db: Database):
    """
    Payout gateway callback.

    The payout is found by ``pg_ref``, or by ``payout_id`` in which case it
    adopts the gateway reference. Status ``sent`` marks the payout sent and
    completes the escrow.
    """
    event = await read_verified_event(request, PAYOUT_SOURCE)
    if event.event_type == UNKNOWN_EVENT and event.status:
        event.event_type = f"payout_{event.status}"
    logger.info(
        f"POST /webhooks/payouts | event={event.event_type} | ref={event.reference} | status={event.status}"
    )

    if not event.reference and not event.payout_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="pg_ref or payout_id is required",
        )

    event_row = await record_event(db, event)
    if event_row is None:
        log_webhook_event(event.source, event.event_type, event.reference, "duplicate")
        return {"message": "Event already processed"}

    payout = await get_payout_by_reference(db, event.reference) if event.reference else None
    if not payout and event.payout_id:
        payout = await get_payout(db, event.payout_id)
        if payout and event.reference and payout.get("pg_reference") != event.reference:
            result = (
                db.table(PAYOUTS_TABLE)
                .update({"pg_reference": event.reference})
                .eq("id", payout["id"])
                .execute()
            )
            payout = result.data[0] if result.data else payout

    if not payout:
        log_webhook_event(event.source, event.event_type, event.reference, "unmatched")
        return {"message": "No matching payout"}

    escrow = None
    if event.status == PayoutStatus.SENT.value:
        if payout["status"] == PayoutStatus.PENDING.value:
            try:
                payout = await advance_payout(
                    db, payout, PayoutStatus.SENT, SYSTEM_ACTOR, {"pg_reference": event.reference}
                )
            except InvalidTransitionError as e:
                logger.info(f"Payout {payout['id']} not advanced by webhook: {e.message}")
                payout = await get_payout(db, payout["id"])
        escrow = await settle_payout_escrow(db, payout["escrow_id"], payout["id"])

    await mark_processed(db, event_row)
    log_webhook_event(event.source, event.event_type, event.reference, "processed")

    return {
        "message": "Payout processed",
        "payout_id": payout["id"],
        "payout_status": payout["status"],
        "escrow_status": escrow["status"] if escrow else None,
    }
