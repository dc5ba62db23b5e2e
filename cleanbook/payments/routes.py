import uuid

import stripe
import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from cleanbook.database import get_db
from cleanbook.dependencies import get_engine, get_store, require_admin
from cleanbook.models.webhook_event import ProcessedWebhookEvent
from cleanbook.schemas.payment import (
    ConnectedAccountRequest,
    ConnectedAccountResponse,
    PaymentIntentCreateRequest,
    PaymentIntentResponse,
    RefundRequest,
    RefundResponse,
)
from cleanbook.services.booking_store import BookingStore
from cleanbook.services.lifecycle import BookingLifecycleEngine
from cleanbook.services.stripe_service import verify_webhook_signature
from cleanbook.utils.rate_limit import CHECKOUT_RATE_LIMIT, limiter

logger = structlog.get_logger()
router = APIRouter()

MAX_WEBHOOK_PAYLOAD_BYTES = 65_536

# Processor events the engine records; everything else is acknowledged and ignored
HANDLED_EVENTS = frozenset({
    "payment_intent.succeeded",
    "payment_intent.payment_failed",
    "payment_intent.canceled",
    "charge.refunded",
})


@router.post("/intents", response_model=PaymentIntentResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(CHECKOUT_RATE_LIMIT)
async def create_payment_intent(
    request: Request,
    body: PaymentIntentCreateRequest,
    engine: BookingLifecycleEngine = Depends(get_engine),
):
    """First checkout phase: create the intent the customer confirms client-side."""
    metadata = {}
    if body.customer_id:
        metadata["customer_id"] = str(body.customer_id)
    if body.service_name:
        metadata["service_name"] = body.service_name

    quote = await engine.start_checkout(body.business_id, body.total_cost, metadata)
    return PaymentIntentResponse(
        client_secret=quote.handle.client_secret,
        payment_intent_id=quote.handle.intent_id,
        using_connect=quote.handle.using_connect,
        total_cost=quote.fees.total_cost,
        platform_fee=quote.fees.platform_fee,
        business_earnings=quote.fees.business_earnings,
    )


@router.post("/refund", response_model=RefundResponse, dependencies=[Depends(require_admin)])
@limiter.limit("10/minute")
async def refund_booking(
    request: Request,
    body: RefundRequest,
    engine: BookingLifecycleEngine = Depends(get_engine),
):
    """Admin refund of a declined booking or a cancellation whose refund failed."""
    outcome = await engine.refund_booking(body.booking_id)
    logger.info("admin_refund", booking_id=str(body.booking_id), success=outcome.success)
    return RefundResponse(
        success=outcome.success,
        booking_id=body.booking_id,
        refund={
            "attempted": outcome.attempted,
            "success": outcome.success,
            "refund_id": outcome.refund_id,
            "error": outcome.error,
        },
    )


@router.put(
    "/connected-accounts/{business_id}",
    response_model=ConnectedAccountResponse,
    dependencies=[Depends(require_admin)],
)
async def save_connected_account(
    business_id: uuid.UUID,
    body: ConnectedAccountRequest,
    store: BookingStore = Depends(get_store),
):
    """Record the business's connected payout account, set during onboarding."""
    account = await store.upsert_connected_account(
        business_id, body.stripe_connect_account_id, body.charges_enabled
    )
    return account


@router.post("/webhooks/stripe")
@limiter.limit("100/minute")
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    engine: BookingLifecycleEngine = Depends(get_engine),
):
    """Record asynchronous payment events. Booking status is never changed here."""
    content_length = request.headers.get("content-length")
    try:
        if content_length and int(content_length) > MAX_WEBHOOK_PAYLOAD_BYTES:
            raise HTTPException(status_code=413, detail="Payload too large")
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid Content-Length header")

    payload = await request.body()
    if len(payload) > MAX_WEBHOOK_PAYLOAD_BYTES:
        raise HTTPException(status_code=413, detail="Payload too large")

    sig_header = request.headers.get("stripe-signature", "")
    try:
        event = verify_webhook_signature(payload, sig_header)
    except (stripe.SignatureVerificationError, ValueError) as e:
        logger.error("stripe_webhook_signature_failed", error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid signature")

    event_id = event["id"]
    event_type = event["type"]

    # Never log data.object: it can carry card and customer details
    existing = await db.execute(
        select(ProcessedWebhookEvent).where(ProcessedWebhookEvent.event_id == event_id)
    )
    if existing.scalar_one_or_none():
        logger.info("stripe_webhook_duplicate_skipped", event_id=event_id)
        return {"status": "already_processed"}

    # Marked before processing; a redelivery is skipped rather than applied twice
    try:
        db.add(ProcessedWebhookEvent(event_id=event_id, event_type=event_type))
        await db.flush()
    except IntegrityError:
        await db.rollback()
        logger.info("stripe_webhook_duplicate_race", event_id=event_id)
        return {"status": "already_processed"}

    logger.info("stripe_webhook_received", event_type=event_type, event_id=event_id)

    if event_type not in HANDLED_EVENTS:
        return {"status": "ignored"}

    obj = event["data"]["object"]
    if event_type == "charge.refunded":
        intent_id = obj.get("payment_intent")
        failure_reason = None
    else:
        intent_id = obj.get("id")
        last_error = obj.get("last_payment_error") or {}
        failure_reason = last_error.get("message")

    if not intent_id:
        logger.warning("stripe_webhook_missing_intent", event_id=event_id, event_type=event_type)
        return {"status": "ignored"}

    payment = await engine.apply_payment_event(event_type, intent_id, failure_reason)
    return {"status": "processed" if payment is not None else "unmatched"}
