import uuid
from typing import Any

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from cleanbook.dependencies import get_booking_cache, get_engine, get_store, is_admin_key
from cleanbook.models.booking import BookingRequest
from cleanbook.models.enums import BookingStatus, CancelledBy
from cleanbook.schemas.booking import (
    BookingCancelRequest,
    BookingCancelResponse,
    BookingCreateRequest,
    BookingEnvelope,
    BookingListResponse,
    BookingResponse,
    BookingStatusUpdateRequest,
)
from cleanbook.services.booking_cache import BUSINESS, CUSTOMER, BookingViewCache
from cleanbook.services.booking_store import BookingStore
from cleanbook.services.lifecycle import BookingDraft, BookingLifecycleEngine
from cleanbook.utils.rate_limit import BOOKING_WRITE_RATE_LIMIT, CHECKOUT_RATE_LIMIT, LIST_RATE_LIMIT, limiter

logger = structlog.get_logger()
router = APIRouter()


def _serialize_booking(booking: BookingRequest) -> dict[str, Any]:
    return BookingResponse.model_validate(booking).model_dump(mode="json")


@router.post("", response_model=BookingEnvelope, status_code=status.HTTP_201_CREATED)
@limiter.limit(CHECKOUT_RATE_LIMIT)
async def create_booking(
    request: Request,
    body: BookingCreateRequest,
    engine: BookingLifecycleEngine = Depends(get_engine),
):
    """Create a pending booking once the customer's payment is confirmed."""
    draft = BookingDraft(**body.model_dump(exclude={"client_secret"}))
    booking = await engine.complete_checkout(draft, body.client_secret)
    return {"success": True, "booking": _serialize_booking(booking)}


@router.get("/business/{business_id}", response_model=BookingListResponse)
@limiter.limit(LIST_RATE_LIMIT)
async def list_business_bookings(
    request: Request,
    business_id: uuid.UUID,
    store: BookingStore = Depends(get_store),
    cache: BookingViewCache = Depends(get_booking_cache),
):
    async def load() -> list[dict[str, Any]]:
        return [_serialize_booking(b) for b in await store.list_by_business(business_id)]

    return {"success": True, "bookings": await cache.get_or_load(BUSINESS, business_id, load)}


@router.get("/customer/{customer_id}", response_model=BookingListResponse)
@limiter.limit(LIST_RATE_LIMIT)
async def list_customer_bookings(
    request: Request,
    customer_id: uuid.UUID,
    store: BookingStore = Depends(get_store),
    cache: BookingViewCache = Depends(get_booking_cache),
):
    async def load() -> list[dict[str, Any]]:
        return [_serialize_booking(b) for b in await store.list_by_customer(customer_id)]

    return {"success": True, "bookings": await cache.get_or_load(CUSTOMER, customer_id, load)}


@router.get("/{booking_id}", response_model=BookingEnvelope)
async def get_booking(booking_id: uuid.UUID, store: BookingStore = Depends(get_store)):
    booking = await store.get(booking_id)
    return {"success": True, "booking": _serialize_booking(booking)}


@router.patch("/{booking_id}/status", response_model=BookingEnvelope)
@limiter.limit(BOOKING_WRITE_RATE_LIMIT)
async def update_booking_status(
    request: Request,
    booking_id: uuid.UUID,
    body: BookingStatusUpdateRequest,
    engine: BookingLifecycleEngine = Depends(get_engine),
):
    """Business accepts or declines a pending request. Declining needs a message."""
    booking = await engine.respond(booking_id, BookingStatus(body.status), body.response_message)
    return {"success": True, "booking": _serialize_booking(booking)}


@router.patch("/{booking_id}/cancel", response_model=BookingCancelResponse)
@limiter.limit(BOOKING_WRITE_RATE_LIMIT)
async def cancel_booking(
    request: Request,
    booking_id: uuid.UUID,
    body: BookingCancelRequest,
    x_admin_key: str | None = Header(None),
    engine: BookingLifecycleEngine = Depends(get_engine),
):
    """Cancel an accepted booking. The payment is refunded before the cancellation is saved."""
    if body.cancelled_by == CancelledBy.ADMIN and not is_admin_key(x_admin_key):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")

    result = await engine.cancel(booking_id, body.cancelled_by, body.reason)
    refund = result.refund
    return {
        "success": True,
        "booking": _serialize_booking(result.booking),
        "refund": {
            "attempted": refund.attempted,
            "success": refund.success,
            "refund_id": refund.refund_id,
            "error": refund.error,
        },
    }


@router.patch("/{booking_id}/complete", response_model=BookingEnvelope)
@limiter.limit(BOOKING_WRITE_RATE_LIMIT)
async def complete_booking(
    request: Request,
    booking_id: uuid.UUID,
    engine: BookingLifecycleEngine = Depends(get_engine),
):
    booking = await engine.complete(booking_id)
    return {"success": True, "booking": _serialize_booking(booking)}


@router.post("/{booking_id}/withdraw", response_model=BookingEnvelope)
async def withdraw_booking(booking_id: uuid.UUID, engine: BookingLifecycleEngine = Depends(get_engine)):
    """Not offered yet; always answers 501."""
    booking = await engine.withdraw(booking_id)
    return {"success": True, "booking": _serialize_booking(booking)}
