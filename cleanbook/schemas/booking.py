import uuid
from datetime import date, datetime, time
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field, field_validator

from cleanbook.models.enums import (
    BookingStatus,
    CancelledBy,
    PaymentStatus,
    RefundStatus,
    SettlementKind,
)


class BookingCreateRequest(BaseModel):
    """Second checkout phase: the booking details plus the confirmed client secret."""
    customer_id: uuid.UUID
    customer_name: str = Field(max_length=200)
    customer_email: str = Field(max_length=255, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    customer_phone: str | None = Field(None, max_length=30)
    business_id: uuid.UUID
    business_name: str = Field(max_length=200)
    service_id: uuid.UUID
    service_name: str = Field(max_length=200)
    category: str = Field(max_length=100)
    requested_date: date
    requested_time: time
    total_cost: Decimal = Field(gt=0, max_digits=10, decimal_places=2)
    special_instructions: str | None = Field(None, max_length=2000)
    client_secret: str = Field(min_length=1, max_length=500)


class BookingStatusUpdateRequest(BaseModel):
    status: Literal["accepted", "declined"]
    # Blank messages are rejected by the engine when declining
    response_message: str | None = Field(None, max_length=2000)


class BookingCancelRequest(BaseModel):
    cancelled_by: CancelledBy
    reason: str | None = Field(None, max_length=2000)


class PaymentSummary(BaseModel):
    stripe_payment_intent_id: str | None
    card_last4: str | None
    card_brand: str | None
    amount: Decimal
    currency: str
    status: PaymentStatus
    settlement_mode: SettlementKind
    paid_at: datetime | None
    refunded_at: datetime | None = None

    model_config = {"from_attributes": True}


class BookingResponse(BaseModel):
    id: uuid.UUID
    customer_id: uuid.UUID
    customer_name: str
    customer_email: str
    customer_phone: str | None
    business_id: uuid.UUID
    business_name: str
    service_id: uuid.UUID
    service_name: str
    category: str
    requested_date: date
    requested_time: time
    total_cost: Decimal
    platform_fee: Decimal
    business_earnings: Decimal
    status: BookingStatus
    special_instructions: str | None
    response_message: str | None
    cancellation_reason: str | None
    cancelled_by: CancelledBy | None
    refund_status: RefundStatus | None
    refund_id: str | None
    payment_intent_id: str | None
    payment: PaymentSummary | None
    created_at: datetime
    updated_at: datetime
    reviewed_at: datetime | None
    completed_at: datetime | None
    cancelled_at: datetime | None

    model_config = {"from_attributes": True}

    @field_validator("total_cost", "platform_fee", "business_earnings")
    @classmethod
    def two_places(cls, v: Decimal) -> Decimal:
        # SQLite hands Numeric back as a float-derived Decimal
        return v.quantize(Decimal("0.01"))


class BookingEnvelope(BaseModel):
    success: bool = True
    booking: BookingResponse


class RefundResult(BaseModel):
    attempted: bool
    success: bool
    refund_id: str | None = None
    error: str | None = None


class BookingCancelResponse(BookingEnvelope):
    refund: RefundResult


class BookingListResponse(BaseModel):
    success: bool = True
    bookings: list[BookingResponse]
