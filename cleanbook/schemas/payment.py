import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from cleanbook.schemas.booking import RefundResult


class PaymentIntentCreateRequest(BaseModel):
    business_id: uuid.UUID
    total_cost: Decimal = Field(gt=0, max_digits=10, decimal_places=2)
    customer_id: uuid.UUID | None = None
    service_name: str | None = Field(None, max_length=200)


class PaymentIntentResponse(BaseModel):
    success: bool = True
    client_secret: str
    payment_intent_id: str
    using_connect: bool
    total_cost: Decimal
    platform_fee: Decimal
    business_earnings: Decimal


class RefundRequest(BaseModel):
    booking_id: uuid.UUID


class RefundResponse(BaseModel):
    success: bool
    booking_id: uuid.UUID
    refund: RefundResult


class ConnectedAccountRequest(BaseModel):
    stripe_connect_account_id: str = Field(pattern=r"^acct_[A-Za-z0-9]+$", max_length=255)
    charges_enabled: bool = True


class ConnectedAccountResponse(BaseModel):
    business_id: uuid.UUID
    stripe_connect_account_id: str
    charges_enabled: bool
    updated_at: datetime

    model_config = {"from_attributes": True}
