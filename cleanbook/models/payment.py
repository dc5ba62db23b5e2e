import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Numeric, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from cleanbook.database import Base
from cleanbook.models.enums import PaymentStatus, SettlementKind
from cleanbook.models.types import GUID, StrEnum, utcnow


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payment_amount_positive"),
        CheckConstraint(
            "settlement_mode = 'platform_only' OR connected_account_id IS NOT NULL",
            name="ck_payment_connected_account",
        ),
        # One charge backs at most one booking
        UniqueConstraint("stripe_payment_intent_id", name="uq_payments_stripe_payment_intent_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("booking_requests.id", ondelete="RESTRICT"), nullable=False, unique=True
    )
    stripe_payment_intent_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    card_last4: Mapped[str | None] = mapped_column(String(4), nullable=True)
    card_brand: Mapped[str | None] = mapped_column(String(30), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    platform_fee: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    business_earnings: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="gbp")
    status: Mapped[PaymentStatus] = mapped_column(
        StrEnum(PaymentStatus), nullable=False, default=PaymentStatus.SUCCEEDED
    )
    # Chosen once when the intent is created; the refund path reads it back
    settlement_mode: Mapped[SettlementKind] = mapped_column(StrEnum(SettlementKind), nullable=False)
    connected_account_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())

    booking: Mapped["BookingRequest"] = relationship("BookingRequest", back_populates="payment", lazy="raise")
