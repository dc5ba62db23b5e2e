import uuid
from datetime import date, datetime, time
from decimal import Decimal

from sqlalchemy import CheckConstraint, Date, DateTime, Index, Numeric, String, Text, Time, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from cleanbook.database import Base
from cleanbook.models.enums import BookingStatus, CancelledBy, RefundStatus
from cleanbook.models.types import GUID, StrEnum, utcnow


class BookingRequest(Base):
    __tablename__ = "booking_requests"
    __table_args__ = (
        CheckConstraint("total_cost > 0", name="ck_booking_total_cost_positive"),
        CheckConstraint("platform_fee >= 0", name="ck_booking_platform_fee_positive"),
        CheckConstraint(
            "status IN ('pending', 'accepted', 'declined', 'completed', 'cancelled')",
            name="ck_booking_status",
        ),
        Index("ix_booking_business_created", "business_id", "created_at"),
        Index("ix_booking_customer_created", "customer_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)

    # Parties
    customer_id: Mapped[uuid.UUID] = mapped_column(GUID(), nullable=False, index=True)
    customer_name: Mapped[str] = mapped_column(String(200), nullable=False)
    customer_email: Mapped[str] = mapped_column(String(255), nullable=False)
    customer_phone: Mapped[str | None] = mapped_column(String(30), nullable=True)
    business_id: Mapped[uuid.UUID] = mapped_column(GUID(), nullable=False, index=True)
    business_name: Mapped[str] = mapped_column(String(200), nullable=False)

    # Service reference
    service_id: Mapped[uuid.UUID] = mapped_column(GUID(), nullable=False)
    service_name: Mapped[str] = mapped_column(String(200), nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False)

    # Schedule, chosen by the customer and never rewritten
    requested_date: Mapped[date] = mapped_column(Date, nullable=False)
    requested_time: Mapped[time] = mapped_column(Time, nullable=False)

    total_cost: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    platform_fee: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    business_earnings: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)

    status: Mapped[BookingStatus] = mapped_column(
        StrEnum(BookingStatus), nullable=False, default=BookingStatus.PENDING, index=True
    )

    special_instructions: Mapped[str | None] = mapped_column(Text, nullable=True)
    response_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancelled_by: Mapped[CancelledBy | None] = mapped_column(StrEnum(CancelledBy, 10), nullable=True)

    # Refund outcome is recorded even when the processor call fails
    refund_status: Mapped[RefundStatus | None] = mapped_column(StrEnum(RefundStatus, 10), nullable=True)
    refund_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    refund_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    payment: Mapped["Payment"] = relationship(
        "Payment", back_populates="booking", uselist=False, lazy="selectin"
    )

    @property
    def payment_intent_id(self) -> str | None:
        return self.payment.stripe_payment_intent_id if self.payment else None
