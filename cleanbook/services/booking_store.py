import uuid
from collections.abc import Callable, Sequence
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import event, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from cleanbook.exceptions import BookingNotFound, PaymentAlreadyUsed, PersistenceError
from cleanbook.models.booking import BookingRequest
from cleanbook.models.business_account import BusinessStripeAccount
from cleanbook.models.enums import BookingStatus, CancelledBy, PaymentStatus, RefundStatus
from cleanbook.models.payment import Payment
from cleanbook.utils.booking_state import validate_transition

logger = structlog.get_logger()

REQUIRED_FIELDS = ("customer_id", "business_id", "service_id", "requested_date", "requested_time")
PAYMENT_INTENT_UNIQUE = "stripe_payment_intent_id"

# Columns a status change may touch alongside ``status``. Schedule, parties,
# amounts and special instructions are fixed at creation.
MUTABLE_ON_TRANSITION = frozenset({
    "response_message",
    "cancellation_reason",
    "cancelled_by",
    "refund_status",
    "refund_id",
    "refund_error",
    "reviewed_at",
    "completed_at",
    "cancelled_at",
})


def _is_intent_conflict(exc: IntegrityError) -> bool:
    # Postgres names the constraint, SQLite names the column; both contain it
    message = str(exc.orig).lower()
    return PAYMENT_INTENT_UNIQUE in message and ("unique" in message or "duplicate" in message)


class BookingStore:
    """Durable booking records plus the per-business and per-customer views.

    All writes go through the caller's session and are flushed immediately;
    the request scope (``get_db``) owns the commit.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    def after_commit(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` once the request transaction commits."""
        event.listen(self.db.sync_session, "after_commit", lambda session: callback(), once=True)

    @asynccontextmanager
    async def _guard(self, operation: str, **log_fields):
        try:
            yield
        except IntegrityError as e:
            await self.db.rollback()
            if _is_intent_conflict(e):
                logger.warning("payment_intent_reused", operation=operation, **log_fields)
                raise PaymentAlreadyUsed() from None
            logger.warning("booking_store_conflict", operation=operation, error=str(e.orig), **log_fields)
            raise PersistenceError(f"Conflicting booking data during {operation}") from None
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.exception("booking_store_failed", operation=operation, **log_fields)
            raise PersistenceError(f"Booking store unavailable during {operation}: {e.__class__.__name__}") from None

    async def create(self, booking: BookingRequest, payment: Payment | None) -> BookingRequest:
        missing = [name for name in REQUIRED_FIELDS if getattr(booking, name, None) is None]
        if payment is None:
            missing.append("payment")
        if missing:
            raise PersistenceError(f"Missing required booking fields: {', '.join(missing)}")

        async with self._guard("create", booking_id=str(booking.id) if booking.id else None):
            if booking.id is not None and await self.db.get(BookingRequest, booking.id) is not None:
                raise PersistenceError(f"Booking {booking.id} already exists")
            booking.status = BookingStatus.PENDING
            booking.payment = payment
            self.db.add(booking)
            await self.db.flush()

        logger.info("booking_persisted", booking_id=str(booking.id), business_id=str(booking.business_id))
        return booking

    async def get(self, booking_id: uuid.UUID) -> BookingRequest:
        async with self._guard("get", booking_id=str(booking_id)):
            booking = await self.db.get(BookingRequest, booking_id)
        if booking is None:
            raise BookingNotFound(f"Booking {booking_id} not found")
        return booking

    async def _list(self, *criteria) -> Sequence[BookingRequest]:
        async with self._guard("list"):
            result = await self.db.execute(
                select(BookingRequest).where(*criteria).order_by(BookingRequest.created_at.desc())
            )
            return result.scalars().all()

    async def list_by_business(self, business_id: uuid.UUID) -> Sequence[BookingRequest]:
        return await self._list(BookingRequest.business_id == business_id)

    async def list_by_customer(self, customer_id: uuid.UUID) -> Sequence[BookingRequest]:
        return await self._list(BookingRequest.customer_id == customer_id)

    async def update_status(
        self,
        booking_id: uuid.UUID,
        new_status: BookingStatus,
        fields: dict[str, Any] | None = None,
        actor: CancelledBy | None = None,
    ) -> BookingRequest:
        """The only writer of ``BookingRequest.status``."""
        fields = fields or {}
        unknown = set(fields) - MUTABLE_ON_TRANSITION
        if unknown:
            raise ValueError(f"Fields cannot change on a status transition: {sorted(unknown)}")

        booking = await self.get(booking_id)
        validate_transition(booking.status, new_status, actor)

        previous = booking.status
        async with self._guard("update_status", booking_id=str(booking_id)):
            booking.status = new_status
            for name, value in fields.items():
                setattr(booking, name, value)
            if fields.get("refund_status") == RefundStatus.PROCESSED:
                self._mark_payment_refunded(booking)
            booking.updated_at = datetime.now(timezone.utc)
            await self.db.flush()

        logger.info(
            "booking_status_updated",
            booking_id=str(booking_id),
            from_status=previous.value,
            to_status=new_status.value,
        )
        return booking

    @staticmethod
    def _mark_payment_refunded(booking: BookingRequest) -> None:
        if booking.payment is not None and booking.payment.status != PaymentStatus.REFUNDED:
            booking.payment.status = PaymentStatus.REFUNDED
            booking.payment.refunded_at = datetime.now(timezone.utc)

    async def record_refund(
        self,
        booking: BookingRequest,
        status: RefundStatus,
        refund_id: str | None = None,
        error: str | None = None,
    ) -> BookingRequest:
        """Record what happened to the money without touching ``status``."""
        async with self._guard("record_refund", booking_id=str(booking.id)):
            booking.refund_status = status
            booking.refund_id = refund_id
            booking.refund_error = error
            if status == RefundStatus.PROCESSED:
                self._mark_payment_refunded(booking)
            booking.updated_at = datetime.now(timezone.utc)
            await self.db.flush()
        return booking

    async def get_payment_by_intent(self, payment_intent_id: str) -> Payment | None:
        async with self._guard("get_payment_by_intent"):
            result = await self.db.execute(
                select(Payment).where(Payment.stripe_payment_intent_id == payment_intent_id)
            )
            return result.scalar_one_or_none()

    async def get_by_payment_intent(self, payment_intent_id: str) -> BookingRequest | None:
        async with self._guard("get_by_payment_intent"):
            result = await self.db.execute(
                select(BookingRequest)
                .join(Payment, Payment.booking_id == BookingRequest.id)
                .where(Payment.stripe_payment_intent_id == payment_intent_id)
            )
            return result.scalar_one_or_none()

    async def get_connected_account(self, business_id: uuid.UUID) -> BusinessStripeAccount | None:
        async with self._guard("get_connected_account", business_id=str(business_id)):
            return await self.db.get(BusinessStripeAccount, business_id)

    async def upsert_connected_account(
        self,
        business_id: uuid.UUID,
        stripe_connect_account_id: str,
        charges_enabled: bool,
    ) -> BusinessStripeAccount:
        async with self._guard("upsert_connected_account", business_id=str(business_id)):
            account = await self.db.get(BusinessStripeAccount, business_id)
            if account is None:
                account = BusinessStripeAccount(business_id=business_id)
                self.db.add(account)
            account.stripe_connect_account_id = stripe_connect_account_id
            account.charges_enabled = charges_enabled
            account.updated_at = datetime.now(timezone.utc)
            await self.db.flush()
        logger.info("connected_account_saved", business_id=str(business_id), charges_enabled=charges_enabled)
        return account

    async def update_payment(self, payment: Payment, **changes: Any) -> Payment:
        async with self._guard("update_payment", payment_id=str(payment.id)):
            for name, value in changes.items():
                setattr(payment, name, value)
            await self.db.flush()
        return payment
