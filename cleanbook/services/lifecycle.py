import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from decimal import Decimal

import structlog

from cleanbook.config import settings
from cleanbook.exceptions import (
    BookingValidationError,
    PaymentAlreadyUsed,
    PaymentDeclined,
    PersistenceError,
    RefundError,
    UnsupportedOperation,
)
from cleanbook.metrics import BOOKING_TRANSITIONS, BOOKINGS_CANCELLED, BOOKINGS_CREATED, PAYMENTS_DECLINED, REFUNDS
from cleanbook.models.booking import BookingRequest
from cleanbook.models.enums import (
    BookingStatus,
    CancelledBy,
    NotificationType,
    PaymentStatus,
    RecipientKind,
    RefundStatus,
)
from cleanbook.models.payment import Payment
from cleanbook.services import pricing
from cleanbook.services.booking_cache import BookingViewCache
from cleanbook.services.booking_store import BookingStore
from cleanbook.services.notifications import NotificationDispatcher
from cleanbook.services.stripe_service import ConfirmedPayment, IntentHandle, StripeGateway, settlement_from_record
from cleanbook.utils.booking_state import validate_transition
from cleanbook.utils.log_mask import mask_email

logger = structlog.get_logger()


@dataclass(frozen=True)
class BookingDraft:
    """Everything the customer submits for a booking, before payment."""

    customer_id: uuid.UUID
    customer_name: str
    customer_email: str
    business_id: uuid.UUID
    business_name: str
    service_id: uuid.UUID
    service_name: str
    category: str
    requested_date: date
    requested_time: time
    total_cost: Decimal
    customer_phone: str | None = None
    special_instructions: str | None = None


@dataclass(frozen=True)
class CheckoutQuote:
    handle: IntentHandle
    fees: pricing.FeeSplit


@dataclass(frozen=True)
class RefundOutcome:
    attempted: bool
    success: bool
    refund_id: str | None = None
    error: str | None = None

    @property
    def refund_status(self) -> RefundStatus | None:
        if not self.attempted:
            return None
        return RefundStatus.PROCESSED if self.success else RefundStatus.FAILED


NO_REFUND = RefundOutcome(attempted=False, success=False)


@dataclass(frozen=True)
class CancellationResult:
    booking: BookingRequest
    refund: RefundOutcome


# Called with the intent once it exists; resolves to the client secret after
# the payer has completed (or abandoned) the payment step.
PayerConfirmation = Callable[[IntentHandle], Awaitable[str]]


def _require_text(value: str | None, message: str) -> str:
    if value is None or not value.strip():
        raise BookingValidationError(message)
    return value.strip()


def _money(amount: Decimal) -> str:
    return f"£{amount:.2f}"


class BookingLifecycleEngine:
    """Drives a booking through its states and keeps the money consistent.

    Every status write goes through ``BookingStore.update_status``; refunds
    are attempted before the cancellation is persisted and their outcome is
    stored whether or not the processor succeeded.
    """

    def __init__(
        self,
        store: BookingStore,
        dispatcher: NotificationDispatcher,
        gateway: StripeGateway | None = None,
        cache: BookingViewCache | None = None,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.gateway = gateway or StripeGateway()
        self.cache = cache

    # -- creation -------------------------------------------------------------

    def _validate_draft(self, draft: BookingDraft) -> None:
        if draft.total_cost is None or draft.total_cost <= 0:
            raise BookingValidationError("Total cost must be greater than zero")
        _require_text(draft.customer_name, "Customer name is required")
        _require_text(draft.customer_email, "Customer email is required")
        _require_text(draft.service_name, "Service name is required")

    async def _connected_account_for(self, business_id: uuid.UUID) -> str | None:
        account = await self.store.get_connected_account(business_id)
        if account is None:
            return None
        if not account.charges_enabled:
            logger.warning("connected_account_charges_disabled", business_id=str(business_id))
            return None
        return account.stripe_connect_account_id

    async def start_checkout(
        self,
        business_id: uuid.UUID,
        total_cost: Decimal,
        metadata: dict[str, str] | None = None,
    ) -> CheckoutQuote:
        """Create the payment intent the payer will confirm."""
        if total_cost is None or total_cost <= 0:
            raise BookingValidationError("Total cost must be greater than zero")

        fees = pricing.split(total_cost)
        account_id = await self._connected_account_for(business_id)
        handle = await self.gateway.create_intent(
            pricing.to_minor_units(fees.total_cost),
            metadata={**(metadata or {}), "business_id": str(business_id)},
            connected_account_id=account_id,
            platform_fee_minor=pricing.to_minor_units(fees.platform_fee),
        )
        logger.info(
            "checkout_started",
            business_id=str(business_id),
            intent_id=handle.intent_id,
            total_cost=str(fees.total_cost),
            using_connect=handle.using_connect,
        )
        return CheckoutQuote(handle=handle, fees=fees)

    async def complete_checkout(self, draft: BookingDraft, client_secret: str) -> BookingRequest:
        """Persist a pending booking once the payer's charge has gone through.

        Nothing is written when confirmation fails. The charge must belong to
        ``draft.business_id``, must not back another booking, and must match
        the total; a mismatched amount is refunded before the error is raised.
        """
        self._validate_draft(draft)
        fees = pricing.split(draft.total_cost)

        try:
            confirmed = await self.gateway.confirm(client_secret)
        except PaymentDeclined as e:
            PAYMENTS_DECLINED.inc()
            logger.warning("booking_payment_declined", business_id=str(draft.business_id), reason=e.reason)
            raise

        if await self.store.get_payment_by_intent(confirmed.payment_intent_id) is not None:
            raise PaymentAlreadyUsed()

        if confirmed.business_id != str(draft.business_id):
            # Left unrefunded: the checkout it was created for can still complete
            PAYMENTS_DECLINED.inc()
            logger.warning(
                "booking_payment_business_mismatch",
                intent_id=confirmed.payment_intent_id,
                business_id=str(draft.business_id),
            )
            raise PaymentDeclined("This payment was not made for this business")

        if confirmed.amount_minor != pricing.to_minor_units(fees.total_cost):
            PAYMENTS_DECLINED.inc()
            logger.warning(
                "booking_payment_amount_mismatch",
                intent_id=confirmed.payment_intent_id,
                charged=confirmed.amount_minor,
                expected=pricing.to_minor_units(fees.total_cost),
            )
            await self._compensate(confirmed)
            raise PaymentDeclined("Confirmed payment amount does not match the booking total")

        now = datetime.now(timezone.utc)
        booking = BookingRequest(
            id=uuid.uuid4(),
            customer_id=draft.customer_id,
            customer_name=draft.customer_name.strip(),
            customer_email=draft.customer_email.strip(),
            customer_phone=draft.customer_phone,
            business_id=draft.business_id,
            business_name=draft.business_name,
            service_id=draft.service_id,
            service_name=draft.service_name,
            category=draft.category,
            requested_date=draft.requested_date,
            requested_time=draft.requested_time,
            total_cost=fees.total_cost,
            platform_fee=fees.platform_fee,
            business_earnings=fees.business_earnings,
            special_instructions=draft.special_instructions,
            created_at=now,
            updated_at=now,
        )
        settlement = confirmed.settlement
        payment = Payment(
            stripe_payment_intent_id=confirmed.payment_intent_id,
            card_last4=confirmed.card_last4,
            card_brand=confirmed.card_brand,
            amount=fees.total_cost,
            platform_fee=fees.platform_fee,
            business_earnings=fees.business_earnings,
            currency=settings.CURRENCY,
            status=PaymentStatus.SUCCEEDED,
            settlement_mode=settlement.kind,
            connected_account_id=getattr(settlement, "account_id", None),
            paid_at=now,
        )

        try:
            await self.store.create(booking, payment)
        except PersistenceError:
            logger.error("booking_persist_failed_after_payment", intent_id=confirmed.payment_intent_id)
            await self._compensate(confirmed)
            raise

        BOOKINGS_CREATED.labels(settlement=settlement.kind.value).inc()
        logger.info(
            "booking_created",
            booking_id=str(booking.id),
            business_id=str(booking.business_id),
            customer_email=mask_email(booking.customer_email),
            total_cost=str(booking.total_cost),
            settlement=settlement.kind.value,
        )

        await self.dispatcher.notify(
            recipient_id=booking.business_id,
            booking_id=booking.id,
            event_kind=NotificationType.NEW_BOOKING_REQUEST,
            title="New booking request",
            body=(
                f"{booking.customer_name} requested {booking.service_name} on "
                f"{booking.requested_date.isoformat()} at {booking.requested_time.strftime('%H:%M')}."
            ),
            recipient_kind=RecipientKind.BUSINESS,
            data={"total_cost": str(booking.total_cost)},
        )
        self._invalidate(booking)
        return booking

    async def _compensate(self, confirmed: ConfirmedPayment) -> None:
        """Hand back a charge that cannot become a booking."""
        try:
            await self.gateway.refund(
                confirmed.payment_intent_id,
                confirmed.settlement,
                idempotency_key=f"compensate_{confirmed.payment_intent_id}",
            )
        except RefundError as e:
            logger.critical(
                "booking_compensating_refund_failed",
                intent_id=confirmed.payment_intent_id,
                reason=e.reason,
            )
            return
        logger.info("booking_payment_compensated", intent_id=confirmed.payment_intent_id)

    async def create_booking(self, draft: BookingDraft, payer: PayerConfirmation) -> BookingRequest:
        """Run the whole creation flow: quote, wait for the payer, persist."""
        self._validate_draft(draft)
        quote = await self.start_checkout(
            draft.business_id,
            draft.total_cost,
            metadata={"service_name": draft.service_name, "customer_id": str(draft.customer_id)},
        )
        client_secret = await payer(quote.handle)
        return await self.complete_checkout(draft, client_secret)

    # -- business responses -----------------------------------------------------

    async def accept(self, booking_id: uuid.UUID, message: str | None = None) -> BookingRequest:
        message = message.strip() if message and message.strip() else None
        booking = await self.store.update_status(
            booking_id,
            BookingStatus.ACCEPTED,
            {"response_message": message, "reviewed_at": datetime.now(timezone.utc)},
        )
        BOOKING_TRANSITIONS.labels(to_status=BookingStatus.ACCEPTED.value).inc()

        await self._notify_customer(
            booking,
            NotificationType.BOOKING_ACCEPTED,
            "Booking confirmed",
            message or f"{booking.business_name} accepted your {booking.service_name} booking.",
        )
        self._invalidate(booking)
        return booking

    async def decline(self, booking_id: uuid.UUID, message: str | None) -> BookingRequest:
        message = _require_text(message, "A message is required when declining a booking")
        booking = await self.store.update_status(
            booking_id,
            BookingStatus.DECLINED,
            {"response_message": message, "reviewed_at": datetime.now(timezone.utc)},
        )
        BOOKING_TRANSITIONS.labels(to_status=BookingStatus.DECLINED.value).inc()

        await self._notify_customer(
            booking,
            NotificationType.BOOKING_DECLINED,
            "Booking declined",
            f"{booking.business_name} declined your booking: {message}",
        )
        self._invalidate(booking)
        return booking

    async def respond(
        self, booking_id: uuid.UUID, status: BookingStatus, message: str | None = None
    ) -> BookingRequest:
        """Business response to a pending request."""
        if status == BookingStatus.ACCEPTED:
            return await self.accept(booking_id, message)
        if status == BookingStatus.DECLINED:
            return await self.decline(booking_id, message)
        raise BookingValidationError("Status must be 'accepted' or 'declined'")

    async def complete(self, booking_id: uuid.UUID) -> BookingRequest:
        booking = await self.store.update_status(
            booking_id,
            BookingStatus.COMPLETED,
            {"completed_at": datetime.now(timezone.utc)},
        )
        BOOKING_TRANSITIONS.labels(to_status=BookingStatus.COMPLETED.value).inc()

        await self._notify_customer(
            booking,
            NotificationType.BOOKING_COMPLETED,
            "Service completed",
            f"Your {booking.service_name} with {booking.business_name} is complete.",
        )
        self._invalidate(booking)
        return booking

    async def withdraw(self, booking_id: uuid.UUID) -> BookingRequest:
        logger.info("booking_withdraw_rejected", booking_id=str(booking_id))
        raise UnsupportedOperation("Withdrawing a pending booking request is not supported")

    # -- cancellation and refunds --------------------------------------------------

    async def _refund(self, booking: BookingRequest) -> RefundOutcome:
        if booking.refund_status == RefundStatus.PROCESSED:
            return RefundOutcome(attempted=False, success=True, refund_id=booking.refund_id)

        payment = booking.payment
        if payment is None or not payment.stripe_payment_intent_id:
            return NO_REFUND

        settlement = settlement_from_record(payment.settlement_mode, payment.connected_account_id)
        try:
            receipt = await self.gateway.refund(
                payment.stripe_payment_intent_id,
                settlement,
                idempotency_key=f"refund_{booking.id}",
            )
        except RefundError as e:
            REFUNDS.labels(outcome="failed").inc()
            logger.warning("booking_refund_failed", booking_id=str(booking.id), reason=e.reason)
            return RefundOutcome(attempted=True, success=False, error=e.reason)

        REFUNDS.labels(outcome="processed").inc()
        logger.info("booking_refund_processed", booking_id=str(booking.id), refund_id=receipt.refund_id)
        return RefundOutcome(attempted=True, success=True, refund_id=receipt.refund_id)

    async def cancel(
        self, booking_id: uuid.UUID, cancelled_by: CancelledBy, reason: str | None
    ) -> CancellationResult:
        """Cancel, refunding first. A failed refund still cancels the booking."""
        reason = _require_text(reason, "A reason is required when cancelling a booking")

        booking = await self.store.get(booking_id)
        # Checked before the refund so a repeat cancel never reaches the processor
        validate_transition(booking.status, BookingStatus.CANCELLED, cancelled_by)

        refund = await self._refund(booking)
        fields = {
            "cancelled_by": cancelled_by,
            "cancellation_reason": reason,
            "cancelled_at": datetime.now(timezone.utc),
        }
        if refund.attempted:
            fields.update(
                refund_status=refund.refund_status,
                refund_id=refund.refund_id,
                refund_error=refund.error,
            )

        try:
            booking = await self.store.update_status(
                booking_id, BookingStatus.CANCELLED, fields, actor=cancelled_by
            )
        except PersistenceError:
            if refund.success:
                logger.critical(
                    "booking_cancel_persist_failed_after_refund",
                    booking_id=str(booking_id),
                    refund_id=refund.refund_id,
                )
            raise

        BOOKING_TRANSITIONS.labels(to_status=BookingStatus.CANCELLED.value).inc()
        BOOKINGS_CANCELLED.labels(cancelled_by=cancelled_by.value).inc()
        logger.info(
            "booking_cancelled",
            booking_id=str(booking.id),
            cancelled_by=cancelled_by.value,
            refund_status=booking.refund_status.value if booking.refund_status else None,
        )

        if refund.success:
            money = f" A refund of {_money(booking.total_cost)} has been issued."
        elif refund.attempted:
            money = " We could not issue your refund automatically; our team will follow up."
        else:
            money = ""

        customer_kind = (
            NotificationType.BOOKING_CANCELLED_BY_BUSINESS
            if cancelled_by == CancelledBy.BUSINESS
            else NotificationType.BOOKING_CANCELLED
        )
        await self._notify_customer(
            booking,
            customer_kind,
            "Booking cancelled",
            f"Your {booking.service_name} booking was cancelled: {reason}.{money}",
            data={"cancelled_by": cancelled_by.value},
        )
        await self.dispatcher.notify(
            recipient_id=booking.business_id,
            booking_id=booking.id,
            event_kind=NotificationType.BOOKING_CANCELLED,
            title="Booking cancelled",
            body=f"The {booking.service_name} booking for {booking.customer_name} was cancelled: {reason}.",
            recipient_kind=RecipientKind.BUSINESS,
            data={"cancelled_by": cancelled_by.value, "refunded": refund.success},
        )
        self._invalidate(booking)
        return CancellationResult(booking=booking, refund=refund)

    async def refund_booking(self, booking_id: uuid.UUID) -> RefundOutcome:
        """Admin refund for a booking that ended without the service happening.

        Covers declined bookings and cancellations whose automatic refund
        failed. Never changes ``status``.
        """
        booking = await self.store.get(booking_id)
        if booking.status not in (BookingStatus.CANCELLED, BookingStatus.DECLINED):
            raise BookingValidationError(
                f"Only cancelled or declined bookings can be refunded, booking is '{booking.status.value}'"
            )
        if booking.refund_status == RefundStatus.PROCESSED:
            raise BookingValidationError("This booking has already been refunded")

        refund = await self._refund(booking)
        if not refund.attempted:
            raise BookingValidationError("This booking has no payment to refund")

        await self.store.record_refund(booking, refund.refund_status, refund.refund_id, refund.error)
        if refund.success:
            await self._notify_customer(
                booking,
                NotificationType.REFUND_PROCESSED,
                "Refund issued",
                f"A refund of {_money(booking.total_cost)} for your {booking.service_name} booking has been issued.",
            )
        self._invalidate(booking)
        return refund

    # -- processor events -------------------------------------------------------------

    async def apply_payment_event(
        self, event_type: str, payment_intent_id: str, failure_reason: str | None = None
    ) -> Payment | None:
        """Record an asynchronous processor event on the payment row.

        Booking status is never changed here; only the engine's explicit
        operations move a booking between states.
        """
        payment = await self.store.get_payment_by_intent(payment_intent_id)
        if payment is None:
            logger.info("payment_event_unmatched", event_type=event_type, intent_id=payment_intent_id)
            return None

        now = datetime.now(timezone.utc)
        if event_type == "payment_intent.succeeded":
            if payment.status != PaymentStatus.REFUNDED:
                await self.store.update_payment(payment, status=PaymentStatus.SUCCEEDED, paid_at=payment.paid_at or now)

        elif event_type in ("payment_intent.payment_failed", "payment_intent.canceled"):
            if payment.status == PaymentStatus.REFUNDED:
                return payment
            reason = failure_reason or ("Payment was canceled" if event_type.endswith("canceled") else "Payment failed")
            await self.store.update_payment(payment, status=PaymentStatus.FAILED, failure_reason=reason)
            booking = await self.store.get(payment.booking_id)
            logger.warning("booking_payment_failed_after_creation", booking_id=str(booking.id), reason=reason)
            await self._notify_customer(
                booking,
                NotificationType.PAYMENT_FAILED,
                "Payment problem",
                f"There was a problem with the payment for your {booking.service_name} booking: {reason}",
            )
            self._invalidate(booking)

        elif event_type == "charge.refunded":
            booking = await self.store.get(payment.booking_id)
            if booking.refund_status != RefundStatus.PROCESSED:
                await self.store.record_refund(booking, RefundStatus.PROCESSED, booking.refund_id)
                self._invalidate(booking)
            else:
                await self.store.update_payment(payment, status=PaymentStatus.REFUNDED, refunded_at=payment.refunded_at or now)

        else:
            logger.info("payment_event_ignored", event_type=event_type)
            return payment

        logger.info("payment_event_applied", event_type=event_type, intent_id=payment_intent_id)
        return payment

    # -- helpers ------------------------------------------------------------------

    async def _notify_customer(
        self,
        booking: BookingRequest,
        event_kind: NotificationType,
        title: str,
        body: str,
        data: dict | None = None,
    ) -> None:
        await self.dispatcher.notify(
            recipient_id=booking.customer_id,
            booking_id=booking.id,
            event_kind=event_kind,
            title=title,
            body=body,
            recipient_kind=RecipientKind.CUSTOMER,
            email=booking.customer_email,
            data=data,
        )

    def _invalidate(self, booking: BookingRequest) -> None:
        if self.cache is None:
            return
        self.cache.invalidate_booking(booking)
        # A list read before the commit lands would cache the old rows again
        self.store.after_commit(lambda: self.cache.invalidate_booking(booking))
