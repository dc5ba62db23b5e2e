import asyncio
import time as _time
import uuid
from dataclasses import dataclass
from typing import Any, ClassVar, Union

import stripe
import structlog
from fastapi import HTTPException

from cleanbook.config import settings
from cleanbook.exceptions import PaymentDeclined, PaymentInitError, RefundError
from cleanbook.metrics import STRIPE_CALL_DURATION
from cleanbook.models.enums import SettlementKind

logger = structlog.get_logger()

MOCK_INTENT_PREFIX = "pi_mock_"
_SECRET_SEPARATOR = "_secret_"
# Intents use automatic capture, so an uncaptured "requires_capture" is not settled
_SETTLED_STATUS = "succeeded"
_IN_FLIGHT_STATUSES = ("processing", "requires_action", "requires_confirmation", "requires_payment_method")


@dataclass(frozen=True)
class Connected:
    """Funds settle to the business's connected account minus the platform fee."""

    account_id: str
    kind: ClassVar[SettlementKind] = SettlementKind.CONNECTED


@dataclass(frozen=True)
class PlatformOnly:
    """Funds stay on the platform account; the business is paid out manually."""

    kind: ClassVar[SettlementKind] = SettlementKind.PLATFORM_ONLY


SettlementMode = Union[Connected, PlatformOnly]


def settlement_from_record(kind: SettlementKind, account_id: str | None) -> SettlementMode:
    if kind == SettlementKind.CONNECTED and account_id:
        return Connected(account_id)
    return PlatformOnly()


@dataclass(frozen=True)
class IntentHandle:
    intent_id: str
    client_secret: str
    settlement: SettlementMode

    @property
    def using_connect(self) -> bool:
        return isinstance(self.settlement, Connected)


@dataclass(frozen=True)
class ConfirmedPayment:
    payment_intent_id: str
    amount_minor: int
    settlement: SettlementMode
    card_last4: str | None = None
    card_brand: str | None = None
    # Business the intent was created for, read back from its metadata
    business_id: str | None = None


@dataclass(frozen=True)
class RefundReceipt:
    refund_id: str
    status: str


def is_mock_mode() -> bool:
    return not settings.STRIPE_SECRET_KEY


async def _stripe_call(operation: str, fn, *args, **kwargs):
    """Run a blocking Stripe SDK call off the event loop with a bounded timeout."""
    start = _time.monotonic()
    try:
        return await asyncio.wait_for(
            asyncio.to_thread(fn, *args, **kwargs), timeout=settings.STRIPE_TIMEOUT_SECONDS
        )
    finally:
        STRIPE_CALL_DURATION.labels(operation=operation).observe(_time.monotonic() - start)


def _error_message(exc: Exception) -> str:
    if isinstance(exc, stripe.StripeError) and exc.user_message:
        return exc.user_message
    if isinstance(exc, asyncio.TimeoutError):
        return "Payment processor timed out"
    return str(exc) or exc.__class__.__name__


async def create_payment_intent(
    amount_minor: int,
    metadata: dict[str, str] | None = None,
    connected_account_id: str | None = None,
    platform_fee_minor: int | None = None,
    idempotency_key: str | None = None,
) -> IntentHandle:
    """Create a PaymentIntent, split to a connected account when one is given.

    Without a connected account the charge settles to the platform only, which
    needs a manual payout later. That is a degraded mode, not a failure.
    """
    if amount_minor <= 0:
        raise PaymentInitError(f"Invalid amount: {amount_minor}")

    settlement: SettlementMode = Connected(connected_account_id) if connected_account_id else PlatformOnly()
    if isinstance(settlement, PlatformOnly):
        logger.warning("stripe_platform_only_settlement", business_id=(metadata or {}).get("business_id"))

    if platform_fee_minor is None:
        platform_fee_minor = int(round(amount_minor * settings.PLATFORM_COMMISSION_RATE))
    if platform_fee_minor < 0 or platform_fee_minor > amount_minor:
        raise PaymentInitError(f"Invalid platform fee: {platform_fee_minor}")

    if is_mock_mode():
        intent_id = f"{MOCK_INTENT_PREFIX}{amount_minor}_{uuid.uuid4().hex[:12]}"
        # The mock secret carries what a real intent keeps server-side
        suffix = f"{connected_account_id or 'platform'}.{(metadata or {}).get('business_id', '')}"
        logger.info("stripe_mock_payment_intent", amount=amount_minor, using_connect=bool(connected_account_id))
        return IntentHandle(
            intent_id=intent_id,
            client_secret=f"{intent_id}{_SECRET_SEPARATOR}{suffix}",
            settlement=settlement,
        )

    params: dict[str, Any] = {
        "amount": amount_minor,
        "currency": settings.CURRENCY,
        "automatic_payment_methods": {"enabled": True},
        "metadata": {**(metadata or {}), "platform": "cleanbook"},
        "description": f"Booking: {metadata['service_name']}" if metadata and metadata.get("service_name") else "Cleanbook service booking",
        "api_key": settings.STRIPE_SECRET_KEY,
    }
    if isinstance(settlement, Connected):
        params["transfer_data"] = {"destination": settlement.account_id}
        params["application_fee_amount"] = platform_fee_minor
    if idempotency_key:
        params["idempotency_key"] = idempotency_key

    try:
        intent = await _stripe_call("create_payment_intent", stripe.PaymentIntent.create, **params)
    except (stripe.StripeError, asyncio.TimeoutError) as e:
        logger.exception("stripe_payment_intent_failed", amount=amount_minor)
        raise PaymentInitError(_error_message(e)) from None

    logger.info("stripe_payment_intent_created", intent_id=intent.id, using_connect=isinstance(settlement, Connected))
    return IntentHandle(intent_id=intent.id, client_secret=intent.client_secret, settlement=settlement)


def intent_id_from_client_secret(client_secret: str) -> str:
    """Client secrets have the shape ``<intent id>_secret_<token>``."""
    if not client_secret or _SECRET_SEPARATOR not in client_secret:
        raise PaymentDeclined("Malformed payment client secret")
    return client_secret.split(_SECRET_SEPARATOR, 1)[0]


def _confirm_mock(client_secret: str) -> ConfirmedPayment:
    intent_id, suffix = client_secret.split(_SECRET_SEPARATOR, 1)
    account, _, business_id = suffix.partition(".")
    try:
        amount_minor = int(intent_id[len(MOCK_INTENT_PREFIX):].split("_", 1)[0])
    except ValueError:
        raise PaymentDeclined("Malformed payment client secret") from None
    settlement: SettlementMode = PlatformOnly() if account == "platform" else Connected(account)
    logger.info("stripe_mock_confirm", intent_id=intent_id)
    return ConfirmedPayment(
        payment_intent_id=intent_id,
        amount_minor=amount_minor,
        settlement=settlement,
        card_last4="4242",
        card_brand="visa",
        business_id=business_id or None,
    )


def _card_details(intent: Any) -> tuple[str | None, str | None]:
    charge = getattr(intent, "latest_charge", None)
    details = getattr(charge, "payment_method_details", None) if charge else None
    card = getattr(details, "card", None) if details else None
    if not card:
        return None, None
    return getattr(card, "last4", None), getattr(card, "brand", None)


async def confirm_payment_intent(client_secret: str) -> ConfirmedPayment:
    """Wait until the payer's charge resolves and return what was charged.

    Polls the processor while the intent is still in flight. A decline, a
    cancellation, or an intent that never settles within the poll window all
    raise ``PaymentDeclined``.
    """
    intent_id = intent_id_from_client_secret(client_secret)
    if intent_id.startswith(MOCK_INTENT_PREFIX):
        if not is_mock_mode():
            raise PaymentDeclined("Mock payments are not accepted")
        return _confirm_mock(client_secret)

    for attempt in range(settings.STRIPE_CONFIRM_MAX_POLLS):
        try:
            intent = await _stripe_call(
                "retrieve_payment_intent",
                stripe.PaymentIntent.retrieve,
                intent_id,
                expand=["latest_charge"],
                api_key=settings.STRIPE_SECRET_KEY,
            )
        except (stripe.StripeError, asyncio.TimeoutError) as e:
            logger.exception("stripe_confirm_lookup_failed", intent_id=intent_id)
            raise PaymentDeclined(_error_message(e)) from None

        if intent.status == _SETTLED_STATUS:
            last4, brand = _card_details(intent)
            destination = getattr(intent, "transfer_data", None)
            account_id = getattr(destination, "destination", None) if destination else None
            metadata = getattr(intent, "metadata", None) or {}
            logger.info("stripe_payment_confirmed", intent_id=intent_id, status=intent.status)
            return ConfirmedPayment(
                payment_intent_id=intent.id,
                amount_minor=intent.amount,
                settlement=Connected(account_id) if account_id else PlatformOnly(),
                card_last4=last4,
                card_brand=brand,
                business_id=metadata.get("business_id"),
            )

        if intent.status == "canceled":
            raise PaymentDeclined("Payment was canceled")

        last_error = getattr(intent, "last_payment_error", None)
        if intent.status == "requires_payment_method" and last_error:
            reason = getattr(last_error, "message", None) or getattr(last_error, "code", None) or "Payment failed"
            logger.warning("stripe_payment_declined", intent_id=intent_id, reason=reason)
            raise PaymentDeclined(reason)

        if intent.status not in _IN_FLIGHT_STATUSES:
            raise PaymentDeclined(f"Unexpected payment status '{intent.status}'")

        logger.debug("stripe_confirm_waiting", intent_id=intent_id, status=intent.status, attempt=attempt)
        await asyncio.sleep(settings.STRIPE_CONFIRM_POLL_SECONDS)

    logger.warning("stripe_confirm_abandoned", intent_id=intent_id)
    raise PaymentDeclined("Payment was not completed")


async def refund_payment(
    payment_intent_id: str | None,
    settlement: SettlementMode,
    idempotency_key: str | None = None,
) -> RefundReceipt:
    """Refund a captured payment in full.

    Connected charges also reverse the transfer and return the application fee
    so the customer gets the whole amount back.
    """
    if not payment_intent_id:
        raise RefundError("No payment to refund")

    if payment_intent_id.startswith(MOCK_INTENT_PREFIX) or is_mock_mode():
        logger.info("stripe_mock_refund", intent_id=payment_intent_id)
        return RefundReceipt(refund_id=f"re_mock_{payment_intent_id}", status="succeeded")

    params: dict[str, Any] = {"payment_intent": payment_intent_id, "api_key": settings.STRIPE_SECRET_KEY}
    if isinstance(settlement, Connected):
        params["reverse_transfer"] = True
        params["refund_application_fee"] = True
    if idempotency_key:
        params["idempotency_key"] = idempotency_key

    try:
        refund = await _stripe_call("refund_payment", stripe.Refund.create, **params)
    except (stripe.StripeError, asyncio.TimeoutError) as e:
        logger.exception("stripe_refund_failed", intent_id=payment_intent_id)
        raise RefundError(_error_message(e)) from None

    logger.info("stripe_refund_created", refund_id=refund.id, intent_id=payment_intent_id, status=refund.status)
    return RefundReceipt(refund_id=refund.id, status=refund.status)


def verify_webhook_signature(payload: bytes, sig_header: str) -> stripe.Event:
    """Verify Stripe webhook signature and return the event."""
    # Forged events would otherwise bypass verification, even in development
    if not settings.STRIPE_WEBHOOK_SECRET:
        logger.error("stripe_webhook_rejected_no_secret")
        raise HTTPException(status_code=501, detail="Webhook signature verification not configured")

    return stripe.Webhook.construct_event(
        payload, sig_header, settings.STRIPE_WEBHOOK_SECRET, api_key=settings.STRIPE_SECRET_KEY
    )


class StripeGateway:
    """The processor operations the booking engine depends on.

    Tests hand the engine a stand-in with the same three coroutines.
    """

    async def create_intent(
        self,
        amount_minor: int,
        metadata: dict[str, str] | None = None,
        connected_account_id: str | None = None,
        platform_fee_minor: int | None = None,
        idempotency_key: str | None = None,
    ) -> IntentHandle:
        return await create_payment_intent(
            amount_minor,
            metadata=metadata,
            connected_account_id=connected_account_id,
            platform_fee_minor=platform_fee_minor,
            idempotency_key=idempotency_key,
        )

    async def confirm(self, client_secret: str) -> ConfirmedPayment:
        return await confirm_payment_intent(client_secret)

    async def refund(
        self,
        payment_intent_id: str | None,
        settlement: SettlementMode,
        idempotency_key: str | None = None,
    ) -> RefundReceipt:
        return await refund_payment(payment_intent_id, settlement, idempotency_key=idempotency_key)
