from cleanbook.models.booking import BookingRequest
from cleanbook.models.business_account import BusinessStripeAccount
from cleanbook.models.notification import Notification
from cleanbook.models.payment import Payment
from cleanbook.models.webhook_event import ProcessedWebhookEvent

__all__ = [
    "BookingRequest",
    "BusinessStripeAccount",
    "Notification",
    "Payment",
    "ProcessedWebhookEvent",
]
