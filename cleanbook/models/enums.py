import enum

# Enums are stored as VARCHAR columns; CHECK constraints on the tables keep the
# database honest without native PG ENUM migrations.


class BookingStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class CancelledBy(str, enum.Enum):
    CUSTOMER = "customer"
    BUSINESS = "business"
    ADMIN = "admin"


class RefundStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"


class SettlementKind(str, enum.Enum):
    CONNECTED = "connected"      # Funds routed to the business account minus the platform fee
    PLATFORM_ONLY = "platform_only"  # Funds held by the platform, manual payout


class RecipientKind(str, enum.Enum):
    CUSTOMER = "customer"
    BUSINESS = "business"


class NotificationType(str, enum.Enum):
    NEW_BOOKING_REQUEST = "new_booking_request"
    BOOKING_ACCEPTED = "booking_accepted"
    BOOKING_DECLINED = "booking_declined"
    BOOKING_CANCELLED = "booking_cancelled"
    BOOKING_CANCELLED_BY_BUSINESS = "booking_cancelled_by_business"
    BOOKING_COMPLETED = "booking_completed"
    PAYMENT_FAILED = "payment_failed"
    REFUND_PROCESSED = "refund_processed"
