"""Domain errors raised by the booking engine and its collaborators.

These are plain exceptions rather than ``HTTPException`` so that non-HTTP
callers (webhook handlers, scripts, tests) get clean exceptions without HTTP
semantics. ``main.py`` maps them to responses through ``kind`` and
``status_code``.
"""


class BookingEngineError(Exception):
    kind = "error"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class BookingValidationError(BookingEngineError):
    """User-correctable input problem, raised before any external call."""

    kind = "validation"
    status_code = 422


class InvalidTransition(BookingEngineError):
    kind = "invalid_transition"
    status_code = 409


class BookingNotFound(BookingEngineError):
    kind = "not_found"
    status_code = 404


class PersistenceError(BookingEngineError):
    kind = "persistence"
    status_code = 503


class UnsupportedOperation(BookingEngineError):
    kind = "unsupported"
    status_code = 501


class PaymentError(BookingEngineError):
    kind = "payment"
    status_code = 402


class PaymentInitError(PaymentError):
    """The processor refused to create the payment intent."""


class PaymentDeclined(PaymentError):
    """The payer's charge did not go through; no booking may be created."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class RefundError(PaymentError):
    """A refund could not be issued. Recorded on the booking, never retried."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class PaymentAlreadyUsed(BookingValidationError):
    """The confirmed charge already backs another booking."""

    def __init__(self, message: str = "This payment has already been used for a booking"):
        super().__init__(message)
