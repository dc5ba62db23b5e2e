from cleanbook.exceptions import InvalidTransition
from cleanbook.models.enums import BookingStatus, CancelledBy

# Defines all valid status transitions for a booking
ALLOWED_TRANSITIONS: dict[BookingStatus, set[BookingStatus]] = {
    BookingStatus.PENDING: {
        BookingStatus.ACCEPTED,
        BookingStatus.DECLINED,
    },
    BookingStatus.ACCEPTED: {
        BookingStatus.COMPLETED,
        BookingStatus.CANCELLED,
    },
    BookingStatus.DECLINED: set(),  # Terminal state
    BookingStatus.COMPLETED: set(),  # Terminal state
    BookingStatus.CANCELLED: set(),  # Terminal state
}

# Transitions only an administrator may perform
ADMIN_TRANSITIONS: dict[BookingStatus, set[BookingStatus]] = {
    BookingStatus.PENDING: {BookingStatus.CANCELLED},
}

TERMINAL_STATES = frozenset(s for s, targets in ALLOWED_TRANSITIONS.items() if not targets)


def is_terminal(status: BookingStatus) -> bool:
    return status in TERMINAL_STATES


def validate_transition(
    current: BookingStatus,
    new: BookingStatus,
    actor: CancelledBy | None = None,
) -> None:
    """Validate a booking status transition. Raises InvalidTransition if not allowed."""
    allowed = set(ALLOWED_TRANSITIONS.get(current, set()))
    if actor == CancelledBy.ADMIN:
        allowed |= ADMIN_TRANSITIONS.get(current, set())
    if new not in allowed:
        raise InvalidTransition(f"Cannot transition from '{current.value}' to '{new.value}'")
