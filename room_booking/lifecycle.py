from __future__ import annotations

from enum import Enum

from .errors import InvalidTransitionError, ValidationError


class BookingStatus(str, Enum):
    # PENDING is declared but no code path creates it yet; admission goes straight to CONFIRMED.
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


ACTIVE_STATUSES = frozenset({BookingStatus.PENDING, BookingStatus.CONFIRMED})

_ALLOWED_TRANSITIONS: dict[BookingStatus, frozenset[BookingStatus]] = {
    BookingStatus.PENDING: frozenset({BookingStatus.CONFIRMED, BookingStatus.CANCELLED}),
    BookingStatus.CONFIRMED: frozenset({BookingStatus.CANCELLED}),
    BookingStatus.CANCELLED: frozenset(),
}


def parse_status(value: object) -> BookingStatus:
    text = str(value or "").strip().lower()
    if not text:
        raise ValidationError("status is required.")
    try:
        return BookingStatus(text)
    except ValueError as error:
        allowed = ", ".join(status.value for status in BookingStatus)
        raise ValidationError(f"Unknown status '{text}'. Expected one of: {allowed}.") from error


def is_active(status: BookingStatus) -> bool:
    return status in ACTIVE_STATUSES


def validate_transition(current: BookingStatus, target: BookingStatus) -> None:
    """Raise InvalidTransitionError unless ``current -> target`` is allowed.

    Cancelling an already cancelled booking is accepted as a no-op.
    """
    if current is BookingStatus.CANCELLED and target is BookingStatus.CANCELLED:
        return
    if target not in _ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(current.value, target.value)


def apply_transition(current: BookingStatus, target: BookingStatus) -> bool:
    """Validate the move and report whether the stored status actually changes."""
    validate_transition(current, target)
    return current is not target
