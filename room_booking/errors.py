from __future__ import annotations


class BookingError(Exception):
    """Base class for every error surfaced to callers.

    ``kind`` is stable and meant for machine branching; the message is free text.
    """

    kind = "internal_error"
    http_status = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.kind)
        self.message = message or self.kind

    def to_dict(self) -> dict[str, object]:
        return {"ok": False, "error": self.kind, "message": self.message}


class ValidationError(BookingError, ValueError):
    kind = "validation_error"
    http_status = 400


class AuthenticationError(BookingError):
    kind = "authentication_error"
    http_status = 401


class ForbiddenError(BookingError):
    kind = "forbidden"
    http_status = 403


class NotFoundError(BookingError):
    kind = "not_found"
    http_status = 404


class ConflictError(BookingError):
    kind = "conflict"
    http_status = 409

    def __init__(self, message: str = "", conflicting_booking_id: str | None = None) -> None:
        super().__init__(message or "time slot already booked")
        self.conflicting_booking_id = conflicting_booking_id


class InvalidTransitionError(BookingError):
    kind = "invalid_transition"
    http_status = 409

    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Invalid booking status transition: {current} -> {target}")
        self.current = current
        self.target = target


class StorageError(BookingError, RuntimeError):
    kind = "internal_error"
    http_status = 500


class ConfigError(RuntimeError):
    pass
