from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Protocol, TypeVar

from .errors import ValidationError


class HasInterval(Protocol):
    start: datetime
    end: datetime


@dataclass(frozen=True)
class Interval:
    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.start.tzinfo is None or self.end.tzinfo is None:
            raise ValidationError("start and end must carry a timezone offset.")
        if self.start >= self.end:
            raise ValidationError("end must be after start.")

    def to_utc(self) -> "Interval":
        return Interval(self.start.astimezone(timezone.utc), self.end.astimezone(timezone.utc))


def has_time_overlap(new_start: datetime, new_end: datetime, exist_start: datetime, exist_end: datetime) -> bool:
    """Return True when two time intervals share any instant.

    Intervals are treated as half-open ranges: [start, end)
    so touching boundaries (e.g. 10:00-11:00 and 11:00-12:00) do not overlap.
    Callers guarantee start < end for both ranges.
    """
    return new_start < exist_end and exist_start < new_end


T = TypeVar("T", bound=HasInterval)


def find_conflict(interval: Interval, existing: Iterable[T]) -> T | None:
    """Return the first existing entry whose interval overlaps ``interval``."""
    for item in existing:
        if has_time_overlap(interval.start, interval.end, item.start, item.end):
            return item
    return None


def can_reserve(interval: Interval, existing: Iterable[HasInterval]) -> bool:
    return find_conflict(interval, existing) is None


def parse_instant(value: object, field: str) -> datetime:
    """Parse an ISO 8601 / RFC 3339 timestamp that carries an explicit offset."""
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value or "").strip()
        if not text:
            raise ValidationError(f"{field} is required.")
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as error:
            raise ValidationError(f"{field} is not a valid timestamp.") from error

    if parsed.tzinfo is None:
        raise ValidationError(f"{field} must include a timezone offset.")
    return parsed.astimezone(timezone.utc)
