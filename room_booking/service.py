from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable
import logging

from .authorization import Action, Actor, AuthorizationGuard
from .booking import Interval, parse_instant
from .errors import ValidationError
from .lifecycle import BookingStatus, parse_status
from .yaml_store import BookingRecord, ReservationYamlRepository, RoomRecord

logger = logging.getLogger(__name__)


class ReservationService:
    """Booking use cases: authenticate, validate, authorize, then touch the store."""

    def __init__(
        self,
        repository: ReservationYamlRepository,
        guard: AuthorizationGuard,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._repository = repository
        self._guard = guard
        self._clock: Callable[[], datetime] = clock or (lambda: datetime.now(timezone.utc))

    def create_booking(self, actor: Actor | None, room_id: object, start: object, end: object) -> BookingRecord:
        owner = self._guard.authenticate(actor)
        self._guard.check(owner, Action.CREATE_BOOKING)

        room_key = str(room_id or "").strip()
        if not room_key:
            raise ValidationError("room_id, start_time, end_time required")
        interval = Interval(parse_instant(start, "start_time"), parse_instant(end, "end_time"))

        # the owner always comes from the token, never from the request body
        record = self._repository.reserve(room_key, interval, owner.user_id, now=self._clock())
        logger.info(
            "booking confirmed: booking_id=%s user_id=%s room_id=%s",
            record.booking_id,
            owner.user_id,
            room_key,
        )
        return record

    def get_booking(self, actor: Actor | None, booking_id: str) -> BookingRecord:
        viewer = self._guard.authenticate(actor)
        record = self._repository.get_booking(booking_id)
        self._guard.check(viewer, Action.VIEW_BOOKING, record)
        return record

    def list_room_bookings(self, room_id: str) -> list[BookingRecord]:
        self._repository.get_room(room_id)
        return self._repository.list_by_room(room_id, exclude_cancelled=True)

    def list_my_bookings(self, actor: Actor | None) -> list[BookingRecord]:
        owner = self._guard.authenticate(actor)
        return self._repository.list_by_owner(owner.user_id)

    def update_booking_status(self, actor: Actor | None, booking_id: str, status: object) -> BookingRecord:
        caller = self._guard.authenticate(actor)
        target = parse_status(status)
        current = self._repository.get_booking(booking_id)
        self._guard.check(caller, Action.UPDATE_STATUS, current)

        updated, _changed = self._repository.update_status(booking_id, target, now=self._clock())
        return updated

    def cancel_booking(self, actor: Actor | None, booking_id: str) -> BookingRecord:
        caller = self._guard.authenticate(actor)
        current = self._repository.get_booking(booking_id)
        self._guard.check(caller, Action.CANCEL, current)

        updated, _changed = self._repository.update_status(booking_id, BookingStatus.CANCELLED, now=self._clock())
        return updated


class RoomCatalogService:
    def __init__(self, repository: ReservationYamlRepository, guard: AuthorizationGuard) -> None:
        self._repository = repository
        self._guard = guard

    def list_rooms(self) -> list[RoomRecord]:
        return self._repository.get_rooms()

    def get_room(self, room_id: str) -> RoomRecord:
        return self._repository.get_room(room_id)

    def create_room(self, actor: Actor | None, payload: dict[str, Any]) -> RoomRecord:
        self._guard.check(actor, Action.CREATE_RESOURCE)
        fields = _room_fields(payload)
        return self._repository.add_room(
            fields["name"],
            fields["capacity"],
            description=fields["description"],
            photo_url=fields["photo_url"],
        )

    def update_room(self, actor: Actor | None, room_id: str, payload: dict[str, Any]) -> RoomRecord:
        """Replace every mutable field of the room; omitted optional fields are cleared."""
        self._guard.check(actor, Action.UPDATE_RESOURCE)
        fields = _room_fields(payload)
        return self._repository.replace_room(
            room_id,
            name=fields["name"],
            capacity=fields["capacity"],
            description=fields["description"],
            photo_url=fields["photo_url"],
            is_active=fields["is_active"],
        )

    def delete_room(self, actor: Actor | None, room_id: str) -> RoomRecord:
        self._guard.check(actor, Action.DELETE_RESOURCE)
        return self._repository.delete_room(room_id)


def _room_fields(payload: dict[str, Any]) -> dict[str, Any]:
    name = str(payload.get("name") or "").strip()
    capacity = payload.get("capacity")
    if not name or isinstance(capacity, bool) or not isinstance(capacity, int) or capacity <= 0:
        raise ValidationError("name and capacity > 0 required")

    is_active = payload.get("is_active", True)
    if not isinstance(is_active, bool):
        raise ValidationError("is_active must be a boolean")

    return {
        "name": name,
        "capacity": capacity,
        "description": _optional_text(payload.get("description")),
        "photo_url": _optional_text(payload.get("photo_url")),
        "is_active": is_active,
    }


def _optional_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
