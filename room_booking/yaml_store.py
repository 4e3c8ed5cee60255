from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from contextlib import AbstractContextManager, contextmanager
from typing import Any, Callable, Iterator, NoReturn, TypeVar
import logging
import re
import shutil
from uuid import uuid4

from filelock import FileLock, Timeout
import yaml

from .booking import Interval, find_conflict
from .errors import ConflictError, NotFoundError, StorageError, ValidationError
from .lifecycle import BookingStatus, apply_transition, is_active

logger = logging.getLogger(__name__)

R = TypeVar("R")

ROLE_USER = "user"
ROLE_ADMIN = "admin"
ROLES = (ROLE_USER, ROLE_ADMIN)

LOCK_TIMEOUT_SECONDS = 30.0

_RECORD_ID_RE = re.compile(r"[A-Za-z0-9_-]{1,64}")

# Keyed by resolved lock-file path, so every repository opened on one data
# directory in this process shares the same thread lock.
_PROCESS_LOCKS: dict[str, Lock] = {}
_PROCESS_LOCKS_GUARD = Lock()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _process_lock(lock_path: Path) -> Lock:
    key = str(lock_path.resolve())
    with _PROCESS_LOCKS_GUARD:
        return _PROCESS_LOCKS.setdefault(key, Lock())


def _parse_utc(value: Any) -> datetime:
    parsed = value if isinstance(value, datetime) else datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass(frozen=True)
class RoomRecord:
    room_id: str
    name: str
    capacity: int
    created_at: datetime
    description: str | None = None
    photo_url: str | None = None
    is_active: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "room_id": self.room_id,
            "name": self.name,
            "description": self.description,
            "capacity": self.capacity,
            "photo_url": self.photo_url,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat(timespec="seconds"),
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "RoomRecord":
        return RoomRecord(
            room_id=str(data["room_id"]),
            name=str(data["name"]),
            description=(str(data["description"]) if data.get("description") is not None else None),
            capacity=int(data["capacity"]),
            photo_url=(str(data["photo_url"]) if data.get("photo_url") is not None else None),
            is_active=bool(data.get("is_active", True)),
            created_at=_parse_utc(data["created_at"]),
        )


@dataclass(frozen=True)
class BookingRecord:
    booking_id: str
    room_id: str
    owner_id: str
    start: datetime
    end: datetime
    status: BookingStatus
    created_at: datetime

    @property
    def interval(self) -> Interval:
        return Interval(self.start, self.end)

    def to_dict(self) -> dict[str, Any]:
        return {
            "booking_id": self.booking_id,
            "room_id": self.room_id,
            "owner_id": self.owner_id,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "status": self.status.value,
            "created_at": self.created_at.isoformat(timespec="seconds"),
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "BookingRecord":
        return BookingRecord(
            booking_id=str(data["booking_id"]),
            room_id=str(data["room_id"]),
            owner_id=str(data["owner_id"]),
            start=_parse_utc(data["start"]),
            end=_parse_utc(data["end"]),
            status=BookingStatus(str(data["status"])),
            created_at=_parse_utc(data["created_at"]),
        )


@dataclass(frozen=True)
class UserRecord:
    user_id: str
    email: str
    password_hash: str
    role: str
    created_at: datetime

    def to_dict(self) -> dict[str, str]:
        return {
            "user_id": self.user_id,
            "email": self.email,
            "password_hash": self.password_hash,
            "role": self.role,
            "created_at": self.created_at.isoformat(timespec="seconds"),
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "UserRecord":
        return UserRecord(
            user_id=str(data["user_id"]),
            email=str(data["email"]),
            password_hash=str(data["password_hash"]),
            role=str(data.get("role", ROLE_USER)),
            created_at=_parse_utc(data["created_at"]),
        )


class YamlFileStore:
    """Shared YAML plumbing: atomic list writes, corruption quarantine and the event log."""

    def __init__(self, base_dir: str | Path = "data", lock_timeout: float = LOCK_TIMEOUT_SECONDS) -> None:
        self.base_dir = Path(base_dir)
        self.log_file = self.base_dir / "booking_events.yaml"
        self.locks_dir = self.base_dir / ".locks"
        self.lock_timeout = lock_timeout
        self.locks_dir.mkdir(parents=True, exist_ok=True)
        if not self.log_file.exists():
            self.log_file.write_text("", encoding="utf-8")

    def _lock_file(self, name: str) -> Path:
        return self.locks_dir / f"{name}.lock"

    @contextmanager
    def _store_lock(self, name: str) -> Iterator[None]:
        """Exclusive section shared by all threads and processes using this data directory."""
        lock_path = self._lock_file(name)
        file_lock = FileLock(str(lock_path), timeout=self.lock_timeout)
        with _process_lock(lock_path):
            try:
                file_lock.acquire()
            except Timeout as error:
                raise StorageError(f"Timed out waiting for lock {lock_path.name}") from error
            try:
                yield
            finally:
                file_lock.release()

    def _decode_rows(
        self,
        path: Path,
        rows: list[dict[str, Any]],
        factory: Callable[[dict[str, Any]], R],
    ) -> list[R]:
        try:
            return [factory(row) for row in rows]
        except (KeyError, TypeError, ValueError) as error:
            self._log_event("YAML_ROW_INVALID", {"file": str(path.name), "reason": str(error)})
            raise StorageError(f"Stored data in {path.name} has an invalid row.") from error

    def _ensure_list_file(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        if not path.exists():
            path.write_text("[]\n", encoding="utf-8")

    def _read_yaml_list(self, path: Path) -> list[dict[str, Any]]:
        try:
            payload = yaml.safe_load(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return []
        except (OSError, UnicodeDecodeError, yaml.YAMLError) as error:
            self._quarantine_corrupted_yaml(path, error)

        if payload is None:
            return []
        if not isinstance(payload, list):
            self._quarantine_corrupted_yaml(path, ValueError("top-level YAML is not a list"))

        sanitized: list[dict[str, Any]] = []
        for index, row in enumerate(payload):
            if isinstance(row, dict):
                sanitized.append(row)
            else:
                self._log_event(
                    "YAML_ROW_SKIPPED",
                    {
                        "file": str(path.name),
                        "index": index,
                        "reason": "row is not a mapping",
                    },
                )
        return sanitized

    def _write_yaml_list(self, path: Path, rows: list[dict[str, Any]]) -> None:
        temp_path = path.with_suffix(path.suffix + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            temp_path.write_text(yaml.safe_dump(rows, allow_unicode=True, sort_keys=False), encoding="utf-8")
            temp_path.replace(path)
        except OSError as error:
            raise StorageError(f"Failed to write YAML file: {path.name}") from error
        finally:
            if temp_path.exists():
                temp_path.unlink(missing_ok=True)

    def _quarantine_corrupted_yaml(self, path: Path, error: Exception) -> NoReturn:
        # Never reset: the file is copied aside and reads keep failing until it is repaired.
        timestamp = _utcnow().strftime("%Y%m%d%H%M%S")
        backup_path = path.with_name(f"{path.stem}.corrupt.{timestamp}{path.suffix}")
        try:
            if path.exists():
                shutil.copy2(path, backup_path)
        except OSError:
            backup_path = path

        self._log_event(
            "YAML_CORRUPTED",
            {
                "file": str(path.name),
                "backup": str(backup_path.name),
                "reason": str(error),
            },
        )
        raise StorageError(f"Stored data in {path.name} is unreadable.") from error

    def _log_event(self, event_type: str, payload: dict[str, Any], event_time: datetime | None = None) -> None:
        timestamp = (event_time or _utcnow()).isoformat(timespec="seconds")
        # One list item per append; the file stays a valid YAML list.
        chunk = yaml.safe_dump(
            [{"event_time": timestamp, "event_type": event_type, "payload": payload}],
            allow_unicode=True,
            sort_keys=False,
        )
        try:
            with self.log_file.open("a", encoding="utf-8") as handle:
                handle.write(chunk)
        except OSError:
            logger.warning("Could not append %s to %s", event_type, self.log_file, exc_info=True)

    def read_events(self) -> list[dict[str, Any]]:
        try:
            payload = yaml.safe_load(self.log_file.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as error:
            raise StorageError("Event log is unreadable.") from error
        return payload or []


class ReservationYamlRepository(YamlFileStore):
    """Room catalog plus per-room booking files.

    Each room's bookings live in ``bookings/<room_id>.yaml`` and every write to that
    file, admission included, happens while holding that room's lock. The locks are
    files under ``.locks/``, so repositories in other threads or processes opened on
    the same data directory exclude each other too. Lock order is room, then catalog.
    """

    def __init__(self, base_dir: str | Path = "data", lock_timeout: float = LOCK_TIMEOUT_SECONDS) -> None:
        super().__init__(base_dir, lock_timeout)
        self.rooms_file = self.base_dir / "rooms.yaml"
        self.bookings_dir = self.base_dir / "bookings"
        self.bookings_dir.mkdir(parents=True, exist_ok=True)
        self._ensure_list_file(self.rooms_file)

        self._booking_index: dict[str, str] = {}
        self._index_lock = Lock()
        self._rebuild_booking_index()

    def _room_lock(self, room_id: str) -> AbstractContextManager[None]:
        return self._store_lock(f"room-{room_id}")

    def _catalog_lock(self) -> AbstractContextManager[None]:
        return self._store_lock("rooms")

    def _booking_file(self, room_id: str) -> Path:
        if not _RECORD_ID_RE.fullmatch(room_id):
            raise NotFoundError("room not found")
        return self.bookings_dir / f"{room_id}.yaml"

    def _room_booking_files(self) -> list[Path]:
        # skips quarantined copies such as <room_id>.corrupt.<timestamp>.yaml
        return [path for path in sorted(self.bookings_dir.glob("*.yaml")) if _RECORD_ID_RE.fullmatch(path.stem)]

    def _rebuild_booking_index(self) -> None:
        index: dict[str, str] = {}
        for path in self._room_booking_files():
            for row in self._read_yaml_list(path):
                if row.get("booking_id") is not None:
                    index[str(row["booking_id"])] = path.stem
        with self._index_lock:
            self._booking_index = index

    def _locate_booking(self, booking_id: str) -> str:
        with self._index_lock:
            room_id = self._booking_index.get(booking_id)
        if room_id is None:
            # another repository or process may have written it since the last rebuild
            self._rebuild_booking_index()
            with self._index_lock:
                room_id = self._booking_index.get(booking_id)
        if room_id is None:
            raise NotFoundError("booking not found")
        return room_id

    def _read_room_bookings(self, room_id: str) -> list[BookingRecord]:
        path = self._booking_file(room_id)
        return self._decode_rows(path, self._read_yaml_list(path), BookingRecord.from_dict)

    def _write_room_bookings(self, room_id: str, bookings: list[BookingRecord]) -> None:
        ordered = sorted(bookings, key=lambda record: (record.start, record.end))
        self._write_yaml_list(self._booking_file(room_id), [record.to_dict() for record in ordered])

    # rooms

    def get_rooms(self) -> list[RoomRecord]:
        return self._decode_rows(self.rooms_file, self._read_yaml_list(self.rooms_file), RoomRecord.from_dict)

    def get_room(self, room_id: str) -> RoomRecord:
        for room in self.get_rooms():
            if room.room_id == room_id:
                return room
        raise NotFoundError("room not found")

    def add_room(
        self,
        name: str,
        capacity: int,
        description: str | None = None,
        photo_url: str | None = None,
        now: datetime | None = None,
    ) -> RoomRecord:
        effective_now = now or _utcnow()
        record = RoomRecord(
            room_id=uuid4().hex,
            name=name,
            description=description,
            capacity=capacity,
            photo_url=photo_url,
            is_active=True,
            created_at=effective_now,
        )
        with self._catalog_lock():
            rows = self._read_yaml_list(self.rooms_file)
            rows.append(record.to_dict())
            self._write_yaml_list(self.rooms_file, rows)

        self._log_event("ROOM_CREATED", {"room_id": record.room_id, "name": record.name}, effective_now)
        return record

    def replace_room(
        self,
        room_id: str,
        *,
        name: str,
        capacity: int,
        description: str | None,
        photo_url: str | None,
        is_active: bool,
        now: datetime | None = None,
    ) -> RoomRecord:
        with self._catalog_lock():
            rows = self._read_yaml_list(self.rooms_file)
            found_index = -1
            for index, row in enumerate(rows):
                if str(row.get("room_id")) == room_id:
                    found_index = index
                    break

            if found_index < 0:
                raise NotFoundError("room not found")

            current = self._decode_rows(self.rooms_file, [rows[found_index]], RoomRecord.from_dict)[0]
            updated = replace(
                current,
                name=name,
                capacity=capacity,
                description=description,
                photo_url=photo_url,
                is_active=is_active,
            )
            rows[found_index] = updated.to_dict()
            self._write_yaml_list(self.rooms_file, rows)

        self._log_event(
            "ROOM_UPDATED",
            {"room_id": room_id, "name": name, "capacity": capacity, "is_active": is_active},
            now,
        )
        return updated

    def delete_room(self, room_id: str, now: datetime | None = None) -> RoomRecord:
        booking_file = self._booking_file(room_id)
        self.get_room(room_id)
        with self._room_lock(room_id):
            with self._catalog_lock():
                rows = self._read_yaml_list(self.rooms_file)
                matching = [row for row in rows if str(row.get("room_id")) == room_id]
                if not matching:
                    raise NotFoundError("room not found")
                deleted = self._decode_rows(self.rooms_file, matching, RoomRecord.from_dict)[0]
                cascaded = self._read_room_bookings(room_id)

                self._write_yaml_list(self.rooms_file, [row for row in rows if str(row.get("room_id")) != room_id])
                try:
                    booking_file.unlink(missing_ok=True)
                except OSError as error:
                    self._write_yaml_list(self.rooms_file, rows)
                    raise StorageError(f"Failed to remove bookings of room {room_id}") from error

            with self._index_lock:
                for record in cascaded:
                    self._booking_index.pop(record.booking_id, None)

        self._log_event("ROOM_DELETED", {"room_id": room_id, "cascaded_bookings": len(cascaded)}, now)
        return deleted

    # bookings

    def reserve(
        self,
        room_id: str,
        interval: Interval,
        owner_id: str,
        now: datetime | None = None,
    ) -> BookingRecord:
        """Admit a booking: conflict scan and insert run under the room's lock."""
        effective_now = now or _utcnow()
        interval = interval.to_utc()
        self._booking_file(room_id)
        # unknown ids never get a lock
        self.get_room(room_id)

        with self._room_lock(room_id):
            room = self.get_room(room_id)
            if not room.is_active:
                raise NotFoundError("room not found")

            bookings = self._read_room_bookings(room_id)
            active = [record for record in bookings if is_active(record.status)]
            conflict = find_conflict(interval, active)
            if conflict is not None:
                self._log_event(
                    "BOOKING_CONFLICT",
                    {
                        "room_id": room_id,
                        "owner_id": owner_id,
                        "start": interval.start.isoformat(),
                        "end": interval.end.isoformat(),
                        "conflicting_booking_id": conflict.booking_id,
                    },
                    effective_now,
                )
                raise ConflictError("time slot already booked", conflicting_booking_id=conflict.booking_id)

            record = BookingRecord(
                booking_id=uuid4().hex,
                room_id=room_id,
                owner_id=owner_id,
                start=interval.start,
                end=interval.end,
                status=BookingStatus.CONFIRMED,
                created_at=effective_now,
            )
            bookings.append(record)
            self._write_room_bookings(room_id, bookings)
            with self._index_lock:
                self._booking_index[record.booking_id] = room_id

        self._log_event(
            "BOOKING_CREATED",
            {
                "booking_id": record.booking_id,
                "room_id": room_id,
                "owner_id": owner_id,
                "start": record.start.isoformat(),
                "end": record.end.isoformat(),
            },
            effective_now,
        )
        return record

    def get_booking(self, booking_id: str) -> BookingRecord:
        room_id = self._locate_booking(booking_id)

        for record in self._read_room_bookings(room_id):
            if record.booking_id == booking_id:
                return record
        raise NotFoundError("booking not found")

    def update_status(
        self,
        booking_id: str,
        status: BookingStatus,
        now: datetime | None = None,
    ) -> tuple[BookingRecord, bool]:
        """Move a booking to ``status``; returns the stored record and whether it changed."""
        room_id = self._locate_booking(booking_id)

        with self._room_lock(room_id):
            bookings = self._read_room_bookings(room_id)
            found_index = -1
            for index, record in enumerate(bookings):
                if record.booking_id == booking_id:
                    found_index = index
                    break

            if found_index < 0:
                raise NotFoundError("booking not found")

            current = bookings[found_index]
            if not apply_transition(current.status, status):
                return current, False

            updated = replace(current, status=status)
            bookings[found_index] = updated
            self._write_room_bookings(room_id, bookings)

        event_type = "BOOKING_CANCELLED" if status is BookingStatus.CANCELLED else "BOOKING_STATUS_CHANGED"
        self._log_event(
            event_type,
            {
                "booking_id": booking_id,
                "room_id": room_id,
                "from": current.status.value,
                "to": status.value,
            },
            now,
        )
        return updated, True

    def list_by_room(self, room_id: str, exclude_cancelled: bool = True) -> list[BookingRecord]:
        records = self._read_room_bookings(room_id)
        if exclude_cancelled:
            records = [record for record in records if record.status is not BookingStatus.CANCELLED]
        return sorted(records, key=lambda record: (record.start, record.end))

    def list_by_owner(self, owner_id: str) -> list[BookingRecord]:
        owned: list[BookingRecord] = []
        for path in self._room_booking_files():
            owned.extend(record for record in self._read_room_bookings(path.stem) if record.owner_id == owner_id)
        owned.sort(key=lambda record: (record.start, record.created_at), reverse=True)
        return owned


class UserYamlRepository(YamlFileStore):
    def __init__(self, base_dir: str | Path = "data", lock_timeout: float = LOCK_TIMEOUT_SECONDS) -> None:
        super().__init__(base_dir, lock_timeout)
        self.users_file = self.base_dir / "users.yaml"
        self._ensure_list_file(self.users_file)

    def get_users(self) -> list[UserRecord]:
        return self._decode_rows(self.users_file, self._read_yaml_list(self.users_file), UserRecord.from_dict)

    def get_user(self, user_id: str) -> UserRecord:
        for user in self.get_users():
            if user.user_id == user_id:
                return user
        raise NotFoundError("user not found")

    def find_by_email(self, email: str) -> UserRecord | None:
        for user in self.get_users():
            if user.email == email:
                return user
        return None

    def add_user(
        self,
        email: str,
        password_hash: str,
        role: str = ROLE_USER,
        now: datetime | None = None,
    ) -> UserRecord:
        if role not in ROLES:
            raise ValidationError(f"role must be one of: {', '.join(ROLES)}")

        effective_now = now or _utcnow()
        record = UserRecord(
            user_id=uuid4().hex,
            email=email,
            password_hash=password_hash,
            role=role,
            created_at=effective_now,
        )
        with self._store_lock("users"):
            rows = self._read_yaml_list(self.users_file)
            if any(str(row.get("email")) == email for row in rows):
                raise ValidationError("user already exists")
            rows.append(record.to_dict())
            self._write_yaml_list(self.users_file, rows)

        self._log_event("USER_REGISTERED", {"user_id": record.user_id, "role": role}, effective_now)
        return record

    def set_role(self, user_id: str, role: str, now: datetime | None = None) -> UserRecord:
        if role not in ROLES:
            raise ValidationError(f"role must be one of: {', '.join(ROLES)}")

        with self._store_lock("users"):
            rows = self._read_yaml_list(self.users_file)
            for index, row in enumerate(rows):
                if str(row.get("user_id")) == user_id:
                    current = self._decode_rows(self.users_file, [row], UserRecord.from_dict)[0]
                    updated = replace(current, role=role)
                    rows[index] = updated.to_dict()
                    self._write_yaml_list(self.users_file, rows)
                    break
            else:
                raise NotFoundError("user not found")

        self._log_event("USER_ROLE_CHANGED", {"user_id": user_id, "role": role}, now)
        return updated
