import tempfile
import unittest
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from pathlib import Path
from threading import Barrier
from unittest import mock

from filelock import FileLock
import yaml

from room_booking import (
    BookingStatus,
    ConflictError,
    Interval,
    InvalidTransitionError,
    NotFoundError,
    ReservationYamlRepository,
    StorageError,
    UserYamlRepository,
    ValidationError,
    has_time_overlap,
)
from room_booking import yaml_store

UTC = timezone.utc
NOW = datetime(2026, 2, 20, 9, 0, tzinfo=UTC)


def _slot(hour: int, minute: int, end_hour: int, end_minute: int = 0) -> Interval:
    return Interval(
        datetime(2026, 2, 24, hour, minute, tzinfo=UTC),
        datetime(2026, 2, 24, end_hour, end_minute, tzinfo=UTC),
    )


class TestReservationYamlRepository(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_dir = tempfile.TemporaryDirectory()
        self.data_dir = Path(self._temp_dir.name) / "data"
        self.repo = ReservationYamlRepository(self.data_dir)
        self.room = self.repo.add_room("Boardroom", 8, description="4th floor", now=NOW)

    def tearDown(self) -> None:
        self._temp_dir.cleanup()

    def test_back_to_back_bookings_are_admitted(self) -> None:
        first = self.repo.reserve(self.room.room_id, _slot(10, 0, 11), "u1", now=NOW)
        second = self.repo.reserve(self.room.room_id, _slot(11, 0, 12), "u2", now=NOW)

        self.assertEqual(first.status, BookingStatus.CONFIRMED)
        self.assertEqual(second.status, BookingStatus.CONFIRMED)
        self.assertEqual(len(self.repo.list_by_room(self.room.room_id)), 2)

    def test_overlapping_booking_is_rejected(self) -> None:
        first = self.repo.reserve(self.room.room_id, _slot(10, 0, 11), "u1", now=NOW)

        with self.assertRaises(ConflictError) as context:
            self.repo.reserve(self.room.room_id, _slot(10, 30, 10, 45), "u2", now=NOW)

        self.assertEqual(context.exception.kind, "conflict")
        self.assertEqual(context.exception.conflicting_booking_id, first.booking_id)
        self.assertEqual(len(self.repo.list_by_room(self.room.room_id)), 1)

    def test_cancelled_booking_frees_the_slot(self) -> None:
        first = self.repo.reserve(self.room.room_id, _slot(10, 0, 11), "u1", now=NOW)
        self.repo.update_status(first.booking_id, BookingStatus.CANCELLED, now=NOW)

        again = self.repo.reserve(self.room.room_id, _slot(10, 0, 11), "u2", now=NOW)
        self.assertEqual(again.owner_id, "u2")

    def test_same_interval_on_other_room_is_independent(self) -> None:
        other = self.repo.add_room("Focus room", 2, now=NOW)
        self.repo.reserve(self.room.room_id, _slot(10, 0, 11), "u1", now=NOW)
        booked = self.repo.reserve(other.room_id, _slot(10, 0, 11), "u1", now=NOW)

        self.assertEqual(booked.room_id, other.room_id)

    def test_unknown_or_inactive_room_is_not_found(self) -> None:
        with self.assertRaises(NotFoundError):
            self.repo.reserve("missing", _slot(10, 0, 11), "u1", now=NOW)
        with self.assertRaises(NotFoundError):
            self.repo.reserve("../../etc/passwd", _slot(10, 0, 11), "u1", now=NOW)

        self.repo.replace_room(
            self.room.room_id,
            name=self.room.name,
            capacity=self.room.capacity,
            description=None,
            photo_url=None,
            is_active=False,
        )
        with self.assertRaises(NotFoundError):
            self.repo.reserve(self.room.room_id, _slot(10, 0, 11), "u1", now=NOW)

    def test_concurrent_identical_requests_admit_exactly_one(self) -> None:
        workers = 8
        barrier = Barrier(workers)

        def attempt(index: int) -> str:
            barrier.wait()
            try:
                self.repo.reserve(self.room.room_id, _slot(9, 0, 10), f"u{index}", now=NOW)
                return "ok"
            except ConflictError:
                return "conflict"

        with ThreadPoolExecutor(max_workers=workers) as pool:
            outcomes = list(pool.map(attempt, range(workers)))

        self.assertEqual(outcomes.count("ok"), 1)
        self.assertEqual(outcomes.count("conflict"), workers - 1)
        confirmed = [record for record in self.repo.list_by_room(self.room.room_id) if record.status is BookingStatus.CONFIRMED]
        self.assertEqual(len(confirmed), 1)

    def test_concurrent_mixed_requests_keep_active_bookings_disjoint(self) -> None:
        base = datetime(2026, 2, 24, 8, 0, tzinfo=UTC)
        requests = [
            Interval(base + timedelta(minutes=20 * offset), base + timedelta(minutes=20 * offset + 60))
            for offset in range(12)
        ]
        barrier = Barrier(len(requests))

        def attempt(interval: Interval) -> None:
            barrier.wait()
            try:
                self.repo.reserve(self.room.room_id, interval, "u1", now=NOW)
            except ConflictError:
                pass

        with ThreadPoolExecutor(max_workers=len(requests)) as pool:
            list(pool.map(attempt, requests))

        active = self.repo.list_by_room(self.room.room_id)
        self.assertGreater(len(active), 0)
        for index, first in enumerate(active):
            for second in active[index + 1:]:
                self.assertFalse(has_time_overlap(first.start, first.end, second.start, second.end))

    def test_update_status_enforces_transitions(self) -> None:
        booking = self.repo.reserve(self.room.room_id, _slot(10, 0, 11), "u1", now=NOW)

        with self.assertRaises(InvalidTransitionError):
            self.repo.update_status(booking.booking_id, BookingStatus.PENDING, now=NOW)

        cancelled, changed = self.repo.update_status(booking.booking_id, BookingStatus.CANCELLED, now=NOW)
        self.assertTrue(changed)
        self.assertEqual(cancelled.status, BookingStatus.CANCELLED)

        again, changed_again = self.repo.update_status(booking.booking_id, BookingStatus.CANCELLED, now=NOW)
        self.assertFalse(changed_again)
        self.assertEqual(again.status, BookingStatus.CANCELLED)

        with self.assertRaises(InvalidTransitionError):
            self.repo.update_status(booking.booking_id, BookingStatus.CONFIRMED, now=NOW)

    def test_update_status_unknown_booking(self) -> None:
        with self.assertRaises(NotFoundError):
            self.repo.update_status("nope", BookingStatus.CANCELLED)

    def test_listings_filter_and_order(self) -> None:
        late = self.repo.reserve(self.room.room_id, _slot(14, 0, 15), "u1", now=NOW)
        early = self.repo.reserve(self.room.room_id, _slot(9, 0, 10), "u1", now=NOW)
        middle = self.repo.reserve(self.room.room_id, _slot(11, 0, 12), "u1", now=NOW)
        self.repo.reserve(self.room.room_id, _slot(12, 0, 13), "u2", now=NOW)
        self.repo.update_status(middle.booking_id, BookingStatus.CANCELLED, now=NOW)

        by_room = self.repo.list_by_room(self.room.room_id)
        self.assertNotIn(middle.booking_id, [record.booking_id for record in by_room])
        self.assertEqual([record.start.hour for record in by_room], [9, 12, 14])
        self.assertEqual(len(self.repo.list_by_room(self.room.room_id, exclude_cancelled=False)), 4)

        by_owner = self.repo.list_by_owner("u1")
        self.assertEqual(
            [record.booking_id for record in by_owner],
            [late.booking_id, middle.booking_id, early.booking_id],
        )

    def test_get_booking_survives_restart(self) -> None:
        booking = self.repo.reserve(self.room.room_id, _slot(10, 0, 11), "u1", now=NOW)

        reopened = ReservationYamlRepository(self.data_dir)
        loaded = reopened.get_booking(booking.booking_id)

        self.assertEqual(loaded, booking)
        with self.assertRaises(ConflictError):
            reopened.reserve(self.room.room_id, _slot(10, 30, 11, 30), "u2", now=NOW)

    def test_delete_room_cascades_bookings(self) -> None:
        booking = self.repo.reserve(self.room.room_id, _slot(10, 0, 11), "u1", now=NOW)

        deleted = self.repo.delete_room(self.room.room_id, now=NOW)

        self.assertEqual(deleted.room_id, self.room.room_id)
        self.assertEqual(self.repo.get_rooms(), [])
        self.assertEqual(self.repo.list_by_owner("u1"), [])
        with self.assertRaises(NotFoundError):
            self.repo.get_booking(booking.booking_id)
        with self.assertRaises(NotFoundError):
            self.repo.delete_room(self.room.room_id)

    def test_replace_room_replaces_every_field(self) -> None:
        updated = self.repo.replace_room(
            self.room.room_id,
            name="Boardroom B",
            capacity=12,
            description=None,
            photo_url="https://example.com/b.jpg",
            is_active=True,
        )

        self.assertEqual(updated.name, "Boardroom B")
        self.assertIsNone(updated.description)
        self.assertEqual(self.repo.get_room(self.room.room_id), updated)
        self.assertEqual(updated.created_at, self.room.created_at)

    def test_logs_booking_events(self) -> None:
        booking = self.repo.reserve(self.room.room_id, _slot(10, 0, 11), "u1", now=NOW)
        with self.assertRaises(ConflictError):
            self.repo.reserve(self.room.room_id, _slot(10, 0, 11), "u2", now=NOW)
        self.repo.update_status(booking.booking_id, BookingStatus.CANCELLED, now=NOW)

        event_types = [event["event_type"] for event in self.repo.read_events()]
        self.assertIn("ROOM_CREATED", event_types)
        self.assertIn("BOOKING_CREATED", event_types)
        self.assertIn("BOOKING_CONFLICT", event_types)
        self.assertIn("BOOKING_CANCELLED", event_types)

        log_path = self.data_dir / "booking_events.yaml"
        self.assertIn("BOOKING_CREATED", log_path.read_text(encoding="utf-8"))

    def test_bookings_are_stored_per_room(self) -> None:
        self.repo.reserve(self.room.room_id, _slot(10, 0, 11), "u1", now=NOW)

        room_file = self.data_dir / "bookings" / f"{self.room.room_id}.yaml"
        self.assertTrue(room_file.exists())
        self.assertIn("confirmed", room_file.read_text(encoding="utf-8"))

    def test_corrupted_booking_file_is_quarantined_not_reset(self) -> None:
        self.repo.reserve(self.room.room_id, _slot(10, 0, 11), "u1", now=NOW)
        room_file = self.data_dir / "bookings" / f"{self.room.room_id}.yaml"
        room_file.write_text("this: [is: invalid", encoding="utf-8")

        with self.assertRaises(StorageError) as context:
            self.repo.list_by_room(self.room.room_id)

        self.assertEqual(context.exception.kind, "internal_error")
        self.assertEqual(room_file.read_text(encoding="utf-8"), "this: [is: invalid")
        backups = list((self.data_dir / "bookings").glob("*.corrupt.*.yaml"))
        self.assertEqual(len(backups), 1)
        with self.assertRaises(StorageError):
            self.repo.reserve(self.room.room_id, _slot(12, 0, 13), "u1", now=NOW)

    def test_two_repositories_on_one_directory_admit_once(self) -> None:
        other = ReservationYamlRepository(self.data_dir)
        repositories = [self.repo, other]

        for day in range(1, 11):
            interval = Interval(
                datetime(2026, 3, day, 9, 0, tzinfo=UTC),
                datetime(2026, 3, day, 10, 0, tzinfo=UTC),
            )
            barrier = Barrier(len(repositories))

            def attempt(repository: ReservationYamlRepository) -> str:
                barrier.wait()
                try:
                    repository.reserve(self.room.room_id, interval, "u1", now=NOW)
                    return "ok"
                except ConflictError:
                    return "conflict"

            with ThreadPoolExecutor(max_workers=len(repositories)) as pool:
                outcomes = sorted(pool.map(attempt, repositories))
            self.assertEqual(outcomes, ["conflict", "ok"], f"day {day}")

        self.assertEqual(len(self.repo.list_by_room(self.room.room_id)), 10)
        self.assertEqual(len(other.list_by_room(self.room.room_id)), 10)

    def test_booking_written_by_another_repository_is_found(self) -> None:
        other = ReservationYamlRepository(self.data_dir)
        booking = other.reserve(self.room.room_id, _slot(10, 0, 11), "u1", now=NOW)

        self.assertEqual(self.repo.get_booking(booking.booking_id), booking)
        cancelled, changed = self.repo.update_status(booking.booking_id, BookingStatus.CANCELLED, now=NOW)

        self.assertTrue(changed)
        self.assertEqual(other.get_booking(booking.booking_id).status, cancelled.status)

    def test_room_lock_is_held_through_the_lock_file(self) -> None:
        lock_path = self.data_dir / ".locks" / f"room-{self.room.room_id}.lock"
        impatient = ReservationYamlRepository(self.data_dir, lock_timeout=0.2)

        with FileLock(str(lock_path)):
            with self.assertRaises(StorageError):
                impatient.reserve(self.room.room_id, _slot(10, 0, 11), "u1", now=NOW)

        self.assertEqual(self.repo.list_by_room(self.room.room_id), [])
        booked = impatient.reserve(self.room.room_id, _slot(10, 0, 11), "u1", now=NOW)
        self.assertEqual(booked.room_id, self.room.room_id)

    def test_admissions_on_different_rooms_run_side_by_side(self) -> None:
        other_room = self.repo.add_room("Focus room", 2, now=NOW)
        # both admissions must be inside their critical sections at the same time
        inside = Barrier(2, timeout=5)
        original_find_conflict = yaml_store.find_conflict

        def scan_together(interval: Interval, existing: list) -> object:
            inside.wait()
            return original_find_conflict(interval, existing)

        with mock.patch.object(yaml_store, "find_conflict", side_effect=scan_together):
            with ThreadPoolExecutor(max_workers=2) as pool:
                futures = [
                    pool.submit(self.repo.reserve, room_id, _slot(10, 0, 11), "u1", NOW)
                    for room_id in (self.room.room_id, other_room.room_id)
                ]
                records = [future.result() for future in futures]

        self.assertEqual({record.room_id for record in records}, {self.room.room_id, other_room.room_id})

    def test_unknown_room_gets_no_lock(self) -> None:
        with self.assertRaises(NotFoundError):
            self.repo.reserve("not-a-room", _slot(10, 0, 11), "u1", now=NOW)

        self.assertFalse((self.data_dir / ".locks" / "room-not-a-room.lock").exists())

    def test_delete_room_with_unreadable_bookings_changes_nothing(self) -> None:
        self.repo.reserve(self.room.room_id, _slot(10, 0, 11), "u1", now=NOW)
        room_file = self.data_dir / "bookings" / f"{self.room.room_id}.yaml"
        room_file.write_text("this: [is: invalid", encoding="utf-8")

        with self.assertRaises(StorageError):
            self.repo.delete_room(self.room.room_id, now=NOW)

        self.assertEqual(self.repo.get_room(self.room.room_id), self.room)
        self.assertTrue(room_file.exists())

    def test_delete_room_restores_catalog_when_bookings_cannot_be_removed(self) -> None:
        booking = self.repo.reserve(self.room.room_id, _slot(10, 0, 11), "u1", now=NOW)
        room_file = self.data_dir / "bookings" / f"{self.room.room_id}.yaml"
        original_unlink = Path.unlink

        def refuse_room_file(path: Path, *args: object, **kwargs: object) -> None:
            if path == room_file:
                raise OSError("read-only file system")
            original_unlink(path, *args, **kwargs)

        with mock.patch.object(Path, "unlink", autospec=True, side_effect=refuse_room_file):
            with self.assertRaises(StorageError):
                self.repo.delete_room(self.room.room_id, now=NOW)

        self.assertEqual(self.repo.get_room(self.room.room_id), self.room)
        self.assertEqual(self.repo.get_booking(booking.booking_id), booking)
        event_types = [event["event_type"] for event in self.repo.read_events()]
        self.assertNotIn("ROOM_DELETED", event_types)

    def test_invalid_stored_rows_raise_storage_error(self) -> None:
        booking = self.repo.reserve(self.room.room_id, _slot(10, 0, 11), "u1", now=NOW)
        room_file = self.data_dir / "bookings" / f"{self.room.room_id}.yaml"
        row = booking.to_dict()
        row["status"] = "archived"
        room_file.write_text(yaml.safe_dump([row]), encoding="utf-8")

        with self.assertRaises(StorageError) as context:
            self.repo.list_by_room(self.room.room_id)
        self.assertEqual(context.exception.kind, "internal_error")

        rooms_file = self.data_dir / "rooms.yaml"
        rooms_file.write_text(yaml.safe_dump([{"room_id": "r1", "capacity": 3}]), encoding="utf-8")
        with self.assertRaises(StorageError):
            self.repo.get_rooms()

        event_types = [event["event_type"] for event in self.repo.read_events()]
        self.assertIn("YAML_ROW_INVALID", event_types)


class TestUserYamlRepository(unittest.TestCase):
    def test_add_user_rejects_duplicate_email(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            users = UserYamlRepository(Path(temp_dir) / "data")
            created = users.add_user("ann@example.com", "hash", now=NOW)

            self.assertEqual(created.role, "user")
            self.assertEqual(users.find_by_email("ann@example.com"), created)
            with self.assertRaises(ValidationError):
                users.add_user("ann@example.com", "other")

    def test_set_role_and_invalid_role(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            users = UserYamlRepository(Path(temp_dir) / "data")
            created = users.add_user("bob@example.com", "hash")

            promoted = users.set_role(created.user_id, "admin")
            self.assertEqual(promoted.role, "admin")
            self.assertEqual(users.get_user(created.user_id).role, "admin")

            with self.assertRaises(ValidationError):
                users.add_user("eve@example.com", "hash", role="root")
            with self.assertRaises(NotFoundError):
                users.set_role("missing", "admin")


if __name__ == "__main__":
    unittest.main()
