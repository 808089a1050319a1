import tempfile
import unittest
from datetime import datetime
from pathlib import Path

from fleet_booking import BookingDraft, BookingYamlRepository, NotFoundError, TimeInterval, ValidationError, Vehicle


def _clock() -> datetime:
    return datetime(2025, 1, 1, 8, 0)


class TestBookingYamlRepository(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_dir = tempfile.TemporaryDirectory()
        self.data_dir = Path(self._temp_dir.name) / "data"
        self.repo = BookingYamlRepository(self.data_dir, clock=_clock)
        self.repo.add_vehicle(Vehicle("car-1", "Toyota", "Avanza", "B 1234 XY"))

    def tearDown(self) -> None:
        self._temp_dir.cleanup()

    def _draft(self, start_hour: int, end_hour: int, vehicle_id: str = "car-1") -> BookingDraft:
        return BookingDraft(
            vehicle_id=vehicle_id,
            requester_id="user-1",
            start=datetime(2025, 1, 1, start_hour, 0),
            end=datetime(2025, 1, 1, end_hour, 0),
            destination="Bandung",
        )

    def test_creates_files_on_init(self) -> None:
        for name in ("vehicles.yaml", "bookings.yaml", "booking_events.yaml"):
            self.assertTrue((self.data_dir / name).exists())

    def test_create_reservation_starts_pending_and_round_trips(self) -> None:
        created = self.repo.create_reservation(self._draft(9, 11))

        self.assertEqual(created.status, "pending")
        self.assertEqual(created.created_at, _clock())
        reloaded = BookingYamlRepository(self.data_dir, clock=_clock).get_reservation(created.booking_id)
        self.assertEqual(reloaded, created)

    def test_list_reservations_filters(self) -> None:
        first = self.repo.create_reservation(self._draft(9, 11))
        second = self.repo.create_reservation(self._draft(13, 14))
        self.repo.update_reservation_status(first.booking_id, "approved")

        approved = self.repo.list_reservations(vehicle_id="car-1", statuses=["approved"])
        self.assertEqual([record.booking_id for record in approved], [first.booking_id])

        overlapping = self.repo.list_reservations(
            overlapping=TimeInterval(datetime(2025, 1, 1, 12, 0), datetime(2025, 1, 1, 13, 30))
        )
        self.assertEqual([record.booking_id for record in overlapping], [second.booking_id])

        ended = self.repo.list_reservations(ended_by=datetime(2025, 1, 1, 11, 0))
        self.assertEqual([record.booking_id for record in ended], [first.booking_id])

    def test_update_status_logs_event(self) -> None:
        created = self.repo.create_reservation(self._draft(9, 11))
        self.repo.update_reservation_status(created.booking_id, "approved")

        event_types = [event["event_type"] for event in self.repo.get_events()]
        self.assertIn("VEHICLE_SAVED", event_types)
        self.assertIn("BOOKING_CREATED", event_types)
        self.assertIn("BOOKING_STATUS_CHANGED", event_types)

    def test_update_status_of_missing_booking_raises(self) -> None:
        with self.assertRaises(NotFoundError):
            self.repo.update_reservation_status("missing", "approved")

    def test_update_status_rejects_unknown_status(self) -> None:
        created = self.repo.create_reservation(self._draft(9, 11))
        with self.assertRaises(ValidationError):
            self.repo.update_reservation_status(created.booking_id, "expired")

    def test_delete_reservation_removes_record(self) -> None:
        created = self.repo.create_reservation(self._draft(9, 11))
        deleted = self.repo.delete_reservation(created.booking_id)

        self.assertEqual(deleted.booking_id, created.booking_id)
        self.assertIsNone(self.repo.get_reservation(created.booking_id))

    def test_vehicle_upsert_and_status_filter(self) -> None:
        self.repo.add_vehicle(Vehicle("car-2", "Honda", "Civic", "B 9 Z"))
        self.repo.set_vehicle_status("car-2", "inactive")

        self.assertEqual([vehicle.vehicle_id for vehicle in self.repo.list_resources(status="active")], ["car-1"])
        self.assertEqual(len(self.repo.list_resources()), 2)
        self.assertEqual(self.repo.get_vehicle("car-1").label, "Toyota Avanza (B 1234 XY)")

    def test_add_vehicle_rejects_empty_id_and_unknown_status(self) -> None:
        with self.assertRaises(ValidationError):
            self.repo.add_vehicle(Vehicle("  ", "Toyota", "Avanza", "B 1"))
        with self.assertRaises(ValidationError):
            self.repo.add_vehicle(Vehicle("car-3", "Toyota", "Avanza", "B 1", status="broken"))

    def test_corrupted_yaml_is_recovered(self) -> None:
        bookings_path = self.data_dir / "bookings.yaml"
        bookings_path.write_text("this: [is: invalid", encoding="utf-8")

        self.assertEqual(self.repo.list_reservations(), [])
        self.assertIn("[]", bookings_path.read_text(encoding="utf-8"))
        self.assertTrue(list(self.data_dir.glob("bookings.corrupt.*.yaml")))
        self.assertIn("YAML_RECOVERED", [event["event_type"] for event in self.repo.get_events()])


if __name__ == "__main__":
    unittest.main()
