import io
import os
import tempfile
import unittest
from contextlib import redirect_stdout
from datetime import datetime
from pathlib import Path

from fleet_booking import BookingDraft, BookingYamlRepository, Vehicle
from fleet_booking.cli import WorkerLock, WorkerLockError, build_parser, main


class TestAutoCompleteCommand(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_dir = tempfile.TemporaryDirectory()
        self.data_dir = Path(self._temp_dir.name) / "data"
        self.repo = BookingYamlRepository(self.data_dir)
        self.repo.add_vehicle(Vehicle("car-1", "Toyota", "Avanza", "B 1234 XY"))
        record = self.repo.create_reservation(
            BookingDraft("car-1", "user-1", datetime(2020, 1, 1, 9, 0), datetime(2020, 1, 1, 11, 0), destination="Bogor")
        )
        self.booking_id = self.repo.update_reservation_status(record.booking_id, "approved").booking_id

    def tearDown(self) -> None:
        self._temp_dir.cleanup()

    def _run(self, *args: str) -> tuple[int, str]:
        buffer = io.StringIO()
        with redirect_stdout(buffer):
            code = main(["--data-dir", str(self.data_dir), "auto-complete", *args])
        return code, buffer.getvalue()

    def test_dry_run_lists_candidates_without_updating(self) -> None:
        code, output = self._run("--dry-run")

        self.assertEqual(code, 0)
        self.assertIn("Found 1 expired booking(s)", output)
        self.assertIn("Toyota Avanza (B 1234 XY)", output)
        self.assertIn("DRY RUN MODE", output)
        self.assertEqual(self.repo.get_reservation(self.booking_id).status, "approved")

    def test_completes_expired_bookings(self) -> None:
        code, output = self._run("--yes")

        self.assertEqual(code, 0)
        self.assertIn("Successfully updated: 1 booking(s)", output)
        self.assertEqual(self.repo.get_reservation(self.booking_id).status, "completed")

        code, output = self._run("--yes")
        self.assertEqual(code, 0)
        self.assertIn("No expired bookings found.", output)


class TestParserAndLock(unittest.TestCase):
    def test_worker_options(self) -> None:
        args = build_parser().parse_args(["worker", "--interval", "60", "--hours-buffer", "1", "--max-runtime", "120"])
        self.assertEqual((args.interval, args.hours_buffer, args.max_runtime), (60.0, 1.0, 120.0))

    def test_worker_lock_is_exclusive(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            with WorkerLock(Path(temp_dir)):
                with self.assertRaises(WorkerLockError):
                    WorkerLock(Path(temp_dir)).acquire()
            with WorkerLock(Path(temp_dir)) as lock:
                self.assertTrue(lock.path.exists())
            self.assertFalse(lock.path.exists())

    def test_lock_left_by_dead_process_is_reclaimed(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            lock = WorkerLock(Path(temp_dir))
            # no process runs under this pid
            lock.path.write_text("999999999", encoding="utf-8")

            with lock:
                self.assertEqual(lock.path.read_text(encoding="utf-8"), str(os.getpid()))
            self.assertFalse(lock.path.exists())

    def test_lock_held_by_live_process_is_kept(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            lock = WorkerLock(Path(temp_dir))
            lock.path.write_text(str(os.getpid()), encoding="utf-8")

            with self.assertRaises(WorkerLockError):
                lock.acquire()
            self.assertTrue(lock.path.exists())


if __name__ == "__main__":
    unittest.main()
