import tempfile
import threading
import unittest
from datetime import datetime
from pathlib import Path

from fleet_booking import (
    BookingDraft,
    BookingService,
    BookingYamlRepository,
    CompletionReaper,
    ReservationStorageError,
    SweepResult,
    TransientError,
    Vehicle,
)
from fleet_booking.config import ReaperSettings


class RecordingEvent(threading.Event):
    """Event whose wait returns immediately and sets itself after ``stop_after`` waits."""

    def __init__(self, stop_after: int) -> None:
        super().__init__()
        self.delays: list[float | None] = []
        self.stop_after = stop_after

    def wait(self, timeout: float | None = None) -> bool:
        self.delays.append(timeout)
        if len(self.delays) >= self.stop_after:
            self.set()
        return self.is_set()


class StubService:
    def __init__(self, failures: int) -> None:
        self.clock = lambda: datetime(2025, 1, 1, 12, 0)
        self.failures = failures
        self.cutoffs: list[datetime] = []

    def run_completion_sweep(self, cutoff: datetime) -> SweepResult:
        self.cutoffs.append(cutoff)
        if len(self.cutoffs) <= self.failures:
            raise ReservationStorageError("storage offline")
        return SweepResult(cutoff=cutoff)


class TestCompletionReaperSweep(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_dir = tempfile.TemporaryDirectory()
        self.now = datetime(2025, 1, 1, 12, 0)
        self.repo = BookingYamlRepository(Path(self._temp_dir.name) / "data", clock=lambda: self.now)
        self.repo.add_vehicle(Vehicle("car-1", "Toyota", "Avanza", "B 1234 XY"))
        self.service = BookingService(self.repo, clock=lambda: self.now)

    def tearDown(self) -> None:
        self._temp_dir.cleanup()

    def _approved(self, start: datetime, end: datetime) -> str:
        record = self.repo.create_reservation(BookingDraft("car-1", "user-1", start, end))
        self.repo.update_reservation_status(record.booking_id, "approved")
        return record.booking_id

    def test_cutoff_subtracts_hours_buffer(self) -> None:
        due = self._approved(datetime(2025, 1, 1, 9, 0), datetime(2025, 1, 1, 11, 0))
        grace = self._approved(datetime(2025, 1, 1, 11, 0), datetime(2025, 1, 1, 11, 30))
        reaper = CompletionReaper(self.service, ReaperSettings(hours_buffer=1))

        result = reaper.sweep_once()

        self.assertEqual(result.cutoff, datetime(2025, 1, 1, 11, 0))
        self.assertEqual(result.updated_ids, [due])
        self.assertEqual(self.repo.get_reservation(grace).status, "approved")

    def test_repeated_sweep_updates_nothing(self) -> None:
        self._approved(datetime(2025, 1, 1, 9, 0), datetime(2025, 1, 1, 11, 0))
        reaper = CompletionReaper(self.service)

        self.assertEqual(reaper.sweep_once().updated_count, 1)
        self.assertEqual(reaper.sweep_once().updated_count, 0)

    def test_sweep_failure_becomes_transient_error(self) -> None:
        reaper = CompletionReaper(StubService(failures=1))
        with self.assertRaises(TransientError):
            reaper.sweep_once()


class TestCompletionReaperLoop(unittest.TestCase):
    def test_failed_cycle_backs_off_then_resumes(self) -> None:
        service = StubService(failures=1)
        event = RecordingEvent(stop_after=2)
        reaper = CompletionReaper(service, ReaperSettings(poll_interval=900), stop_event=event)

        cycles = reaper.run()

        self.assertEqual(cycles, 2)
        self.assertEqual(reaper.failed_cycles, 1)
        self.assertEqual(event.delays, [30.0, 900])
        self.assertIsNotNone(reaper.last_result)

    def test_stops_when_max_runtime_elapses(self) -> None:
        ticks = iter(range(100))
        event = RecordingEvent(stop_after=100)
        reaper = CompletionReaper(
            StubService(failures=0),
            ReaperSettings(poll_interval=900, max_runtime=5),
            stop_event=event,
            monotonic=lambda: float(next(ticks)),
        )

        cycles = reaper.run()

        self.assertEqual(cycles, 2)
        self.assertFalse(event.is_set())
        # waits are capped by the runtime still left
        self.assertEqual(event.delays, [3.0, 1.0])

    def test_clock_failure_backs_off_instead_of_ending_loop(self) -> None:
        service = StubService(failures=0)
        readings = iter([RuntimeError("clock unavailable"), datetime(2025, 1, 1, 12, 0)])

        def flaky_clock() -> datetime:
            value = next(readings)
            if isinstance(value, Exception):
                raise value
            return value

        event = RecordingEvent(stop_after=2)
        reaper = CompletionReaper(service, ReaperSettings(poll_interval=900), clock=flaky_clock, stop_event=event)

        self.assertEqual(reaper.run(), 2)
        self.assertEqual(reaper.failed_cycles, 1)
        self.assertEqual(event.delays, [30.0, 900])
        self.assertEqual(service.cutoffs, [datetime(2025, 1, 1, 12, 0)])

    def test_stop_before_run_skips_cycles(self) -> None:
        service = StubService(failures=0)
        reaper = CompletionReaper(service)
        reaper.stop()

        self.assertTrue(reaper.stopped)
        self.assertEqual(reaper.run(), 0)
        self.assertEqual(service.cutoffs, [])

    def test_stop_interrupts_long_wait(self) -> None:
        service = StubService(failures=0)
        reaper = CompletionReaper(service, ReaperSettings(poll_interval=3600))
        worker = threading.Thread(target=reaper.run)
        worker.start()

        for _ in range(200):
            if service.cutoffs:
                break
            threading.Event().wait(0.01)
        reaper.stop()
        worker.join(timeout=5)

        self.assertFalse(worker.is_alive())
        self.assertEqual(reaper.cycles, 1)


class TestReaperSettings(unittest.TestCase):
    def test_defaults_and_env(self) -> None:
        self.assertEqual(ReaperSettings.from_env({}), ReaperSettings(900, 0, 0))
        settings = ReaperSettings.from_env(
            {
                "FLEET_BOOKING_POLL_INTERVAL": "60",
                "FLEET_BOOKING_HOURS_BUFFER": "2",
                "FLEET_BOOKING_MAX_RUNTIME": "3600",
            }
        )
        self.assertEqual(settings, ReaperSettings(60, 2, 3600))

    def test_invalid_values_raise(self) -> None:
        with self.assertRaises(ValueError):
            ReaperSettings(poll_interval=0)
        with self.assertRaises(ValueError):
            ReaperSettings.from_env({"FLEET_BOOKING_HOURS_BUFFER": "soon"})


if __name__ == "__main__":
    unittest.main()
