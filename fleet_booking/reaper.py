"""Background loop that retires approved bookings once they are over.

One reaper per data directory. Each cycle computes ``cutoff = now -
hours_buffer``, completes every approved booking ending at or before it, and
then waits for the poll interval or a stop request, whichever comes first.
A failed cycle is logged and retried after ``ERROR_BACKOFF_SECONDS``.
"""

from __future__ import annotations

from typing import Callable
import logging
import threading
import time

from .config import Clock, ReaperSettings
from .errors import TransientError
from .service import BookingService, SweepResult

logger = logging.getLogger(__name__)

ERROR_BACKOFF_SECONDS = 30.0


class CompletionReaper:
    def __init__(
        self,
        service: BookingService,
        settings: ReaperSettings | None = None,
        clock: Clock | None = None,
        stop_event: threading.Event | None = None,
        monotonic: Callable[[], float] = time.monotonic,
        error_backoff: float = ERROR_BACKOFF_SECONDS,
    ) -> None:
        self.service = service
        self.settings = settings or ReaperSettings()
        self.clock: Clock = clock or service.clock
        self.stop_event = stop_event or threading.Event()
        self.error_backoff = error_backoff
        self._monotonic = monotonic
        self.cycles = 0
        self.failed_cycles = 0
        self.last_result: SweepResult | None = None

    def stop(self) -> None:
        self.stop_event.set()

    @property
    def stopped(self) -> bool:
        return self.stop_event.is_set()

    def sweep_once(self) -> SweepResult:
        try:
            now = self.clock()
            cutoff = now - self.settings.buffer
            logger.info(
                "Checking for expired bookings at %s (cutoff %s)",
                now.isoformat(timespec="seconds"),
                cutoff.isoformat(timespec="seconds"),
            )
            result = self.service.run_completion_sweep(cutoff)
        except Exception as error:
            raise TransientError(f"Completion sweep failed: {error}") from error

        if not result.candidates:
            logger.info("No expired bookings found")
        else:
            logger.info("Completed: %d | Failed: %d", result.updated_count, len(result.failed))
        return result

    def run(self) -> int:
        """Run cycles until stopped or ``max_runtime`` elapses; return the cycle count."""
        started = self._monotonic()
        logger.info(
            "Booking reaper started (interval=%ss, hours_buffer=%s, max_runtime=%s)",
            self.settings.poll_interval,
            self.settings.hours_buffer,
            self.settings.max_runtime or "unlimited",
        )

        while not self.stopped:
            remaining = self._remaining_runtime(started)
            if remaining is not None and remaining <= 0:
                logger.info("Max runtime reached, stopping booking reaper")
                break

            try:
                self.last_result = self.sweep_once()
                delay = self.settings.poll_interval
            except TransientError:
                self.failed_cycles += 1
                logger.exception("Booking reaper cycle failed; retrying in %ss", self.error_backoff)
                delay = self.error_backoff
            self.cycles += 1

            remaining = self._remaining_runtime(started)
            if remaining is not None:
                delay = min(delay, max(remaining, 0.0))
            if self.stop_event.wait(delay):
                break

        logger.info("Booking reaper stopped after %d cycle(s)", self.cycles)
        return self.cycles

    def _remaining_runtime(self, started: float) -> float | None:
        if self.settings.max_runtime <= 0:
            return None
        return self.settings.max_runtime - (self._monotonic() - started)
