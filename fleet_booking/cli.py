from __future__ import annotations

from pathlib import Path
from typing import Sequence
import argparse
import logging
import os
import signal
import sys

from dotenv import load_dotenv

from .config import AppSettings, ReaperSettings, make_clock
from .reaper import CompletionReaper
from .service import BookingService, SweepResult
from .yaml_store import BookingYamlRepository

logger = logging.getLogger(__name__)

WORKER_LOCK_NAME = "completion-reaper.lock"


class WorkerLockError(RuntimeError):
    pass


class WorkerLock:
    """Exclusive lock file so only one reaper runs against a data directory.

    The file holds the owner's PID. A lock left behind by a process that no
    longer exists is reclaimed on the next acquire.
    """

    def __init__(self, data_dir: Path, name: str = WORKER_LOCK_NAME) -> None:
        self.path = Path(data_dir) / name
        self._held = False

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError as error:
            owner = self._owner_pid()
            if owner is not None and _process_alive(owner):
                raise WorkerLockError(f"Another reaper (pid {owner}) holds {self.path}.") from error
            logger.warning("Reclaiming stale reaper lock %s (pid %s)", self.path, owner)
            self.path.unlink(missing_ok=True)
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError as retry_error:
                raise WorkerLockError(f"Another reaper took {self.path} first.") from retry_error
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(str(os.getpid()))
        self._held = True

    def _owner_pid(self) -> int | None:
        try:
            return int(self.path.read_text(encoding="utf-8").strip())
        except (OSError, ValueError):
            return None

    def release(self) -> None:
        if self._held:
            self.path.unlink(missing_ok=True)
            self._held = False

    def __enter__(self) -> "WorkerLock":
        self.acquire()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()


def _process_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # exists but owned by another user
        return True
    return True


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="fleet-booking", description="Vehicle booking maintenance commands")
    parser.add_argument("--data-dir", default=None, help="Directory holding the YAML data files")
    parser.add_argument("--timezone", default=None, help="IANA timezone for the booking clock")
    subparsers = parser.add_subparsers(dest="command", required=True)

    worker = subparsers.add_parser("worker", help="Long-running worker that completes expired bookings")
    worker.add_argument("--interval", type=float, default=None, help="Seconds between checks (default: 900)")
    worker.add_argument("--hours-buffer", type=float, default=None, help="Hours past end time before completing")
    worker.add_argument("--max-runtime", type=float, default=None, help="Stop after this many seconds (0 = unlimited)")

    auto = subparsers.add_parser("auto-complete", help="Mark bookings as completed once they pass their end time")
    auto.add_argument("--hours", type=float, default=0, help="Hours past end time to consider as completed")
    auto.add_argument("--dry-run", action="store_true", help="Show what would be updated without updating")
    auto.add_argument("--yes", action="store_true", help="Do not ask for confirmation")
    return parser


def _build_service(args: argparse.Namespace) -> tuple[BookingService, AppSettings]:
    settings = AppSettings.from_env()
    data_dir = Path(args.data_dir) if args.data_dir else settings.data_dir
    timezone = args.timezone or settings.timezone
    clock = make_clock(timezone)
    repository = BookingYamlRepository(data_dir, clock=clock)
    service = BookingService(repository, clock=clock, holiday_country=settings.holiday_country, timezone=timezone)
    return service, AppSettings(data_dir=data_dir, timezone=timezone, holiday_country=settings.holiday_country)


def run_worker(args: argparse.Namespace) -> int:
    service, settings = _build_service(args)
    env_settings = ReaperSettings.from_env()
    reaper_settings = ReaperSettings(
        poll_interval=args.interval if args.interval is not None else env_settings.poll_interval,
        hours_buffer=args.hours_buffer if args.hours_buffer is not None else env_settings.hours_buffer,
        max_runtime=args.max_runtime if args.max_runtime is not None else env_settings.max_runtime,
    )
    reaper = CompletionReaper(service, reaper_settings)

    def _handle_signal(signum: int, _frame: object) -> None:
        logger.info("Received signal %s, stopping booking reaper", signum)
        reaper.stop()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    try:
        with WorkerLock(settings.data_dir):
            reaper.run()
    except WorkerLockError as error:
        logger.error("%s", error)
        return 1
    return 0


def run_auto_complete(args: argparse.Namespace) -> int:
    service, _settings = _build_service(args)
    if args.hours < 0:
        print("--hours must not be negative", file=sys.stderr)
        return 2

    cutoff = service.clock() - ReaperSettings(hours_buffer=args.hours).buffer
    print(f"Looking for approved bookings that ended before: {cutoff.strftime('%Y-%m-%d %H:%M:%S')}")

    preview = service.run_completion_sweep(cutoff, dry_run=True)
    if not preview.candidates:
        print("No expired bookings found.")
        return 0

    print(f"Found {len(preview.candidates)} expired booking(s):")
    _print_candidates(service, preview)

    if args.dry_run:
        print("DRY RUN MODE: No changes were made.")
        return 0

    if not args.yes and sys.stdin.isatty():
        answer = input("Do you want to mark these bookings as completed? [y/N] ").strip().lower()
        if answer not in {"y", "yes"}:
            print("Operation cancelled.")
            return 0

    result = service.run_completion_sweep(cutoff)
    print("=" * 50)
    print("Auto-complete process completed!")
    print(f"Successfully updated: {result.updated_count} booking(s)")
    if result.failed:
        print(f"Failed updates: {len(result.failed)} booking(s)", file=sys.stderr)
        for booking_id, message in result.failed.items():
            print(f"  - Booking #{booking_id}: {message}", file=sys.stderr)
        return 1
    return 0


def _print_candidates(service: BookingService, result: SweepResult) -> None:
    header = ("ID", "Vehicle", "Requester", "Start Time", "End Time", "Destination")
    rows = [header]
    for record in result.candidates:
        vehicle = service.repository.get_vehicle(record.vehicle_id)
        rows.append(
            (
                record.booking_id,
                vehicle.label if vehicle is not None else record.vehicle_id,
                record.requester_id,
                record.start.strftime("%Y-%m-%d %H:%M"),
                record.end.strftime("%Y-%m-%d %H:%M"),
                record.destination or "",
            )
        )
    widths = [max(len(row[index]) for row in rows) for index in range(len(header))]
    for row in rows:
        print("  ".join(value.ljust(width) for value, width in zip(row, widths)))


def main(argv: Sequence[str] | None = None) -> int:
    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    args = build_parser().parse_args(argv)
    if args.command == "worker":
        return run_worker(args)
    return run_auto_complete(args)


if __name__ == "__main__":
    raise SystemExit(main())
