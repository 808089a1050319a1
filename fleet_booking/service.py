from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import date, datetime, time, timedelta
from typing import Any, Iterator
import logging
import threading

import holidays as pyholidays

from .booking import OverlapMode, TimeInterval, find_conflicts
from .config import DEFAULT_HOLIDAY_COUNTRY, DEFAULT_TIMEZONE, Clock, make_clock, to_wall_clock
from .errors import ConflictError, NotFoundError, ValidationError
from .lifecycle import (
    APPROVAL_BLOCKING_STATUSES,
    BLOCKING_STATUSES,
    STATUS_APPROVED,
    STATUS_COMPLETED,
    STATUS_REJECTED,
    STORED_STATUSES,
    derived_status,
    ensure_completable,
    ensure_editable,
    ensure_transition,
    should_complete,
)
from .slots import DEFAULT_SLOT_STEP, Slot, WorkingWindow, generate_slots
from .yaml_store import BookingDraft, BookingRecord, BookingYamlRepository, Vehicle

logger = logging.getLogger(__name__)

MAX_NOTES_LENGTH = 1000
MAX_SCHEDULE_DAYS = 7


def booking_to_dict(record: BookingRecord, now: datetime, vehicle: Vehicle | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        **record.to_dict(),
        "derived_status": derived_status(record, now),
        "time_display": f"{record.start.strftime('%H:%M')} - {record.end.strftime('%H:%M')}",
        "duration_hours": round((record.end - record.start).total_seconds() / 3600, 2),
    }
    if vehicle is not None:
        payload["vehicle"] = {**vehicle.to_dict(), "label": vehicle.label}
    return payload


@dataclass(frozen=True)
class SweepResult:
    cutoff: datetime
    candidates: list[BookingRecord] = field(default_factory=list)
    updated_ids: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    dry_run: bool = False

    @property
    def updated_count(self) -> int:
        return len(self.updated_ids)

    @property
    def failed_ids(self) -> list[str]:
        return list(self.failed)

    def to_dict(self) -> dict[str, Any]:
        return {
            "cutoff": self.cutoff.isoformat(timespec="seconds"),
            "dry_run": self.dry_run,
            "candidate_ids": [record.booking_id for record in self.candidates],
            "updated_count": self.updated_count,
            "updated_ids": self.updated_ids,
            "failed_ids": self.failed_ids,
            "failed": self.failed,
        }


@dataclass(frozen=True)
class ScheduleDay:
    day: date
    is_today: bool
    is_tomorrow: bool
    holiday_name: str | None
    bookings: list[BookingRecord]

    @property
    def day_name(self) -> str:
        return self.day.strftime("%A")

    @property
    def is_holiday(self) -> bool:
        return self.holiday_name is not None

    def to_dict(self, now: datetime) -> dict[str, Any]:
        return {
            "date": self.day.isoformat(),
            "day_name": self.day_name,
            "is_today": self.is_today,
            "is_tomorrow": self.is_tomorrow,
            "is_holiday": self.is_holiday,
            "holiday_name": self.holiday_name,
            "bookings": [booking_to_dict(record, now) for record in self.bookings],
        }


class VehicleLockRegistry:
    """Hands out one lock per vehicle so check-then-write runs serially per vehicle."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def lock_for(self, vehicle_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(vehicle_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[vehicle_id] = lock
            return lock

    @contextmanager
    def hold(self, *vehicle_ids: str) -> Iterator[None]:
        # sorted acquisition order keeps two-vehicle edits deadlock free
        locks = [self.lock_for(vehicle_id) for vehicle_id in sorted(set(vehicle_ids))]
        for lock in locks:
            lock.acquire()
        try:
            yield
        finally:
            for lock in reversed(locks):
                lock.release()


class BookingService:
    def __init__(
        self,
        repository: BookingYamlRepository,
        clock: Clock | None = None,
        overlap_mode: OverlapMode = OverlapMode.SYMMETRIC,
        holiday_country: str = DEFAULT_HOLIDAY_COUNTRY,
        locks: VehicleLockRegistry | None = None,
        timezone: str = DEFAULT_TIMEZONE,
    ) -> None:
        self.repository = repository
        self.timezone = timezone
        self.clock: Clock = clock or make_clock(timezone)
        self.overlap_mode = overlap_mode
        self.holiday_country = holiday_country
        self.locks = locks or VehicleLockRegistry()
        self._holiday_cache: dict[int, dict[date, str]] = {}

    # reads

    def get_reservation(self, booking_id: str) -> BookingRecord:
        record = self.repository.get_reservation(booking_id)
        if record is None:
            raise NotFoundError(f"Booking {booking_id} not found.")
        return record

    def derived_status_of(self, record: BookingRecord) -> str:
        return derived_status(record, self.clock())

    def list_reservations(
        self,
        vehicle_id: str | None = None,
        status: str | None = None,
        requester_id: str | None = None,
    ) -> list[BookingRecord]:
        if status is not None and status not in STORED_STATUSES:
            raise ValidationError(f"Unknown booking status: {status}")
        records = self.repository.list_reservations(
            vehicle_id=vehicle_id,
            statuses=[status] if status is not None else None,
        )
        if requester_id is not None:
            records = [record for record in records if record.requester_id == requester_id]
        return sorted(records, key=lambda record: record.start, reverse=True)

    def get_stats(self, requester_id: str | None = None) -> dict[str, int]:
        records = self.repository.list_reservations()
        if requester_id is not None:
            records = [record for record in records if record.requester_id == requester_id]

        now = self.clock()
        stats = {"total": len(records)}
        for status in STORED_STATUSES:
            stats[status] = sum(1 for record in records if record.status == status)
        stats["this_month"] = sum(
            1 for record in records if (record.created_at.year, record.created_at.month) == (now.year, now.month)
        )
        return stats

    def find_available_vehicles(self, start: datetime, end: datetime) -> list[Vehicle]:
        interval = self._validated_interval(start, end)
        available: list[Vehicle] = []
        for vehicle in self.repository.list_resources(status="active"):
            existing = self.repository.list_reservations(vehicle_id=vehicle.vehicle_id, statuses=BLOCKING_STATUSES)
            if not find_conflicts(vehicle.vehicle_id, interval, BLOCKING_STATUSES, existing, mode=self.overlap_mode):
                available.append(vehicle)
        return available

    # caller operations

    def create_reservation(
        self,
        vehicle_id: str,
        start: datetime,
        end: datetime,
        requester_id: str,
        notes: str | None = None,
        destination: str | None = None,
    ) -> BookingRecord:
        if not requester_id or not str(requester_id).strip():
            raise ValidationError("requester_id must not be empty")
        interval = self._validated_interval(start, end)
        self._validate_future_start(interval)
        self._validate_notes(notes)
        self._require_bookable_vehicle(vehicle_id)

        with self.locks.hold(vehicle_id):
            self._raise_on_conflicts(vehicle_id, interval, BLOCKING_STATUSES)
            record = self.repository.create_reservation(
                BookingDraft(
                    vehicle_id=vehicle_id,
                    requester_id=str(requester_id).strip(),
                    start=interval.start,
                    end=interval.end,
                    destination=destination,
                    notes=notes,
                )
            )

        logger.info("Booking %s created for vehicle %s", record.booking_id, vehicle_id)
        return record

    def update_reservation(
        self,
        booking_id: str,
        *,
        vehicle_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        destination: str | None = None,
        notes: str | None = None,
    ) -> BookingRecord:
        while True:
            seen = self.get_reservation(booking_id)
            target_vehicle = vehicle_id or seen.vehicle_id
            with self.locks.hold(seen.vehicle_id, target_vehicle):
                current = self.get_reservation(booking_id)
                if current.vehicle_id != seen.vehicle_id:
                    # moved by a concurrent edit before the locks were taken
                    continue
                return self._update_locked(current, target_vehicle, start, end, destination, notes)

    def _update_locked(
        self,
        current: BookingRecord,
        target_vehicle: str,
        start: datetime | None,
        end: datetime | None,
        destination: str | None,
        notes: str | None,
    ) -> BookingRecord:
        ensure_editable(current)

        interval = self._validated_interval(start or current.start, end or current.end)
        if start is not None or end is not None:
            self._validate_future_start(interval)
        self._validate_notes(notes)
        if target_vehicle != current.vehicle_id:
            self._require_bookable_vehicle(target_vehicle)

        self._raise_on_conflicts(target_vehicle, interval, BLOCKING_STATUSES, exclude_id=current.booking_id)
        return self.repository.update_reservation_details(
            current.booking_id,
            vehicle_id=target_vehicle,
            start=interval.start,
            end=interval.end,
            destination=destination,
            notes=notes,
        )

    def delete_reservation(self, booking_id: str) -> BookingRecord:
        current = self.get_reservation(booking_id)
        with self.locks.hold(current.vehicle_id):
            current = self.get_reservation(booking_id)
            ensure_editable(current)
            return self.repository.delete_reservation(booking_id)

    def approve_reservation(self, booking_id: str) -> BookingRecord:
        """Approve a pending booking.

        Only approved bookings block an approval, so two pending bookings may
        overlap until one of them is approved. The conflict check and the
        status write share the vehicle lock.
        """
        current = self.get_reservation(booking_id)
        with self.locks.hold(current.vehicle_id):
            current = self.get_reservation(booking_id)
            ensure_transition(current, STATUS_APPROVED)
            self._raise_on_conflicts(
                current.vehicle_id,
                current.interval,
                APPROVAL_BLOCKING_STATUSES,
                exclude_id=booking_id,
                message="Cannot approve booking due to scheduling conflict.",
            )
            updated = self.repository.update_reservation_status(booking_id, STATUS_APPROVED)

        logger.info("Booking %s approved", booking_id)
        return updated

    def reject_reservation(self, booking_id: str) -> BookingRecord:
        current = self.get_reservation(booking_id)
        with self.locks.hold(current.vehicle_id):
            current = self.get_reservation(booking_id)
            ensure_transition(current, STATUS_REJECTED)
            updated = self.repository.update_reservation_status(booking_id, STATUS_REJECTED)

        logger.info("Booking %s rejected", booking_id)
        return updated

    def complete_reservation(self, booking_id: str, cutoff: datetime | None = None) -> BookingRecord:
        effective_cutoff = self._wall_clock(cutoff, "cutoff") if cutoff is not None else self.clock()
        current = self.get_reservation(booking_id)
        with self.locks.hold(current.vehicle_id):
            current = self.get_reservation(booking_id)
            ensure_completable(current, effective_cutoff)
            return self.repository.update_reservation_status(booking_id, STATUS_COMPLETED)

    def get_schedule(
        self,
        start_date: date,
        end_date: date | None = None,
        vehicle_id: str | None = None,
    ) -> list[ScheduleDay]:
        last_date = end_date or start_date
        days = (last_date - start_date).days + 1
        if days < 1 or days > MAX_SCHEDULE_DAYS:
            raise ValidationError(f"Schedule range must cover between 1 and {MAX_SCHEDULE_DAYS} days.")
        if vehicle_id is not None and self.repository.get_vehicle(vehicle_id) is None:
            raise NotFoundError(f"Vehicle {vehicle_id} not found.")

        range_interval = TimeInterval(
            datetime.combine(start_date, time.min),
            datetime.combine(last_date + timedelta(days=1), time.min),
        )
        bookings = self.repository.list_reservations(
            vehicle_id=vehicle_id,
            statuses=BLOCKING_STATUSES,
            overlapping=range_interval,
        )

        today = self.clock().date()
        schedule: list[ScheduleDay] = []
        for offset in range(days):
            day = start_date + timedelta(days=offset)
            day_interval = TimeInterval(
                datetime.combine(day, time.min),
                datetime.combine(day + timedelta(days=1), time.min),
            )
            day_bookings = [
                record
                for record in bookings
                if record.start < day_interval.end and day_interval.start < record.end
            ]
            schedule.append(
                ScheduleDay(
                    day=day,
                    is_today=day == today,
                    is_tomorrow=day == today + timedelta(days=1),
                    holiday_name=self._holiday_name(day),
                    bookings=day_bookings,
                )
            )
        return schedule

    def get_available_slots(
        self,
        vehicle_id: str,
        day: date,
        window: WorkingWindow,
        slot_duration: timedelta,
        step: timedelta = DEFAULT_SLOT_STEP,
    ) -> list[Slot]:
        vehicle = self.repository.get_vehicle(vehicle_id)
        if vehicle is None:
            raise NotFoundError(f"Vehicle {vehicle_id} not found.")

        day_start, day_end = window.bounds(day)
        approved = self.repository.list_reservations(
            vehicle_id=vehicle_id,
            statuses=APPROVAL_BLOCKING_STATUSES,
        )
        slots = list(
            generate_slots(
                vehicle_id,
                day,
                window,
                slot_duration,
                [record for record in approved if record.start < day_end and day_start < record.end],
                now=self.clock(),
                step=step,
                mode=self.overlap_mode,
            )
        )
        if not vehicle.is_active:
            slots = [replace(slot, is_available=False) for slot in slots]
        return slots

    def run_completion_sweep(self, cutoff: datetime, dry_run: bool = False) -> SweepResult:
        """Move approved bookings with ``end <= cutoff`` to completed.

        Fetch failures propagate. A failure on one booking is recorded in
        ``failed`` and the rest of the batch still runs. Bookings already
        completed by someone else are skipped, so repeating a sweep with the
        same cutoff updates nothing.
        """
        cutoff = self._wall_clock(cutoff, "cutoff")
        candidates = self.repository.list_reservations(statuses=[STATUS_APPROVED], ended_by=cutoff)
        if dry_run or not candidates:
            return SweepResult(cutoff=cutoff, candidates=candidates, dry_run=dry_run)

        updated_ids: list[str] = []
        failed: dict[str, str] = {}
        for candidate in candidates:
            try:
                if self._complete_if_due(candidate.booking_id, candidate.vehicle_id, cutoff):
                    updated_ids.append(candidate.booking_id)
                    logger.info(
                        "Booking %s auto-completed (vehicle %s, ended %s)",
                        candidate.booking_id,
                        candidate.vehicle_id,
                        candidate.end.isoformat(timespec="minutes"),
                    )
            except Exception as error:
                failed[candidate.booking_id] = str(error)
                logger.error("Failed to auto-complete booking %s: %s", candidate.booking_id, error)

        return SweepResult(cutoff=cutoff, candidates=candidates, updated_ids=updated_ids, failed=failed)

    # helpers

    def _complete_if_due(self, booking_id: str, vehicle_id: str, cutoff: datetime) -> bool:
        with self.locks.hold(vehicle_id):
            current = self.repository.get_reservation(booking_id)
            if current is None or not should_complete(current, cutoff):
                return False
            self.repository.update_reservation_status(booking_id, STATUS_COMPLETED)
            return True

    def _raise_on_conflicts(
        self,
        vehicle_id: str,
        interval: TimeInterval,
        statuses: frozenset[str],
        exclude_id: str | None = None,
        message: str = "Vehicle is not available in the requested time range.",
    ) -> None:
        existing = self.repository.list_reservations(vehicle_id=vehicle_id, statuses=statuses)
        conflicts = find_conflicts(vehicle_id, interval, statuses, existing, exclude_id, self.overlap_mode)
        if conflicts:
            raise ConflictError(message, conflicts)

    def _wall_clock(self, value: datetime, name: str) -> datetime:
        if not isinstance(value, datetime):
            raise ValidationError(f"{name} must be a datetime.")
        return to_wall_clock(value, self.timezone)

    def _validated_interval(self, start: datetime, end: datetime) -> TimeInterval:
        # stored timestamps keep whole seconds
        start = self._wall_clock(start, "start").replace(microsecond=0)
        end = self._wall_clock(end, "end").replace(microsecond=0)
        if start >= end:
            raise ValidationError("Booking start time must be earlier than end time.")
        return TimeInterval(start, end)

    def _validate_future_start(self, interval: TimeInterval) -> None:
        if interval.start <= self.clock():
            raise ValidationError("Booking start time must be in the future.")

    def _validate_notes(self, notes: str | None) -> None:
        if notes is not None and len(notes) > MAX_NOTES_LENGTH:
            raise ValidationError(f"notes must be at most {MAX_NOTES_LENGTH} characters.")

    def _require_bookable_vehicle(self, vehicle_id: str) -> Vehicle:
        vehicle = self.repository.get_vehicle(vehicle_id)
        if vehicle is None:
            raise ValidationError(f"Unknown vehicle: {vehicle_id}")
        if not vehicle.is_active:
            raise ValidationError("Cannot book inactive vehicle.")
        return vehicle

    def _holiday_name(self, day: date) -> str | None:
        year = day.year
        if year not in self._holiday_cache:
            holiday_map = pyholidays.country_holidays(self.holiday_country, years=[year])
            self._holiday_cache[year] = dict(holiday_map.items())
        return self._holiday_cache[year].get(day)
