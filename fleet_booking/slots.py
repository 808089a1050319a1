from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Iterable, Iterator

from .booking import OverlapMode, Reservable, TimeInterval, find_conflicts
from .errors import ValidationError
from .lifecycle import APPROVAL_BLOCKING_STATUSES

DEFAULT_SLOT_STEP = timedelta(hours=1)


@dataclass(frozen=True)
class WorkingWindow:
    start: time
    end: time

    def __post_init__(self) -> None:
        if self.start >= self.end:
            raise ValidationError("Working window start must be earlier than its end.")

    def bounds(self, day: date) -> tuple[datetime, datetime]:
        return datetime.combine(day, self.start), datetime.combine(day, self.end)


@dataclass(frozen=True)
class Slot:
    start: datetime
    end: datetime
    is_available: bool
    is_past: bool

    def to_dict(self) -> dict[str, str | bool]:
        return {
            "start": self.start.isoformat(timespec="minutes"),
            "end": self.end.isoformat(timespec="minutes"),
            "is_available": self.is_available,
            "is_past": self.is_past,
        }


def generate_slots(
    vehicle_id: str,
    day: date,
    window: WorkingWindow,
    slot_duration: timedelta,
    reservations: Iterable[Reservable],
    now: datetime,
    step: timedelta = DEFAULT_SLOT_STEP,
    mode: OverlapMode = OverlapMode.SYMMETRIC,
) -> Iterator[Slot]:
    """Yield candidate slots of ``slot_duration`` inside ``window`` on ``day``.

    The cursor advances by ``step`` regardless of the slot length, so slots
    longer than the step overlap their neighbours. Slots that already started
    are still yielded, flagged ``is_past``. Only approved bookings make a slot
    unavailable.
    """
    if slot_duration <= timedelta(0):
        raise ValidationError("slot_duration must be greater than zero")
    if step <= timedelta(0):
        raise ValidationError("step must be greater than zero")

    approved = [
        reservation
        for reservation in reservations
        if reservation.vehicle_id == vehicle_id and reservation.status in APPROVAL_BLOCKING_STATUSES
    ]
    window_start, window_end = window.bounds(day)

    cursor = window_start
    while cursor + slot_duration <= window_end:
        slot_end = cursor + slot_duration
        conflicts = find_conflicts(
            vehicle_id,
            TimeInterval(cursor, slot_end),
            APPROVAL_BLOCKING_STATUSES,
            approved,
            mode=mode,
        )
        yield Slot(start=cursor, end=slot_end, is_available=not conflicts, is_past=cursor < now)
        cursor += step
