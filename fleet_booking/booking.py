from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Iterable, Protocol, TypeVar


@dataclass(frozen=True)
class TimeInterval:
    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.start >= self.end:
            raise ValueError("Interval start time must be earlier than end time.")


class OverlapMode(str, Enum):
    SYMMETRIC = "symmetric"
    LEGACY = "legacy"


class Reservable(Protocol):
    booking_id: str
    vehicle_id: str
    status: str
    start: datetime
    end: datetime


def has_time_overlap(new_start: datetime, new_end: datetime, exist_start: datetime, exist_end: datetime) -> bool:
    """Return True when two time intervals share at least one instant.

    Intervals are treated as half-open ranges: [start, end)
    so touching boundaries (e.g. 10:00-11:00 and 11:00-12:00) do not overlap.
    """
    if new_start >= new_end:
        raise ValueError("new_start must be earlier than new_end.")
    if exist_start >= exist_end:
        raise ValueError("exist_start must be earlier than exist_end.")

    return new_start < exist_end and exist_start < new_end


def has_legacy_overlap(new_start: datetime, new_end: datetime, exist_start: datetime, exist_end: datetime) -> bool:
    """Reproduce the old booking system's containment test.

    Boundaries are inclusive, and a candidate that fully envelops a shorter
    existing booking is NOT reported. Only for compatibility checks.
    """
    if new_start >= new_end:
        raise ValueError("new_start must be earlier than new_end.")
    if exist_start >= exist_end:
        raise ValueError("exist_start must be earlier than exist_end.")

    start_inside = exist_start <= new_start <= exist_end
    end_inside = exist_start <= new_end <= exist_end
    enveloped = exist_start <= new_start and exist_end >= new_end
    return start_inside or end_inside or enveloped


def overlaps(a: TimeInterval, b: TimeInterval, mode: OverlapMode = OverlapMode.SYMMETRIC) -> bool:
    if mode is OverlapMode.LEGACY:
        return has_legacy_overlap(a.start, a.end, b.start, b.end)
    return has_time_overlap(a.start, a.end, b.start, b.end)


R = TypeVar("R", bound=Reservable)


def find_conflicts(
    vehicle_id: str,
    interval: TimeInterval,
    statuses: Iterable[str],
    reservations: Iterable[R],
    exclude_id: str | None = None,
    mode: OverlapMode = OverlapMode.SYMMETRIC,
) -> list[R]:
    """Return every reservation of ``vehicle_id`` in ``statuses`` that overlaps ``interval``."""
    wanted = set(statuses)
    conflicts: list[R] = []
    for reservation in reservations:
        if reservation.vehicle_id != vehicle_id:
            continue
        if reservation.status not in wanted:
            continue
        if exclude_id is not None and reservation.booking_id == exclude_id:
            continue
        if overlaps(interval, TimeInterval(reservation.start, reservation.end), mode):
            conflicts.append(reservation)
    return conflicts


def is_available(
    vehicle_id: str,
    interval: TimeInterval,
    statuses: Iterable[str],
    reservations: Iterable[Reservable],
    exclude_id: str | None = None,
    mode: OverlapMode = OverlapMode.SYMMETRIC,
) -> bool:
    return not find_conflicts(vehicle_id, interval, statuses, reservations, exclude_id, mode)
