"""Booking status graph and the read-time ``expired`` view.

Stored statuses only move forward::

    pending -> approved -> completed
    pending -> rejected

``expired`` is never stored. It is derived from (status, end, now) on read.
"""

from __future__ import annotations

from datetime import datetime

from .booking import Reservable
from .errors import InvalidStateError

STATUS_PENDING = "pending"
STATUS_APPROVED = "approved"
STATUS_REJECTED = "rejected"
STATUS_COMPLETED = "completed"
STATUS_EXPIRED = "expired"

STORED_STATUSES = (STATUS_PENDING, STATUS_APPROVED, STATUS_REJECTED, STATUS_COMPLETED)
TERMINAL_STATUSES = frozenset({STATUS_REJECTED, STATUS_COMPLETED})

# statuses a new or edited booking must not overlap
BLOCKING_STATUSES = frozenset({STATUS_PENDING, STATUS_APPROVED})
# statuses an approval must not overlap
APPROVAL_BLOCKING_STATUSES = frozenset({STATUS_APPROVED})

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    STATUS_PENDING: frozenset({STATUS_APPROVED, STATUS_REJECTED}),
    STATUS_APPROVED: frozenset({STATUS_COMPLETED}),
    STATUS_REJECTED: frozenset(),
    STATUS_COMPLETED: frozenset(),
}


def derived_status(reservation: Reservable, now: datetime) -> str:
    if reservation.status == STATUS_APPROVED and reservation.end <= now:
        return STATUS_EXPIRED
    return reservation.status


def should_complete(reservation: Reservable, cutoff: datetime) -> bool:
    return reservation.status == STATUS_APPROVED and reservation.end <= cutoff


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def ensure_transition(reservation: Reservable, target: str) -> None:
    """Raise InvalidStateError unless ``reservation`` may move to ``target``.

    Conflict checks for approval and the cutoff rule for completion are
    the caller's job; this only guards the graph.
    """
    if target not in STORED_STATUSES:
        raise InvalidStateError(f"Unknown booking status: {target}")
    if reservation.status in TERMINAL_STATUSES:
        raise InvalidStateError(f"Booking {reservation.booking_id} is already {reservation.status}.")
    if not can_transition(reservation.status, target):
        raise InvalidStateError(
            f"Booking {reservation.booking_id} cannot move from {reservation.status} to {target}."
        )


def ensure_completable(reservation: Reservable, cutoff: datetime) -> None:
    ensure_transition(reservation, STATUS_COMPLETED)
    if not should_complete(reservation, cutoff):
        raise InvalidStateError(
            f"Booking {reservation.booking_id} ends at {reservation.end.isoformat(timespec='minutes')}"
            f" which is after the cutoff {cutoff.isoformat(timespec='minutes')}."
        )


def ensure_editable(reservation: Reservable) -> None:
    if reservation.status != STATUS_PENDING:
        raise InvalidStateError(
            f"Only pending bookings can be changed; booking {reservation.booking_id} is {reservation.status}."
        )
