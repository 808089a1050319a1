from __future__ import annotations

from typing import Any, Sequence


class BookingError(Exception):
    pass


class ValidationError(BookingError, ValueError):
    pass


class NotFoundError(BookingError, LookupError):
    pass


class InvalidStateError(BookingError):
    pass


class ConflictError(BookingError):
    """Raised when a candidate interval overlaps existing bookings.

    ``conflicts`` holds the offending records so callers can show them.
    """

    def __init__(self, message: str, conflicts: Sequence[Any] = ()) -> None:
        super().__init__(message)
        self.conflicts = list(conflicts)


class TransientError(BookingError):
    pass


class ReservationStorageError(RuntimeError):
    pass
