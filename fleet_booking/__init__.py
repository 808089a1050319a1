from .booking import OverlapMode, TimeInterval, find_conflicts, has_time_overlap, is_available, overlaps
from .errors import (
	BookingError,
	ConflictError,
	InvalidStateError,
	NotFoundError,
	ReservationStorageError,
	TransientError,
	ValidationError,
)
from .lifecycle import derived_status, should_complete
from .reaper import CompletionReaper
from .service import BookingService, ScheduleDay, SweepResult, VehicleLockRegistry, booking_to_dict
from .slots import Slot, WorkingWindow, generate_slots
from .yaml_store import BookingDraft, BookingRecord, BookingYamlRepository, Vehicle

__all__ = [
	"OverlapMode",
	"TimeInterval",
	"find_conflicts",
	"has_time_overlap",
	"is_available",
	"overlaps",
	"BookingError",
	"ConflictError",
	"InvalidStateError",
	"NotFoundError",
	"ReservationStorageError",
	"TransientError",
	"ValidationError",
	"derived_status",
	"should_complete",
	"CompletionReaper",
	"BookingService",
	"ScheduleDay",
	"SweepResult",
	"VehicleLockRegistry",
	"booking_to_dict",
	"Slot",
	"WorkingWindow",
	"generate_slots",
	"BookingDraft",
	"BookingRecord",
	"BookingYamlRepository",
	"Vehicle",
]
