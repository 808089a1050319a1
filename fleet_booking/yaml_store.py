from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterable
import shutil
import threading
from uuid import uuid4

import yaml

from .booking import OverlapMode, TimeInterval, overlaps
from .errors import NotFoundError, ReservationStorageError, ValidationError
from .lifecycle import STATUS_PENDING, STORED_STATUSES

VEHICLE_ACTIVE = "active"
VEHICLE_INACTIVE = "inactive"
VEHICLE_STATUSES = (VEHICLE_ACTIVE, VEHICLE_INACTIVE)


def _parse_optional(value: Any) -> str | None:
    return str(value) if value is not None else None


@dataclass(frozen=True)
class Vehicle:
    vehicle_id: str
    brand: str
    model: str
    plate_no: str
    status: str = VEHICLE_ACTIVE

    @property
    def label(self) -> str:
        return f"{self.brand} {self.model} ({self.plate_no})"

    @property
    def is_active(self) -> bool:
        return self.status == VEHICLE_ACTIVE

    def to_dict(self) -> dict[str, str]:
        return {
            "vehicle_id": self.vehicle_id,
            "brand": self.brand,
            "model": self.model,
            "plate_no": self.plate_no,
            "status": self.status,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "Vehicle":
        return Vehicle(
            vehicle_id=str(data["vehicle_id"]),
            brand=str(data.get("brand", "")),
            model=str(data.get("model", "")),
            plate_no=str(data.get("plate_no", "")),
            status=str(data.get("status", VEHICLE_ACTIVE)),
        )


@dataclass(frozen=True)
class BookingDraft:
    vehicle_id: str
    requester_id: str
    start: datetime
    end: datetime
    destination: str | None = None
    notes: str | None = None


@dataclass(frozen=True)
class BookingRecord:
    booking_id: str
    vehicle_id: str
    requester_id: str
    start: datetime
    end: datetime
    status: str
    created_at: datetime
    updated_at: datetime
    destination: str | None = None
    notes: str | None = None

    @property
    def interval(self) -> TimeInterval:
        return TimeInterval(self.start, self.end)

    def to_dict(self) -> dict[str, str]:
        payload = {
            "booking_id": self.booking_id,
            "vehicle_id": self.vehicle_id,
            "requester_id": self.requester_id,
            "start": self.start.isoformat(timespec="seconds"),
            "end": self.end.isoformat(timespec="seconds"),
            "status": self.status,
            "created_at": self.created_at.isoformat(timespec="seconds"),
            "updated_at": self.updated_at.isoformat(timespec="seconds"),
        }
        if self.destination is not None:
            payload["destination"] = self.destination
        if self.notes is not None:
            payload["notes"] = self.notes
        return payload

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "BookingRecord":
        return BookingRecord(
            booking_id=str(data["booking_id"]),
            vehicle_id=str(data["vehicle_id"]),
            requester_id=str(data["requester_id"]),
            start=datetime.fromisoformat(str(data["start"])),
            end=datetime.fromisoformat(str(data["end"])),
            status=str(data.get("status", STATUS_PENDING)),
            created_at=datetime.fromisoformat(str(data["created_at"])),
            updated_at=datetime.fromisoformat(str(data["updated_at"])),
            destination=_parse_optional(data.get("destination")),
            notes=_parse_optional(data.get("notes")),
        )


class BookingYamlRepository:
    """File-backed store for vehicles and bookings.

    Holds no booking rules: conflict checks and status transitions live in
    the service. Every public method takes ``self._lock`` so one repository
    instance can be shared between request threads and the reaper.
    """

    def __init__(self, base_dir: str | Path = "data", clock: Callable[[], datetime] | None = None) -> None:
        self.base_dir = Path(base_dir)
        self.vehicles_file = self.base_dir / "vehicles.yaml"
        self.bookings_file = self.base_dir / "bookings.yaml"
        self.log_file = self.base_dir / "booking_events.yaml"
        self._clock: Callable[[], datetime] = clock or datetime.now
        self._lock = threading.RLock()
        self._ensure_files()

    def _ensure_files(self) -> None:
        self.base_dir.mkdir(parents=True, exist_ok=True)
        for path in (self.vehicles_file, self.bookings_file, self.log_file):
            if not path.exists():
                path.write_text("[]\n", encoding="utf-8")

    def _read_yaml_list(self, path: Path) -> list[dict[str, Any]]:
        try:
            payload = yaml.safe_load(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            path.write_text("[]\n", encoding="utf-8")
            return []
        except (OSError, UnicodeDecodeError, yaml.YAMLError) as error:
            self._recover_corrupted_yaml(path, error)
            return []

        if payload is None:
            return []
        if not isinstance(payload, list):
            self._recover_corrupted_yaml(path, ValueError("top-level YAML is not a list"))
            return []

        sanitized: list[dict[str, Any]] = []
        for index, row in enumerate(payload):
            if isinstance(row, dict):
                sanitized.append(row)
            else:
                self._log_event(
                    "YAML_ROW_SKIPPED",
                    {
                        "file": str(path.name),
                        "index": index,
                        "reason": "row is not a mapping",
                    },
                )
        return sanitized

    def _write_yaml_list(self, path: Path, rows: list[dict[str, Any]]) -> None:
        temp_path = path.with_suffix(path.suffix + ".tmp")
        try:
            temp_path.write_text(yaml.safe_dump(rows, allow_unicode=True, sort_keys=False), encoding="utf-8")
            temp_path.replace(path)
        except OSError as error:
            raise ReservationStorageError(f"Failed to write YAML file: {path}") from error
        finally:
            if temp_path.exists():
                temp_path.unlink(missing_ok=True)

    def _recover_corrupted_yaml(self, path: Path, error: Exception) -> None:
        timestamp = self._clock().strftime("%Y%m%d%H%M%S")
        backup_path = path.with_name(f"{path.stem}.corrupt.{timestamp}{path.suffix}")
        try:
            if path.exists():
                shutil.copy2(path, backup_path)
        except OSError:
            # the reset below still happens; the event records the intended backup name
            backup_path = path.with_name(f"{path.stem}.corrupt.unsaved{path.suffix}")

        path.write_text("[]\n", encoding="utf-8")
        if path != self.log_file:
            self._log_event(
                "YAML_RECOVERED",
                {
                    "file": str(path.name),
                    "backup": str(backup_path.name),
                    "reason": str(error),
                },
            )

    def _log_event(self, event_type: str, payload: dict[str, Any]) -> None:
        timestamp = self._clock().isoformat(timespec="seconds")
        events = self._read_yaml_list(self.log_file)
        events.append({"event_time": timestamp, "event_type": event_type, "payload": payload})
        self._write_yaml_list(self.log_file, events)

    def get_events(self) -> list[dict[str, Any]]:
        with self._lock:
            return self._read_yaml_list(self.log_file)

    # vehicles

    def list_resources(self, status: str | None = None) -> list[Vehicle]:
        with self._lock:
            vehicles = [Vehicle.from_dict(row) for row in self._read_yaml_list(self.vehicles_file)]
        if status is not None:
            vehicles = [vehicle for vehicle in vehicles if vehicle.status == status]
        return sorted(vehicles, key=lambda vehicle: (vehicle.brand, vehicle.model, vehicle.vehicle_id))

    def get_vehicle(self, vehicle_id: str) -> Vehicle | None:
        with self._lock:
            for row in self._read_yaml_list(self.vehicles_file):
                if str(row.get("vehicle_id")) == vehicle_id:
                    return Vehicle.from_dict(row)
        return None

    def add_vehicle(self, vehicle: Vehicle) -> Vehicle:
        vehicle_id = _normalize_identifier(vehicle.vehicle_id, "vehicle_id")
        if vehicle.status not in VEHICLE_STATUSES:
            raise ValidationError(f"Unknown vehicle status: {vehicle.status}")
        vehicle = replace(vehicle, vehicle_id=vehicle_id)

        with self._lock:
            rows = self._read_yaml_list(self.vehicles_file)
            rows = [row for row in rows if str(row.get("vehicle_id")) != vehicle_id]
            rows.append(vehicle.to_dict())
            self._write_yaml_list(self.vehicles_file, rows)
            self._log_event("VEHICLE_SAVED", vehicle.to_dict())
        return vehicle

    def set_vehicle_status(self, vehicle_id: str, status: str) -> Vehicle:
        with self._lock:
            current = self.get_vehicle(vehicle_id)
            if current is None:
                raise NotFoundError(f"Vehicle {vehicle_id} not found.")
            return self.add_vehicle(replace(current, status=status))

    # bookings

    def list_reservations(
        self,
        vehicle_id: str | None = None,
        statuses: Iterable[str] | None = None,
        overlapping: TimeInterval | None = None,
        ended_by: datetime | None = None,
    ) -> list[BookingRecord]:
        """Return bookings matching every given filter, ordered by start.

        ``overlapping`` keeps bookings sharing an instant with the interval;
        ``ended_by`` keeps bookings with ``end <= ended_by``.
        """
        wanted = set(statuses) if statuses is not None else None
        with self._lock:
            records = [BookingRecord.from_dict(row) for row in self._read_yaml_list(self.bookings_file)]

        selected: list[BookingRecord] = []
        for record in records:
            if vehicle_id is not None and record.vehicle_id != vehicle_id:
                continue
            if wanted is not None and record.status not in wanted:
                continue
            if overlapping is not None and not overlaps(record.interval, overlapping, OverlapMode.SYMMETRIC):
                continue
            if ended_by is not None and record.end > ended_by:
                continue
            selected.append(record)
        return sorted(selected, key=lambda record: (record.start, record.booking_id))

    def get_reservation(self, booking_id: str) -> BookingRecord | None:
        with self._lock:
            for row in self._read_yaml_list(self.bookings_file):
                if str(row.get("booking_id")) == booking_id:
                    return BookingRecord.from_dict(row)
        return None

    def create_reservation(self, draft: BookingDraft) -> BookingRecord:
        now = self._clock()
        record = BookingRecord(
            booking_id=str(uuid4()),
            vehicle_id=draft.vehicle_id,
            requester_id=draft.requester_id,
            start=draft.start,
            end=draft.end,
            status=STATUS_PENDING,
            created_at=now,
            updated_at=now,
            destination=draft.destination,
            notes=draft.notes,
        )
        with self._lock:
            rows = self._read_yaml_list(self.bookings_file)
            rows.append(record.to_dict())
            self._write_yaml_list(self.bookings_file, rows)

            self._log_event(
                "BOOKING_CREATED",
                {
                    "booking_id": record.booking_id,
                    "vehicle_id": record.vehicle_id,
                    "requester_id": record.requester_id,
                    "start": record.start.isoformat(timespec="minutes"),
                    "end": record.end.isoformat(timespec="minutes"),
                },
            )
        return record

    def update_reservation_status(self, booking_id: str, status: str) -> BookingRecord:
        if status not in STORED_STATUSES:
            raise ValidationError(f"Unknown booking status: {status}")

        with self._lock:
            rows, index = self._find_booking_row(booking_id)
            current = BookingRecord.from_dict(rows[index])
            if current.status == status:
                return current

            updated = replace(current, status=status, updated_at=self._clock())
            rows[index] = updated.to_dict()
            self._write_yaml_list(self.bookings_file, rows)

            self._log_event(
                "BOOKING_STATUS_CHANGED",
                {
                    "booking_id": booking_id,
                    "vehicle_id": updated.vehicle_id,
                    "from": current.status,
                    "to": status,
                },
            )
        return updated

    def update_reservation_details(
        self,
        booking_id: str,
        *,
        vehicle_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        destination: str | None = None,
        notes: str | None = None,
    ) -> BookingRecord:
        with self._lock:
            rows, index = self._find_booking_row(booking_id)
            current = BookingRecord.from_dict(rows[index])
            updated = replace(
                current,
                vehicle_id=vehicle_id or current.vehicle_id,
                start=start or current.start,
                end=end or current.end,
                destination=destination if destination is not None else current.destination,
                notes=notes if notes is not None else current.notes,
                updated_at=self._clock(),
            )
            rows[index] = updated.to_dict()
            self._write_yaml_list(self.bookings_file, rows)

            self._log_event(
                "BOOKING_UPDATED",
                {
                    "booking_id": booking_id,
                    "vehicle_id": updated.vehicle_id,
                    "start": updated.start.isoformat(timespec="minutes"),
                    "end": updated.end.isoformat(timespec="minutes"),
                },
            )
        return updated

    def delete_reservation(self, booking_id: str) -> BookingRecord:
        with self._lock:
            rows, index = self._find_booking_row(booking_id)
            deleted = BookingRecord.from_dict(rows.pop(index))
            self._write_yaml_list(self.bookings_file, rows)

            self._log_event(
                "BOOKING_DELETED",
                {
                    "booking_id": booking_id,
                    "vehicle_id": deleted.vehicle_id,
                    "status": deleted.status,
                },
            )
        return deleted

    def _find_booking_row(self, booking_id: str) -> tuple[list[dict[str, Any]], int]:
        rows = self._read_yaml_list(self.bookings_file)
        for index, row in enumerate(rows):
            if str(row.get("booking_id")) == booking_id:
                return rows, index
        raise NotFoundError(f"Booking {booking_id} not found.")


def _normalize_identifier(value: str | None, field: str) -> str:
    if value is None:
        raise ValidationError(f"{field} must not be None")

    normalized = str(value).strip()
    if not normalized:
        raise ValidationError(f"{field} must not be empty")
    return normalized
