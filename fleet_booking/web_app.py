from __future__ import annotations

from datetime import date, datetime, time, timedelta
from pathlib import Path
from typing import Any, Callable

from flask import Flask, jsonify, request

from .booking import OverlapMode
from .config import DEFAULT_HOLIDAY_COUNTRY, DEFAULT_TIMEZONE, make_clock
from .errors import ConflictError, InvalidStateError, NotFoundError, ValidationError
from .service import BookingService, booking_to_dict
from .slots import WorkingWindow
from .yaml_store import BookingYamlRepository

DEFAULT_WORKING_START = time(8, 0)
DEFAULT_WORKING_END = time(17, 0)
DEFAULT_SLOT_MINUTES = 60
DEFAULT_SCHEDULE_DAYS = 2


def create_app(
    data_dir: str | Path = "data",
    now_provider: Callable[[], datetime] | None = None,
    overlap_mode: OverlapMode = OverlapMode.SYMMETRIC,
    holiday_country: str = DEFAULT_HOLIDAY_COUNTRY,
    timezone: str = DEFAULT_TIMEZONE,
) -> Flask:
    """Build the JSON adapter around a BookingService.

    Callers are expected to be authenticated and authorized upstream; the
    adapter only translates requests and maps domain errors to status codes.
    """
    app = Flask(__name__)
    clock = now_provider or make_clock(timezone)
    repository = BookingYamlRepository(data_dir, clock=clock)
    service = BookingService(
        repository,
        clock=clock,
        overlap_mode=overlap_mode,
        holiday_country=holiday_country,
        timezone=timezone,
    )
    app.extensions["booking_service"] = service

    def _booking_payload(record: Any) -> dict[str, Any]:
        return booking_to_dict(record, service.clock(), repository.get_vehicle(record.vehicle_id))

    @app.after_request
    def add_cors_headers(response: Any) -> Any:
        response.headers["Access-Control-Allow-Origin"] = "*"
        response.headers["Access-Control-Allow-Methods"] = "GET,POST,OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = "Content-Type"
        return response

    @app.errorhandler(ValidationError)
    def handle_validation(error: ValidationError) -> Any:
        return jsonify({"ok": False, "message": str(error)}), 400

    @app.errorhandler(InvalidStateError)
    def handle_invalid_state(error: InvalidStateError) -> Any:
        return jsonify({"ok": False, "message": str(error)}), 400

    @app.errorhandler(NotFoundError)
    def handle_not_found(error: NotFoundError) -> Any:
        return jsonify({"ok": False, "message": str(error)}), 404

    @app.errorhandler(ConflictError)
    def handle_conflict(error: ConflictError) -> Any:
        return (
            jsonify(
                {
                    "ok": False,
                    "message": str(error),
                    "conflicts": [_booking_payload(record) for record in error.conflicts],
                }
            ),
            409,
        )

    @app.get("/api/health")
    def health() -> Any:
        return jsonify({"ok": True, "time": service.clock().isoformat(timespec="seconds")})

    @app.get("/api/vehicles")
    def list_vehicles() -> Any:
        status = request.args.get("status")
        vehicles = repository.list_resources(status=status)
        return jsonify(
            {
                "ok": True,
                "vehicles": [{**vehicle.to_dict(), "label": vehicle.label} for vehicle in vehicles],
                "total": len(vehicles),
            }
        )

    @app.get("/api/vehicles/available")
    def available_vehicles() -> Any:
        start = _parse_datetime(request.args.get("start"), "start")
        end = _parse_datetime(request.args.get("end"), "end")
        vehicles = service.find_available_vehicles(start, end)
        return jsonify(
            {
                "ok": True,
                "vehicles": [{**vehicle.to_dict(), "label": vehicle.label} for vehicle in vehicles],
                "time_range": {"start": start.isoformat(timespec="minutes"), "end": end.isoformat(timespec="minutes")},
                "count": len(vehicles),
            }
        )

    @app.get("/api/vehicles/<vehicle_id>/slots")
    def vehicle_slots(vehicle_id: str) -> Any:
        day = _parse_date(request.args.get("date"), service.clock().date())
        window = WorkingWindow(
            _parse_time(request.args.get("start"), DEFAULT_WORKING_START),
            _parse_time(request.args.get("end"), DEFAULT_WORKING_END),
        )
        duration = _parse_positive_int(request.args.get("duration"), DEFAULT_SLOT_MINUTES, "duration")
        slots = service.get_available_slots(vehicle_id, day, window, timedelta(minutes=duration))
        return jsonify({"ok": True, "vehicle_id": vehicle_id, "date": day.isoformat(), "slots": [slot.to_dict() for slot in slots]})

    @app.get("/api/bookings")
    def list_bookings() -> Any:
        records = service.list_reservations(
            vehicle_id=request.args.get("vehicle_id"),
            status=request.args.get("status"),
            requester_id=request.args.get("requester_id"),
        )
        return jsonify({"ok": True, "bookings": [_booking_payload(record) for record in records]})

    @app.get("/api/bookings/stats")
    def booking_stats() -> Any:
        return jsonify({"ok": True, "stats": service.get_stats(request.args.get("requester_id"))})

    @app.get("/api/bookings/<booking_id>")
    def show_booking(booking_id: str) -> Any:
        return jsonify({"ok": True, "booking": _booking_payload(service.get_reservation(booking_id))})

    @app.post("/api/bookings")
    def create_booking() -> Any:
        payload = _json_object()
        created = service.create_reservation(
            vehicle_id=str(payload.get("vehicle_id", "")).strip(),
            start=_parse_datetime(payload.get("start"), "start"),
            end=_parse_datetime(payload.get("end"), "end"),
            requester_id=str(payload.get("requester_id", "")).strip(),
            notes=_optional_text(payload.get("notes")),
            destination=_optional_text(payload.get("destination")),
        )
        return jsonify({"ok": True, "booking": _booking_payload(created)}), 201

    @app.post("/api/bookings/<booking_id>/update")
    def update_booking(booking_id: str) -> Any:
        payload = _json_object()
        updated = service.update_reservation(
            booking_id,
            vehicle_id=_optional_text(payload.get("vehicle_id")),
            start=_parse_datetime(payload["start"], "start") if payload.get("start") else None,
            end=_parse_datetime(payload["end"], "end") if payload.get("end") else None,
            destination=_optional_text(payload.get("destination")),
            notes=_optional_text(payload.get("notes")),
        )
        return jsonify({"ok": True, "booking": _booking_payload(updated)})

    @app.post("/api/bookings/<booking_id>/delete")
    def delete_booking(booking_id: str) -> Any:
        deleted = service.delete_reservation(booking_id)
        return jsonify({"ok": True, "booking": _booking_payload(deleted)})

    @app.post("/api/bookings/<booking_id>/approve")
    def approve_booking(booking_id: str) -> Any:
        return jsonify({"ok": True, "booking": _booking_payload(service.approve_reservation(booking_id))})

    @app.post("/api/bookings/<booking_id>/reject")
    def reject_booking(booking_id: str) -> Any:
        return jsonify({"ok": True, "booking": _booking_payload(service.reject_reservation(booking_id))})

    @app.post("/api/bookings/<booking_id>/complete")
    def complete_booking(booking_id: str) -> Any:
        return jsonify({"ok": True, "booking": _booking_payload(service.complete_reservation(booking_id))})

    @app.get("/api/schedule")
    def get_schedule() -> Any:
        today = service.clock().date()
        start_date = _parse_date(request.args.get("date"), today)
        days = _parse_positive_int(request.args.get("days"), DEFAULT_SCHEDULE_DAYS, "days")
        end_date = start_date + timedelta(days=days - 1)
        schedule = service.get_schedule(start_date, end_date, vehicle_id=request.args.get("vehicle_id"))
        now = service.clock()
        return jsonify(
            {
                "ok": True,
                "schedule": [day.to_dict(now) for day in schedule],
                "date_range": {"start": start_date.isoformat(), "end": end_date.isoformat()},
                "total_bookings": len({record.booking_id for day in schedule for record in day.bookings}),
            }
        )

    @app.post("/api/sweep")
    def run_sweep() -> Any:
        payload = _json_object()
        cutoff = _parse_datetime(payload["cutoff"], "cutoff") if payload.get("cutoff") else service.clock()
        result = service.run_completion_sweep(cutoff, dry_run=bool(payload.get("dry_run", False)))
        return jsonify({"ok": True, "result": result.to_dict()})

    return app


def _json_object() -> dict[str, Any]:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object.")
    return payload


def _parse_datetime(value: Any, field: str) -> datetime:
    if not value:
        raise ValidationError(f"{field} is required.")
    try:
        return datetime.fromisoformat(str(value))
    except ValueError as error:
        raise ValidationError(f"{field} must be an ISO datetime.") from error


def _parse_date(value: Any, default: date) -> date:
    if not value:
        return default
    try:
        return date.fromisoformat(str(value))
    except ValueError as error:
        raise ValidationError("date must be formatted as YYYY-MM-DD.") from error


def _parse_time(value: Any, default: time) -> time:
    if not value:
        return default
    try:
        return time.fromisoformat(str(value))
    except ValueError as error:
        raise ValidationError("working window times must be formatted as HH:MM.") from error


def _parse_positive_int(value: Any, default: int, field: str) -> int:
    if value is None or value == "":
        return default
    try:
        parsed = int(value)
    except (TypeError, ValueError) as error:
        raise ValidationError(f"{field} must be an integer.") from error
    if parsed <= 0:
        raise ValidationError(f"{field} must be greater than zero.")
    return parsed


def _optional_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


if __name__ == "__main__":
    app = create_app()
    app.run(host="127.0.0.1", port=5000, debug=False)
