from __future__ import annotations

from datetime import date, datetime, time, timedelta
from typing import Any

from dotenv import load_dotenv
from mcp.server.fastmcp import FastMCP

from fleet_booking import BookingService, BookingYamlRepository, WorkingWindow, booking_to_dict
from fleet_booking.config import AppSettings, make_clock

mcp = FastMCP(
    "Fleet Booking MCP Server",
    instructions="Expose vehicle bookings, availability slots and the completion sweep of the fleet_booking project.",
    json_response=True,
)

_SERVICE: BookingService | None = None


def get_service() -> BookingService:
    global _SERVICE
    if _SERVICE is None:
        settings = AppSettings.from_env()
        clock = make_clock(settings.timezone)
        repository = BookingYamlRepository(settings.data_dir, clock=clock)
        _SERVICE = BookingService(
            repository, clock=clock, holiday_country=settings.holiday_country, timezone=settings.timezone
        )
    return _SERVICE


@mcp.resource("booking://vehicles")
async def list_vehicles() -> list[dict[str, str]]:
    """List active vehicles that can be booked."""
    vehicles = get_service().repository.list_resources(status="active")
    return [{**vehicle.to_dict(), "label": vehicle.label} for vehicle in vehicles]


@mcp.tool()
def list_bookings(vehicle_id: str | None = None, status: str | None = None) -> list[dict[str, Any]]:
    """Return bookings, optionally filtered by vehicle and stored status."""
    service = get_service()
    now = service.clock()
    return [booking_to_dict(record, now) for record in service.list_reservations(vehicle_id=vehicle_id, status=status)]


@mcp.tool()
def request_booking(
    vehicle_id: str,
    start_iso: str,
    end_iso: str,
    requester_id: str,
    destination: str | None = None,
    notes: str | None = None,
) -> dict[str, Any]:
    """Create a pending booking using ISO timestamps."""
    service = get_service()
    created = service.create_reservation(
        vehicle_id,
        datetime.fromisoformat(start_iso),
        datetime.fromisoformat(end_iso),
        requester_id,
        notes=notes,
        destination=destination,
    )
    return booking_to_dict(created, service.clock())


@mcp.tool()
def available_slots(
    vehicle_id: str,
    day_iso: str,
    start_hhmm: str = "08:00",
    end_hhmm: str = "17:00",
    duration_minutes: int = 60,
) -> list[dict[str, Any]]:
    """List hourly candidate slots for a vehicle on a given day."""
    window = WorkingWindow(time.fromisoformat(start_hhmm), time.fromisoformat(end_hhmm))
    slots = get_service().get_available_slots(
        vehicle_id,
        date.fromisoformat(day_iso),
        window,
        timedelta(minutes=duration_minutes),
    )
    return [slot.to_dict() for slot in slots]


@mcp.tool()
def run_completion_sweep(cutoff_iso: str | None = None, dry_run: bool = False) -> dict[str, Any]:
    """Complete approved bookings that ended at or before the cutoff (default: now)."""
    service = get_service()
    cutoff = datetime.fromisoformat(cutoff_iso) if cutoff_iso else service.clock()
    return service.run_completion_sweep(cutoff, dry_run=dry_run).to_dict()


def main() -> None:
    load_dotenv()
    mcp.run()


if __name__ == "__main__":
    main()
