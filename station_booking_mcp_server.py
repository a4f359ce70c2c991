from __future__ import annotations

from pathlib import Path
from typing import Any
import os

from mcp.server.fastmcp import FastMCP

from station_booking import (
    BookingError,
    CompositeEventRecorder,
    LoggingEventRecorder,
    ReservationTransactionCoordinator,
    YamlCatalogProvider,
    YamlReservationLedger,
)

mcp = FastMCP(
    "Station Booking MCP Server",
    instructions="Check PC and console availability at a gaming cafe and book or cancel time slots.",
    json_response=True,
)

DATA_DIR = Path(os.environ.get("STATION_BOOKING_DATA_DIR", Path(__file__).parent / "data"))
LEDGER = YamlReservationLedger(DATA_DIR)
COORDINATOR = ReservationTransactionCoordinator(
    catalog=YamlCatalogProvider(DATA_DIR / "cafes.yaml"),
    ledger=LEDGER,
    events=CompositeEventRecorder(LoggingEventRecorder(), LEDGER.event_log),
)


@mcp.tool()
def get_available_units(
    cafe_id: str,
    resource_type: str,
    date: str,
    start: str,
    end: str,
    subtype: str | None = None,
) -> dict[str, Any]:
    """List free unit numbers and pricing for a resource type over HH:MM start/end on a YYYY-MM-DD date."""
    try:
        result = COORDINATOR.get_available_units(cafe_id, resource_type, subtype, date, start, end)
    except BookingError as error:
        return {"ok": False, "error": error.to_dict()}
    return {"ok": True, **result.to_dict()}


@mcp.tool()
def create_group_reservation(
    cafe_id: str,
    resource_type: str,
    first_unit: int,
    date: str,
    start: str,
    end: str,
    owner_ref: str,
    unit_count: int = 1,
    subtype: str | None = None,
    notes: str | None = None,
) -> dict[str, Any]:
    """Book ``unit_count`` consecutive units starting at ``first_unit``. Either all are booked or none."""
    try:
        result = COORDINATOR.create_group_reservation(
            cafe_id,
            resource_type,
            subtype,
            first_unit,
            unit_count,
            date,
            start,
            end,
            owner_ref,
            notes=notes,
        )
    except BookingError as error:
        return {"ok": False, "error": error.to_dict()}
    return {"ok": True, **result.to_dict()}


@mcp.tool()
def cancel_reservation(reservation_id: str, owner_ref: str | None = None) -> dict[str, Any]:
    """Cancel one reservation and report the refund decision."""
    try:
        result = COORDINATOR.cancel_reservation(reservation_id, requested_by=owner_ref)
    except BookingError as error:
        return {"ok": False, "error": error.to_dict()}
    return {"ok": True, **result.to_dict()}


@mcp.tool()
def list_reservations(
    owner_ref: str | None = None,
    cafe_id: str | None = None,
    date: str | None = None,
    status: str | None = None,
) -> list[dict[str, Any]]:
    """Return reservations matching the given filters."""
    rows = COORDINATOR.list_reservations(owner_ref=owner_ref, cafe_id=cafe_id, day=date, status=status)
    return [row.to_dict() for row in rows]


def main() -> None:
    mcp.run()


if __name__ == "__main__":
    main()
