from __future__ import annotations

from typing import Iterable

from .booking import can_reserve, has_time_overlap
from .ledger import ReservationRecord


def group_by_unit(reservations: Iterable[ReservationRecord]) -> dict[int, list[ReservationRecord]]:
    grouped: dict[int, list[ReservationRecord]] = {}
    for row in reservations:
        if row.holds_slot:
            grouped.setdefault(row.unit_number, []).append(row)
    return grouped


def free_units(
    reservations: Iterable[ReservationRecord],
    total_units: int,
    start_minute: int,
    end_minute: int,
) -> list[int]:
    """Return units in ``1..total_units`` with no pending/confirmed overlap, ascending.

    ``reservations`` must all come from one partition snapshot. Called outside
    a ledger transaction the result is advisory only.
    """
    grouped = group_by_unit(reservations)
    available: list[int] = []
    for unit in range(1, total_units + 1):
        if can_reserve(start_minute, end_minute, [row.interval for row in grouped.get(unit, [])]):
            available.append(unit)
    return available


def find_conflicting_units(
    reservations: Iterable[ReservationRecord],
    requested_units: Iterable[int],
    start_minute: int,
    end_minute: int,
) -> list[int]:
    grouped = group_by_unit(reservations)
    busy: list[int] = []
    for unit in requested_units:
        if any(has_time_overlap(start_minute, end_minute, row.start_minute, row.end_minute) for row in grouped.get(unit, [])):
            busy.append(unit)
    return busy
