from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable


def _require_span(start: int, end: int, label: str) -> None:
    if start >= end:
        raise ValueError(f"{label} is empty: {start} >= {end} minutes")


@dataclass(frozen=True)
class Interval:
    """Minutes since midnight of the booking date, half-open ``[start, end)``.

    ``end`` may go past 1440 for slots that run over midnight.
    """

    start: int
    end: int

    def __post_init__(self) -> None:
        _require_span(self.start, self.end, "interval")

    def overlaps(self, other: "Interval") -> bool:
        return self.start < other.end and other.start < self.end


def has_time_overlap(new_start: int, new_end: int, exist_start: int, exist_end: int) -> bool:
    """Two slots on one unit clash unless one ends at or before the other starts.

    >>> has_time_overlap(600, 660, 660, 720)
    False
    """
    _require_span(new_start, new_end, "requested slot")
    _require_span(exist_start, exist_end, "existing slot")
    return Interval(new_start, new_end).overlaps(Interval(exist_start, exist_end))


def can_reserve(new_start: int, new_end: int, existing: Iterable[Interval]) -> bool:
    requested = Interval(new_start, new_end)
    return not any(requested.overlaps(held) for held in existing)
