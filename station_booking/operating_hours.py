from __future__ import annotations

import re
from dataclasses import dataclass

from .errors import InvalidWindow, OutOfHours

MINUTES_PER_DAY = 24 * 60

_TIME_RE = re.compile(r"^(?P<hour>[01]\d|2[0-3]):(?P<minute>[0-5]\d)(?::(?P<second>[0-5]\d))?$")


def time_to_minutes(value: str) -> int:
    """Return minutes since midnight for a 24-hour ``HH:MM[:SS]`` string.

    Seconds are accepted but ignored. There is no AM/PM interpretation:
    ``00:00`` is midnight and ``12:00`` is noon.
    """
    if not isinstance(value, str):
        raise InvalidWindow(f"Time must be a 24-hour HH:MM string, got {value!r}.")

    match = _TIME_RE.match(value.strip())
    if match is None:
        raise InvalidWindow(f"Time must be a 24-hour HH:MM string, got {value!r}.")
    return int(match.group("hour")) * 60 + int(match.group("minute"))


def format_minutes(minutes: int) -> str:
    minutes %= MINUTES_PER_DAY
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


@dataclass(frozen=True)
class NormalizedWindow:
    start: int
    end: int

    @property
    def duration_minutes(self) -> int:
        return self.end - self.start

    @property
    def duration_hours(self) -> float:
        return round(self.duration_minutes / 60, 2)


@dataclass(frozen=True)
class OperatingWindow:
    """A cafe's operating day on one monotonic minute scale.

    ``close`` is already shifted past midnight for overnight operation, so
    an 18:00-02:00 cafe is ``open=1080, close=1560``. Equal opening and
    closing strings mean the cafe never closes.
    """

    open: int
    close: int
    opening_time: str
    closing_time: str

    @classmethod
    def from_strings(cls, opening_time: str, closing_time: str) -> "OperatingWindow":
        open_minutes = time_to_minutes(opening_time)
        close_minutes = time_to_minutes(closing_time)
        if close_minutes <= open_minutes:
            close_minutes += MINUTES_PER_DAY
        return cls(open=open_minutes, close=close_minutes, opening_time=opening_time, closing_time=closing_time)

    @property
    def crosses_midnight(self) -> bool:
        return self.close > MINUTES_PER_DAY

    def shift(self, minutes: int) -> int:
        if self.crosses_midnight and minutes < self.open:
            return minutes + MINUTES_PER_DAY
        return minutes

    def normalize(self, start_time: str, end_time: str) -> NormalizedWindow:
        """Place a candidate window on this operating day's scale.

        Raises ``InvalidWindow`` if the end does not follow the start and
        ``OutOfHours`` if the window leaves the operating window.
        """
        start = self.shift(time_to_minutes(start_time))
        if start < self.open or start >= self.close:
            raise OutOfHours(
                f"Booking time must be within cafe hours: {self.label}.",
                opening_time=self.opening_time[:5],
                closing_time=self.closing_time[:5],
            )

        end = self.shift(time_to_minutes(end_time))
        if end <= start and end + MINUTES_PER_DAY <= self.close:
            end += MINUTES_PER_DAY

        if end <= start:
            raise InvalidWindow(f"End time {end_time} must be after start time {start_time}.")
        if end > self.close:
            raise OutOfHours(
                f"Booking time must be within cafe hours: {self.label}.",
                opening_time=self.opening_time[:5],
                closing_time=self.closing_time[:5],
            )
        return NormalizedWindow(start=start, end=end)

    @property
    def label(self) -> str:
        return f"{self.opening_time[:5]} - {self.closing_time[:5]}"
