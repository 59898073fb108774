"""Value types for slot resolution.

Everything here is immutable and free of I/O so the engine can be driven
directly from tests or from the Rule Store loader.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time


@dataclass(frozen=True, order=True)
class Interval:
    """Half-open time interval ``[start, end)``."""

    start: datetime
    end: datetime

    def overlaps(self, other: "Interval") -> bool:
        return self.start < other.end and other.start < self.end

    def contains(self, other: "Interval") -> bool:
        return self.start <= other.start and other.end <= self.end

    @property
    def duration_minutes(self) -> float:
        return (self.end - self.start).total_seconds() / 60


@dataclass(frozen=True)
class RecurringWindow:
    """One weekly availability rule.

    ``day_of_week`` follows the 0 = Sunday ... 6 = Saturday convention.
    """

    day_of_week: int
    start: time
    end: time
    buffer_before: int = 0
    buffer_after: int = 0
    meeting_duration: int = 30


@dataclass(frozen=True)
class DateOverride:
    """A single-date exception.  ``start``/``end`` both None means blackout."""

    on: date
    start: time | None = None
    end: time | None = None
    note: str = ""

    @property
    def is_blackout(self) -> bool:
        return self.start is None or self.end is None


@dataclass(frozen=True)
class Window:
    """A concrete availability window after buffers have been applied."""

    start: datetime
    end: datetime

    def as_interval(self) -> Interval:
        return Interval(self.start, self.end)


@dataclass(frozen=True)
class Slot:
    """A candidate bookable interval of fixed duration."""

    start: datetime
    end: datetime
    available: bool = True

    def as_interval(self) -> Interval:
        return Interval(self.start, self.end)

    def to_dict(self) -> dict:
        return {
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "available": self.available,
        }


@dataclass(frozen=True)
class OrganizerSchedule:
    """Everything the engine needs to know about one organizer's availability."""

    timezone: str
    rules: tuple[RecurringWindow, ...] = ()
    overrides: tuple[DateOverride, ...] = field(default_factory=tuple)

    def overrides_on(self, day: date) -> list[DateOverride]:
        return [o for o in self.overrides if o.on == day]

    def rules_on(self, day: date) -> list[RecurringWindow]:
        return [r for r in self.rules if r.day_of_week == weekday_index(day)]


def weekday_index(day: date) -> int:
    """Python's Monday=0 weekday mapped onto the Sunday=0 rule convention."""
    return (day.weekday() + 1) % 7


def parse_hhmm(value: str) -> time:
    """Parse an ``HH:MM`` (or ``HH:MM:SS``) string into a time."""
    parts = value.strip().split(":")
    if len(parts) not in (2, 3):
        raise ValueError(f"Invalid time {value!r}; expected HH:MM")
    hour, minute = int(parts[0]), int(parts[1])
    second = int(parts[2]) if len(parts) == 3 else 0
    return time(hour, minute, second)
