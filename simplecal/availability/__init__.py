"""Availability resolution: value types and the pure slot engine."""

from .base import (
    DateOverride,
    Interval,
    OrganizerSchedule,
    RecurringWindow,
    Slot,
    Window,
)
from .engine import resolve

__all__ = [
    "DateOverride",
    "Interval",
    "OrganizerSchedule",
    "RecurringWindow",
    "Slot",
    "Window",
    "resolve",
]
