"""Availability resolution: recurring rules + exceptions + bookings -> slots.

The engine is a pure function of its inputs.  It never touches the Rule
Store, never caches, and returns a fresh list on every call, so repeated
calls with the same inputs produce identical output and concurrent calls
need no coordination.

Per calendar date (in the organizer's timezone):

  1. Pick the day's windows: the date's exception entries if any exist
     (a blackout entry closes the whole date), otherwise every recurring
     rule for that weekday.
  2. Shrink each window by its buffers: slots start no earlier than
     ``start + buffer_before`` and end no later than ``end - buffer_after``.
  3. Merge overlapping adjusted windows so tiling never emits duplicates.
  4. Tile each merged window into back-to-back slots of the meeting
     duration, dropping a trailing partial slot.
  5. Mark a slot unavailable if it overlaps a booked appointment or a
     live claim held by another session.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Iterable, Sequence
from zoneinfo import ZoneInfo

from .base import Interval, OrganizerSchedule, Slot, Window

log = logging.getLogger("simplecal.availability.engine")


def resolve(
    schedule: OrganizerSchedule,
    start_date: date,
    end_date: date,
    meeting_duration: int,
    booked: Sequence[Interval] = (),
    held: Sequence[Interval] = (),
) -> list[Slot]:
    """Compute the ordered slot list for ``[start_date, end_date]`` (inclusive).

    Args:
        schedule: The organizer's rules, exceptions and timezone.
        start_date: First local calendar date to resolve.
        end_date: Last local calendar date to resolve.
        meeting_duration: Slot length in minutes.
        booked: Intervals of appointments with status ``booked``.
        held: Intervals of live claims held by *other* sessions.

    Returns:
        Slots in chronological order, each tagged available or not.
    """
    if meeting_duration <= 0:
        raise ValueError("meeting_duration must be a positive number of minutes")

    length = timedelta(minutes=meeting_duration)
    blocked = sorted(list(booked) + list(held))

    slots: list[Slot] = []
    for day in iter_dates(start_date, end_date):
        for window in merge_windows(day_windows(schedule, day)):
            for candidate in tile(window, length):
                taken = _overlaps_any(candidate, blocked)
                slots.append(Slot(candidate.start, candidate.end, available=not taken))

    slots.sort(key=lambda s: s.start)
    return slots


def iter_dates(start_date: date, end_date: date) -> Iterable[date]:
    day = start_date
    while day <= end_date:
        yield day
        day += timedelta(days=1)


def day_windows(schedule: OrganizerSchedule, day: date) -> list[Window]:
    """Return the buffer-adjusted windows for one local date, in UTC.

    Windows whose buffers leave no room are dropped here.
    """
    tz = ZoneInfo(schedule.timezone)
    windows: list[Window] = []

    overrides = schedule.overrides_on(day)
    if overrides:
        # Exceptions replace the weekday's rules; any blackout closes the day.
        if any(o.is_blackout for o in overrides):
            return []
        for override in overrides:
            window = _adjusted(day, override.start, override.end, 0, 0, tz)
            if window is not None:
                windows.append(window)
        return windows

    for rule in schedule.rules_on(day):
        window = _adjusted(
            day, rule.start, rule.end, rule.buffer_before, rule.buffer_after, tz
        )
        if window is not None:
            windows.append(window)
    return windows


def merge_windows(windows: Iterable[Window]) -> list[Window]:
    """Merge overlapping windows; touching windows stay separate."""
    merged: list[Window] = []
    for window in sorted(windows, key=lambda w: (w.start, w.end)):
        if merged and window.start < merged[-1].end:
            last = merged[-1]
            merged[-1] = Window(last.start, max(last.end, window.end))
        else:
            merged.append(window)
    return merged


def tile(window: Window, length: timedelta) -> list[Interval]:
    """Cut a window into consecutive intervals of ``length``."""
    out: list[Interval] = []
    cursor = window.start
    while cursor + length <= window.end:
        out.append(Interval(cursor, cursor + length))
        cursor += length
    return out


def _adjusted(day, start, end, buffer_before, buffer_after, tz) -> Window | None:
    # Bounds go through UTC so tiling is done in absolute time across DST shifts.
    local_start = datetime.combine(day, start, tzinfo=tz).astimezone(timezone.utc)
    local_end = datetime.combine(day, end, tzinfo=tz).astimezone(timezone.utc)
    if local_end <= local_start:
        log.debug("Skipping empty window %s-%s on %s", start, end, day)
        return None

    adj_start = local_start + timedelta(minutes=buffer_before)
    adj_end = local_end - timedelta(minutes=buffer_after)
    if adj_end <= adj_start:
        return None
    return Window(adj_start, adj_end)


def _overlaps_any(candidate: Interval, blocked: Sequence[Interval]) -> bool:
    for interval in blocked:
        if interval.start >= candidate.end:
            # Sorted by start: nothing further can overlap.
            break
        if candidate.overlaps(interval):
            return True
    return False
