"""Glue between the Rule Store and the pure resolution engine."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from ..errors import NotFoundError, ValidationError
from ..reservations.claims import ClaimStore
from ..store.repository import RuleRepository
from ..store.tables import MeetingType, User
from .base import Slot
from .engine import resolve

log = logging.getLogger("simplecal.availability.service")


@dataclass
class SlotListing:
    """Result of ``resolve_slots``: the slots plus what they were resolved for."""

    organizer: User
    meeting_type: MeetingType
    timezone: str
    slots: list[Slot]

    def to_dict(self) -> dict:
        return {
            "organizer_id": self.organizer.id,
            "meeting_type_id": self.meeting_type.id,
            "duration": self.meeting_type.duration,
            "timezone": self.timezone,
            "slots": [s.to_dict() for s in self.slots],
        }


def resolve_slots(
    db: Session,
    organizer_username: str,
    start_date: date,
    end_date: date,
    meeting_type_id: Optional[str] = None,
    claims: Optional[ClaimStore] = None,
    session_id: Optional[str] = None,
    now: Optional[datetime] = None,
    max_range_days: int = 62,
    fallback_timezone: str = "UTC",
) -> SlotListing:
    """Resolve an organizer's slots for a public scheduling page.

    Live claims held by ``session_id`` itself do not hide slots from that
    session; everyone else's do.
    """
    if start_date > end_date:
        raise ValidationError("start_date must not be after end_date")
    if (end_date - start_date).days + 1 > max_range_days:
        raise ValidationError(f"Date range may span at most {max_range_days} days")

    organizer = RuleRepository.get_user_by_username(db, organizer_username)
    if organizer is None:
        raise NotFoundError("Organizer not found")

    meeting_type = pick_meeting_type(db, organizer, meeting_type_id)
    schedule = RuleRepository.load_schedule(
        db, organizer, start_date, end_date, fallback_timezone=fallback_timezone
    )

    range_start, range_end = local_day_bounds(schedule.timezone, start_date, end_date)
    booked = RuleRepository.booked_intervals(db, organizer.id, range_start, range_end)

    held = []
    if claims is not None:
        now = now or datetime.now(timezone.utc)
        held = [
            c.interval
            for c in claims.live_overlapping(organizer.id, range_start, range_end, now)
            if c.claimant_id != session_id
        ]

    slots = resolve(
        schedule,
        start_date,
        end_date,
        meeting_type.duration,
        booked=booked,
        held=held,
    )
    log.info(
        "Resolved %d slots for %s (%s..%s, %d min)",
        len(slots), organizer.username, start_date, end_date, meeting_type.duration,
    )
    return SlotListing(organizer, meeting_type, schedule.timezone, slots)


def find_offered_slot(
    db: Session,
    organizer: User,
    slot_start: datetime,
    slot_end: datetime,
    fallback_timezone: str = "UTC",
) -> Optional[Slot]:
    """Re-resolve the slot's local date and return the matching slot, if offered.

    The interval's length must be one of the organizer's meeting type
    durations, and the slot must be one ``resolve`` emits at that length.
    Only booked appointments are considered; live claims are arbitrated by
    the claim store itself.
    """
    minutes = (slot_end - slot_start).total_seconds() / 60
    if minutes <= 0 or minutes != int(minutes):
        return None
    minutes = int(minutes)
    durations = {t.duration for t in RuleRepository.list_meeting_types(db, organizer.id)}
    if minutes not in durations:
        log.info(
            "Rejected %d minute interval for %s (meeting types: %s)",
            minutes, organizer.username, sorted(durations),
        )
        return None

    schedule = RuleRepository.load_schedule(
        db,
        organizer,
        # Widened by a day: the organizer-local date can differ from the UTC one.
        (slot_start - timedelta(days=1)).date(),
        (slot_end + timedelta(days=1)).date(),
        fallback_timezone=fallback_timezone,
    )
    local_day = slot_start.astimezone(ZoneInfo(schedule.timezone)).date()
    booked = RuleRepository.booked_intervals(db, organizer.id, slot_start, slot_end)

    for slot in resolve(schedule, local_day, local_day, minutes, booked=booked):
        if slot.start == slot_start and slot.end == slot_end:
            return slot
    return None


def pick_meeting_type(
    db: Session, organizer: User, meeting_type_id: Optional[str]
) -> MeetingType:
    """The requested meeting type, else the organizer's default, else the first one."""
    if meeting_type_id:
        meeting_type = RuleRepository.get_meeting_type(db, meeting_type_id)
        if meeting_type is None or meeting_type.user_id != organizer.id:
            raise ValidationError("Invalid meeting type")
        return meeting_type

    meeting_type = RuleRepository.get_default_meeting_type(db, organizer.id)
    if meeting_type is None:
        types = RuleRepository.list_meeting_types(db, organizer.id)
        if not types:
            raise ValidationError("Organizer has no meeting types")
        meeting_type = types[0]
    return meeting_type


def local_day_bounds(tz_name: str, start_date: date, end_date: date) -> tuple[datetime, datetime]:
    """UTC instants of local midnight at ``start_date`` and after ``end_date``."""
    tz = ZoneInfo(tz_name)
    start = datetime.combine(start_date, time(0), tzinfo=tz).astimezone(timezone.utc)
    end = datetime.combine(end_date + timedelta(days=1), time(0), tzinfo=tz).astimezone(timezone.utc)
    return start, end
