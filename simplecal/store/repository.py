"""Rule Store repository - database operations for organizers' scheduling data"""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.orm import Session

from ..availability.base import (
    DateOverride,
    Interval,
    OrganizerSchedule,
    RecurringWindow,
    parse_hhmm,
)
from .tables import (
    Appointment,
    AvailabilityException,
    MeetingType,
    RecurringRule,
    User,
    as_utc,
)

log = logging.getLogger("simplecal.store.repository")


class RuleRepository:
    """Queries the resolution engine and the Booking API run against the Rule Store"""

    # ── Organizers ──────────────────────────────────────────────

    @staticmethod
    def get_user(db: Session, user_id: str) -> Optional[User]:
        return db.get(User, user_id)

    @staticmethod
    def get_user_by_username(db: Session, username: str) -> Optional[User]:
        return db.query(User).filter(User.username == username).first()

    @staticmethod
    def lock_organizer(db: Session, organizer_id: str) -> Optional[User]:
        """Take a row lock on the organizer for the rest of the transaction.

        Serializes concurrent booking writes for one organizer on PostgreSQL.
        SQLite ignores FOR UPDATE; its BEGIN IMMEDIATE already serializes writers.
        """
        return (
            db.query(User)
            .filter(User.id == organizer_id)
            .with_for_update()
            .first()
        )

    # ── Recurring rules ─────────────────────────────────────────

    @staticmethod
    def list_rules(db: Session, user_id: str) -> list[RecurringRule]:
        return (
            db.query(RecurringRule)
            .filter(RecurringRule.user_id == user_id)
            .order_by(RecurringRule.day_of_week, RecurringRule.start_time)
            .all()
        )

    @staticmethod
    def get_rule(db: Session, rule_id: str, user_id: str) -> Optional[RecurringRule]:
        return (
            db.query(RecurringRule)
            .filter(RecurringRule.id == rule_id, RecurringRule.user_id == user_id)
            .first()
        )

    @staticmethod
    def create_rule(db: Session, user_id: str, **rule_data) -> RecurringRule:
        rule = RecurringRule(user_id=user_id, **rule_data)
        db.add(rule)
        db.commit()
        db.refresh(rule)
        return rule

    @staticmethod
    def update_rule(db: Session, rule: RecurringRule, **updates) -> RecurringRule:
        for key, value in updates.items():
            if value is not None and hasattr(rule, key):
                setattr(rule, key, value)
        db.commit()
        db.refresh(rule)
        return rule

    @staticmethod
    def delete_rule(db: Session, rule: RecurringRule) -> None:
        db.delete(rule)
        db.commit()

    # ── Exceptions ──────────────────────────────────────────────

    @staticmethod
    def list_exceptions(
        db: Session,
        user_id: str,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> list[AvailabilityException]:
        query = db.query(AvailabilityException).filter(
            AvailabilityException.user_id == user_id
        )
        # ISO dates sort lexically.
        if start_date is not None:
            query = query.filter(AvailabilityException.exception_date >= start_date.isoformat())
        if end_date is not None:
            query = query.filter(AvailabilityException.exception_date <= end_date.isoformat())
        return query.order_by(AvailabilityException.exception_date).all()

    @staticmethod
    def get_exception(
        db: Session, exception_id: str, user_id: str
    ) -> Optional[AvailabilityException]:
        return (
            db.query(AvailabilityException)
            .filter(
                AvailabilityException.id == exception_id,
                AvailabilityException.user_id == user_id,
            )
            .first()
        )

    @staticmethod
    def create_exception(db: Session, user_id: str, **data) -> AvailabilityException:
        entry = AvailabilityException(user_id=user_id, **data)
        db.add(entry)
        db.commit()
        db.refresh(entry)
        return entry

    @staticmethod
    def update_exception(
        db: Session, entry: AvailabilityException, **updates
    ) -> AvailabilityException:
        # start/end may legitimately be cleared to turn an entry into a blackout.
        for key, value in updates.items():
            if hasattr(entry, key):
                setattr(entry, key, value)
        db.commit()
        db.refresh(entry)
        return entry

    @staticmethod
    def delete_exception(db: Session, entry: AvailabilityException) -> None:
        db.delete(entry)
        db.commit()

    # ── Meeting types ───────────────────────────────────────────

    @staticmethod
    def list_meeting_types(db: Session, user_id: str) -> list[MeetingType]:
        return (
            db.query(MeetingType)
            .filter(MeetingType.user_id == user_id)
            .order_by(MeetingType.is_default.desc(), MeetingType.name)
            .all()
        )

    @staticmethod
    def get_meeting_type(db: Session, meeting_type_id: str) -> Optional[MeetingType]:
        return db.get(MeetingType, meeting_type_id)

    @staticmethod
    def get_default_meeting_type(db: Session, user_id: str) -> Optional[MeetingType]:
        return (
            db.query(MeetingType)
            .filter(MeetingType.user_id == user_id, MeetingType.is_default.is_(True))
            .first()
        )

    # ── Appointments ────────────────────────────────────────────

    @staticmethod
    def booked_between(
        db: Session,
        organizer_id: str,
        start: datetime,
        end: datetime,
        exclude_id: Optional[str] = None,
    ) -> list[Appointment]:
        """Booked appointments overlapping ``[start, end)``."""
        query = db.query(Appointment).filter(
            Appointment.organizer_id == organizer_id,
            Appointment.status == "booked",
            Appointment.slot_start < as_utc(end),
            Appointment.slot_end > as_utc(start),
        )
        if exclude_id is not None:
            query = query.filter(Appointment.id != exclude_id)
        return query.order_by(Appointment.slot_start).all()

    @staticmethod
    def add_appointment(db: Session, **fields) -> Appointment:
        """Stage an appointment inside the caller's transaction (no commit)."""
        appointment = Appointment(**fields)
        db.add(appointment)
        db.flush()
        return appointment

    @staticmethod
    def get_appointment(
        db: Session, appointment_id: str, organizer_id: str
    ) -> Optional[Appointment]:
        return (
            db.query(Appointment)
            .filter(Appointment.id == appointment_id, Appointment.organizer_id == organizer_id)
            .first()
        )

    @staticmethod
    def list_appointments(
        db: Session,
        organizer_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        status: Optional[str] = None,
    ) -> list[Appointment]:
        """An organizer's appointments starting in ``[start, end)``, soonest first."""
        query = db.query(Appointment).filter(Appointment.organizer_id == organizer_id)
        if start is not None:
            query = query.filter(Appointment.slot_start >= as_utc(start))
        if end is not None:
            query = query.filter(Appointment.slot_start < as_utc(end))
        if status is not None:
            query = query.filter(Appointment.status == status)
        return query.order_by(Appointment.slot_start).all()

    @staticmethod
    def get_appointment_by_token(db: Session, token: str) -> Optional[Appointment]:
        return db.query(Appointment).filter(Appointment.cancellation_token == token).first()

    # ── Engine input ────────────────────────────────────────────

    @staticmethod
    def timezone_for(user: User, fallback_timezone: str = "UTC") -> str:
        """The organizer's IANA timezone, or the fallback if it is missing or unknown."""
        tz_name = user.default_timezone or fallback_timezone
        try:
            ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError):
            log.warning(
                "Organizer %s has unknown timezone %r; using %s",
                user.id, tz_name, fallback_timezone,
            )
            tz_name = fallback_timezone
        return tz_name

    @staticmethod
    def load_schedule(
        db: Session,
        user: User,
        start_date: date,
        end_date: date,
        fallback_timezone: str = "UTC",
    ) -> OrganizerSchedule:
        """Translate an organizer's rows into the engine's value types."""
        tz_name = RuleRepository.timezone_for(user, fallback_timezone)

        rules = tuple(
            RecurringWindow(
                day_of_week=r.day_of_week,
                start=parse_hhmm(r.start_time),
                end=parse_hhmm(r.end_time),
                buffer_before=r.buffer_before,
                buffer_after=r.buffer_after,
                meeting_duration=r.meeting_duration,
            )
            for r in RuleRepository.list_rules(db, user.id)
        )
        overrides = tuple(
            DateOverride(
                on=date.fromisoformat(e.exception_date),
                start=parse_hhmm(e.start_time) if e.start_time else None,
                end=parse_hhmm(e.end_time) if e.end_time else None,
                note=e.note or "",
            )
            for e in RuleRepository.list_exceptions(db, user.id, start_date, end_date)
        )
        return OrganizerSchedule(timezone=tz_name, rules=rules, overrides=overrides)

    @staticmethod
    def booked_intervals(
        db: Session, organizer_id: str, start: datetime, end: datetime
    ) -> list[Interval]:
        return [
            Interval(as_utc(a.slot_start), as_utc(a.slot_end))
            for a in RuleRepository.booked_between(db, organizer_id, start, end)
        ]
