"""Booking API: the durable side of a booking.

Every write that can occupy an interval (new booking, reschedule,
un-cancel) runs the same guarded transaction:

  1. lock the organizer row (PostgreSQL, SERIALIZABLE) or hold the SQLite
     write lock (BEGIN IMMEDIATE),
  2. look for booked appointments overlapping the interval,
  3. insert/update and commit.

Two concurrent bookings for overlapping intervals therefore cannot both
commit, whatever the claim table says.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Iterator, Optional

from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import Session

from .errors import ConflictError, NotFoundError, SchedulingError, ValidationError
from .events import EventBroadcaster
from .models.booking import AppointmentUpdate, BookingRequest
from .store.database import is_serialization_failure
from .store.repository import RuleRepository
from .store.tables import Appointment, as_utc

log = logging.getLogger("simplecal.booking")


def book_appointment(
    db: Session,
    request: BookingRequest,
    organizer_id: str,
    expected_start: Optional[datetime] = None,
    expected_end: Optional[datetime] = None,
) -> Appointment:
    """Insert a booked appointment after re-checking for overlaps.

    ``expected_start``/``expected_end`` pin the booking to the claimed
    interval; a mismatch is a ValidationError.
    """
    with _guarded(db, "book"):
        meeting_type = RuleRepository.get_meeting_type(db, request.meeting_type_id)
        if meeting_type is None or meeting_type.user_id != organizer_id:
            raise ValidationError("Invalid meeting type")

        slot_start = as_utc(request.slot_start)
        slot_end = slot_start + timedelta(minutes=meeting_type.duration)
        if expected_start is not None and (
            slot_start != as_utc(expected_start) or slot_end != as_utc(expected_end)
        ):
            raise ValidationError("Booking does not match the claimed slot")

        _lock_and_check(db, organizer_id, slot_start, slot_end)

        appointment = RuleRepository.add_appointment(
            db,
            organizer_id=organizer_id,
            meeting_type_id=meeting_type.id,
            slot_start=slot_start,
            slot_end=slot_end,
            status="booked",
            invitee_name=request.invitee_name,
            invitee_email=request.invitee_email,
            invitee_phone=request.invitee_phone,
            invitee_notes=request.invitee_notes,
        )
        db.commit()

    log.info(
        "Appointment %s booked for organizer %s at %s",
        appointment.id, organizer_id, slot_start.isoformat(),
    )
    return appointment


def update_appointment(
    db: Session,
    organizer_id: str,
    appointment_id: str,
    update: AppointmentUpdate,
    broadcaster: Optional[EventBroadcaster] = None,
) -> Appointment:
    """Organizer cancel / reschedule.  Publishes ``booking_updated``."""
    with _guarded(db, "update"):
        appointment = RuleRepository.get_appointment(db, appointment_id, organizer_id)
        if appointment is None:
            raise NotFoundError("Appointment not found or unauthorized")

        start, end = as_utc(appointment.slot_start), as_utc(appointment.slot_end)
        moved = update.slot_start is not None and as_utc(update.slot_start) != start
        if moved:
            length = end - start
            start = as_utc(update.slot_start)
            end = start + length

        status = update.status or appointment.status
        occupies_again = status == "booked" and (moved or appointment.status != "booked")
        if occupies_again:
            _lock_and_check(db, organizer_id, start, end, exclude_id=appointment.id)

        appointment.slot_start = start
        appointment.slot_end = end
        appointment.status = status
        db.commit()

    _publish_updated(broadcaster, appointment)
    return appointment


def cancel_by_token(
    db: Session,
    cancellation_token: str,
    broadcaster: Optional[EventBroadcaster] = None,
) -> Appointment:
    """Invitee cancellation.  Cancelling twice is a no-op."""
    with _guarded(db, "cancel"):
        appointment = RuleRepository.get_appointment_by_token(db, cancellation_token)
        if appointment is None:
            raise NotFoundError("Appointment not found")
        if appointment.status == "canceled":
            db.rollback()
            return appointment
        appointment.status = "canceled"
        db.commit()

    log.info("Appointment %s canceled by invitee", appointment.id)
    _publish_updated(broadcaster, appointment)
    return appointment


def booking_created_payload(appointment: Appointment) -> dict:
    return {
        "appointment_id": appointment.id,
        "organizer_id": appointment.organizer_id,
        "meeting_type_id": appointment.meeting_type_id,
        "slot_start": as_utc(appointment.slot_start).isoformat(),
        "slot_end": as_utc(appointment.slot_end).isoformat(),
        "status": appointment.status,
        "invitee": {
            "name": appointment.invitee_name,
            "email": appointment.invitee_email,
            "phone": appointment.invitee_phone,
        },
    }


# ── Helpers ──────────────────────────────────────────────────────────


def _lock_and_check(
    db: Session,
    organizer_id: str,
    start: datetime,
    end: datetime,
    exclude_id: Optional[str] = None,
) -> None:
    if RuleRepository.lock_organizer(db, organizer_id) is None:
        raise NotFoundError("Organizer not found")
    clashes = RuleRepository.booked_between(db, organizer_id, start, end, exclude_id=exclude_id)
    if clashes:
        log.info(
            "Booking conflict for organizer %s at %s (overlaps %s)",
            organizer_id, start.isoformat(), clashes[0].id,
        )
        raise ConflictError()


@contextmanager
def _guarded(db: Session, action: str) -> Iterator[Session]:
    """Transaction scope for booking writes.

    Opens the transaction at SERIALIZABLE on PostgreSQL, rolls back on any
    failure and turns uniqueness/serialization aborts into ConflictError.
    """
    if db.get_bind().dialect.name == "postgresql" and not db.in_transaction():
        db.connection(execution_options={"isolation_level": "SERIALIZABLE"})
    try:
        yield db
    except SchedulingError:
        db.rollback()
        raise
    except IntegrityError as exc:
        db.rollback()
        log.warning("Booking %s hit a uniqueness conflict: %s", action, exc.orig)
        raise ConflictError() from exc
    except DBAPIError as exc:
        db.rollback()
        if is_serialization_failure(exc):
            log.warning("Booking %s aborted by serialization failure", action)
            raise ConflictError() from exc
        log.error("Booking %s failed: %s", action, exc)
        raise
    except Exception:
        db.rollback()
        raise


def _publish_updated(broadcaster: Optional[EventBroadcaster], appointment: Appointment) -> None:
    if broadcaster is None:
        return
    broadcaster.publish("booking_updated", {
        "appointment_id": appointment.id,
        "updated_fields": {
            "status": appointment.status,
            "slot_start": as_utc(appointment.slot_start).isoformat(),
            "slot_end": as_utc(appointment.slot_end).isoformat(),
        },
        "timestamp": datetime.now(timezone.utc).isoformat(),
    })
