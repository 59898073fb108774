"""Slot Reservation Coordinator: first-come, first-served claims on slots.

A claim narrows the race window between "invitee picked a slot" and
"invitee submitted the booking form".  It is advisory: claims live only in
the claim store and vanish on restart, so the final word always belongs to
the booking transaction against the Rule Store (see ``simplecal.booking``).

Lifecycle of one (organizer, interval):

    Unclaimed --request_claim--> Claimed
    Claimed   --release_claim / TTL expiry / conversion--> Unclaimed

A claim is never extended.  A client that needs more time claims again
before its TTL runs out, which supersedes its own earlier claim.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections import OrderedDict
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Optional

from sqlalchemy.orm import Session

from .. import booking
from ..availability.service import find_offered_slot
from ..errors import ConflictError, ContentionError, ExpiryError, NotFoundError, ValidationError
from ..events import EventBroadcaster
from ..models.booking import BookingRequest
from ..store.repository import RuleRepository
from ..store.tables import Appointment
from .claims import ClaimStore, SlotClaim

log = logging.getLogger("simplecal.reservations.coordinator")

DEFAULT_TTL_SECONDS = 30

# How many swept claim ids are remembered so their late use still reads as expired.
EXPIRED_MEMORY = 4096


def redact_pii(value: str) -> str:
    """Mask PII for logging: show first 3 and last 2 chars only."""
    if not value or len(value) <= 5:
        return "***"
    return value[:3] + "***" + value[-2:]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SlotReservationCoordinator:
    """Grants, releases and converts slot claims.

    Typical lifecycle::

        coordinator = SlotReservationCoordinator(InMemoryClaimStore(), broadcaster)

        claim = coordinator.request_claim(db, organizer_id, start, end, session_id)
        # → invitee fills in the booking form within the TTL
        appointment = coordinator.convert_to_booking(db, claim.claim_id, request)
    """

    def __init__(
        self,
        store: ClaimStore,
        broadcaster: Optional[EventBroadcaster] = None,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], datetime] = utcnow,
        fallback_timezone: str = "UTC",
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._store = store
        self._broadcaster = broadcaster or EventBroadcaster()
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock
        self._fallback_timezone = fallback_timezone
        self._recently_expired: OrderedDict[str, None] = OrderedDict()
        self._expired_lock = threading.Lock()

    @property
    def store(self) -> ClaimStore:
        return self._store

    @property
    def broadcaster(self) -> EventBroadcaster:
        return self._broadcaster

    @property
    def ttl_seconds(self) -> float:
        return self._ttl.total_seconds()

    def now(self) -> datetime:
        return self._clock()

    # ── Claims ─────────────────────────────────────────────────

    def request_claim(
        self,
        db: Session,
        organizer_id: str,
        slot_start: datetime,
        slot_end: datetime,
        claimant_id: str,
    ) -> SlotClaim:
        """Try to claim ``[slot_start, slot_end)`` for ``claimant_id``.

        Raises:
            ValidationError: unknown organizer, or the interval is not a slot
                the organizer currently offers.
            ConflictError: a booked appointment already occupies the slot.
            ContentionError: another session holds an overlapping live claim.
        """
        if not claimant_id:
            raise ValidationError("claimant_id is required")
        slot_start, slot_end = _as_utc(slot_start), _as_utc(slot_end)
        if slot_end <= slot_start:
            raise ValidationError("slot_end must be after slot_start")

        organizer = RuleRepository.get_user(db, organizer_id)
        if organizer is None:
            raise NotFoundError("Organizer not found")

        slot = find_offered_slot(
            db, organizer, slot_start, slot_end, fallback_timezone=self._fallback_timezone
        )
        if slot is None:
            raise ValidationError("Requested interval is not an offered slot")
        if not slot.available:
            raise ConflictError()

        now = self._clock()
        claim = SlotClaim(
            claim_id=uuid.uuid4().hex,
            organizer_id=organizer_id,
            slot_start=slot_start,
            slot_end=slot_end,
            claimant_id=claimant_id,
            issued_at=now,
            expires_at=now + self._ttl,
        )
        blocking = self._store.acquire(claim, now)
        if blocking is not None:
            log.info(
                "Claim denied for %s on %s %s (held until %s)",
                redact_pii(claimant_id), organizer_id,
                slot_start.isoformat(), blocking.expires_at.isoformat(),
            )
            raise ContentionError()

        log.info(
            "Claim %s granted to %s on %s %s-%s",
            claim.claim_id, redact_pii(claimant_id), organizer_id,
            slot_start.isoformat(), slot_end.isoformat(),
        )
        self._broadcaster.send(claimant_id, "claim_granted", {
            "claim_id": claim.claim_id,
            **claim.to_event(),
        })
        self._broadcaster.publish("slot_claimed", claim.to_event())
        return claim

    def release_claim(self, claim_id: str, claimant_id: Optional[str] = None) -> bool:
        """Release a claim.  Idempotent: unknown, expired or converted is a no-op.

        When ``claimant_id`` is given, only that claimant's claim is released.
        Returns True if a live claim was actually released.
        """
        claim = self._store.get(claim_id)
        if claim is None:
            return False
        if claimant_id is not None and claim.claimant_id != claimant_id:
            log.warning(
                "Ignoring release of claim %s by non-holder %s",
                claim_id, redact_pii(claimant_id),
            )
            return False

        removed = self._store.remove(claim_id)
        if removed is None or not removed.is_live(self._clock()):
            return False

        log.info("Claim %s released", claim_id)
        self._broadcaster.publish("slot_released", {**removed.to_event(), "reason": "released"})
        return True

    def release_all(self, claim_ids: Iterable[str], claimant_id: Optional[str] = None) -> int:
        """Release several claims (e.g. when a client disconnects)."""
        return sum(1 for cid in list(claim_ids) if self.release_claim(cid, claimant_id))

    def sweep_expired(self) -> int:
        """Drop expired claims and announce the freed slots."""
        removed = self._store.purge_expired(self._clock())
        for claim in removed:
            self._remember_expired(claim.claim_id)
            log.info("Claim %s expired", claim.claim_id)
            self._broadcaster.publish("slot_released", {**claim.to_event(), "reason": "expired"})
        return len(removed)

    # ── Conversion ─────────────────────────────────────────────

    def convert_to_booking(
        self, db: Session, claim_id: str, request: BookingRequest
    ) -> Appointment:
        """Turn a live claim into a booked appointment.

        The conflict re-check and the insert run in one transaction inside
        ``booking.book_appointment``; the claim is consumed on success and
        invalidated on conflict.

        Raises:
            ValidationError: unknown claim handle, or the request does not
                match the claimed slot / organizer.
            ExpiryError: the claim's TTL elapsed.
            ConflictError: a booking already occupies the interval.
        """
        claim = self._store.get(claim_id)
        if claim is None:
            if self._was_swept(claim_id):
                log.warning("Claim %s used after it expired and was swept", claim_id)
                raise ExpiryError()
            raise ValidationError("Invalid or unknown claim")

        now = self._clock()
        if not claim.is_live(now):
            self._store.remove(claim_id)
            late = (now - claim.expires_at).total_seconds()
            log.warning(
                "Claim %s used %.1fs after expiry (ttl=%ss), consider raising CLAIM_TTL_SECONDS",
                claim_id, late, self.ttl_seconds,
            )
            raise ExpiryError()

        try:
            appointment = booking.book_appointment(
                db,
                request,
                organizer_id=claim.organizer_id,
                expected_start=claim.slot_start,
                expected_end=claim.slot_end,
            )
        except ConflictError:
            self._store.remove(claim_id)
            log.warning("Claim %s invalidated: slot already booked", claim_id)
            raise

        self._store.remove(claim_id)
        log.info("Claim %s converted to appointment %s", claim_id, appointment.id)
        self._broadcaster.publish("booking_created", booking.booking_created_payload(appointment))
        return appointment

    def _remember_expired(self, claim_id: str) -> None:
        with self._expired_lock:
            self._recently_expired[claim_id] = None
            while len(self._recently_expired) > EXPIRED_MEMORY:
                self._recently_expired.popitem(last=False)

    def _was_swept(self, claim_id: str) -> bool:
        with self._expired_lock:
            return claim_id in self._recently_expired


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
