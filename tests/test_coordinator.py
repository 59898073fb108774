"""Tests for SlotReservationCoordinator: claims, expiry, release and conversion."""

import threading

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from simplecal.errors import (
    ConflictError,
    ContentionError,
    ExpiryError,
    NotFoundError,
    SLOT_HELD_MESSAGE,
    ValidationError,
)
from simplecal.models.booking import BookingRequest
from simplecal.reservations.claims import InMemoryClaimStore
from simplecal.reservations.coordinator import SlotReservationCoordinator, redact_pii
from simplecal.store.tables import Appointment, MeetingType

from conftest import on_monday, seed_alice


def drain(queue) -> list:
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


def booking_for(claim, meeting_type, name="Bob Invitee", email="bob@example.com"):
    return BookingRequest(
        meeting_type_id=meeting_type.id,
        slot_start=claim.slot_start,
        invitee_name=name,
        invitee_email=email,
        claim_handle=claim.claim_id,
    )


@pytest.fixture
def claim_slot(session_factory, organizer, coordinator):
    def _claim(start, end, claimant, coord=None):
        with session_factory() as db:
            return (coord or coordinator).request_claim(db, organizer.id, start, end, claimant)
    return _claim


# ── Claims ──────────────────────────────────────────────────────────


class TestRequestClaim:
    def test_grant(self, claim_slot, coordinator, clock):
        claim = claim_slot(on_monday(9, 45), on_monday(10, 15), "s1")

        assert claim.claimant_id == "s1"
        assert (claim.expires_at - clock()).total_seconds() == 30
        assert coordinator.store.get(claim.claim_id) == claim

    def test_same_slot_is_contended(self, claim_slot):
        claim_slot(on_monday(9, 45), on_monday(10, 15), "s1")
        with pytest.raises(ContentionError) as exc_info:
            claim_slot(on_monday(9, 45), on_monday(10, 15), "s2")
        assert exc_info.value.message == SLOT_HELD_MESSAGE
        assert exc_info.value.status_code == 409

    def test_overlapping_slot_of_another_length_is_contended(self, claim_slot):
        claim_slot(on_monday(9, 45), on_monday(10, 15), "s1")
        with pytest.raises(ContentionError):
            claim_slot(on_monday(9, 15), on_monday(10, 15), "s2")

    def test_adjacent_slot_is_free(self, claim_slot):
        claim_slot(on_monday(9, 45), on_monday(10, 15), "s1")
        assert claim_slot(on_monday(10, 15), on_monday(10, 45), "s2").claimant_id == "s2"

    def test_interval_that_is_not_a_slot_is_rejected(self, claim_slot):
        with pytest.raises(ValidationError):
            claim_slot(on_monday(10, 0), on_monday(10, 30), "s1")

    @pytest.mark.parametrize("start, end", [
        (on_monday(9, 15), on_monday(16, 45)),  # the whole adjusted day
        (on_monday(9, 15), on_monday(10, 45)),  # tiles at 90 minutes, no such meeting type
        (on_monday(9, 15), on_monday(9, 16)),
    ])
    def test_length_must_be_a_meeting_type_duration(self, claim_slot, start, end):
        with pytest.raises(ValidationError):
            claim_slot(start, end, "hog")
        assert claim_slot(on_monday(13, 15), on_monday(13, 45), "s2").claimant_id == "s2"

    def test_every_meeting_type_length_is_claimable(self, claim_slot):
        assert claim_slot(on_monday(9, 15), on_monday(9, 45), "s1").claimant_id == "s1"
        assert claim_slot(on_monday(11, 15), on_monday(12, 15), "s2").claimant_id == "s2"

    def test_unknown_organizer(self, session_factory, organizer, coordinator):
        with session_factory() as db, pytest.raises(NotFoundError):
            coordinator.request_claim(db, "nobody", on_monday(9, 45), on_monday(10, 15), "s1")

    def test_reversed_interval(self, claim_slot):
        with pytest.raises(ValidationError):
            claim_slot(on_monday(10, 15), on_monday(9, 45), "s1")

    def test_booked_slot_is_a_conflict(self, claim_slot, session_factory, coordinator, meeting_types):
        claim = claim_slot(on_monday(9, 45), on_monday(10, 15), "s1")
        with session_factory() as db:
            coordinator.convert_to_booking(db, claim.claim_id, booking_for(claim, meeting_types["Intro call"]))

        with pytest.raises(ConflictError):
            claim_slot(on_monday(9, 45), on_monday(10, 15), "s2")

    def test_expired_claim_frees_the_slot(self, claim_slot, clock):
        claim_slot(on_monday(9, 45), on_monday(10, 15), "s1")
        clock.advance(31)
        assert claim_slot(on_monday(9, 45), on_monday(10, 15), "s2").claimant_id == "s2"

    def test_claim_is_exclusive_until_the_ttl(self, claim_slot, clock):
        claim_slot(on_monday(9, 45), on_monday(10, 15), "s1")
        clock.advance(29)
        with pytest.raises(ContentionError):
            claim_slot(on_monday(9, 45), on_monday(10, 15), "s2")

    def test_reclaim_by_holder_supersedes(self, claim_slot, coordinator, clock):
        first = claim_slot(on_monday(9, 45), on_monday(10, 15), "s1")
        clock.advance(20)
        second = claim_slot(on_monday(9, 45), on_monday(10, 15), "s1")

        assert second.claim_id != first.claim_id
        assert coordinator.store.get(first.claim_id) is None
        clock.advance(20)
        with pytest.raises(ContentionError):
            claim_slot(on_monday(9, 45), on_monday(10, 15), "s2")

    def test_non_positive_ttl_rejected(self):
        with pytest.raises(ValueError):
            SlotReservationCoordinator(InMemoryClaimStore(), ttl_seconds=0)


class TestClaimEvents:
    def test_grant_goes_to_requester_and_claimed_to_everyone(self, claim_slot, broadcaster):
        mine = broadcaster.subscribe("s1")
        theirs = broadcaster.subscribe("s2")

        claim = claim_slot(on_monday(9, 45), on_monday(10, 15), "s1")

        my_events = drain(mine)
        assert [e["type"] for e in my_events] == ["claim_granted", "slot_claimed"]
        assert my_events[0]["data"]["claim_id"] == claim.claim_id

        their_events = drain(theirs)
        assert [e["type"] for e in their_events] == ["slot_claimed"]
        assert "claim_id" not in their_events[0]["data"]

    def test_denied_claim_publishes_nothing(self, claim_slot, broadcaster):
        claim_slot(on_monday(9, 45), on_monday(10, 15), "s1")
        watcher = broadcaster.subscribe("watcher")
        with pytest.raises(ContentionError):
            claim_slot(on_monday(9, 45), on_monday(10, 15), "s2")
        assert drain(watcher) == []


# ── Release and expiry ──────────────────────────────────────────────


class TestRelease:
    def test_release_is_idempotent(self, claim_slot, coordinator, broadcaster):
        claim = claim_slot(on_monday(9, 45), on_monday(10, 15), "s1")
        watcher = broadcaster.subscribe("watcher")

        assert coordinator.release_claim(claim.claim_id, "s1") is True
        assert coordinator.release_claim(claim.claim_id, "s1") is False
        assert coordinator.release_claim("unknown") is False

        events = drain(watcher)
        assert [e["type"] for e in events] == ["slot_released"]
        assert events[0]["data"]["reason"] == "released"

    def test_release_frees_the_slot(self, claim_slot, coordinator):
        claim = claim_slot(on_monday(9, 45), on_monday(10, 15), "s1")
        coordinator.release_claim(claim.claim_id)
        assert claim_slot(on_monday(9, 45), on_monday(10, 15), "s2").claimant_id == "s2"

    def test_non_holder_cannot_release(self, claim_slot, coordinator):
        claim = claim_slot(on_monday(9, 45), on_monday(10, 15), "s1")
        assert coordinator.release_claim(claim.claim_id, "s2") is False
        assert coordinator.store.get(claim.claim_id) is not None

    def test_release_after_expiry_is_a_no_op(self, claim_slot, coordinator, clock, broadcaster):
        claim = claim_slot(on_monday(9, 45), on_monday(10, 15), "s1")
        clock.advance(60)
        watcher = broadcaster.subscribe("watcher")
        assert coordinator.release_claim(claim.claim_id, "s1") is False
        assert drain(watcher) == []

    def test_release_all(self, claim_slot, coordinator):
        a = claim_slot(on_monday(9, 45), on_monday(10, 15), "s1")
        b = claim_slot(on_monday(11, 15), on_monday(11, 45), "s1")
        assert coordinator.release_all([a.claim_id, b.claim_id, "gone"], "s1") == 2

    def test_sweep_announces_expired_claims(self, claim_slot, coordinator, clock, broadcaster):
        claim_slot(on_monday(9, 45), on_monday(10, 15), "s1")
        watcher = broadcaster.subscribe("watcher")

        assert coordinator.sweep_expired() == 0
        clock.advance(30)
        assert coordinator.sweep_expired() == 1

        events = drain(watcher)
        assert [e["type"] for e in events] == ["slot_released"]
        assert events[0]["data"]["reason"] == "expired"
        assert events[0]["data"]["slot_start"] == on_monday(9, 45).isoformat()


# ── Conversion ──────────────────────────────────────────────────────


class TestConvertToBooking:
    def test_success(self, claim_slot, session_factory, coordinator, meeting_types, broadcaster):
        claim = claim_slot(on_monday(9, 45), on_monday(10, 15), "s1")
        watcher = broadcaster.subscribe("watcher")

        with session_factory() as db:
            appointment = coordinator.convert_to_booking(
                db, claim.claim_id, booking_for(claim, meeting_types["Intro call"])
            )

        assert appointment.status == "booked"
        assert appointment.cancellation_token
        assert coordinator.store.get(claim.claim_id) is None

        events = drain(watcher)
        assert [e["type"] for e in events] == ["booking_created"]
        data = events[0]["data"]
        assert data["appointment_id"] == appointment.id
        assert data["slot_start"] == on_monday(9, 45).isoformat()
        assert data["invitee"]["email"] == "bob@example.com"

        with session_factory() as db:
            stored = db.get(Appointment, appointment.id)
            assert stored.invitee_name == "Bob Invitee"

    def test_handle_cannot_be_used_twice(self, claim_slot, session_factory, coordinator, meeting_types):
        claim = claim_slot(on_monday(9, 45), on_monday(10, 15), "s1")
        request = booking_for(claim, meeting_types["Intro call"])
        with session_factory() as db:
            coordinator.convert_to_booking(db, claim.claim_id, request)
        with session_factory() as db, pytest.raises(ValidationError):
            coordinator.convert_to_booking(db, claim.claim_id, request)

    def test_unknown_handle(self, session_factory, organizer, coordinator, meeting_types):
        claim_request = BookingRequest(
            meeting_type_id=meeting_types["Intro call"].id,
            slot_start=on_monday(9, 45),
            invitee_name="Bob",
            invitee_email="bob@example.com",
            claim_handle="made-up",
        )
        with session_factory() as db, pytest.raises(ValidationError):
            coordinator.convert_to_booking(db, "made-up", claim_request)

    def test_expired_handle(self, claim_slot, session_factory, coordinator, meeting_types, clock):
        claim = claim_slot(on_monday(9, 45), on_monday(10, 15), "s1")
        clock.advance(31)

        with session_factory() as db, pytest.raises(ExpiryError) as exc_info:
            coordinator.convert_to_booking(db, claim.claim_id, booking_for(claim, meeting_types["Intro call"]))
        assert exc_info.value.message == SLOT_HELD_MESSAGE

        with session_factory() as db:
            assert db.query(Appointment).count() == 0

    def test_expired_handle_after_sweep(self, claim_slot, session_factory, coordinator, meeting_types, clock):
        claim = claim_slot(on_monday(9, 45), on_monday(10, 15), "s1")
        clock.advance(31)
        coordinator.sweep_expired()

        with session_factory() as db, pytest.raises(ExpiryError):
            coordinator.convert_to_booking(db, claim.claim_id, booking_for(claim, meeting_types["Intro call"]))

    def test_expired_handle_after_slot_was_reclaimed(self, claim_slot, session_factory, coordinator, meeting_types, clock):
        claim = claim_slot(on_monday(9, 45), on_monday(10, 15), "s1")
        clock.advance(31)
        claim_slot(on_monday(9, 45), on_monday(10, 15), "s2")

        with session_factory() as db, pytest.raises(ExpiryError):
            coordinator.convert_to_booking(db, claim.claim_id, booking_for(claim, meeting_types["Intro call"]))

    def test_request_must_match_claimed_slot(self, claim_slot, session_factory, coordinator, meeting_types):
        claim = claim_slot(on_monday(9, 45), on_monday(10, 15), "s1")
        # The 60 minute type would book 09:45-10:45, not the claimed interval.
        with session_factory() as db, pytest.raises(ValidationError):
            coordinator.convert_to_booking(db, claim.claim_id, booking_for(claim, meeting_types["Deep dive"]))
        with session_factory() as db:
            assert db.query(Appointment).count() == 0

    def test_claims_lost_on_restart_never_double_book(self, session_factory, organizer, meeting_types, clock, claim_slot):
        # Two coordinators with separate claim tables stand in for a restart
        # (or a misconfigured multi-instance deployment).
        before = SlotReservationCoordinator(InMemoryClaimStore(), clock=clock)
        after = SlotReservationCoordinator(InMemoryClaimStore(), clock=clock)

        first = claim_slot(on_monday(9, 45), on_monday(10, 15), "s1", coord=before)
        second = claim_slot(on_monday(9, 45), on_monday(10, 15), "s2", coord=after)

        with session_factory() as db:
            before.convert_to_booking(db, first.claim_id, booking_for(first, meeting_types["Intro call"]))
        with session_factory() as db, pytest.raises(ConflictError) as exc_info:
            after.convert_to_booking(
                db, second.claim_id,
                booking_for(second, meeting_types["Intro call"], name="Carol", email="carol@example.com"),
            )

        assert exc_info.value.to_dict()["resolve_again"] is True
        assert after.store.get(second.claim_id) is None
        with session_factory() as db:
            assert db.query(Appointment).filter(Appointment.status == "booked").count() == 1

    def test_overlapping_bookings_of_different_lengths_conflict(self, session_factory, organizer, meeting_types, clock, claim_slot):
        a = SlotReservationCoordinator(InMemoryClaimStore(), clock=clock)
        b = SlotReservationCoordinator(InMemoryClaimStore(), clock=clock)

        short = claim_slot(on_monday(9, 45), on_monday(10, 15), "s1", coord=a)
        long = claim_slot(on_monday(9, 15), on_monday(10, 15), "s2", coord=b)

        with session_factory() as db:
            a.convert_to_booking(db, short.claim_id, booking_for(short, meeting_types["Intro call"]))
        with session_factory() as db, pytest.raises(ConflictError):
            b.convert_to_booking(db, long.claim_id, booking_for(long, meeting_types["Deep dive"]))


class TestConcurrency:
    """Threads racing on an on-disk SQLite Rule Store."""

    def run_together(self, target, count: int) -> list:
        barrier = threading.Barrier(count)
        outcomes = []

        def worker(i):
            barrier.wait()
            outcomes.append(target(i))

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)
        return outcomes

    def test_concurrent_requests_have_one_winner(self, db_path, file_session_factory, clock):
        alice = seed_alice(file_session_factory)
        coordinator = SlotReservationCoordinator(InMemoryClaimStore(), clock=clock)
        # Plain pysqlite sessions: reads do not take the write lock, so the
        # threads reach the claim store together.
        engine = create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})
        readers = sessionmaker(bind=engine)

        def attempt(i):
            with readers() as db:
                try:
                    coordinator.request_claim(db, alice.id, on_monday(9, 45), on_monday(10, 15), f"s{i}")
                    return "granted"
                except ContentionError:
                    return "denied"

        try:
            outcomes = self.run_together(attempt, 8)
        finally:
            engine.dispose()

        assert outcomes.count("granted") == 1
        assert outcomes.count("denied") == 7
        assert len(coordinator.store.live_overlapping(alice.id, on_monday(9), on_monday(11), clock())) == 1

    def test_concurrent_conversions_commit_once(self, file_session_factory, clock):
        alice = seed_alice(file_session_factory)
        with file_session_factory() as db:
            intro = db.query(MeetingType).filter(MeetingType.name == "Intro call").one()

        # Separate claim tables: both invitees hold a claim on the same slot.
        coordinators = [SlotReservationCoordinator(InMemoryClaimStore(), clock=clock) for _ in range(2)]
        claims = []
        for i, coord in enumerate(coordinators):
            with file_session_factory() as db:
                claims.append(coord.request_claim(db, alice.id, on_monday(9, 45), on_monday(10, 15), f"s{i}"))

        def convert(i):
            request = booking_for(claims[i], intro, email=f"invitee{i}@example.com")
            with file_session_factory() as db:
                try:
                    coordinators[i].convert_to_booking(db, claims[i].claim_id, request)
                    return "booked"
                except ConflictError:
                    return "conflict"

        assert sorted(self.run_together(convert, 2)) == ["booked", "conflict"]
        with file_session_factory() as db:
            assert db.query(Appointment).filter(Appointment.status == "booked").count() == 1


class TestRedactPii:
    def test_short_values_fully_masked(self):
        assert redact_pii("abc") == "***"
        assert redact_pii("") == "***"

    def test_long_values_partially_masked(self):
        assert redact_pii("session-12345") == "ses***45"
