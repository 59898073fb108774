"""Shared fixtures: in-memory Rule Store, a seeded organizer and a fake clock."""

import os

# Keep the module-level app in simplecal.app off the on-disk database.
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("CLAIM_SWEEP_INTERVAL_SECONDS", "0")

from datetime import date, datetime, timedelta, timezone

import pytest

from simplecal.events import EventBroadcaster
from simplecal.reservations.claims import InMemoryClaimStore
from simplecal.reservations.coordinator import SlotReservationCoordinator
from simplecal.store.database import create_db_engine, create_session_factory, init_db
from simplecal.store.tables import MeetingType, RecurringRule, User

MONDAY = date(2030, 1, 7)
TUESDAY = date(2030, 1, 8)


def utc(year, month, day, hour=0, minute=0) -> datetime:
    return datetime(year, month, day, hour, minute, tzinfo=timezone.utc)


def on_monday(hour: int, minute: int = 0) -> datetime:
    return utc(MONDAY.year, MONDAY.month, MONDAY.day, hour, minute)


class FakeClock:
    """Callable clock the tests move by hand."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def session_factory():
    engine = create_db_engine("sqlite://")
    init_db(engine)
    factory = create_session_factory(engine)
    yield factory
    engine.dispose()


def seed_alice(session_factory) -> User:
    """alice: Mondays 09:00-17:00 UTC with 15 minute buffers on both sides."""
    with session_factory() as db:
        alice = User(
            username="alice",
            name="Alice Example",
            email="alice@example.com",
            default_timezone="UTC",
        )
        db.add(alice)
        db.flush()
        db.add(RecurringRule(
            user_id=alice.id,
            day_of_week=1,
            start_time="09:00",
            end_time="17:00",
            buffer_before=15,
            buffer_after=15,
            meeting_duration=30,
        ))
        db.add(MeetingType(
            user_id=alice.id, name="Intro call", duration=30, is_default=True,
        ))
        db.add(MeetingType(
            user_id=alice.id, name="Deep dive", duration=60, is_default=False,
        ))
        db.commit()
        return alice


@pytest.fixture
def organizer(session_factory):
    return seed_alice(session_factory)


@pytest.fixture
def db_path(tmp_path):
    """On-disk SQLite file; unlike the in-memory one, it can be shared by threads."""
    return tmp_path / "rules.db"


@pytest.fixture
def file_session_factory(db_path):
    engine = create_db_engine(f"sqlite:///{db_path}")
    init_db(engine)
    yield create_session_factory(engine)
    engine.dispose()


@pytest.fixture
def meeting_types(session_factory, organizer):
    with session_factory() as db:
        types = db.query(MeetingType).filter(MeetingType.user_id == organizer.id).all()
        return {t.name: t for t in types}


@pytest.fixture
def clock():
    return FakeClock(utc(2030, 1, 1, 12, 0))


@pytest.fixture
def broadcaster():
    return EventBroadcaster()


@pytest.fixture
def coordinator(clock, broadcaster):
    return SlotReservationCoordinator(
        InMemoryClaimStore(), broadcaster, ttl_seconds=30, clock=clock
    )
