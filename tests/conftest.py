"""
Shared pytest fixtures.
"""

import datetime

import pytest

from tests.fake_calendar import FakeCalendar
from timeslot_sync.clock import FixedClock
from timeslot_sync.db import StateDatabase
from timeslot_sync.models import SyncConfig
from timeslot_sync.queue import SyncQueue
from timeslot_sync.session import SessionEngine
from timeslot_sync.sync import Reconciler

CALENDAR_ID = "calendar-test"

# 2026-03-02 09:00 UTC, a Monday
T0 = datetime.datetime(2026, 3, 2, 9, 0, tzinfo=datetime.timezone.utc)


def at(hour: int, minute: int = 0, second: int = 0) -> datetime.datetime:
    """A timestamp on the test day."""
    return T0.replace(hour=hour, minute=minute, second=second)


def minutes(n: float) -> datetime.timedelta:
    return datetime.timedelta(minutes=n)


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "test_state.db"


@pytest.fixture
def state_db(db_path):
    with StateDatabase(db_path) as db:
        yield db


@pytest.fixture
def clock():
    return FixedClock(T0)


@pytest.fixture
def sync_config(db_path):
    return SyncConfig(calendar_id=CALENDAR_ID, state_db_path=db_path, dry_run=False, verbose=False)


@pytest.fixture
def queue(state_db, clock):
    return SyncQueue(state_db, clock)


@pytest.fixture
def engine(state_db, queue, clock, sync_config):
    return SessionEngine(state_db, queue, clock, sync_config)


@pytest.fixture
def calendar():
    return FakeCalendar()


@pytest.fixture
def reconciler(calendar, state_db, queue, sync_config, clock):
    return Reconciler(calendar, state_db, queue, sync_config, clock=clock)

