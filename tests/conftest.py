"""
Shared pytest fixtures and event helpers.
"""

import logging
import uuid
from datetime import datetime
from datetime import time
from datetime import timedelta
from datetime import timezone

import pytest

from calendar_mirror.db import StateDatabase
from calendar_mirror.models import SyncConfiguration
from calendar_mirror.models import SyncMode
from calendar_mirror.models import SyncStats
from calendar_mirror.models import utc_now
from tests.fake_client import FakeCalendarGateway

SOURCE_CAL_ID = "source-calendar-test"
TARGET_CAL_ID = "target-calendar-test"

# Fixed "now" so horizons and keys are deterministic.
NOW = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)


def at(hour: int, minute: int = 0, days: int = 0) -> datetime:
    """A UTC instant on the test day (a Monday), optionally shifted by ``days``."""
    return NOW.replace(hour=hour, minute=minute) + timedelta(days=days)


def utc_tomorrow(hour: int, minute: int = 0) -> datetime:
    """An instant tomorrow for code paths that read the real clock."""
    day = utc_now().date() + timedelta(days=1)
    return datetime.combine(day, time(hour, minute), tzinfo=timezone.utc)


def make_config(
    name: str = "Work to Personal",
    mode: SyncMode = SyncMode.BLOCKER_ONLY,
    **kwargs,
) -> SyncConfiguration:
    kwargs.setdefault("source_calendar_id", SOURCE_CAL_ID)
    kwargs.setdefault("target_calendar_id", TARGET_CAL_ID)
    return SyncConfiguration(id=kwargs.pop("id", uuid.uuid4()), name=name, mode=mode, **kwargs)


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "test_state.db"


@pytest.fixture
def state_db(db_path):
    with StateDatabase(db_path) as db:
        yield db


@pytest.fixture
def gateway():
    fake = FakeCalendarGateway()
    fake.add_calendar(SOURCE_CAL_ID, "Work")
    fake.add_calendar(TARGET_CAL_ID, "Personal")
    return fake


@pytest.fixture
def sync_config():
    return make_config()


@pytest.fixture
def sync_logger():
    return logging.getLogger("test_sync")


@pytest.fixture
def sync_stats():
    return SyncStats()
