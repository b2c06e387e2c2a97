import os
import tempfile
from datetime import date, datetime, time

# Point the engine at a throwaway SQLite file before db is imported
os.environ.setdefault(
    "DATABASE_PATH", os.path.join(tempfile.mkdtemp(prefix="dayorder-tests-"), "test.db")
)

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, SQLModel, delete

from app import app, get_assignments, get_code_gate, get_notifier, get_now, get_roster
from collaborators import StaticAssignments, StaticRoster
from day_order import update_config
from db import create_db_and_tables, engine, get_session
from models import SchemaVersion
from otp import OneTimeCodeGate
from schemas import SlotIn
from timetable import save_day

UNIT = "General"
CLASS_ID = "BSC-CS-A"


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class RecordingNotifier:
    def __init__(self):
        self.calls = []

    def notify(self, session_id, recipients):
        self.calls.append((session_id, list(recipients)))


@pytest.fixture(scope="function")
def test_session():
    """Create a test database session."""
    create_db_and_tables()
    with Session(engine) as session:
        yield session
        # Clean up all test data after test
        session.rollback()
        for table in reversed(SQLModel.metadata.sorted_tables):
            if table.name == SchemaVersion.__tablename__:
                continue
            session.exec(delete(table))
        session.commit()


@pytest.fixture
def clock():
    # Wednesday morning; 2024-01-01 is a Monday and 2024-01-07 a Sunday
    return FakeClock(datetime(2024, 1, 10, 8, 0))


@pytest.fixture
def gate():
    return OneTimeCodeGate(ttl_seconds=120, length=6)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def roster():
    return StaticRoster({CLASS_ID: ["asha@example.edu", "bala@example.edu", "chitra@example.edu"]})


@pytest.fixture(scope="function")
def client(test_session, clock, gate, notifier, roster):
    """Create a test client with dependency overrides."""

    def get_test_session():
        yield test_session

    app.dependency_overrides[get_session] = get_test_session
    app.dependency_overrides[get_now] = clock
    app.dependency_overrides[get_code_gate] = lambda: gate
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_roster] = lambda: roster
    app.dependency_overrides[get_assignments] = lambda: StaticAssignments()
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def anchored(test_session):
    """Cycle of 6 with 2024-01-09 (a Tuesday) pinned as day 1, so 2024-01-10 is day 2."""
    return update_config(test_session, UNIT, 6, 1, actor="admin", today=date(2024, 1, 9))


@pytest.fixture
def day_two_timetable(test_session, anchored):
    """Day order 2 for CLASS_ID: two teaching periods around a break."""
    return save_day(
        test_session,
        UNIT,
        CLASS_ID,
        2,
        [
            SlotIn(period_number=1, start_time=time(9, 0), end_time=time(9, 50),
                   subject_id="MATH101", teacher_id="t.raman"),
            SlotIn(period_number=2, start_time=time(9, 50), end_time=time(10, 40),
                   subject_id="PHY101", teacher_id="t.devi"),
            SlotIn(period_number=3, start_time=time(10, 40), end_time=time(11, 0),
                   is_break=True, break_name="Tea"),
        ],
    )
