"""
Pytest configuration and fixtures

Every test gets a fresh in-memory SQLite schema (one shared connection),
so nothing leaks between tests. The scheduler is disabled.
"""
import os
import sys
from datetime import date

import pytest

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SCHEDULER_ENABLED"] = "false"

# Add the project root to the path so the flat modules import as in production
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database import Base, SessionLocal, engine, get_db  # noqa: E402
from models import Challenge, ChallengeParticipant, DataSource, HistorySource, User  # noqa: E402
from providers import TelemetryProvider  # noqa: E402


@pytest.fixture(autouse=True)
def schema():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db(schema):
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def make_user(db):
    def _make(name="Ana", data_source=DataSource.manual.value, token=None, provider_user_id=None):
        user = User(
            name=name,
            email=f"{name.lower()}@example.com",
            data_source=data_source,
            provider_access_token=token,
            provider_user_id=provider_user_id,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user
    return _make


@pytest.fixture
def make_challenge(db):
    def _make(start=date(2024, 1, 1), end=None, step_goal=10000, weigh_in_day="monday", name="Enero"):
        challenge = Challenge(
            name=name,
            start_date=start,
            end_date=end,
            step_goal=step_goal,
            weigh_in_day=weigh_in_day,
        )
        db.add(challenge)
        db.commit()
        db.refresh(challenge)
        return challenge
    return _make


@pytest.fixture
def make_participant(db):
    def _make(challenge, user, **fields):
        values = {
            "last_step_count": 0,
            "step_goal_points": 0,
            "weight_loss_points": 0,
            "total_points": 0,
        }
        values.update(fields)
        participant = ChallengeParticipant(challenge_id=challenge.id, user_id=user.id, **values)
        db.add(participant)
        db.commit()
        db.refresh(participant)
        return participant
    return _make


@pytest.fixture
def client(db):
    from fastapi.testclient import TestClient
    from main import app

    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


class FakeProvider(TelemetryProvider):
    """Provider that returns canned history (or raises) without any HTTP"""

    name = "fake"

    def __init__(self, history=None, error=None, source_tag=HistorySource.device_sync):
        super().__init__("token")
        self.history = history or []
        self.error = error
        self.source_tag = source_tag
        self.calls = []

    def fetch_daily_history(self, start, end, timezone=None):
        self.calls.append((start, end, timezone))
        if self.error:
            raise self.error
        return list(self.history)


@pytest.fixture
def fake_provider():
    return FakeProvider
