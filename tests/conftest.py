"""
Pytest configuration for SelfTalk tests.
Points the settings at a throwaway SQLite database before any app import.
"""

import os
import tempfile

# Must be set before any app imports
_test_data_dir = tempfile.mkdtemp(prefix="selftalk_test_")
os.environ["SELFTALK_ENVIRONMENT"] = "test"
os.environ["SELFTALK_DATA_DIRECTORY"] = _test_data_dir
os.environ["SELFTALK_DATABASE_URL"] = f"sqlite:///{_test_data_dir}/test.db"
os.environ["SELFTALK_RUN_MIGRATIONS"] = "false"
os.environ["SELFTALK_LOG_DIR"] = os.path.join(_test_data_dir, "logs")
os.environ["SELFTALK_ACCESS_TOKEN_SECRET"] = "test-access-token-secret"

from datetime import timedelta
from typing import Optional

import pytest
from sqlalchemy import delete
from sqlmodel import SQLModel

from app.core.database import get_engine, get_session_context
from app.core.timeutil import add_months, utcnow
from app.models.metering import MeteringJournalEntry
from app.models.subscription import SubscriptionPlan, UserSubscription
from app.models.user import User

SQLModel.metadata.create_all(get_engine())

# Load error registry so SelfTalkError returns correct HTTP status codes
from app.core.errors.registry import error_registry
error_registry.load()

from app.auth import access_tokens
from app.routers import auth as auth_router_module
from app.services.ledger_store import LedgerStore
from app.services.metering_journal import MeteringJournal
from app.services.plan_catalog import PlanCatalog
from app.services.reconciliation import whole_seconds
from app.services.session_registry import SessionRegistry
from app.services.subscription_service import SubscriptionLifecycleManager


@pytest.fixture(autouse=True)
def clean_database():
    """Every test starts with empty tables and empty auth caches."""
    yield
    with get_session_context() as db:
        for model in (MeteringJournalEntry, UserSubscription, SubscriptionPlan, User):
            db.execute(delete(model))
        db.commit()
    access_tokens.token_cache.clear()
    access_tokens.revoked_tokens.clear()
    auth_router_module._login_attempts.clear()


class EventCollector:
    """Async event sink recording everything the engine emits."""

    def __init__(self) -> None:
        self.events = []

    async def __call__(self, event: dict) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> list:
        return [e for e in self.events if e["type"] == event_type]

    @property
    def types(self) -> list:
        return [e["type"] for e in self.events]


@pytest.fixture
def collector():
    return EventCollector()


@pytest.fixture
def make_collector():
    return EventCollector


@pytest.fixture
def store():
    return LedgerStore()


@pytest.fixture
def journal():
    return MeteringJournal()


@pytest.fixture
def registry():
    return SessionRegistry()


@pytest.fixture
def catalog():
    plans = PlanCatalog()
    plans.seed_default_plans()
    return plans


@pytest.fixture
def lifecycle(store, catalog):
    return SubscriptionLifecycleManager(store, catalog)


@pytest.fixture
def make_user():
    """Create a user row directly (no bcrypt, no ledger)."""
    counter = {"n": 0}

    def _make(email: Optional[str] = None, role: str = "user", is_suspended: bool = False) -> User:
        counter["n"] += 1
        user = User(
            username=f"user{counter['n']}",
            email=email or f"user{counter['n']}@example.com",
            password_hash="not-a-real-hash",
            role=role,
            is_suspended=is_suspended,
        )
        with get_session_context() as db:
            db.add(user)
            db.commit()
        return user

    return _make


@pytest.fixture
def make_ledger(store):
    """Create a ledger for ``user`` with the given balances."""

    def _make(
        user: User,
        available: float = 2.0,
        extra: float = 0.0,
        seconds: Optional[int] = None,
        name: str = "Free",
        started_at=None,
        end_date=None,
    ) -> UserSubscription:
        started = started_at or utcnow() - timedelta(days=1)
        record = UserSubscription(
            user_id=user.id,
            name=name,
            available_minutes=available,
            extra_minutes=extra,
            total_minutes=available + extra,
            seconds=whole_seconds(available + extra) if seconds is None else seconds,
            subscription_started_at=started,
            subscription_end_date=end_date or add_months(started, 1),
        )
        return store.create_for_user(record)

    return _make


@pytest.fixture
def client():
    """TestClient with the full lifespan (plans seeded, services on app.state)."""
    from fastapi.testclient import TestClient

    from app.main import create_app

    with TestClient(create_app()) as test_client:
        yield test_client


@pytest.fixture
def auth_headers():
    """Bearer headers for an existing user row."""

    def _headers(user: User) -> dict:
        return {"Authorization": f"Bearer {access_tokens.create_access_token(user.id)}"}

    return _headers
