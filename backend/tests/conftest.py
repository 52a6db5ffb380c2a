from __future__ import annotations

import os
import tempfile
from types import SimpleNamespace

# Set test environment BEFORE importing courier modules.
# courier.db creates the engine at module level using get_settings().db_url,
# so we must override the env vars before any courier imports.
_test_tmp = tempfile.mkdtemp(prefix="courier-test-")
os.environ.setdefault("DATA_DIR", os.path.join(_test_tmp, "data"))
os.environ.setdefault("DB_URL", "sqlite://")
os.environ.setdefault("SCHEDULER_ENABLED", "0")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine

from courier.config import Settings
from courier.db import get_session
from courier.main import app as fastapi_app
from courier.services.contacts import ContactService
from courier.services.dispatch import VerificationDispatcher
from courier.services.ledger import VerificationLedger
from courier.services.messages import MessageService
from courier.services.monitor import DeadMansSwitchMonitor
from courier.services.scheduler import Scheduler
from courier.services.state_machine import DeliveryStateMachine

from factories import OWNER, FakeContentStore, FakeNotifier


# ── Database fixtures ─────────────────────────────────────────────────


@pytest.fixture(name="engine")
def engine_fixture():
    """Create an in-memory SQLite engine for testing.

    Uses StaticPool so every connection shares the same in-memory database.
    Recreates tables per test for full isolation.
    """
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(name="session")
def session_fixture(engine):
    """Provide a fresh session per test."""
    with Session(engine) as session:
        yield session


# ── Service fixtures ──────────────────────────────────────────────────


@pytest.fixture(name="settings")
def settings_fixture(tmp_path) -> Settings:
    return Settings(
        data_dir=tmp_path / "data",
        db_url="sqlite://",
        io_timeout_seconds=1.0,
        lease_ttl_seconds=10,
        max_delivery_attempts=3,
        retry_base_delay_seconds=30,
        retry_max_delay_seconds=600,
        verification_window_hours=72,
        verification_max_rounds=2,
        checkin_reminder_lead_hours=24,
        checkin_missed_threshold=1,
        escalation_window_hours=168,
        posthumous_required_confirmations=2,
        notifier_max_attempts=3,
        smtp_host="",
    )


@pytest.fixture(name="notifier")
def notifier_fixture() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture(name="content_store")
def content_store_fixture() -> FakeContentStore:
    return FakeContentStore()


@pytest.fixture(name="services")
def services_fixture(settings, engine, notifier, content_store) -> SimpleNamespace:
    """The full engine wired against the test database and fakes."""
    ledger = VerificationLedger()
    machine = DeliveryStateMachine(settings)
    dispatcher = VerificationDispatcher(settings, ledger, notifier)
    monitor = DeadMansSwitchMonitor(settings, ledger, notifier, dispatcher)
    scheduler = Scheduler(
        settings, engine, machine, ledger, monitor, dispatcher, content_store, notifier
    )
    return SimpleNamespace(
        settings=settings,
        ledger=ledger,
        machine=machine,
        dispatcher=dispatcher,
        monitor=monitor,
        scheduler=scheduler,
        messages=MessageService(settings, machine, ledger, monitor, content_store),
        contacts=ContactService(settings, notifier),
        notifier=notifier,
        content_store=content_store,
    )


# ── HTTP client fixtures ──────────────────────────────────────────────


@pytest.fixture(name="client")
def client_fixture(engine, services):
    """FastAPI TestClient backed by the test database and fake transports.

    Each request gets its own session so reads observe writes made by the
    scheduler between requests.
    """

    def _get_session_override():
        with Session(engine) as session:
            yield session

    fastapi_app.dependency_overrides[get_session] = _get_session_override
    with TestClient(fastapi_app) as tc:
        fastapi_app.state.notifier = services.notifier
        fastapi_app.state.content_store = services.content_store
        fastapi_app.state.ledger = services.ledger
        fastapi_app.state.monitor = services.monitor
        fastapi_app.state.scheduler = services.scheduler
        fastapi_app.state.message_service = services.messages
        fastapi_app.state.contact_service = services.contacts
        fastapi_app.state.clock = None
        tc.headers["X-Owner-Id"] = OWNER
        yield tc
    fastapi_app.dependency_overrides.clear()
