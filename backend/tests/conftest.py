"""Pytest configuration and fixtures."""

import os

# Settings are read once at import time; keep tests off the on-disk database
# and out of the background scheduler.
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("SMS_PROVIDER", "mock")

from datetime import date, datetime
from typing import Any, Dict, Generator, List, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from vms.api.deps import get_clock, get_count_cache, get_notifier
from vms.core.cache import VisitCountCache
from vms.core.clock import FixedClock
from vms.db.base import Base
from vms.db.session import enable_sqlite_foreign_keys, get_db
from vms.main import app
# Import all models to ensure they're registered with Base.metadata
from vms.models import *
from vms.services.notification_service import DispatchResult, Notifier
from vms.services.visit_workflow import VisitWorkflow

# Use in-memory SQLite for tests
TEST_DATABASE_URL = "sqlite:///:memory:"

# Mid-October, so a whole month of future dates is available
TODAY = date(2026, 10, 14)


class RecordingDispatcher:
    """Dispatcher double that keeps every message instead of sending it."""

    def __init__(self, fail_for: Optional[set] = None):
        self.sent: List[Dict[str, Any]] = []
        self.fail_for = fail_for or set()
        self._counter = 0

    def send(self, recipient_contact: str, message: str, context: Dict[str, Any]) -> DispatchResult:
        if recipient_contact in self.fail_for:
            raise RuntimeError("gateway unavailable")
        self._counter += 1
        self.sent.append({"recipient": recipient_contact, "message": message, **context})
        return DispatchResult(
            accepted=True,
            channel=context.get("channel", "sms"),
            recipient=recipient_contact,
            message_id=f"msg-{self._counter}",
        )

    def templates(self, recipient: Optional[str] = None) -> List[str]:
        return [s["template"] for s in self.sent if recipient is None or s["recipient"] == recipient]


@pytest.fixture(scope="function")
def db_engine():
    """Create a test database engine."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_foreign_keys(engine)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture(scope="function")
def db_session(session_factory) -> Generator[Session, None, None]:
    """Create a test database session."""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock.on(TODAY)


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def notifier(dispatcher, session_factory, clock) -> Notifier:
    return Notifier(dispatcher, session_factory=session_factory, clock=clock)


@pytest.fixture
def cache() -> VisitCountCache:
    return VisitCountCache(ttl_seconds=300)


@pytest.fixture
def workflow(db_session, clock, notifier, cache) -> VisitWorkflow:
    return VisitWorkflow(db_session, clock, notifier, cache)


@pytest.fixture
def make_entity(db_session: Session):
    """Factory inserting an entity directly, bypassing registration."""
    counter = {"n": 0}

    def _make(entity_type: str = "guest", **fields) -> Entity:
        counter["n"] += 1
        n = counter["n"]
        values = {
            "entity_type": EntityType(entity_type).value,
            "first_name": f"Visitor{n}",
            "last_name": "Test",
            "phone_number": f"07120000{n:02d}",
            "status": EntityStatus.ACTIVE.value,
        }
        values.update(fields)
        entity = Entity(**values)
        db_session.add(entity)
        db_session.commit()
        db_session.refresh(entity)
        return entity

    return _make


@pytest.fixture
def add_visit(db_session: Session):
    """Factory inserting a visit row as history, bypassing admission."""

    def _add(
        entity: Entity,
        visit_date: date,
        host: Optional[Entity] = None,
        status: str = "approved",
        signed_in: bool = False,
        signed_out: bool = False,
        purpose: Optional[str] = None,
        courtesy: bool = False,
    ) -> Visit:
        visit = Visit(
            entity_id=entity.id,
            host_id=host.id if host else None,
            visit_date=visit_date,
            visit_purpose=purpose,
            courtesy=courtesy,
            status=VisitStatus(status).value,
            sign_in_time=datetime.combine(visit_date, datetime.min.time()).replace(hour=10) if signed_in else None,
            sign_out_time=datetime.combine(visit_date, datetime.min.time()).replace(hour=15) if signed_out else None,
        )
        db_session.add(visit)
        db_session.commit()
        db_session.refresh(visit)
        return visit

    return _add


@pytest.fixture
def host(make_entity) -> Entity:
    return make_entity("member", first_name="Harriet", last_name="Host")


@pytest.fixture(scope="function")
def client(db_session: Session, clock, notifier, cache) -> Generator[TestClient, None, None]:
    """Create a test client with database, clock and notifier overrides."""
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_count_cache] = lambda: cache
    # Disable rate limiters during tests to avoid flaky failures
    from vms.core.rate_limit import limiter as global_limiter
    global_limiter.enabled = False
    # Don't raise server exceptions so we can test error status codes
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client
    global_limiter.enabled = True
    app.dependency_overrides.clear()
