"""
Pytest configuration and shared fixtures for Caseflow tests.
"""

import uuid
from datetime import datetime, timedelta
from typing import Any, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from caseflow.config import Settings
from caseflow.db.orm import Case, CaseStatus
from caseflow.db.session import build_session_factory, create_tables
from caseflow.security.auth import Caller, UserRole
from caseflow.sync.audit import DatabaseAuditSink

# Fixed reference time for deterministic timestamps
T0 = datetime(2026, 3, 1, 12, 0, 0)


class FakeClock:
    """Controllable replacement for utcnow()."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingAuditSink:
    """In-memory audit sink for service tests."""

    def __init__(self):
        self.events: list[dict[str, Any]] = []

    async def record_sync_event(
        self,
        action: str,
        actor: Caller,
        details: dict[str, Any],
        *,
        resource_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        self.events.append({
            "action": action,
            "actor": actor.id,
            "details": details,
            "resource_id": resource_id,
            "ip_address": ip_address,
        })


@pytest.fixture
def test_settings() -> Settings:
    """Settings with small batch limits so capacity paths are easy to hit."""
    return Settings(
        secret_key="test-secret-key-that-is-long-enough-123",
        database_url="sqlite+aiosqlite:///:memory:",
        sync_batch_size=20,
        sync_max_batch_size=50,
        enterprise_sync_batch_size=10,
        sync_max_upload_items=25,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def audit_sink() -> RecordingAuditSink:
    return RecordingAuditSink()


@pytest_asyncio.fixture
async def engine():
    """Fresh in-memory database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def db_audit_sink(session) -> DatabaseAuditSink:
    return DatabaseAuditSink(session)


# =============================================================================
# Callers
# =============================================================================


@pytest.fixture
def field_agent() -> Caller:
    return Caller(id="agent-1", username="agent-1", full_name="Asha Field", role=UserRole.FIELD_AGENT)


@pytest.fixture
def other_agent() -> Caller:
    return Caller(id="agent-2", username="agent-2", role=UserRole.FIELD_AGENT)


@pytest.fixture
def backend_user() -> Caller:
    return Caller(id="backend-1", username="backend-1", role=UserRole.BACKEND_USER)


@pytest.fixture
def manager() -> Caller:
    return Caller(id="manager-1", username="manager-1", role=UserRole.MANAGER)


@pytest.fixture
def admin() -> Caller:
    return Caller(id="admin-1", username="admin-1", role=UserRole.ADMIN)


# =============================================================================
# Seed data
# =============================================================================


_case_numbers = iter(range(1000, 100000))


async def insert_case(session, **overrides: Any) -> Case:
    """Insert and commit a case; updated_at defaults to T0."""
    values: dict[str, Any] = {
        "id": uuid.uuid4(),
        "case_number": next(_case_numbers),
        "title": "Residence verification",
        "customer_name": "Ravi Kumar",
        "address_city": "Pune",
        "assigned_to": "agent-1",
        "created_by": "backend-1",
        "status": CaseStatus.ASSIGNED,
        "priority": 2,
        "created_at": T0 - timedelta(days=2),
        "updated_at": T0,
    }
    values.update(overrides)
    case = Case(**values)
    session.add(case)
    await session.commit()
    # Detached so later rollbacks in the test do not expire it
    session.expunge(case)
    return case


@pytest_asyncio.fixture
async def make_case(session):
    """Factory fixture: await make_case(status=..., updated_at=...)."""

    async def factory(**overrides: Any) -> Case:
        return await insert_case(session, **overrides)

    return factory


def iso(value: datetime) -> str:
    """Client-style ISO timestamp with explicit UTC designator."""
    return value.isoformat() + "Z"


def case_update(case_id, timestamp: datetime, **data: Any) -> dict[str, Any]:
    """Raw wire item for a case update."""
    return {"id": str(case_id), "action": "UPDATE", "data": data, "timestamp": iso(timestamp)}
