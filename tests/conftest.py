"""Pytest configuration and shared fixtures."""
import os

# Keep the application's default engine off disk when the app module is imported.
os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from workflow_engine.config import Settings
from workflow_engine.database import Base
from workflow_engine.models.domain import WorkItem
from workflow_engine.models.audit import AuditEntry
from workflow_engine.models.enums import SEVERITY_SCALES, WorkItemKind
from workflow_engine.services.store import NewWorkItem, WorkItemStore

FIXED_NOW = datetime(2026, 3, 10, 12, 0, 0)


@pytest.fixture
def settings():
    return Settings(database_url="sqlite://", default_snooze_minutes=30, bulk_max_workers=1)


@pytest.fixture
def db_session():
    """Create a fresh in-memory database for each test."""
    # In-memory SQLite for fast tests
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    TestingSessionLocal = sessionmaker(bind=engine)
    session = TestingSessionLocal()

    yield session

    session.close()
    engine.dispose()


@pytest.fixture
def file_session_factory(tmp_path):
    """File-backed SQLite so several sessions (or threads) see the same data."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'workflow.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine)
    engine.dispose()


@pytest.fixture
def now():
    return FIXED_NOW


def _new_item(
    kind=WorkItemKind.COMPLIANCE,
    category="Price Change",
    title="Coffee Beans 1kg",
    description="25.00 -> 28.00",
    severity=None,
    requested_by="John D.",
    approver_chain=(),
    sla_deadline=None,
    linked_entities=None,
):
    return NewWorkItem(
        kind=kind,
        category=category,
        title=title,
        description=description,
        severity=severity or SEVERITY_SCALES[kind][1],
        requested_by=requested_by,
        approver_chain=list(approver_chain),
        sla_deadline=sla_deadline,
        linked_entities=linked_entities or {},
    )


@pytest.fixture
def make_item(db_session, now):
    """Factory creating Pending work items through the store, as a producer would."""
    def _make(created_at=None, **kwargs):
        return WorkItemStore(db_session).create(_new_item(**kwargs), now=created_at or now - timedelta(hours=1))
    return _make


@pytest.fixture
def make_item_in(now):
    """Same as make_item but against any session (for multi-session tests)."""
    def _make(session, created_at=None, **kwargs):
        return WorkItemStore(session).create(_new_item(**kwargs), now=created_at or now - timedelta(hours=1))
    return _make


@pytest.fixture
def audit_count(db_session):
    """Number of audit entries, optionally for one work item."""
    def _count(work_item_id=None):
        query = db_session.query(AuditEntry)
        if work_item_id is not None:
            query = query.filter(AuditEntry.work_item_id == work_item_id)
        return query.count()
    return _count
