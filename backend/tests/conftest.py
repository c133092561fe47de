"""
Shared fixtures.

Settings are read from the environment at import time, so the test
configuration is exported before anything from ``examguard`` is imported:
SQLite through aiosqlite, no Redis cache, eager Celery.
"""
import os
import tempfile

os.environ.setdefault(
    "DATABASE_URL",
    f"sqlite+aiosqlite:///{os.path.join(tempfile.gettempdir(), 'examguard_test.db')}",
)
os.environ.setdefault("CACHE_ENABLED", "false")
os.environ.setdefault("CELERY_TASK_ALWAYS_EAGER", "true")
os.environ.setdefault("ENVIRONMENT", "test")

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from examguard.core.database import create_db_and_tables
from examguard.monitoring.monitor import ProctoringMonitor
from examguard.monitoring.verification import VerificationEvidence
from examguard.monitoring.worker import RetryPolicy
from examguard.services.session_store import SessionStore

from .factories import ManualClock, RecordingNotifier


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: unit tests for isolated components")
    config.addinivalue_line("markers", "integration: tests that run the monitor against a database")


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'examguard.db'}")
    await create_db_and_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
def store(session_factory):
    return SessionStore(session_factory)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
async def monitor(store, notifier, clock):
    monitor = ProctoringMonitor(
        store,
        notifier=notifier,
        clock=clock,
        retry=RetryPolicy(max_retries=3, delay_seconds=0.0),
        verification_timeout=1.0,
    )
    yield monitor
    await monitor.stop()


PASSING_EVIDENCE = VerificationEvidence(face_match_confidence=0.95, environment_checked=True)


@pytest.fixture
async def active_session(monitor):
    """A verified session whose exam has started at the clock's current time"""
    snapshot = await monitor.create_session("student-1", "exam-1")
    await monitor.verify(snapshot.id, PASSING_EVIDENCE)
    return await monitor.start_exam(snapshot.id)


@pytest.fixture
async def client(monitor):
    from examguard.api.deps import get_monitor
    from examguard.main import app

    app.dependency_overrides[get_monitor] = lambda: monitor
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
