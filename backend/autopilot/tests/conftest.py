"""
Root test configuration and fixtures.

Provides database fixtures that can be used by all tests, plus a fake
action executor and a fixed clock for the coordinator.

Database fixtures:
- db_engine: SQLite in-memory (or DATABASE_URL PostgreSQL), tables created once
- db_session: per-test session; everything, including commits made by
  routes and services, is rolled back when the test ends
"""

import asyncio
import os
import tempfile
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Generator, List, Optional

import pytest
import yaml
from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from autopilot.config.automation_defaults import reset_automation_defaults_loader
from autopilot.services.executors.base import ActionExecutor, ExecutorRequest, ExecutorResult
from autopilot.services.governance_errors import ExecutorUnavailableError

# Set test environment
os.environ.setdefault("ENV", "test")


def _get_test_database_url() -> str:
    """Get database URL for tests."""
    database_url = os.getenv("DATABASE_URL")

    if database_url:
        if database_url.startswith("postgres://"):
            database_url = database_url.replace("postgres://", "postgresql://", 1)
        return database_url

    # Default to SQLite for unit tests if no PostgreSQL available
    return "sqlite:///:memory:"


def _is_postgres() -> bool:
    return _get_test_database_url().startswith("postgresql")


@pytest.fixture(scope="session")
def db_engine():
    """
    Create database engine for tests.

    Uses PostgreSQL if DATABASE_URL is set, otherwise SQLite in-memory.
    """
    database_url = _get_test_database_url()

    if _is_postgres():
        try:
            engine = create_engine(database_url, pool_pre_ping=True)
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            pytest.skip(
                f"PostgreSQL not available. Set DATABASE_URL or use SQLite. Error: {e}"
            )
    else:
        engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

        # pysqlite needs explicit BEGIN for SAVEPOINT to work
        @event.listens_for(engine, "connect")
        def _do_connect(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine, "begin")
        def _do_begin(conn):
            conn.exec_driver_sql("BEGIN")

    from autopilot.db_base import Base
    from autopilot import models  # noqa: F401 - registers all tables

    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db_session(db_engine) -> Generator[Session, None, None]:
    """
    Create database session with transaction rollback for test isolation.

    The session joins an outer transaction via savepoints, so commit() and
    rollback() inside the code under test never escape the test.
    """
    connection = db_engine.connect()
    transaction = connection.begin()

    session = Session(
        bind=connection,
        autoflush=False,
        join_transaction_mode="create_savepoint",
    )

    yield session

    session.close()
    transaction.rollback()
    connection.close()


@pytest.fixture(autouse=True)
def _reset_defaults_loader():
    """Each test sees a freshly loaded automation defaults singleton."""
    reset_automation_defaults_loader()
    yield
    reset_automation_defaults_loader()


# =============================================================================
# Identity fixtures
# =============================================================================


@pytest.fixture
def tenant_id() -> str:
    return f"tenant-{uuid.uuid4()}"


@pytest.fixture
def other_tenant_id() -> str:
    return f"tenant-{uuid.uuid4()}"


@pytest.fixture
def user_id() -> str:
    return "user-456"


# =============================================================================
# Executor and clock
# =============================================================================


class FakeExecutor(ActionExecutor):
    """
    In-memory executor.

    Records every request. Set fail_with to make the next calls raise
    ExecutorUnavailableError; fail_retryable=False mimics a 4xx rejection.
    delay suspends each call so concurrent callers interleave.
    """

    def __init__(self, delay: float = 0):
        self.requests: List[ExecutorRequest] = []
        self.fail_with: Optional[str] = None
        self.fail_retryable = True
        self.delay = delay
        self.closed = False

    @property
    def call_count(self) -> int:
        return len(self.requests)

    async def execute(self, request: ExecutorRequest) -> ExecutorResult:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with:
            raise ExecutorUnavailableError(self.fail_with, retryable=self.fail_retryable)
        return ExecutorResult(executed_action_id=f"exec-{len(self.requests)}-{request.approval_id[:8]}")

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_executor() -> FakeExecutor:
    return FakeExecutor()


# Noon UTC on a fixed day: outside the default 21:00-09:00 quiet hours
FIXED_NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def fixed_now() -> datetime:
    return FIXED_NOW


@pytest.fixture
def fixed_clock(fixed_now):
    return lambda: fixed_now


# =============================================================================
# Markers
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "security: mark test as security-focused")
    config.addinivalue_line("markers", "slow: mark test as slow-running")


# =============================================================================
# Shared Config Fixtures
# =============================================================================


@pytest.fixture
def temp_config_dir():
    """Create a temporary directory for YAML config files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def make_yaml_config(temp_config_dir):
    """
    Factory fixture that writes a YAML config file and returns its path.

    Usage:
        config_path = make_yaml_config("automation_defaults.yml", {"settings": {...}})
    """
    def _make(filename: str, config: dict) -> Path:
        config_path = temp_config_dir / filename
        with open(config_path, "w") as f:
            yaml.dump(config, f)
        return config_path
    return _make
