"""
Root conftest.py - Shared fixtures for all test types.

This file is automatically loaded by pytest and provides:
- A file-backed SQLite database per test (executor, API and observers use
  separate sessions, which an in-memory database cannot share)
- Execution core wired to that database
- FastAPI test client
"""
import sys
from pathlib import Path
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Add backend, cli and tdd to path for imports
root_path = Path(__file__).parent.parent
sys.path.insert(0, str(root_path / "backend"))
sys.path.insert(0, str(root_path / "cli"))
sys.path.insert(0, str(root_path / "tdd"))

from shipyard.database import Base, configure_sqlite, get_db
from shipyard.dependencies import get_deployment_service, get_publisher
from shipyard.main import app
from shipyard.services.deployment_service import DeploymentService
from shipyard.services.execution import process_registry
from shipyard.services.execution.workflow_executor import BackgroundExecutor, WorkflowExecutor
from shipyard.services.execution.workspace_locking import WorkspaceLockManager
from shipyard.services.log_stream import LogStreamPublisher
from shared.mocks import StatusRecorder


# -----------------------------------------------------------------------------
# Database Fixtures
# -----------------------------------------------------------------------------

@pytest_asyncio.fixture
async def async_engine(tmp_path):
    """Create a test database engine on a fresh file database."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'shipyard-test.db'}",
        echo=False,
    )
    configure_sqlite(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(async_engine) -> async_sessionmaker:
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Provide a database session for arranging and inspecting test data."""
    async with session_factory() as session:
        yield session
        await session.rollback()


# -----------------------------------------------------------------------------
# Execution core
# -----------------------------------------------------------------------------

@pytest.fixture
def workspace(tmp_path) -> Path:
    """An existing, empty project workspace directory."""
    path = tmp_path / "workspace"
    path.mkdir()
    return path


@pytest.fixture
def lock_manager() -> WorkspaceLockManager:
    return WorkspaceLockManager()


@pytest.fixture
def status_recorder() -> StatusRecorder:
    return StatusRecorder()


@pytest.fixture
def executor(session_factory, lock_manager, status_recorder) -> WorkflowExecutor:
    return WorkflowExecutor(
        session_factory=session_factory,
        lock_manager=lock_manager,
        command_timeout=10,
        log_flush_interval=0,
        notifier=status_recorder,
    )


@pytest_asyncio.fixture
async def background(executor) -> AsyncGenerator[BackgroundExecutor, None]:
    background = BackgroundExecutor(executor)
    yield background
    await background.shutdown()


@pytest.fixture
def deployment_service(background, lock_manager, status_recorder) -> DeploymentService:
    return DeploymentService(
        background=background,
        lock_manager=lock_manager,
        broadcast=status_recorder,
    )


@pytest.fixture
def publisher(session_factory) -> LogStreamPublisher:
    return LogStreamPublisher(
        session_factory=session_factory,
        poll_interval=0.02,
        heartbeat_interval=0.1,
    )


@pytest.fixture(autouse=True)
def _clean_process_registry():
    process_registry.clear()
    yield
    process_registry.clear()


# -----------------------------------------------------------------------------
# API client
# -----------------------------------------------------------------------------

@pytest_asyncio.fixture
async def client(session_factory, deployment_service, publisher) -> AsyncGenerator[AsyncClient, None]:
    """Provide an async HTTP client for API testing.

    Each request gets its own session on the test database, as in production.
    """
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_deployment_service] = lambda: deployment_service
    app.dependency_overrides[get_publisher] = lambda: publisher

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# -----------------------------------------------------------------------------
# Marker-based fixtures
# -----------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _mark_test(request):
    """Automatically apply markers based on test location."""
    if "unit" in str(request.fspath):
        request.applymarker(pytest.mark.unit)
    elif "integration" in str(request.fspath):
        request.applymarker(pytest.mark.integration)
