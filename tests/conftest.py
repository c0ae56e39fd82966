"""pytest fixtures for ensmarket backend tests.

Provides:
- utc_timezone: Autouse fixture enforcing UTC timezone
- settings: Test settings with webhook/internal secrets configured
- store / fake_uow: In-memory unit of work (see fakes.py)
- postgres_container: Session-scoped testcontainer PostgreSQL instance (skipped
  when Docker is unavailable)
- session: Function-scoped database session with table truncation
- uow_factory: Function-scoped UnitOfWork factory bound to PostgreSQL
"""

import os
import subprocess
import sys
from pathlib import Path
from typing import AsyncGenerator

os.environ.setdefault("APP_ENV", "test")

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from fakes import (  # noqa: E402
    FakeChainClient,
    FakeLockCoordinator,
    FakeStore,
    fake_uow_factory,
)
from sqlalchemy import text  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker  # noqa: E402

from ensmarket.core.config import Settings  # noqa: E402
from ensmarket.core.database import get_engine, setup_db_session  # noqa: E402
from ensmarket.services.container import ServiceContainer, build_container  # noqa: E402
from ensmarket.services.ops_metrics import OpsMetrics  # noqa: E402

PROJECT_ROOT = Path(__file__).resolve().parent.parent

WEBHOOK_SECRET = "test-webhook-secret"
INTERNAL_SECRET = "test-internal-secret"


@pytest.fixture(scope="session", autouse=True)
def utc_timezone():
    """Enforce UTC timezone for all tests."""
    os.environ["TZ"] = "UTC"
    yield


@pytest.fixture
def settings() -> Settings:
    """Settings for tests: secrets set, background intervals irrelevant."""
    return Settings(  # type: ignore[call-arg]
        _env_file=None,
        APP_ENV="test",
        WEBHOOK_ACTIVE_SECRET=WEBHOOK_SECRET,
        INTERNAL_OPS_SECRET=INTERNAL_SECRET,
        ENS_COMMITMENT_CONFIRMATION_WINDOW_SECONDS=60,
        ENS_COMMITMENT_MAX_AGE_SECONDS=86400,
        WEBHOOK_RETRY_MAX_ATTEMPTS=3,
        WEBHOOK_RETRY_BASE_DELAY_SECONDS=30,
        WEBHOOK_RETRY_MAX_DELAY_SECONDS=600,
    )


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def fake_uow(store: FakeStore):
    return fake_uow_factory(store)


@pytest.fixture
def chain() -> FakeChainClient:
    return FakeChainClient()


@pytest.fixture
def locks() -> FakeLockCoordinator:
    return FakeLockCoordinator()


@pytest.fixture
def container(settings, fake_uow, chain, locks) -> ServiceContainer:
    """Fully wired services on the in-memory store."""
    return build_container(
        settings,
        uow_factory=fake_uow,
        chain_client=chain,  # type: ignore[arg-type]
        locks=locks,  # type: ignore[arg-type]
        metrics=OpsMetrics(skip_streak_threshold=3, dead_letter_threshold=2),
    )


@pytest.fixture(scope="session")
def postgres_container():
    """Provide session-scoped PostgreSQL container with migrations applied.

    Container starts once per test session and is reused across all tests.
    Migrations are applied in a subprocess because alembic's env.py runs its own
    event loop.
    """
    from testcontainers.postgres import PostgresContainer

    container = PostgresContainer(
        image="postgres:17",
        username="test",
        password="test",
        dbname="test_ensmarket",
    )
    try:
        container.start()
    except Exception as e:
        pytest.skip(f"PostgreSQL container unavailable (Docker required): {e}")

    try:
        db_url = container.get_connection_url(driver="psycopg")

        env = os.environ.copy()
        env["DATABASE_URL"] = db_url
        subprocess.run(
            [sys.executable, "-m", "alembic", "upgrade", "head"],
            check=True,
            capture_output=True,
            text=True,
            env=env,
            cwd=PROJECT_ROOT,
        )

        yield container
    finally:
        container.stop()


@pytest.fixture
def db_url(postgres_container) -> str:
    return postgres_container.get_connection_url(driver="psycopg")


@pytest_asyncio.fixture(scope="function")
async def session(db_url: str) -> AsyncGenerator[AsyncSession, None]:
    """Provide function-scoped database session with table truncation.

    Each test gets a fresh session with empty tables (truncated between tests).
    """
    session_factory = setup_db_session(db_url, pool_size=5)

    async with session_factory() as session:
        yield session

        # Rollback any uncommitted changes from the test
        await session.rollback()

        # Dependent tables first
        await session.execute(text("DELETE FROM internal_ops_audit_events"))
        await session.execute(text("DELETE FROM ens_webhook_events"))
        await session.execute(text("DELETE FROM ens_domains"))
        await session.execute(text("DELETE FROM ens_purchase_intents"))
        await session.commit()

    await get_engine(session_factory).dispose()


@pytest_asyncio.fixture(scope="function")
async def uow_factory(session: AsyncSession):
    """Provide function-scoped UnitOfWork factory on the test database."""
    from ensmarket.uow import create_uow_factory

    session_factory = async_sessionmaker(
        bind=session.bind,
        expire_on_commit=False,
    )

    return create_uow_factory(session_factory)
