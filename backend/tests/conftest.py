"""Pytest configuration and fixtures for backend tests.

Database Handling:
- Uses TEST_DATABASE_URL when set (e.g. a PostgreSQL instance)
- Otherwise runs against an in-memory SQLite database (aiosqlite)
"""

import os
from collections.abc import AsyncGenerator
from datetime import UTC, datetime

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool, StaticPool

# Set test environment variables before importing recollector modules
TEST_DATABASE_URL = os.environ.get("TEST_DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ["DATABASE_URL"] = TEST_DATABASE_URL
os.environ["JWT_SECRET_KEY"] = "test-access-signing-key-0123456789abcdef"
os.environ["JWT_REFRESH_SECRET_KEY"] = "test-refresh-signing-key-0123456789abcdef"
os.environ["JWT_ACCESS_TOKEN_EXPIRE_MINUTES"] = "60"
os.environ["JWT_REFRESH_TOKEN_EXPIRE_HOURS"] = "24"
os.environ.pop("JWT_ALGORITHM", None)

# Test user credentials
TEST_USER_EMAIL = "alice@example.com"
TEST_USER_PASSWORD = "secret123"

# Fixed reference time for deterministic token issuance
FROZEN_START = datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC)


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


# --- Clock / Keys ---


@pytest.fixture
def clock():
    """A frozen clock shared by issuer, gate and store within a test."""
    from recollector.core.clock import FrozenClock

    return FrozenClock(FROZEN_START)


@pytest.fixture
def access_key():
    from recollector.core import settings
    from recollector.services.tokens import SigningKey

    return SigningKey.access_from_settings(settings)


@pytest.fixture
def refresh_key():
    from recollector.core import settings
    from recollector.services.tokens import SigningKey

    return SigningKey.refresh_from_settings(settings)


@pytest.fixture
def issuer(clock):
    from recollector.core import settings
    from recollector.services.tokens import TokenIssuer

    return TokenIssuer.from_settings(settings, clock)


# --- Database Fixtures ---


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    """Create a database engine with all tables for one test."""
    from recollector.core.database import Base
    from recollector.models import RevokedToken, User  # noqa: F401

    if _is_sqlite(TEST_DATABASE_URL):
        engine = create_async_engine(
            TEST_DATABASE_URL,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )

        # SQLite only enforces ON DELETE CASCADE with foreign keys enabled
        @event.listens_for(engine.sync_engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    else:
        engine = create_async_engine(TEST_DATABASE_URL, poolclass=NullPool)

    # Create all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    # Drop all tables after test
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for testing."""
    async with session_factory() as session:
        yield session
        await session.rollback()


# --- Application Fixtures ---


@pytest.fixture
def app(session_factory, clock):
    """Application wired to the test database and frozen clock."""
    from recollector.core.database import get_db
    from recollector.main import create_app

    application = create_app(session_factory=session_factory, clock=clock)

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    application.dependency_overrides[get_db] = override_get_db
    yield application
    application.dependency_overrides.clear()


@pytest_asyncio.fixture(scope="function")
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client bound to the test application."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


# --- Test Factories ---


@pytest.fixture
def user_factory(db_session):
    """Factory for creating test User objects."""
    from recollector.models.user import User
    from recollector.services.auth import hash_password

    async def _create_user(
        email: str = TEST_USER_EMAIL,
        password: str = TEST_USER_PASSWORD,
        **kwargs,
    ) -> User:
        user = User(email=email, password_hash=hash_password(password), **kwargs)
        db_session.add(user)
        await db_session.commit()
        return user

    return _create_user


@pytest_asyncio.fixture
async def test_user(user_factory):
    return await user_factory()


@pytest.fixture
def auth_headers():
    def _headers(access_token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {access_token}"}

    return _headers
