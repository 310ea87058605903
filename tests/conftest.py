"""Pytest configuration and fixtures for the auth service tests.

Database Handling:
- Uses TEST_DATABASE_URL when set (e.g. a PostgreSQL test database)
- Otherwise uses a throwaway SQLite file through aiosqlite
- Tables are created and dropped around every test
"""

import os
import tempfile
from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

_tmp_dir = Path(tempfile.mkdtemp(prefix="bms_auth_tests_"))

# Set test environment variables before importing app modules
TEST_JWT_SECRET = "test-secret-key-that-is-long-enough-for-hs256-signing"
os.environ["JWT_SECRET_KEY"] = TEST_JWT_SECRET
os.environ["DATABASE_URL"] = os.environ.get(
    "TEST_DATABASE_URL", f"sqlite+aiosqlite:///{(_tmp_dir / 'test.sqlite3').as_posix()}"
)
# The test client talks plain HTTP; a Secure cookie would never be sent back
os.environ["REFRESH_COOKIE_SECURE"] = "false"
os.environ["LOG_LEVEL"] = "WARNING"

# Test user credentials
TEST_PASSWORD = "correct-horse-battery-staple"
TEST_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

# A fixed instant well away from midnight and DST changes
T0 = datetime(2026, 1, 15, 9, 0, 0, tzinfo=UTC)


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


# --- Login Rate Limiter Reset Fixture ---


@pytest.fixture(autouse=True)
def reset_login_rate_limiter():
    """Reset the per-IP login limiter before and after each test."""
    from bms_auth.api.auth import reset_login_rate_limit

    reset_login_rate_limit()
    yield
    reset_login_rate_limit()


# --- Clock and Auth Components ---


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def codec(clock):
    from bms_auth.services.token_codec import TokenCodec

    return TokenCodec(TEST_JWT_SECRET, TEST_JWT_SECRET, "HS256", clock=clock)


@pytest.fixture
def policy():
    from bms_auth.services.session_store import SessionPolicy

    return SessionPolicy(
        idle_timeout=timedelta(minutes=30),
        absolute_timeout=timedelta(hours=12),
        max_concurrent_sessions=3,
    )


@pytest.fixture
def guard(codec, policy, clock):
    from bms_auth.services.session_guard import SessionGuard

    return SessionGuard(codec, policy, clock=clock)


# --- Database Fixtures ---


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    """Create a database engine with fresh tables for one test."""
    from bms_auth.core.database import Base
    from bms_auth.models import (  # noqa: F401
        AuditLog,
        SupersededAccessToken,
        TokenBlacklist,
        User,
        UserSession,
    )

    engine = create_async_engine(
        os.environ["DATABASE_URL"],
        poolclass=NullPool,
        echo=False,
    )

    # Create all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    # Drop all tables after test
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for testing."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def ledger(db_session, codec, clock):
    from bms_auth.services.revocation import RevocationLedger

    return RevocationLedger(db_session, codec, clock=clock)


@pytest.fixture
def store(db_session, ledger, policy, clock):
    from bms_auth.services.session_store import SessionStore

    return SessionStore(db_session, ledger, policy, clock=clock)


# --- HTTP Client ---


@pytest_asyncio.fixture(scope="function")
async def app(session_factory, guard):
    """Application wired to the test database and the frozen-clock guard."""
    from bms_auth.main import create_app

    return create_app(session_factory=session_factory, session_guard=guard)


@pytest_asyncio.fixture(scope="function")
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client for the app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


# --- Test Factories ---


@pytest.fixture
def user_factory(db_session):
    """Factory for creating test User objects."""
    from bms_auth.models.enums import UserRole
    from bms_auth.models.user import User
    from bms_auth.services.auth import hash_password

    counter = {"n": 0}

    async def _create_user(
        email: str | None = None,
        role: UserRole = UserRole.TENANT,
        password: str = TEST_PASSWORD,
        **kwargs,
    ) -> User:
        counter["n"] += 1
        user = User(
            email=email or f"user{counter['n']}@ultrabms.test",
            password_hash=hash_password(password),
            role=role,
            **kwargs,
        )
        db_session.add(user)
        await db_session.commit()
        await db_session.refresh(user)
        return user

    return _create_user


@pytest.fixture
def login(async_client):
    """POST /auth/login and return the response."""

    async def _login(
        email: str,
        password: str = TEST_PASSWORD,
        user_agent: str = TEST_USER_AGENT,
        client_ip: str = "203.0.113.10",
    ):
        return await async_client.post(
            "/auth/login",
            json={"email": email, "password": password},
            headers={"User-Agent": user_agent, "X-Real-IP": client_ip},
        )

    return _login


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}
