"""Pytest fixtures for backend tests."""

import os

# Settings are read at import time; allow the development JWT secret
os.environ.setdefault("DEBUG", "true")

import uuid
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from twofactor.api.deps import enforce_verify_rate_limit
from twofactor.core.security import create_access_token
from twofactor.db.base import Base
from twofactor.db.session import get_db
from twofactor.main import app
from twofactor.services.credential_store import CredentialStore
from twofactor.services.two_factor import TwoFactorService

# In-memory SQLite shared across sessions through a single connection
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# 2023-11-14T22:13:30Z, the start of a 30-second step
FIXED_NOW = 1_700_000_010.0


@pytest_asyncio.fixture(scope="function")
async def test_engine():
    """Create a test database engine with a fresh schema."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def test_session(test_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async_session = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)
    async with async_session() as session:
        yield session


@pytest.fixture
def clock():
    """Mutable clock; set ``clock.now`` to move time."""

    class Clock:
        now = FIXED_NOW

        def __call__(self) -> float:
            return self.now

    return Clock()


@pytest.fixture
def store(test_session: AsyncSession) -> CredentialStore:
    return CredentialStore(test_session)


@pytest.fixture
def service(store: CredentialStore, clock) -> TwoFactorService:
    return TwoFactorService(store, clock=clock, allow_reprovision=True)


@pytest.fixture
def user_id() -> str:
    return str(uuid.uuid4())


@pytest.fixture
def test_token(user_id: str) -> str:
    """Create a test JWT token as the identity provider would."""
    return create_access_token(data={"sub": user_id, "email": "test@example.com"})


@pytest_asyncio.fixture(scope="function")
async def client(test_session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """Create an unauthenticated test client."""

    async def override():
        yield test_session

    async def no_rate_limit():
        return None

    app.dependency_overrides[get_db] = override
    app.dependency_overrides[enforce_verify_rate_limit] = no_rate_limit

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest_asyncio.fixture(scope="function")
async def authenticated_client(
    test_session: AsyncSession, test_token: str
) -> AsyncGenerator[AsyncClient, None]:
    """Create an authenticated test client."""

    async def override():
        yield test_session

    async def no_rate_limit():
        return None

    app.dependency_overrides[get_db] = override
    app.dependency_overrides[enforce_verify_rate_limit] = no_rate_limit

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        headers={"Authorization": f"Bearer {test_token}"},
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
