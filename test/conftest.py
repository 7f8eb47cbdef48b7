"""
Pytest configuration and fixtures for marketauth tests
"""

import os
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone

# Keep tests away from real SMS providers and Redis
os.environ.setdefault("SMS_BACKEND", "mock")
os.environ.setdefault("SMS_CHALLENGE_BACKEND", "memory")
os.environ.setdefault("LOG_JSON", "false")

import pyotp  # noqa: E402
import pytest  # noqa: E402
from fastapi import Depends  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from marketauth.auth import create_access_token  # noqa: E402
from marketauth.database import Base, get_db  # noqa: E402
from marketauth.models.user import User  # noqa: E402
from marketauth.services.attempt_limiter import AttemptLimiter  # noqa: E402
from marketauth.services.sms_challenge_service import InMemoryChallengeStore, SmsChallengeService  # noqa: E402
from marketauth.services.sms_gateway import MockSmsGateway  # noqa: E402
from marketauth.services.two_factor_service import TwoFactorService, get_two_factor_service  # noqa: E402

# Test database URL (SQLite in-memory for tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

test_engine = create_async_engine(
    TEST_DATABASE_URL,
    echo=False,
    poolclass=StaticPool,
    connect_args={"check_same_thread": False},
)
TestSessionLocal = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


class FakeClock:
    """Settable wall clock for expiry tests."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def _wrong_totp_code(secret: str) -> str:
    """A six-digit code that is not valid anywhere in the current +/-1 step window."""
    totp = pyotp.TOTP(secret)
    now = datetime.now(timezone.utc)
    valid = {totp.at(now, offset) for offset in range(-2, 3)}
    for candidate in ("000000", "111111", "222222", "333333", "444444", "555555"):
        if candidate not in valid:
            return candidate
    raise AssertionError("unreachable")


@pytest.fixture(scope="function")
async def test_db() -> AsyncGenerator[AsyncSession, None]:
    """Fresh schema and session for each test."""
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with TestSessionLocal() as session:
        yield session

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
async def test_user(test_db: AsyncSession) -> User:
    """Create a marketplace user"""
    user = User(
        username="testuser",
        email="testuser@example.com",
        hashed_password="not-used-here",
    )
    test_db.add(user)
    await test_db.commit()
    await test_db.refresh(user)
    return user


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sms_gateway() -> MockSmsGateway:
    return MockSmsGateway()


@pytest.fixture
def challenge_store() -> InMemoryChallengeStore:
    return InMemoryChallengeStore()


@pytest.fixture
def limiter() -> AttemptLimiter:
    return AttemptLimiter(max_attempts=5, base_delay=2.0, max_delay=300.0)


@pytest.fixture
def sms_service(challenge_store, sms_gateway, clock) -> SmsChallengeService:
    return SmsChallengeService(challenge_store, sms_gateway, ttl_seconds=300, otp_length=6, clock=clock)


@pytest.fixture
def two_factor_service(test_db, sms_service, limiter, clock) -> TwoFactorService:
    return TwoFactorService(test_db, sms=sms_service, limiter=limiter, clock=clock)


@pytest.fixture
def auth_headers(test_user: User) -> dict:
    """Generate authentication headers for test user"""
    access_token = create_access_token(data={"sub": test_user.id}, expires_delta=timedelta(minutes=30))
    return {"Authorization": f"Bearer {access_token}"}


@pytest.fixture
async def client(test_db, sms_service, limiter, clock) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client for the full application with test database and SMS doubles"""
    from main import app

    async def override_get_db():
        async with TestSessionLocal() as session:
            yield session

    async def override_get_two_factor_service(db: AsyncSession = Depends(get_db)) -> TwoFactorService:
        return TwoFactorService(db, sms=sms_service, limiter=limiter, clock=clock)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_two_factor_service] = override_get_two_factor_service

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def wrong_totp_code():
    return _wrong_totp_code


@pytest.fixture
def session_factory(test_db) -> async_sessionmaker:
    """Sessions independent of ``test_db``, for simulating parallel requests."""
    return TestSessionLocal
