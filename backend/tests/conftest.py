"""Shared fixtures: a throwaway SQLite database, an ASGI client and user helpers."""

import os
import tempfile
from pathlib import Path

# Settings are read at import time, so the environment is fixed up first.
_TEST_DB = Path(tempfile.mkdtemp(prefix="storefront-tests-")) / "test.db"
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TEST_DB}"
os.environ["ENVIRONMENT"] = "development"
os.environ["SECRET_KEY"] = "test-secret-key-not-for-production-use-0123456789"
os.environ["ENCRYPTION_KEY"] = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"
os.environ["REQUEST_THROTTLE_ENABLED"] = "false"
os.environ["AUTH_RATE_LIMIT_REDIS_URL"] = ""

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from storefront.auth_utils import hash_password
from storefront.database import Base, async_session, engine
from storefront.main import app
from storefront.models.user import User

TEST_PASSWORD = "Str0ngPassw0rd!"


@pytest_asyncio.fixture
async def db():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    async with async_session() as session:
        yield session
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def client(db):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    """Factory that inserts and commits an active user."""
    async def _make(email: str = "shopper@example.com", password: str = TEST_PASSWORD) -> User:
        user = User(
            email=email,
            hashed_password=hash_password(password),
            first_name="Sam",
            last_name="Shopper",
        )
        db.add(user)
        await db.commit()
        return user
    return _make
