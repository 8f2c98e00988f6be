"""WA Gateway – Pytest Configuration.

Shared fixtures for all tests.
"""

import os

# Force testing mode to allow SQLite fallback in app/core/db.py
os.environ["ENVIRONMENT"] = "testing"
if "DATABASE_URL" in os.environ:
    del os.environ["DATABASE_URL"]
os.environ["REDIS_URL"] = "redis://localhost:6379/0"
os.environ["BOOT_SESSIONS"] = ""
os.environ["BULK_SEND_DELAY_SECONDS"] = "0"
os.environ["USE_PRODUCTION_DB"] = "false"

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from unittest.mock import AsyncMock

from app.core import models  # noqa: F401  (registers tables on Base.metadata)
from app.core.db import Base
from app.gateway.main import app
from app.whatsapp.credential_store import CredentialStore
from tests.fakes import FakeTransportLibrary


@pytest.fixture(autouse=True)
def mock_redis_bus():
    """Mock RedisBus for all tests."""
    from app.gateway.dependencies import redis_bus

    redis_bus.connect = AsyncMock()
    redis_bus.disconnect = AsyncMock()
    redis_bus.publish = AsyncMock()
    redis_bus.health_check = AsyncMock(return_value=True)
    return redis_bus


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def session_factory():
    """Fresh in-memory database per test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def credential_store(session_factory) -> CredentialStore:
    return CredentialStore(session_factory=session_factory)


@pytest.fixture
def transport_lib() -> FakeTransportLibrary:
    return FakeTransportLibrary()


@pytest.fixture
async def client():
    """Async test client for the FastAPI gateway."""
    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
