"""
Pytest Configuration and Centralized Fixtures.

Provides reusable fixtures for testing:
- A file-backed SQLite ledger per test (real constraints and row counts)
- An in-memory Redis test double
- Recording stand-ins for the push dispatcher, token cache and billing provider
- An RSA service-account key for signing token assertions
"""

import os
from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

# Set required environment variables BEFORE importing app modules
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test-ledger.db")
os.environ.setdefault("REAPER_ENABLED", "false")
os.environ.setdefault("TRACING_ENABLED", "false")

from credit_ledger.db.models import Base  # noqa: E402
from credit_ledger.db.session import create_engine_for_url  # noqa: E402
from tests.support import (  # noqa: E402
    FakeRedis,
    RecordingDispatcher,
    StubPlayProvider,
    StubTokenCache,
)

# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
async def session_factory(tmp_path: Path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """A fresh ledger database with all tables created."""
    engine = create_engine_for_url(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    yield factory
    await engine.dispose()


# ============================================================================
# Cache and Service Fixtures
# ============================================================================


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def token_cache() -> StubTokenCache:
    return StubTokenCache()


@pytest.fixture
def play_provider() -> StubPlayProvider:
    return StubPlayProvider()


# ============================================================================
# Credentials
# ============================================================================


@pytest.fixture(scope="session")
def rsa_private_key_pem() -> str:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")
