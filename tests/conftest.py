"""Pytest configuration and fixtures."""

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from burn_sync.storage.models import Base
from burn_sync.storage.signature_ledger import SignatureLedger

PROGRAM_ID = "PERPHjGBqRHArX4DySjwM6UJHiR3sWAatqfdBS2qQJu"


@pytest.fixture
def program_id() -> str:
    """Sample program ID for testing."""
    return PROGRAM_ID


@pytest.fixture
def sample_signature() -> str:
    """Sample transaction signature for testing."""
    return "abc123"


@pytest.fixture
async def async_engine(tmp_path):
    """Create an async SQLite engine on a per-test database file."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(async_engine) -> async_sessionmaker:
    return async_sessionmaker(bind=async_engine, expire_on_commit=False)


@pytest.fixture
def signature_ledger(session_factory) -> SignatureLedger:
    """Signature ledger backed by the test database."""
    return SignatureLedger(session_factory.begin)
