"""Pytest configuration: set test env before any server imports so DB and JWT use test values."""

import asyncio
import os
import tempfile
import uuid

import pytest
import pytest_asyncio

# Set before evm_server.db.session or evm_server.config are used so engine and settings use test paths
_tmp = tempfile.mkdtemp(prefix="evm_server_test_")
os.environ.setdefault("EVM_DB_PATH", os.path.join(_tmp, "test.db"))
os.environ.setdefault("EVM_JWT_SECRET", "test-jwt-secret-at-least-32-characters-long")
os.environ.setdefault("EVM_RATE_LIMIT_ENABLED", "false")


@pytest.fixture(scope="session")
def init_test_db():
    """Create tables once per test session."""
    from evm_server.db.session import close_db, init_db

    async def _init() -> None:
        await init_db()
        # drop pooled connections bound to this short-lived loop
        await close_db()

    asyncio.run(_init())


@pytest_asyncio.fixture
async def session_factory(init_test_db):
    """Yield get_session so tests can use async with session_factory() as session."""
    from evm_server.db.session import close_db, get_session

    yield get_session
    # pooled connections belong to this test's event loop
    await close_db()


@pytest.fixture
def email() -> str:
    """A fresh address per test; the database is shared by the whole session."""
    return f"user-{uuid.uuid4().hex[:8]}@example.com"
