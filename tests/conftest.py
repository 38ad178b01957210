"""Shared fixtures for record-sync tests.

Provides:
- In-memory record store (no database)
- SQL record store on a per-test file SQLite database (aiosqlite)
- Fake remote sources for the CRM and project-management systems
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine

from src.recordsync.core.database import Base
from src.recordsync.records.repository import SqlRecordStore
from tests.fakes import FakeRemoteSource, InMemoryRecordStore


@pytest.fixture
def store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def vendor_source() -> FakeRemoteSource:
    return FakeRemoteSource(system="procore")


@pytest_asyncio.fixture
async def sql_store(tmp_path) -> AsyncGenerator[SqlRecordStore, None]:
    """SqlRecordStore over a fresh file-backed SQLite database."""
    import src.recordsync.records.models  # noqa: F401

    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'records.db'}",
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async def session_factory() -> AsyncGenerator[AsyncSession, None]:
        async with AsyncSession(engine, expire_on_commit=False) as session:
            yield session

    yield SqlRecordStore(session_factory)

    await engine.dispose()
