"""Shared pytest fixtures for catalog tests and database isolation."""

from __future__ import annotations

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from kinoindex.core.config import settings
from kinoindex.db.base import Base
from kinoindex.upstream import reset_providers


@pytest.fixture(autouse=True)
def _fast_upstream_retries(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "upstream_backoff_seconds", 0)
    monkeypatch.setattr(settings, "environment", "test")
    reset_providers()


@pytest_asyncio.fixture()
async def session(tmp_path) -> AsyncSession:
    database_url = settings.test_database_url or f"sqlite+aiosqlite:///{tmp_path / 'catalog.db'}"
    engine = create_async_engine(database_url, future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    TestingSession = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    try:
        async with TestingSession() as session:
            yield session
    finally:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
        await engine.dispose()
