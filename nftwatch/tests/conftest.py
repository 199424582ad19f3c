"""Shared test fixtures for the nftwatch test suite."""

from __future__ import annotations

from collections.abc import AsyncIterator

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from nftwatch.config.settings import ALL_EVENT_TYPES, ALL_MARKETPLACES
from nftwatch.core.events import WatcherSettings
from nftwatch.core.repository import Repository
from nftwatch.utils.db import Base


@pytest.fixture
def default_settings() -> WatcherSettings:
    """Global watcher defaults: everything allowed, 15% offer tolerance."""
    return WatcherSettings(
        max_offer_floor_difference=15.0,
        allowed_marketplaces=frozenset(ALL_MARKETPLACES),
        allowed_events=frozenset(ALL_EVENT_TYPES),
    )


@pytest.fixture
async def session_factory() -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    """In-memory SQLite database with the full schema."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def repository(
    session_factory: async_sessionmaker[AsyncSession], default_settings: WatcherSettings
) -> Repository:
    return Repository(session_factory, default_settings)


@pytest.fixture
def collection() -> str:
    """Sample ERC-721 collection address."""
    return "0xbc4ca0eda7647a8ab7c2061c2e118a18a936f13d"


@pytest.fixture
def wallet() -> str:
    """Sample watched wallet address."""
    return "0x1111111111111111111111111111111111111111"
