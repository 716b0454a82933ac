"""Integration test fixtures: a real PostgresJobStore against a local database."""

from __future__ import annotations

import os
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine

from jobrelay.core.app import JobRelay
from jobrelay.core.brokers.postgres import PostgresJobStore
from jobrelay.core.models.app import AppConfig
from jobrelay.core.models.broker import PostgresConfig
from jobrelay.core.models.recovery import RecoveryConfig


# Database URL
DB_URL = os.environ.get(
    'JOBRELAY_TEST_DATABASE_URL',
    f'postgresql+psycopg://postgres:{os.environ.get("DB_PASSWORD", "")}@localhost:5432/jobrelay',
)


@pytest.fixture
def db_url() -> str:
    return DB_URL


@pytest_asyncio.fixture
async def engine(db_url: str) -> AsyncGenerator[AsyncEngine, None]:
    eng = create_async_engine(db_url, echo=False)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def session(engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    """Database session for direct queries."""
    async with AsyncSession(engine, expire_on_commit=False) as sess:
        yield sess


@pytest_asyncio.fixture
async def store(db_url: str) -> AsyncGenerator[PostgresJobStore, None]:
    """PostgresJobStore with schema initialized and empty tables."""
    st = PostgresJobStore(PostgresConfig(database_url=db_url))
    init_r = await st.ensure_schema_initialized()
    assert init_r.is_ok(), init_r
    async with st.session_factory() as sess:
        await sess.execute(text('TRUNCATE jobrelay_progress_events, jobrelay_jobs CASCADE'))
        await sess.commit()
    yield st
    await st.close_async()


@pytest.fixture
def app_config(db_url: str) -> AppConfig:
    return AppConfig(
        broker=PostgresConfig(database_url=db_url),
        recovery=RecoveryConfig(
            runner_heartbeat_interval_ms=1_000,
            running_stale_threshold_ms=2_000,
            check_interval_ms=1_000,
        ),
    )


@pytest.fixture
def app(app_config: AppConfig, store: PostgresJobStore) -> JobRelay:
    """JobRelay app wired to the test store."""
    relay = JobRelay(app_config)
    relay._store = store
    return relay
