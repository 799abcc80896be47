"""
Shared test fixtures for EdgeSync tests.

Provides temporary SQLite databases standing in for the local edge store
and the remote master database, plus seeding helpers. All EdgeSync
environment variables are cleared before each test.
"""

from __future__ import annotations

from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy import insert
from sqlalchemy.ext.asyncio import create_async_engine

from edgesync.storage import LocalDatabase, RemoteDatabase
from edgesync.storage.schema import device_register, meter, metadata, tenant

_ALL_EDGESYNC_ENV_VARS = (
    "EDGESYNC_CONFIG",
    "EDGESYNC_CONFIG_SYNC_CRON",
    "EDGESYNC_UPLOAD_CRON",
    "EDGESYNC_LOCAL_DB_URL",
    "EDGESYNC_REMOTE_DB_URL",
    "EDGESYNC_API_URL",
    "EDGESYNC_TENANT_ID",
    "EDGESYNC_LOG_LEVEL",
    "EDGESYNC_LOG_FORMAT",
)


@pytest.fixture(autouse=True)
def _clean_edgesync_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Remove all EdgeSync env vars and run from an empty directory."""
    for var in _ALL_EDGESYNC_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest_asyncio.fixture
async def local_db(tmp_path: Path):
    """Initialized local edge database in a temp file."""
    db = LocalDatabase.from_url(f"sqlite+aiosqlite:///{tmp_path / 'local.db'}")
    await db.init_schema()
    yield db
    await db.close()


@pytest_asyncio.fixture
async def remote_engine(tmp_path: Path):
    """Engine for a fake remote master database with the config tables."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'remote.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def remote_db(remote_engine) -> RemoteDatabase:
    return RemoteDatabase(remote_engine)


@pytest.fixture
def seed_remote(remote_engine):
    """Async helper inserting tenant/meter/device_register rows remotely."""

    async def _seed(
        tenants: list[dict] | None = None,
        meters: list[dict] | None = None,
        registers: list[dict] | None = None,
    ) -> None:
        async with remote_engine.begin() as conn:
            if tenants:
                await conn.execute(insert(tenant), tenants)
            if meters:
                await conn.execute(insert(meter), meters)
            if registers:
                await conn.execute(insert(device_register), registers)

    return _seed
