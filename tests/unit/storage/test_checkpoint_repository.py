"""Unit tests for checkpoint persistence."""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from accountsync.accounts.models import SourceType
from accountsync.connectors.base.state import SyncCheckpoint, SyncMode
from accountsync.storage.checkpoints import InMemoryCheckpointRepository, PostgresCheckpointRepository

pytestmark = pytest.mark.unit

T0 = datetime(2025, 6, 1, tzinfo=timezone.utc)


def patched_session(session):
    @asynccontextmanager
    async def fake_session():
        yield session

    return patch("accountsync.storage.checkpoints.get_db_session", fake_session)


@pytest.mark.asyncio
async def test_in_memory_keys_by_mode():
    repo = InMemoryCheckpointRepository()
    backfill = SyncCheckpoint(principal_id="p1", source_type=SourceType.GMAIL, mode=SyncMode.BACKFILL)
    backfill.record_batch(synced=100, dates=[T0], next_cursor="c1")

    await repo.save(backfill)

    assert (await repo.get("p1", SourceType.GMAIL, SyncMode.BACKFILL)).cursor_token == "c1"
    assert await repo.get("p1", SourceType.GMAIL, SyncMode.INCREMENTAL) is None


@pytest.mark.asyncio
async def test_in_memory_saves_are_snapshots():
    repo = InMemoryCheckpointRepository()
    checkpoint = SyncCheckpoint(principal_id="p1", source_type=SourceType.GMAIL)

    await repo.save(checkpoint)
    checkpoint.record_batch(synced=5, dates=[], next_cursor="c2")
    await repo.save(checkpoint)

    assert [saved.total_synced for saved in repo.saves] == [0, 5]


@pytest.mark.asyncio
async def test_postgres_save_upserts_row():
    session = AsyncMock()
    repo = PostgresCheckpointRepository()
    checkpoint = SyncCheckpoint(
        principal_id="p1",
        source_type=SourceType.HUBSPOT,
        mode=SyncMode.INCREMENTAL,
        since=T0,
    )
    checkpoint.record_batch(synced=10, dates=[T0], next_cursor="after-10")

    with patched_session(session):
        await repo.save(checkpoint)

    sql, params = session.execute.await_args.args
    assert "ON CONFLICT (principal_id, source_type, mode)" in str(sql)
    assert params["source_type"] == "hubspot"
    assert params["mode"] == "incremental"
    assert params["cursor_token"] == "after-10"
    assert params["total_synced"] == 10
    assert params["since"] == T0


@pytest.mark.asyncio
async def test_postgres_get_maps_row():
    session = AsyncMock()
    result = MagicMock()
    result.mappings.return_value.first.return_value = {
        "cursor_token": "c9",
        "oldest_seen_marker": T0,
        "total_synced": 900,
        "completed": False,
        "since": None,
        "updated_at": T0,
    }
    session.execute.return_value = result
    repo = PostgresCheckpointRepository()

    with patched_session(session):
        checkpoint = await repo.get("p1", SourceType.GMAIL, SyncMode.BACKFILL)

    assert checkpoint.cursor_token == "c9"
    assert checkpoint.total_synced == 900
    assert checkpoint.mode == SyncMode.BACKFILL
    assert checkpoint.is_resume


@pytest.mark.asyncio
async def test_postgres_get_missing():
    session = AsyncMock()
    result = MagicMock()
    result.mappings.return_value.first.return_value = None
    session.execute.return_value = result

    with patched_session(session):
        assert await PostgresCheckpointRepository().get("p1", SourceType.GMAIL, SyncMode.BACKFILL) is None
