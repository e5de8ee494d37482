import io
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import sqlalchemy as sa

from tandem_sync.common.db import get_engine, session_scope
from tandem_sync.common.json_logger import JsonLogger
from tandem_sync.sync.db_tables import metadata, sync_leases
from tandem_sync.sync.lease import SyncLease


async def _database(tmp_path: Path) -> str:
    database_url = f"sqlite+aiosqlite:///{tmp_path / 'lease.sqlite'}"
    async with get_engine(database_url).begin() as conn:
        await conn.run_sync(metadata.create_all)
    return database_url


def _lease(database_url: str, holder: str, ttl_s: int = 600) -> SyncLease:
    return SyncLease(
        database_url=database_url,
        logger=JsonLogger(stream=io.StringIO(), log_file_path=None),
        ttl_s=ttl_s,
        holder=holder,
    )


@pytest.mark.asyncio
async def test_second_holder_is_refused_while_lease_is_live(tmp_path: Path):
    database_url = await _database(tmp_path)
    first = _lease(database_url, "run-a")
    second = _lease(database_url, "run-b")

    assert await first.acquire() is True
    assert await second.acquire() is False

    await first.release()
    assert await second.acquire() is True
    await second.release()


@pytest.mark.asyncio
async def test_expired_lease_is_taken_over(tmp_path: Path):
    database_url = await _database(tmp_path)
    stale = _lease(database_url, "crashed-run")
    assert await stale.acquire() is True

    past = datetime.now(timezone.utc) - timedelta(hours=1)
    async with session_scope(database_url) as session:
        async with session.begin():
            await session.execute(sa.update(sync_leases).values(acquired_at=past, expires_at=past))

    fresh = _lease(database_url, "run-b")
    assert await fresh.acquire() is True
    assert "Took over expired sync lease" in fresh.logger.stream.getvalue()

    async with session_scope(database_url) as session:
        holder = (await session.execute(sa.select(sync_leases.c.holder))).scalar_one()
    assert holder == "run-b"


@pytest.mark.asyncio
async def test_release_by_previous_holder_keeps_new_lease(tmp_path: Path):
    database_url = await _database(tmp_path)
    stale = _lease(database_url, "crashed-run", ttl_s=1)
    assert await stale.acquire() is True

    past = datetime.now(timezone.utc) - timedelta(minutes=5)
    async with session_scope(database_url) as session:
        async with session.begin():
            await session.execute(sa.update(sync_leases).values(expires_at=past))

    fresh = _lease(database_url, "run-b")
    assert await fresh.acquire() is True

    await stale.release()

    assert await _lease(database_url, "run-c").acquire() is False
    await fresh.release()


@pytest.mark.asyncio
async def test_release_without_acquire_is_noop(tmp_path: Path):
    database_url = await _database(tmp_path)
    lease = _lease(database_url, "never-held")

    await lease.release()

    assert "released" not in lease.logger.stream.getvalue()
