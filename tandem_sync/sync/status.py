"""Last sync status, one row per run in ``sync_runs``.

Status bookkeeping never fails a sync: read and write errors are logged and
swallowed.
"""
from __future__ import annotations

import sqlalchemy as sa
from sqlalchemy.exc import SQLAlchemyError

from tandem_sync.common.db import session_scope
from tandem_sync.common.json_logger import JsonLogger, log_event
from tandem_sync.sync.db_tables import sync_runs
from tandem_sync.sync.models import SyncResult, ensure_utc


async def get_last_status(*, database_url: str, logger: JsonLogger) -> SyncResult | None:
    stmt = sa.select(sync_runs).order_by(sync_runs.c.created_at.desc(), sync_runs.c.id.desc()).limit(1)
    try:
        async with session_scope(database_url) as session:
            row = (await session.execute(stmt)).mappings().first()
    except SQLAlchemyError as exc:
        log_event(logger=logger, phase="status", status="warn", message="Failed to read last sync status", error=str(exc))
        return None

    if row is None:
        return None
    return SyncResult(
        success=row["success"],
        timestamp=ensure_utc(row["created_at"]),
        report_days=row["report_days"],
        filename=row["filename"],
        error=row["error"],
        error_type=row["error_type"],
        run_id=row["run_id"],
    )


async def set_last_status(result: SyncResult, *, database_url: str, logger: JsonLogger) -> None:
    try:
        async with session_scope(database_url) as session:
            async with session.begin():
                await session.execute(
                    sa.insert(sync_runs).values(
                        run_id=result.run_id,
                        success=result.success,
                        filename=result.filename,
                        error=result.error,
                        error_type=result.error_type,
                        report_days=result.report_days,
                        created_at=result.timestamp,
                    )
                )
    except SQLAlchemyError as exc:
        log_event(logger=logger, phase="status", status="warn", message="Failed to store sync status", error=str(exc))
        return
    log_event(logger=logger, phase="status", message="Sync status stored", success=result.success)
