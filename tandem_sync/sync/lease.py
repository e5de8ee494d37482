"""Database-backed mutual exclusion for sync runs.

The scraper is not reentrant against one account, so callers serialize runs
through a named lease row. Taking the lease is an insert, or an update that
only matches once the previous holder's lease has expired; release deletes
the row only if this holder still owns it.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError

from tandem_sync.common.db import session_scope
from tandem_sync.common.json_logger import JsonLogger, log_event
from tandem_sync.sync.db_tables import sync_leases

DEFAULT_LEASE_NAME = "tandem_sync"


class SyncLease:
    def __init__(
        self,
        *,
        database_url: str,
        logger: JsonLogger,
        ttl_s: int = 600,
        name: str = DEFAULT_LEASE_NAME,
        holder: str | None = None,
    ) -> None:
        self.database_url = database_url
        self.logger = logger
        self.ttl_s = ttl_s
        self.name = name
        self.holder = holder or uuid.uuid4().hex
        self.held = False

    async def acquire(self) -> bool:
        now = datetime.now(timezone.utc)
        values = {"holder": self.holder, "acquired_at": now, "expires_at": now + timedelta(seconds=self.ttl_s)}

        try:
            async with session_scope(self.database_url) as session:
                async with session.begin():
                    await session.execute(sa.insert(sync_leases).values(name=self.name, **values))
            self.held = True
        except IntegrityError:
            async with session_scope(self.database_url) as session:
                async with session.begin():
                    result = await session.execute(
                        sa.update(sync_leases)
                        .where(sync_leases.c.name == self.name, sync_leases.c.expires_at < now)
                        .values(**values)
                    )
            self.held = result.rowcount == 1
            if self.held:
                log_event(
                    logger=self.logger,
                    phase="lease",
                    status="warn",
                    message="Took over expired sync lease",
                    lease=self.name,
                )

        log_event(
            logger=self.logger,
            phase="lease",
            message="Sync lease acquired" if self.held else "Sync lease busy",
            lease=self.name,
            acquired=self.held,
        )
        return self.held

    async def release(self) -> None:
        if not self.held:
            return
        self.held = False
        async with session_scope(self.database_url) as session:
            async with session.begin():
                await session.execute(
                    sa.delete(sync_leases).where(
                        sync_leases.c.name == self.name, sync_leases.c.holder == self.holder
                    )
                )
        log_event(logger=self.logger, phase="lease", message="Sync lease released", lease=self.name)
