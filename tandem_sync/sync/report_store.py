"""Filesystem store for exported reports, indexed in the ``reports`` table."""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from pathlib import Path

import sqlalchemy as sa
from sqlalchemy.exc import SQLAlchemyError

from tandem_sync.common.db import session_scope
from tandem_sync.common.json_logger import JsonLogger, log_event
from tandem_sync.sync.db_tables import reports
from tandem_sync.sync.models import ReportMetadata, StoredReport, ensure_utc

REPORT_PREFIX = "tandem-report-"
DEFAULT_EXTENSION = ".csv"
PHASE = "report_store"


class ReportStoreError(RuntimeError):
    """Raised when a report cannot be written or removed."""


def generate_report_filename(suggested_name: str | None = None, *, now: datetime | None = None) -> str:
    """``tandem-report-YYYY-MM-DD-HHMMSS.<ext>``; the extension comes from the suggested name."""

    timestamp = (now or datetime.now(timezone.utc)).strftime("%Y-%m-%d-%H%M%S")
    extension = Path(suggested_name or "").suffix.lower() or DEFAULT_EXTENSION
    return f"{REPORT_PREFIX}{timestamp}{extension}"


def _validate_filename(filename: str) -> str:
    if not filename or Path(filename).name != filename or filename in {".", ".."}:
        raise ValueError(f"Invalid report filename: {filename!r}")
    return filename


class ReportStore:
    def __init__(self, *, database_url: str, reports_root: str | Path, logger: JsonLogger) -> None:
        self.database_url = database_url
        self.reports_root = Path(reports_root).expanduser()
        self.logger = logger

    def _unique_path(self, filename: str) -> Path:
        candidate = self.reports_root / filename
        stem, suffix = candidate.stem, candidate.suffix
        attempt = 1
        while candidate.exists():
            attempt += 1
            candidate = self.reports_root / f"{stem}-{attempt}{suffix}"
        return candidate

    async def store(self, content: bytes, suggested_name: str | None = None) -> StoredReport:
        if not content:
            raise ReportStoreError("Refusing to store an empty report")

        self.reports_root.mkdir(parents=True, exist_ok=True)
        created_at = datetime.now(timezone.utc)
        path = self._unique_path(generate_report_filename(suggested_name, now=created_at))
        url = path.resolve().as_uri()

        try:
            await asyncio.to_thread(path.write_bytes, content)
        except OSError as exc:
            raise ReportStoreError(f"Failed to store report: {exc}") from exc

        try:
            async with session_scope(self.database_url) as session:
                async with session.begin():
                    await session.execute(
                        sa.insert(reports).values(
                            filename=path.name,
                            url=url,
                            file_path=str(path),
                            source_filename=suggested_name,
                            size_bytes=len(content),
                            created_at=created_at,
                        )
                    )
        except SQLAlchemyError as exc:
            path.unlink(missing_ok=True)
            raise ReportStoreError(f"Failed to index report {path.name}: {exc}") from exc

        log_event(
            logger=self.logger,
            phase=PHASE,
            message="Report stored",
            filename=path.name,
            size_bytes=len(content),
        )
        return StoredReport(url=url, filename=path.name)

    async def list_reports(self) -> list[ReportMetadata]:
        stmt = sa.select(reports).order_by(reports.c.created_at.desc(), reports.c.id.desc())
        async with session_scope(self.database_url) as session:
            rows = (await session.execute(stmt)).mappings().all()
        return [
            ReportMetadata(
                filename=row["filename"],
                url=row["url"],
                size_bytes=row["size_bytes"],
                created_at=ensure_utc(row["created_at"]),
                source_filename=row["source_filename"],
            )
            for row in rows
        ]

    async def count_reports(self) -> int:
        async with session_scope(self.database_url) as session:
            return (await session.execute(sa.select(sa.func.count()).select_from(reports))).scalar_one()

    async def report_path(self, filename: str) -> Path | None:
        _validate_filename(filename)
        async with session_scope(self.database_url) as session:
            file_path = (
                await session.execute(sa.select(reports.c.file_path).where(reports.c.filename == filename))
            ).scalar_one_or_none()
        return Path(file_path) if file_path else None

    async def delete_report(self, filename: str) -> bool:
        """Remove the file and its index row. Returns False when unknown."""

        path = await self.report_path(filename)
        if path is None:
            return False
        try:
            await asyncio.to_thread(path.unlink, missing_ok=True)
        except OSError as exc:
            raise ReportStoreError(f"Failed to delete report {filename}: {exc}") from exc

        async with session_scope(self.database_url) as session:
            async with session.begin():
                await session.execute(sa.delete(reports).where(reports.c.filename == filename))
        log_event(logger=self.logger, phase=PHASE, message="Report deleted", filename=filename)
        return True

    async def cleanup_old_reports(self, keep_count: int = 30) -> int:
        """Keep the newest ``keep_count`` reports; return how many were deleted."""

        try:
            stored = await self.list_reports()
        except SQLAlchemyError as exc:
            log_event(logger=self.logger, phase=PHASE, status="error", message="Cleanup failed", error=str(exc))
            return 0

        deleted = 0
        for report in stored[max(keep_count, 0):]:
            try:
                if await self.delete_report(report.filename):
                    deleted += 1
            except (ReportStoreError, SQLAlchemyError) as exc:
                log_event(
                    logger=self.logger,
                    phase=PHASE,
                    status="warn",
                    message="Failed to delete old report",
                    filename=report.filename,
                    error=str(exc),
                )

        log_event(logger=self.logger, phase=PHASE, message=f"Cleaned up {deleted} old reports", keep_count=keep_count)
        return deleted
