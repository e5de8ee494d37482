"""Sync entry points shared by the CLI and scheduled runs."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import SQLAlchemyError

from tandem_sync.common.json_logger import JsonLogger, get_logger, log_event
from tandem_sync.config import Config, config, validate_scraper_config
from tandem_sync.source_scraper.models import Failure, ScrapeRequest
from tandem_sync.source_scraper.orchestrator import run as run_scrape
from tandem_sync.sync.lease import SyncLease
from tandem_sync.sync.models import ServiceStatus, SyncResult
from tandem_sync.sync.report_store import ReportStore, ReportStoreError
from tandem_sync.sync.status import get_last_status, set_last_status

SYNC_IN_PROGRESS = "Sync already in progress"


def report_store_for(app_config: Config, logger: JsonLogger) -> ReportStore:
    return ReportStore(database_url=app_config.database_url, reports_root=app_config.reports_root, logger=logger)


async def _scrape_and_store(
    request: ScrapeRequest, *, app_config: Config, logger: JsonLogger, timestamp: datetime
) -> SyncResult:
    scrape_result = await run_scrape(request, logger=logger, app_config=app_config)
    if isinstance(scrape_result, Failure):
        return SyncResult(
            success=False,
            timestamp=timestamp,
            report_days=request.window_days,
            error=scrape_result.error or "Scraper failed without error message",
            error_type=scrape_result.error_type,
            run_id=logger.run_id,
        )

    store = report_store_for(app_config, logger)
    try:
        stored = await store.store(scrape_result.artifact.content, scrape_result.artifact.suggested_filename)
    except ReportStoreError as exc:
        return SyncResult(
            success=False,
            timestamp=timestamp,
            report_days=request.window_days,
            error=str(exc),
            error_type=type(exc).__name__,
            run_id=logger.run_id,
        )

    await store.cleanup_old_reports(app_config.report_keep_count)
    return SyncResult(
        success=True,
        timestamp=timestamp,
        report_days=request.window_days,
        filename=stored.filename,
        run_id=logger.run_id,
    )


async def perform_sync(
    *,
    app_config: Config | None = None,
    logger: JsonLogger | None = None,
    report_days: int | None = None,
) -> SyncResult:
    """Validate config, take the lease, scrape, store the report and record the outcome."""

    cfg = app_config or config
    logger = logger or get_logger()
    days = report_days or cfg.report_days
    timestamp = datetime.now(timezone.utc)
    log_event(logger=logger, phase="sync", message="Starting sync operation", report_days=days)

    valid, missing = validate_scraper_config(cfg)
    if not valid:
        result = SyncResult(
            success=False,
            timestamp=timestamp,
            report_days=days,
            error=f"Missing required configuration: {', '.join(missing)}",
            error_type="ConfigError",
            run_id=logger.run_id,
        )
        log_event(logger=logger, phase="sync", status="error", message=result.error, missing=missing)
        await set_last_status(result, database_url=cfg.database_url, logger=logger)
        return result

    lease = SyncLease(database_url=cfg.database_url, logger=logger, ttl_s=cfg.sync_lease_ttl_s, holder=logger.run_id)
    try:
        acquired = await lease.acquire()
    except SQLAlchemyError as exc:
        result = SyncResult(
            success=False,
            timestamp=timestamp,
            report_days=days,
            error=f"Failed to acquire sync lease: {exc}",
            error_type=type(exc).__name__,
            run_id=logger.run_id,
        )
        log_event(logger=logger, phase="lease", status="error", message=result.error)
        await set_last_status(result, database_url=cfg.database_url, logger=logger)
        return result

    if not acquired:
        log_event(logger=logger, phase="sync", status="warn", message=SYNC_IN_PROGRESS)
        return SyncResult(
            success=False,
            timestamp=timestamp,
            report_days=days,
            error=SYNC_IN_PROGRESS,
            error_type="SyncInProgress",
            run_id=logger.run_id,
        )

    try:
        request = ScrapeRequest.build(
            username=cfg.tandem_username,
            password=cfg.tandem_password,
            window_days=days,
            timeout_ms=cfg.scrape_timeout_ms,
        )
        result = await _scrape_and_store(request, app_config=cfg, logger=logger, timestamp=timestamp)
    except Exception as exc:
        log_event(
            logger=logger,
            phase="sync",
            status="error",
            message="Unexpected error during sync",
            error=str(exc),
            error_type=type(exc).__name__,
        )
        result = SyncResult(
            success=False,
            timestamp=timestamp,
            report_days=days,
            error=str(exc) or "Unknown error during sync",
            error_type=type(exc).__name__,
            run_id=logger.run_id,
        )
    finally:
        try:
            await lease.release()
        except SQLAlchemyError as exc:
            log_event(logger=logger, phase="lease", status="warn", message="Failed to release sync lease", error=str(exc))

    await set_last_status(result, database_url=cfg.database_url, logger=logger)
    log_event(
        logger=logger,
        phase="sync",
        status="ok" if result.success else "error",
        message="Sync completed" if result.success else "Sync failed",
        filename=result.filename,
        error=result.error,
    )
    return result


async def get_service_status(
    *, app_config: Config | None = None, logger: JsonLogger | None = None
) -> ServiceStatus:
    cfg = app_config or config
    logger = logger or get_logger()

    last = await get_last_status(database_url=cfg.database_url, logger=logger)
    report_count = await report_store_for(cfg, logger).count_reports()
    configured, _ = validate_scraper_config(cfg)

    next_sync = None
    if last is not None:
        next_sync = last.timestamp + timedelta(hours=cfg.sync_interval_hours)

    return ServiceStatus(
        configured=configured,
        last_sync_time=last.timestamp if last else None,
        last_sync_success=last.success if last else None,
        last_sync_error=last.error if last else None,
        report_count=report_count,
        next_scheduled_sync=next_sync,
    )
