from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path

from tandem_sync.common.json_logger import JsonLogger, get_logger, log_event, mask_identity, timed_event
from tandem_sync.config import Config, config
from tandem_sync.source_scraper.browser import (
    BrowserSession,
    ExecutionContext,
    acquire,
    detect_execution_context,
    release,
)
from tandem_sync.source_scraper.errors import ScraperError
from tandem_sync.source_scraper.export import ExportOutcome, export_report
from tandem_sync.source_scraper.login import LoginFlow
from tandem_sync.source_scraper.models import DateRange, Failure, ScrapeRequest, ScrapeResult, Success
from tandem_sync.source_scraper.page_selectors import SiteProfile
from tandem_sync.source_scraper.timeouts import FlowTimeouts


@dataclass
class _RunState:
    session: BrowserSession | None = None


ANY_FILE_PATTERN = "*"


def resolve_watch_dir(app_config: Config, session: BrowserSession) -> tuple[Path | None, str]:
    """Directory and glob polled as the secondary download signal, if any.

    A configured DOWNLOAD_WATCH_DIR is matched against DOWNLOAD_FILE_PATTERN.
    Otherwise constrained hosts watch the session's own downloads directory,
    where Playwright writes artifacts under GUID names, so any settled file
    there counts.
    """

    if app_config.download_watch_dir:
        return Path(app_config.download_watch_dir).expanduser(), app_config.download_file_pattern
    if session.execution_context is ExecutionContext.CONSTRAINED and session.download_dir is not None:
        return session.download_dir, ANY_FILE_PATTERN
    return None, ANY_FILE_PATTERN


async def _scrape(
    request: ScrapeRequest,
    state: _RunState,
    *,
    site: SiteProfile,
    timeouts: FlowTimeouts,
    logger: JsonLogger,
    app_config: Config,
) -> ExportOutcome:
    execution_context = detect_execution_context(app_config)
    with timed_event(logger=logger, phase="browser", message="acquire session"):
        state.session = await acquire(
            execution_context, timeout_ms=request.timeout_ms, logger=logger, app_config=app_config
        )
    page = state.session.page
    watch_dir, file_pattern = resolve_watch_dir(app_config, state.session)

    with timed_event(logger=logger, phase="login", message="login flow"):
        await LoginFlow(page, request.credentials, site=site, timeouts=timeouts, logger=logger).run()

    with timed_event(logger=logger, phase="export", message="export flow", window_days=request.window_days):
        return await export_report(
            page,
            window_days=request.window_days,
            site=site,
            timeouts=timeouts,
            logger=logger,
            watch_dir=watch_dir,
            file_pattern=file_pattern,
        )


async def run(
    request: ScrapeRequest,
    *,
    site: SiteProfile | None = None,
    timeouts: FlowTimeouts | None = None,
    logger: JsonLogger | None = None,
    app_config: Config | None = None,
) -> ScrapeResult:
    """Log in, export the report and return the bytes. Never raises a ScraperError."""

    cfg = app_config or config
    site = site or SiteProfile.from_config(cfg)
    timeouts = timeouts or FlowTimeouts()
    logger = logger or get_logger()
    state = _RunState()
    budget_s = request.timeout_ms / 1000

    log_event(
        logger=logger,
        phase="scrape",
        message="Starting Tandem Source scrape",
        username=mask_identity(request.credentials.username),
        window_days=request.window_days,
        timeout_ms=request.timeout_ms,
    )

    result: ScrapeResult
    try:
        outcome = await asyncio.wait_for(
            _scrape(request, state, site=site, timeouts=timeouts, logger=logger, app_config=cfg),
            timeout=budget_s,
        )
    except asyncio.TimeoutError:
        result = Failure(
            error=f"Scrape did not finish within {budget_s:g} seconds",
            error_type="ScrapeTimeoutError",
        )
    except ScraperError as exc:
        result = Failure(error=str(exc), error_type=type(exc).__name__)
    except Exception as exc:
        result = Failure(error=f"Unexpected scraper error: {exc}", error_type="UnknownScraperError")
    else:
        result = Success(
            artifact=outcome.artifact,
            date_range=DateRange.ending_now(request.window_days),
            range_selection=outcome.range_selection,
        )
    finally:
        if state.session is not None:
            try:
                await release(state.session, logger=logger)
            except Exception as exc:
                log_event(
                    logger=logger,
                    phase="browser",
                    status="warn",
                    message="Session release failed",
                    error=str(exc),
                )

    if isinstance(result, Success):
        log_event(
            logger=logger,
            phase="scrape",
            message="Scrape succeeded",
            filename=result.artifact.suggested_filename,
            bytes=result.artifact.size,
            range_selection=result.range_selection.value,
        )
    else:
        log_event(
            logger=logger,
            phase="scrape",
            status="error",
            message=result.error,
            error_type=result.error_type,
        )
    return result
