from __future__ import annotations

import asyncio
import contextlib
import time
from stat import S_ISREG
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable

from tandem_sync.common.json_logger import JsonLogger, log_event
from tandem_sync.source_scraper import page_selectors
from tandem_sync.source_scraper.diagnostics import capture_step
from tandem_sync.source_scraper.errors import (
    DownloadTimeoutError,
    ExportControlNotFoundError,
    UnknownScraperError,
)
from tandem_sync.source_scraper.interactions import (
    ControlQuery,
    OptionSelection,
    click_if_present,
    find_control,
    pause,
    select_option,
)
from tandem_sync.source_scraper.models import DownloadArtifact, InteractionOutcome
from tandem_sync.source_scraper.page_selectors import SiteProfile
from tandem_sync.source_scraper.timeouts import FlowTimeouts

PHASE = "export"

# Files written slightly before arming still count (coarse filesystem mtimes).
MTIME_SLACK_S = 2.0

NAMED_WINDOWS: dict[int, tuple[str, ...]] = {
    1: ("1 Day", "24 Hours"),
    7: ("1 Week", "7 Days"),
    14: ("2 Weeks", "14 Days"),
    30: ("30 Days", "1 Month"),
    90: ("90 Days", "3 Months"),
}


def window_option_labels(days: int) -> tuple[str, ...]:
    """Option labels the date-range picker may use for a ``days`` window."""

    if days in NAMED_WINDOWS:
        return NAMED_WINDOWS[days]
    labels = [f"{days} Days"]
    if days % 7 == 0:
        weeks = days // 7
        labels.append(f"{weeks} Weeks")
    if days % 30 == 0:
        months = days // 30
        labels.append(f"{months} Months")
    return tuple(labels)


@dataclass
class ExportOutcome:
    artifact: DownloadArtifact
    range_selection: InteractionOutcome
    range_label: str | None = None


@dataclass
class _CapturedFile:
    path: Path
    suggested_filename: str
    source: str
    cleanup: Callable[[], Awaitable[None]]


class DownloadCapture:
    """Race the native ``download`` event against a temp-dir poller.

    Must be armed before the export click. The native event is the
    authoritative signal; the poller only runs when a watch directory is
    configured.
    """

    def __init__(
        self,
        page: Any,
        *,
        watch_dir: Path | None,
        file_pattern: str,
        timeouts: FlowTimeouts,
        logger: JsonLogger,
    ) -> None:
        self.page = page
        self.watch_dir = watch_dir
        self.file_pattern = file_pattern
        self.timeouts = timeouts
        self.logger = logger
        self.armed_at: float | None = None
        self._event: asyncio.Future | None = None

    def arm(self) -> None:
        self._event = asyncio.get_running_loop().create_future()
        self.armed_at = time.time()
        self.page.on("download", self._on_download)
        log_event(
            logger=self.logger,
            phase=PHASE,
            message="Download capture armed",
            watch_dir=str(self.watch_dir) if self.watch_dir else None,
            file_pattern=self.file_pattern if self.watch_dir else None,
        )

    def disarm(self) -> None:
        with contextlib.suppress(Exception):
            self.page.remove_listener("download", self._on_download)

    def _on_download(self, download: Any) -> None:
        if self._event is not None and not self._event.done():
            self._event.set_result(download)

    async def _from_download_event(self) -> _CapturedFile:
        assert self._event is not None
        download = await self._event
        log_event(
            logger=self.logger,
            phase=PHASE,
            message="Download event received",
            suggested_filename=download.suggested_filename,
        )
        path = await download.path()

        async def _cleanup() -> None:
            await download.delete()

        return _CapturedFile(
            path=Path(path),
            suggested_filename=download.suggested_filename,
            source="download_event",
            cleanup=_cleanup,
        )

    def _scan_watch_dir(self, sizes: dict[Path, int]) -> Path | None:
        assert self.watch_dir is not None and self.armed_at is not None
        for candidate in sorted(self.watch_dir.glob(self.file_pattern)):
            if candidate.name.endswith(page_selectors.PARTIAL_DOWNLOAD_SUFFIXES):
                continue
            try:
                stat = candidate.stat()
            except FileNotFoundError:
                continue
            if not S_ISREG(stat.st_mode):
                continue
            if stat.st_mtime < self.armed_at - MTIME_SLACK_S:
                continue
            previous = sizes.get(candidate)
            sizes[candidate] = stat.st_size
            if stat.st_size > 0 and previous == stat.st_size:
                return candidate
        return None

    async def _from_watch_dir(self) -> _CapturedFile:
        sizes: dict[Path, int] = {}
        while True:
            found = self._scan_watch_dir(sizes)
            if found is not None:
                log_event(logger=self.logger, phase=PHASE, message="Download file detected in watch dir", path=str(found))

                async def _cleanup(path: Path = found) -> None:
                    await asyncio.to_thread(path.unlink)

                return _CapturedFile(path=found, suggested_filename=found.name, source="file_watch", cleanup=_cleanup)
            await asyncio.sleep(self.timeouts.poll_interval_ms / 1000)

    async def _race(self, timeout_ms: int) -> _CapturedFile | None:
        racers = {asyncio.ensure_future(self._from_download_event()): "download_event"}
        if self.watch_dir is not None:
            racers[asyncio.ensure_future(self._from_watch_dir())] = "file_watch"

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_ms / 1000
        pending = set(racers)
        winner: _CapturedFile | None = None
        failures: list[str] = []
        try:
            while pending and winner is None:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                done, pending = await asyncio.wait(pending, timeout=remaining, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    if task.cancelled():
                        continue
                    exc = task.exception()
                    if exc is not None:
                        failures.append(f"{racers[task]}: {exc}")
                        log_event(
                            logger=self.logger,
                            phase=PHASE,
                            status="warn",
                            message=f"{racers[task]} detection failed",
                            error=str(exc),
                        )
                        continue
                    winner = task.result()
                    break
        finally:
            for task in pending:
                task.cancel()
            for task in pending:
                with contextlib.suppress(asyncio.CancelledError, Exception):
                    await task

        if winner is None and not pending and failures:
            raise UnknownScraperError(f"Download failed: {'; '.join(failures)}")
        return winner

    async def wait(self, timeout_ms: int) -> DownloadArtifact:
        winner = await self._race(timeout_ms)
        if winner is None:
            raise DownloadTimeoutError(f"Download did not complete within {timeout_ms / 1000:g} seconds")

        try:
            content = await asyncio.to_thread(winner.path.read_bytes)
        finally:
            try:
                await winner.cleanup()
            except Exception as exc:
                log_event(
                    logger=self.logger,
                    phase=PHASE,
                    status="warn",
                    message="Failed to delete downloaded temp file",
                    path=str(winner.path),
                    error=str(exc),
                )

        if not content:
            raise UnknownScraperError(f"Downloaded file {winner.suggested_filename} is empty")

        log_event(
            logger=self.logger,
            phase=PHASE,
            message="Download completed",
            suggested_filename=winner.suggested_filename,
            source=winner.source,
            bytes=len(content),
        )
        return DownloadArtifact(
            content=content,
            suggested_filename=winner.suggested_filename,
            completed_at=datetime.now(timezone.utc),
            source=winner.source,
        )


async def select_date_range(
    page: Any, window_days: int, *, timeouts: FlowTimeouts, logger: JsonLogger
) -> OptionSelection:
    """Best effort: pick the picker option matching the window; never raises."""

    labels = window_option_labels(window_days)
    selection = await select_option(
        page,
        trigger_selector=page_selectors.DATE_RANGE_TRIGGER,
        preferred_texts=labels,
        fallback_first=False,
        timeout_ms=timeouts.element_ms,
        pause_ms=timeouts.pause_ms,
        poll_interval_ms=timeouts.poll_interval_ms,
    )
    if selection.outcome is InteractionOutcome.PERFORMED:
        log_event(logger=logger, phase=PHASE, message="Date range selected", chosen=selection.chosen)
        return selection

    log_event(
        logger=logger,
        phase=PHASE,
        status="warn",
        message="Date range option not matched; keeping the active default range",
        outcome=selection.outcome.value,
        wanted=list(labels),
    )
    # Close a listbox left open by the trigger click.
    with contextlib.suppress(Exception):
        await page.keyboard.press("Escape")
    return selection


async def export_report(
    page: Any,
    *,
    window_days: int,
    site: SiteProfile,
    timeouts: FlowTimeouts,
    logger: JsonLogger,
    watch_dir: Path | None = None,
    file_pattern: str = "CSV_*.csv",
) -> ExportOutcome:
    log_event(logger=logger, phase=PHASE, message="Navigating to report view", report_url=site.report_url)
    await page.goto(site.report_url, wait_until="networkidle", timeout=timeouts.navigation_ms)
    await capture_step(page, "08-report-view", logger=logger)

    selection = await select_date_range(page, window_days, timeouts=timeouts, logger=logger)
    await pause(timeouts.settle_ms)
    await capture_step(page, "09-range-selected", logger=logger)

    capture = DownloadCapture(page, watch_dir=watch_dir, file_pattern=file_pattern, timeouts=timeouts, logger=logger)
    capture.arm()
    try:
        export_control = await find_control(
            page,
            ControlQuery(texts=page_selectors.EXPORT_TEXTS, elements=page_selectors.EXPORT_ELEMENTS),
            timeout_ms=timeouts.element_ms,
            poll_interval_ms=timeouts.poll_interval_ms,
        )
        if export_control is None:
            await capture_step(page, "10-export-missing", logger=logger)
            raise ExportControlNotFoundError("Export control not found on report view")
        await export_control.locator.click()
        log_event(logger=logger, phase=PHASE, message="Export clicked", matched=export_control.label)

        await pause(timeouts.pause_ms)
        await click_if_present(
            page.locator(page_selectors.MODAL_CONTAINERS),
            ControlQuery(texts=page_selectors.MODAL_CONFIRM_TEXTS),
            logger=logger,
            phase=PHASE,
            step="export confirmation modal",
            timeout_ms=timeouts.modal_ms,
            poll_interval_ms=timeouts.poll_interval_ms,
        )

        artifact = await capture.wait(timeouts.download_ms)
    finally:
        capture.disarm()

    return ExportOutcome(artifact=artifact, range_selection=selection.outcome, range_label=selection.chosen)
