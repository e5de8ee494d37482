import asyncio
import os
import time
from pathlib import Path

import pytest

from tandem_sync.source_scraper.errors import DownloadTimeoutError, ExportControlNotFoundError, UnknownScraperError
from tandem_sync.source_scraper.export import DownloadCapture, export_report, window_option_labels
from tandem_sync.source_scraper.models import InteractionOutcome
from tandem_sync.source_scraper.page_selectors import SiteProfile
from tests.source_scraper.fake_browser import (
    FAST_TIMEOUTS,
    REPORT_URL,
    FakeDownload,
    FakePage,
    PortalScenario,
    make_logger,
)


async def _export(scenario: PortalScenario, *, window_days: int = 7, watch_dir: Path | None = None):
    page = scenario.build_page()
    outcome = await export_report(
        page,
        window_days=window_days,
        site=SiteProfile(),
        timeouts=FAST_TIMEOUTS,
        logger=make_logger(),
        watch_dir=watch_dir,
    )
    return page, outcome


def test_window_option_labels_cover_named_and_generic_windows():
    assert window_option_labels(7) == ("1 Week", "7 Days")
    assert window_option_labels(1) == ("1 Day", "24 Hours")
    assert window_option_labels(2) == ("2 Days",)
    assert window_option_labels(21) == ("21 Days", "3 Weeks")
    assert window_option_labels(60) == ("60 Days", "2 Months")


@pytest.mark.asyncio
async def test_export_selects_matching_range_and_returns_download(tmp_path: Path):
    scenario = PortalScenario(download_dir=tmp_path / "downloads")

    page, outcome = await _export(scenario, window_days=7)

    assert page.visited[-1] == REPORT_URL
    assert scenario.selected["range"] == "1 Week"
    assert outcome.range_selection is InteractionOutcome.PERFORMED
    assert outcome.artifact.content == scenario.download_content
    assert outcome.artifact.suggested_filename == "CSV_timeline.csv"
    assert outcome.artifact.source == "download_event"


@pytest.mark.asyncio
async def test_unmatched_range_keeps_default_and_still_exports(tmp_path: Path):
    scenario = PortalScenario(download_dir=tmp_path / "downloads")

    page, outcome = await _export(scenario, window_days=2)

    assert "range" not in scenario.selected
    assert outcome.range_selection is InteractionOutcome.NOT_APPLICABLE
    assert page.keyboard.pressed == ["Escape"]
    assert outcome.artifact.size > 0


@pytest.mark.asyncio
async def test_confirmation_modal_is_clicked(tmp_path: Path):
    scenario = PortalScenario(download_dir=tmp_path / "downloads", modal=True)

    page, outcome = await _export(scenario)

    assert page.clicked.count("Export") == 1
    assert outcome.artifact.content == scenario.download_content


@pytest.mark.asyncio
async def test_download_temp_file_is_deleted_after_reading(tmp_path: Path):
    scenario = PortalScenario(download_dir=tmp_path / "downloads")

    await _export(scenario)

    assert scenario.downloads[0].deleted is True
    assert list((tmp_path / "downloads").iterdir()) == []


@pytest.mark.asyncio
async def test_missing_export_control_is_fatal(tmp_path: Path):
    scenario = PortalScenario(download_dir=tmp_path, export_button=False)

    with pytest.raises(ExportControlNotFoundError):
        await _export(scenario)


@pytest.mark.asyncio
async def test_missing_download_times_out_after_bound(tmp_path: Path):
    scenario = PortalScenario(download_dir=tmp_path, emit_download=False)

    started = time.monotonic()
    with pytest.raises(DownloadTimeoutError):
        await _export(scenario)
    elapsed = time.monotonic() - started

    assert elapsed >= FAST_TIMEOUTS.download_ms / 1000
    assert elapsed < FAST_TIMEOUTS.download_ms / 1000 + 2


@pytest.mark.asyncio
async def test_empty_download_is_a_failure(tmp_path: Path):
    scenario = PortalScenario(download_dir=tmp_path, download_content=b"")

    with pytest.raises(UnknownScraperError):
        await _export(scenario)


@pytest.mark.asyncio
async def test_listener_is_removed_after_export(tmp_path: Path):
    scenario = PortalScenario(download_dir=tmp_path / "downloads")

    page, _ = await _export(scenario)

    assert page.listeners["download"] == []


@pytest.mark.asyncio
async def test_file_watch_wins_when_download_event_is_missed(tmp_path: Path):
    page = FakePage()
    capture = DownloadCapture(
        page, watch_dir=tmp_path, file_pattern="CSV_*.csv", timeouts=FAST_TIMEOUTS, logger=make_logger()
    )
    capture.arm()

    async def _browser_writes_file() -> None:
        await asyncio.sleep(0.03)
        (tmp_path / "CSV_partial.csv.crdownload").write_bytes(b"Date")
        (tmp_path / "CSV_20261019.csv").write_bytes(b"Date,Glucose\n")

    writer = asyncio.create_task(_browser_writes_file())
    artifact = await capture.wait(1_000)
    await writer

    assert artifact.source == "file_watch"
    assert artifact.suggested_filename == "CSV_20261019.csv"
    assert artifact.content == b"Date,Glucose\n"
    assert not (tmp_path / "CSV_20261019.csv").exists()


@pytest.mark.asyncio
async def test_file_watch_ignores_files_older_than_arming(tmp_path: Path):
    stale = tmp_path / "CSV_old.csv"
    stale.write_bytes(b"old export")
    past = time.time() - 3600
    os.utime(stale, (past, past))

    capture = DownloadCapture(
        FakePage(), watch_dir=tmp_path, file_pattern="CSV_*.csv", timeouts=FAST_TIMEOUTS, logger=make_logger()
    )
    capture.arm()

    with pytest.raises(DownloadTimeoutError):
        await capture.wait(100)
    assert stale.exists()


@pytest.mark.asyncio
async def test_download_event_wins_over_file_watch(tmp_path: Path):
    page = FakePage()
    watch_dir = tmp_path / "watch"
    watch_dir.mkdir()
    capture = DownloadCapture(
        page, watch_dir=watch_dir, file_pattern="CSV_*.csv", timeouts=FAST_TIMEOUTS, logger=make_logger()
    )
    capture.arm()

    payload = tmp_path / "event-download"
    payload.write_bytes(b"from event")
    page.emit("download", FakeDownload(payload, "CSV_event.csv"))

    artifact = await capture.wait(1_000)

    assert artifact.source == "download_event"
    assert artifact.content == b"from event"


@pytest.mark.asyncio
async def test_file_watch_accepts_guid_named_artifact(tmp_path: Path):
    capture = DownloadCapture(
        FakePage(), watch_dir=tmp_path, file_pattern="*", timeouts=FAST_TIMEOUTS, logger=make_logger()
    )
    capture.arm()
    (tmp_path / "nested").mkdir()

    async def _playwright_writes_artifact() -> None:
        await asyncio.sleep(0.03)
        (tmp_path / "5c7e1f9a-2b4d-4e8f-9a61-0d3c2e7b8f10").write_bytes(b"Date,Glucose\n")

    writer = asyncio.create_task(_playwright_writes_artifact())
    artifact = await capture.wait(1_000)
    await writer

    assert artifact.source == "file_watch"
    assert artifact.content == b"Date,Glucose\n"
    assert (tmp_path / "nested").is_dir()


@pytest.mark.asyncio
async def test_failed_download_event_is_reported_without_waiting_for_bound(tmp_path: Path):
    page = FakePage()
    capture = DownloadCapture(page, watch_dir=None, file_pattern="*", timeouts=FAST_TIMEOUTS, logger=make_logger())
    capture.arm()
    page.emit("download", FakeDownload(tmp_path / "missing", "CSV_event.csv", failure="net::ERR_FAILED"))

    started = time.monotonic()
    with pytest.raises(UnknownScraperError) as excinfo:
        await capture.wait(5_000)

    assert time.monotonic() - started < 1
    assert "net::ERR_FAILED" in str(excinfo.value)
