import time
from dataclasses import replace
from datetime import timedelta
from pathlib import Path

import pytest

from tandem_sync.config import Config
from tandem_sync.source_scraper import orchestrator
from tandem_sync.source_scraper.browser import BrowserSession, ExecutionContext
from tandem_sync.source_scraper.errors import BrowserLaunchError
from tandem_sync.source_scraper.models import Failure, InteractionOutcome, ScrapeRequest, Success
from tandem_sync.source_scraper.page_selectors import SiteProfile
from tandem_sync.source_scraper.timeouts import FlowTimeouts
from tests.source_scraper.fake_browser import FAST_TIMEOUTS, PortalScenario, make_logger

OPEN_HOST_CONFIG = Config.load_from_env({"EXECUTION_CONTEXT": "open_host"})


class SessionRecorder:
    """Replaces acquire/release with a fake page and counts closures."""

    def __init__(self, page, download_dir: Path | None = None) -> None:
        self.page = page
        self.download_dir = download_dir
        self.sessions: list[BrowserSession] = []
        self.release_calls = 0

    async def acquire(self, execution_context, *, timeout_ms, logger, app_config=None):
        session = BrowserSession(
            page=self.page, execution_context=execution_context, download_dir=self.download_dir
        )
        self.sessions.append(session)
        return session

    async def release(self, session, *, logger):
        self.release_calls += 1
        session.closed = True


def _install(monkeypatch, scenario: PortalScenario, download_dir: Path | None = None) -> SessionRecorder:
    recorder = SessionRecorder(scenario.build_page(), download_dir)
    monkeypatch.setattr(orchestrator, "acquire", recorder.acquire)
    monkeypatch.setattr(orchestrator, "release", recorder.release)
    return recorder


async def _run(request: ScrapeRequest, timeouts: FlowTimeouts = FAST_TIMEOUTS):
    return await orchestrator.run(
        request, site=SiteProfile(), timeouts=timeouts, logger=make_logger(), app_config=OPEN_HOST_CONFIG
    )


def _request(window_days: int = 7, timeout_ms: int = 10_000, password: str = "hunter2") -> ScrapeRequest:
    return ScrapeRequest.build(
        username="pumper@example.com", password=password, window_days=window_days, timeout_ms=timeout_ms
    )


@pytest.mark.asyncio
async def test_successful_run_returns_bytes_and_window(monkeypatch, tmp_path: Path):
    recorder = _install(monkeypatch, PortalScenario(download_dir=tmp_path))

    result = await _run(_request(window_days=7))

    assert isinstance(result, Success)
    assert result.ok is True
    assert result.artifact.content
    assert result.date_range.end >= result.date_range.start
    assert result.date_range.end - result.date_range.start == timedelta(days=7)
    assert result.range_selection is InteractionOutcome.PERFORMED
    assert recorder.release_calls == 1
    assert recorder.sessions[0].closed is True


@pytest.mark.asyncio
@pytest.mark.parametrize("two_step", [False, True])
async def test_one_and_two_step_forms_both_succeed(monkeypatch, tmp_path: Path, two_step: bool):
    _install(monkeypatch, PortalScenario(download_dir=tmp_path, two_step=two_step))

    result = await _run(_request())

    assert isinstance(result, Success)


@pytest.mark.asyncio
async def test_cookie_banner_presence_does_not_change_outcome(monkeypatch, tmp_path: Path):
    _install(monkeypatch, PortalScenario(download_dir=tmp_path / "a", cookie_banner=True))
    with_banner = await _run(_request())

    _install(monkeypatch, PortalScenario(download_dir=tmp_path / "b", cookie_banner=False))
    without_banner = await _run(_request())

    assert isinstance(with_banner, Success)
    assert isinstance(without_banner, Success)
    assert with_banner.artifact.content == without_banner.artifact.content
    assert with_banner.range_selection == without_banner.range_selection


@pytest.mark.asyncio
async def test_locale_fallback_run_succeeds(monkeypatch, tmp_path: Path):
    scenario = PortalScenario(download_dir=tmp_path, locale=True, country_options=("Canada",))
    _install(monkeypatch, scenario)

    result = await _run(_request())

    assert isinstance(result, Success)
    assert scenario.selected["country"] == "Canada"


@pytest.mark.asyncio
async def test_identity_provider_mismatch_fails_and_closes_session(monkeypatch, tmp_path: Path):
    recorder = _install(
        monkeypatch, PortalScenario(download_dir=tmp_path, login_url="https://login.phish.example/login")
    )

    result = await _run(_request())

    assert isinstance(result, Failure)
    assert result.ok is False
    assert result.error_type == "UnexpectedRedirectError"
    assert recorder.release_calls == 1
    assert recorder.sessions[0].closed is True


@pytest.mark.asyncio
async def test_login_failure_releases_exactly_once(monkeypatch, tmp_path: Path):
    recorder = _install(monkeypatch, PortalScenario(download_dir=tmp_path))

    result = await _run(_request(password="wrong"))

    assert isinstance(result, Failure)
    assert result.error_type == "LoginFailedError"
    assert recorder.release_calls == 1


@pytest.mark.asyncio
async def test_export_failure_releases_exactly_once(monkeypatch, tmp_path: Path):
    recorder = _install(monkeypatch, PortalScenario(download_dir=tmp_path, export_button=False))

    result = await _run(_request())

    assert isinstance(result, Failure)
    assert result.error_type == "ExportControlNotFoundError"
    assert recorder.release_calls == 1


@pytest.mark.asyncio
async def test_missing_download_fails_after_download_bound(monkeypatch, tmp_path: Path):
    recorder = _install(monkeypatch, PortalScenario(download_dir=tmp_path, emit_download=False))

    started = time.monotonic()
    result = await _run(_request())
    elapsed = time.monotonic() - started

    assert isinstance(result, Failure)
    assert result.error_type == "DownloadTimeoutError"
    assert FAST_TIMEOUTS.download_ms / 1000 <= elapsed < FAST_TIMEOUTS.download_ms / 1000 + 2
    assert recorder.release_calls == 1


@pytest.mark.asyncio
async def test_overall_budget_expiry_is_scrape_timeout(monkeypatch, tmp_path: Path):
    recorder = _install(monkeypatch, PortalScenario(download_dir=tmp_path, emit_download=False))
    slow_download = replace(FAST_TIMEOUTS, download_ms=30_000)

    started = time.monotonic()
    result = await _run(_request(timeout_ms=300), timeouts=slow_download)

    assert isinstance(result, Failure)
    assert result.error_type == "ScrapeTimeoutError"
    assert time.monotonic() - started < 5
    assert recorder.release_calls == 1


@pytest.mark.asyncio
async def test_release_error_does_not_replace_primary_result(monkeypatch, tmp_path: Path):
    recorder = _install(monkeypatch, PortalScenario(download_dir=tmp_path))

    async def _broken_release(session, *, logger):
        recorder.release_calls += 1
        raise RuntimeError("browser already gone")

    monkeypatch.setattr(orchestrator, "release", _broken_release)

    result = await _run(_request())

    assert isinstance(result, Success)
    assert recorder.release_calls == 1


@pytest.mark.asyncio
async def test_launch_failure_is_reported_without_release(monkeypatch):
    released: list = []

    async def _failing_acquire(execution_context, *, timeout_ms, logger, app_config=None):
        raise BrowserLaunchError("No bundled Chromium available")

    async def _release(session, *, logger):
        released.append(session)

    monkeypatch.setattr(orchestrator, "acquire", _failing_acquire)
    monkeypatch.setattr(orchestrator, "release", _release)

    result = await _run(_request())

    assert result == Failure(error="No bundled Chromium available", error_type="BrowserLaunchError")
    assert released == []


@pytest.mark.asyncio
async def test_unexpected_exception_becomes_unknown_failure(monkeypatch):
    async def _acquire(execution_context, *, timeout_ms, logger, app_config=None):
        raise KeyError("boom")

    monkeypatch.setattr(orchestrator, "acquire", _acquire)

    result = await _run(_request())

    assert isinstance(result, Failure)
    assert result.error_type == "UnknownScraperError"


def test_scrape_request_rejects_invalid_values():
    with pytest.raises(ValueError):
        _request(window_days=0)
    with pytest.raises(ValueError):
        _request(timeout_ms=0)


def test_credentials_repr_is_masked():
    text = repr(_request().credentials)
    assert "hunter2" not in text
    assert "pumper@example.com" not in text


def test_watch_dir_defaults_to_session_downloads_only_when_constrained(tmp_path: Path):
    open_host = BrowserSession(page=None, execution_context=ExecutionContext.OPEN_HOST, download_dir=tmp_path)
    constrained = BrowserSession(page=None, execution_context=ExecutionContext.CONSTRAINED, download_dir=tmp_path)

    assert orchestrator.resolve_watch_dir(OPEN_HOST_CONFIG, open_host) == (None, "*")
    assert orchestrator.resolve_watch_dir(OPEN_HOST_CONFIG, constrained) == (tmp_path, "*")
    configured = Config.load_from_env({"DOWNLOAD_WATCH_DIR": str(tmp_path / "watch")})
    assert orchestrator.resolve_watch_dir(configured, constrained) == (tmp_path / "watch", "CSV_*.csv")


@pytest.mark.asyncio
async def test_constrained_run_recovers_download_from_session_directory(monkeypatch, tmp_path: Path):
    session_dir = tmp_path / "tandem-sync-run"
    scenario = PortalScenario(download_dir=session_dir, download_event=False)
    recorder = _install(monkeypatch, scenario, download_dir=session_dir)

    result = await orchestrator.run(
        _request(),
        site=SiteProfile(),
        timeouts=FAST_TIMEOUTS,
        logger=make_logger(),
        app_config=Config.load_from_env({"EXECUTION_CONTEXT": "constrained"}),
    )

    assert isinstance(result, Success)
    assert result.artifact.source == "file_watch"
    assert result.artifact.content == scenario.download_content
    assert recorder.sessions[0].execution_context is ExecutionContext.CONSTRAINED
    assert list(session_dir.iterdir()) == []
