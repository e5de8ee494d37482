from __future__ import annotations

import asyncio
import shutil
import stat
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict

from playwright.async_api import async_playwright

from tandem_sync.common.json_logger import JsonLogger, log_event
from tandem_sync.config import Config, config
from tandem_sync.source_scraper import page_selectors
from tandem_sync.source_scraper.errors import BrowserLaunchError

# Flags needed inside read-only, single-process serverless sandboxes.
CONSTRAINED_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--no-zygote",
    "--single-process",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--no-first-run",
    "--hide-scrollbars",
    "--mute-audio",
]
OPEN_HOST_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
]
ARCHIVE_SUFFIXES = (".zip", ".tar", ".tar.gz", ".tgz", ".tar.xz", ".tar.bz2")
EXECUTABLE_NAMES = ("headless_shell", "chromium", "chrome")


class ExecutionContext(str, Enum):
    CONSTRAINED = "constrained"
    OPEN_HOST = "open_host"


@dataclass
class BrowserSession:
    """One browser process and one page, owned by a single run."""

    page: Any
    context: Any = None
    browser: Any = None
    playwright: Any = None
    download_dir: Path | None = None
    execution_context: ExecutionContext = ExecutionContext.OPEN_HOST
    closed: bool = False


def detect_execution_context(app_config: Config | None = None) -> ExecutionContext:
    cfg = app_config or config
    if cfg.execution_context:
        return ExecutionContext(cfg.execution_context)
    if cfg.serverless:
        return ExecutionContext.CONSTRAINED
    return ExecutionContext.OPEN_HOST


def _is_archive(path: Path) -> bool:
    name = path.name.lower()
    return any(name.endswith(suffix) for suffix in ARCHIVE_SUFFIXES)


def _find_executable(root: Path) -> Path | None:
    for name in EXECUTABLE_NAMES:
        for candidate in sorted(root.rglob(name)):
            if candidate.is_file():
                return candidate
    return None


def _extract_browser_archive(archive: Path, *, logger: JsonLogger) -> Path:
    """Unpack a bundled browser archive into the temp dir, once per host."""

    target_dir = Path(tempfile.gettempdir()) / "tandem-sync-chromium" / archive.name
    existing = _find_executable(target_dir) if target_dir.exists() else None
    if existing is not None:
        return existing

    target_dir.mkdir(parents=True, exist_ok=True)
    shutil.unpack_archive(str(archive), str(target_dir))
    executable = _find_executable(target_dir)
    if executable is None:
        raise BrowserLaunchError(f"No browser executable found inside archive {archive}")
    executable.chmod(executable.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    log_event(
        logger=logger,
        phase="browser",
        message="Extracted bundled browser archive",
        archive=str(archive),
        executable_path=str(executable),
    )
    return executable


async def resolve_constrained_executable(playwright: Any, *, app_config: Config, logger: JsonLogger) -> str:
    configured = app_config.chromium_executable
    if configured:
        path = Path(configured).expanduser()
        if not path.is_file():
            raise BrowserLaunchError(f"Configured CHROMIUM_EXECUTABLE not found: {configured}")
        if _is_archive(path):
            return str(await asyncio.to_thread(_extract_browser_archive, path, logger=logger))
        return str(path)

    bundled = getattr(playwright.chromium, "executable_path", "") or ""
    if not bundled or not Path(bundled).is_file():
        raise BrowserLaunchError(
            "No bundled Chromium available; run `playwright install chromium` or set CHROMIUM_EXECUTABLE"
        )
    return bundled


async def _launch_constrained(
    playwright: Any, *, app_config: Config, logger: JsonLogger, download_dir: Path
) -> Any:
    executable_path = await resolve_constrained_executable(playwright, app_config=app_config, logger=logger)
    log_event(
        logger=logger,
        phase="browser",
        message="Launching minimal Chromium for constrained sandbox",
        executable_path=executable_path,
        headless=True,
    )
    return await playwright.chromium.launch(
        executable_path=executable_path,
        headless=True,
        args=CONSTRAINED_ARGS,
        downloads_path=str(download_dir),
    )


async def _launch_open_host(
    playwright: Any, *, app_config: Config, logger: JsonLogger, download_dir: Path
) -> Any:
    chrome_exec = app_config.chrome_executable or None
    headless = not app_config.debug_browser
    launch_kwargs: Dict[str, Any] = {
        "headless": headless,
        "args": OPEN_HOST_ARGS,
        "downloads_path": str(download_dir),
    }

    if chrome_exec and Path(chrome_exec).is_file():
        launch_kwargs["executable_path"] = chrome_exec
        log_event(
            logger=logger,
            phase="browser",
            message="Launching Playwright with local Chrome executable",
            executable_path=chrome_exec,
            headless=headless,
        )
    elif chrome_exec:
        log_event(
            logger=logger,
            phase="browser",
            status="warn",
            message="Configured local Chrome executable missing; falling back to bundled Chromium",
            executable_path=chrome_exec,
            headless=headless,
        )
    else:
        log_event(
            logger=logger,
            phase="browser",
            message="Launching Playwright with bundled Chromium",
            headless=headless,
        )

    try:
        return await playwright.chromium.launch(**launch_kwargs)
    except Exception as exc:
        if launch_kwargs.pop("executable_path", None) is not None:
            log_event(
                logger=logger,
                phase="browser",
                status="warn",
                message="Local Chrome launch failed; retrying with bundled Chromium",
                executable_path=chrome_exec,
                headless=headless,
                error=str(exc),
            )
            return await playwright.chromium.launch(**launch_kwargs)
        raise


async def acquire(
    execution_context: ExecutionContext,
    *,
    timeout_ms: int,
    logger: JsonLogger,
    app_config: Config | None = None,
) -> BrowserSession:
    """Start a browser and return a session with a single configured page."""

    cfg = app_config or config
    download_dir = Path(tempfile.mkdtemp(prefix="tandem-sync-"))
    session = BrowserSession(page=None, download_dir=download_dir, execution_context=execution_context)

    try:
        session.playwright = await async_playwright().start()
        if execution_context is ExecutionContext.CONSTRAINED:
            session.browser = await _launch_constrained(
                session.playwright, app_config=cfg, logger=logger, download_dir=download_dir
            )
        else:
            session.browser = await _launch_open_host(
                session.playwright, app_config=cfg, logger=logger, download_dir=download_dir
            )

        session.context = await session.browser.new_context(
            viewport=page_selectors.VIEWPORT,
            user_agent=page_selectors.DESKTOP_USER_AGENT,
            accept_downloads=True,
        )
        session.context.set_default_timeout(timeout_ms)
        session.context.set_default_navigation_timeout(timeout_ms)
        session.page = await session.context.new_page()
        session.page.set_default_timeout(timeout_ms)
        session.page.set_default_navigation_timeout(timeout_ms)

        if cfg.debug_browser:
            session.page.on(
                "console",
                lambda msg: log_event(
                    logger=logger, phase="browser_console", message=msg.text, console_type=msg.type
                ),
            )
    except (BrowserLaunchError, asyncio.CancelledError):
        await release(session, logger=logger)
        raise
    except Exception as exc:
        await release(session, logger=logger)
        raise BrowserLaunchError(f"Browser failed to launch: {exc}") from exc

    log_event(
        logger=logger,
        phase="browser",
        message="Browser session ready",
        execution_context=execution_context.value,
        download_dir=str(download_dir),
        timeout_ms=timeout_ms,
    )
    return session


async def release(session: BrowserSession | None, *, logger: JsonLogger) -> None:
    """Close everything the session owns. Idempotent; never raises."""

    if session is None or session.closed:
        return
    session.closed = True

    for label in ("context", "browser", "playwright"):
        handle = getattr(session, label)
        if handle is None:
            continue
        try:
            if label == "playwright":
                await handle.stop()
            else:
                await handle.close()
        except Exception as exc:
            log_event(
                logger=logger,
                phase="browser",
                status="warn",
                message=f"Failed to close {label}",
                error=str(exc),
            )

    if session.download_dir is not None:
        try:
            shutil.rmtree(session.download_dir)
        except FileNotFoundError:
            pass
        except OSError as exc:
            log_event(
                logger=logger,
                phase="browser",
                status="warn",
                message="Failed to remove run download directory",
                download_dir=str(session.download_dir),
                error=str(exc),
            )

    log_event(logger=logger, phase="browser", message="Browser session released")
