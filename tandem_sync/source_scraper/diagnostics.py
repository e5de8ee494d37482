from __future__ import annotations

import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict

from tandem_sync.common.json_logger import JsonLogger, log_event
from tandem_sync.config import config


def _safe_step_name(step: str) -> str:
    return re.sub(r"[^A-Za-z0-9_-]+", "_", step).strip("_") or "step"


async def capture_step(page: Any, step: str, *, logger: JsonLogger) -> Dict[str, str]:
    """Save screenshot, HTML and URL/title for ``step`` when DEBUG_BROWSER is on."""

    if not config.debug_browser:
        return {}

    capture_dir = Path(config.debug_capture_dir)
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
    base_name = f"{timestamp}-{_safe_step_name(step)}"
    extras: Dict[str, str] = {"capture_dir": str(capture_dir)}

    try:
        capture_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        log_event(logger=logger, phase="debug", status="warn", message="debug capture dir unavailable", error=str(exc))
        return extras

    screenshot_path = capture_dir / f"{base_name}.png"
    try:
        await page.screenshot(path=str(screenshot_path), full_page=True)
        extras["screenshot"] = str(screenshot_path)
    except Exception as exc:  # pragma: no cover - depends on browser state
        extras["screenshot_error"] = str(exc)

    html_path = capture_dir / f"{base_name}.html"
    try:
        html_path.write_text(await page.content(), encoding="utf-8")
        extras["html_dump"] = str(html_path)
    except Exception as exc:  # pragma: no cover - depends on browser state
        extras["html_error"] = str(exc)

    info_path = capture_dir / f"{base_name}.txt"
    try:
        title = await page.title()
        info_path.write_text(f"URL: {page.url}\nTitle: {title}\n", encoding="utf-8")
        extras["page_info"] = str(info_path)
    except Exception as exc:  # pragma: no cover - depends on browser state
        extras["page_info_error"] = str(exc)

    log_event(logger=logger, phase="debug", message=f"captured {step}", step=step, **extras)
    return extras
