from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class FlowTimeouts:
    """Per-step bounds (milliseconds) for the login and export flows."""

    navigation_ms: int = 60_000
    credential_page_ms: int = 30_000
    element_ms: int = 10_000
    post_login_ms: int = 60_000
    download_ms: int = 60_000
    modal_ms: int = 1_000
    probe_ms: int = 0
    pause_ms: int = 1_000
    settle_ms: int = 2_000
    poll_interval_ms: int = 300
