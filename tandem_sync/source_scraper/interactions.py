"""Resilient interaction primitives shared by the login and export flows.

Every lookup goes through :func:`find_control`, which walks a
:class:`ControlQuery` in a fixed order: CSS selectors first (in the order
given), then each text matcher, trying the element text before the
``aria-label``. Callers express intent as data and get the same ordering
everywhere.
"""

from __future__ import annotations

import asyncio
import contextlib
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Sequence
from urllib.parse import urlparse

from tandem_sync.common.json_logger import JsonLogger, log_event
from tandem_sync.source_scraper import page_selectors
from tandem_sync.source_scraper.models import InteractionOutcome

MAX_MATCHES_PER_CANDIDATE = 5


@dataclass(frozen=True)
class ControlQuery:
    selectors: tuple[str, ...] = ()
    texts: tuple[str, ...] = ()
    elements: str = "button"
    aria_label: bool = True


@dataclass(frozen=True)
class ControlMatch:
    label: str
    locator: Any


@dataclass(frozen=True)
class OptionSelection:
    outcome: InteractionOutcome
    chosen: str | None = None
    fallback_used: bool = False


def text_pattern(text: str, *, exact: bool = False, whole_word: bool = False) -> re.Pattern[str]:
    escaped = re.escape(text.strip())
    if exact:
        return re.compile(rf"^\s*{escaped}\s*$", re.IGNORECASE)
    if whole_word:
        # "1 Day" must not match "21 Days".
        return re.compile(rf"(?<!\w){escaped}\b", re.IGNORECASE)
    return re.compile(escaped, re.IGNORECASE)


def aria_label_selector(elements: str, text: str) -> str:
    needle = text.replace('"', '\\"')
    return ", ".join(
        f'{element.strip()}[aria-label*="{needle}" i]' for element in elements.split(",") if element.strip()
    )


def candidate_locators(root: Any, query: ControlQuery) -> list[tuple[str, Any]]:
    candidates: list[tuple[str, Any]] = []
    for selector in query.selectors:
        candidates.append((f"selector:{selector}", root.locator(selector)))
    for text in query.texts:
        candidates.append((f"text:{text}", root.locator(query.elements).filter(has_text=text_pattern(text))))
        if query.aria_label:
            candidates.append((f"aria:{text}", root.locator(aria_label_selector(query.elements, text))))
    return candidates


async def pause(ms: int) -> None:
    if ms > 0:
        await asyncio.sleep(ms / 1000)


async def first_visible(
    candidates: Sequence[tuple[str, Any]],
    *,
    timeout_ms: int,
    poll_interval_ms: int = 250,
) -> ControlMatch | None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + max(timeout_ms, 0) / 1000
    while True:
        for label, candidate in candidates:
            try:
                count = await candidate.count()
                for idx in range(min(count, MAX_MATCHES_PER_CANDIDATE)):
                    entry = candidate.nth(idx)
                    if await entry.is_visible():
                        return ControlMatch(label=label, locator=entry)
            except Exception:
                continue
        remaining = deadline - loop.time()
        if remaining <= 0:
            return None
        await asyncio.sleep(min(poll_interval_ms / 1000, remaining))


async def find_control(
    root: Any,
    query: ControlQuery,
    *,
    timeout_ms: int,
    poll_interval_ms: int = 250,
) -> ControlMatch | None:
    return await first_visible(
        candidate_locators(root, query), timeout_ms=timeout_ms, poll_interval_ms=poll_interval_ms
    )


async def click_if_present(
    root: Any,
    query: ControlQuery,
    *,
    logger: JsonLogger,
    phase: str,
    step: str,
    timeout_ms: int,
    poll_interval_ms: int = 250,
) -> InteractionOutcome:
    """Click the first control matching ``query``; absence is not an error."""

    try:
        match = await find_control(root, query, timeout_ms=timeout_ms, poll_interval_ms=poll_interval_ms)
    except Exception as exc:
        log_event(logger=logger, phase=phase, status="warn", message=f"{step}: lookup failed", error=str(exc))
        return InteractionOutcome.FAILED

    if match is None:
        log_event(logger=logger, phase=phase, message=f"{step}: not applicable", outcome="not_applicable")
        return InteractionOutcome.NOT_APPLICABLE

    try:
        await match.locator.click()
    except Exception as exc:
        log_event(
            logger=logger,
            phase=phase,
            status="warn",
            message=f"{step}: click failed",
            matched=match.label,
            error=str(exc),
        )
        return InteractionOutcome.FAILED

    log_event(logger=logger, phase=phase, message=f"{step}: clicked", matched=match.label, outcome="performed")
    return InteractionOutcome.PERFORMED


async def select_option(
    page: Any,
    *,
    trigger_selector: str,
    preferred_texts: Sequence[str],
    fallback_first: bool,
    timeout_ms: int,
    pause_ms: int,
    poll_interval_ms: int = 250,
) -> OptionSelection:
    """Open a listbox and pick an option by text, optionally the first one."""

    trigger = await find_control(
        page, ControlQuery(selectors=(trigger_selector,)), timeout_ms=timeout_ms, poll_interval_ms=poll_interval_ms
    )
    if trigger is None:
        return OptionSelection(outcome=InteractionOutcome.NOT_APPLICABLE)

    try:
        await trigger.locator.click()
        await pause(pause_ms)

        options = page.locator(page_selectors.OPTION)
        ordered = [(f"exact:{text}", options.filter(has_text=text_pattern(text, exact=True))) for text in preferred_texts]
        ordered += [
            (f"contains:{text}", options.filter(has_text=text_pattern(text, whole_word=True)))
            for text in preferred_texts
        ]
        match = await first_visible(ordered, timeout_ms=0)
        fallback_used = False
        if match is None and fallback_first:
            match = await first_visible([("first", options)], timeout_ms=0)
            fallback_used = match is not None
        if match is None:
            return OptionSelection(outcome=InteractionOutcome.NOT_APPLICABLE)

        chosen = ((await match.locator.text_content()) or "").strip()
        await match.locator.click()
    except Exception:
        return OptionSelection(outcome=InteractionOutcome.FAILED)

    return OptionSelection(outcome=InteractionOutcome.PERFORMED, chosen=chosen, fallback_used=fallback_used)


async def wait_for_any(
    waiters: Mapping[str, Callable[[], Awaitable[Any]]],
    *,
    timeout_ms: int,
) -> str | None:
    """Race labelled waits; return the label of the first one that succeeds."""

    tasks = {asyncio.ensure_future(factory()): label for label, factory in waiters.items()}
    loop = asyncio.get_running_loop()
    deadline = loop.time() + max(timeout_ms, 0) / 1000
    pending = set(tasks)
    winner: str | None = None
    try:
        while pending and winner is None:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            done, pending = await asyncio.wait(pending, timeout=remaining, return_when=asyncio.FIRST_COMPLETED)
            if not done:
                break
            for task in done:
                if not task.cancelled() and task.exception() is None:
                    winner = tasks[task]
                    break
    finally:
        for task in pending:
            task.cancel()
        for task in pending:
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task
    return winner


async def page_text_contains(page: Any, phrase: str) -> bool:
    try:
        text = await page.locator("body").text_content()
    except Exception:
        return False
    return phrase.lower() in (text or "").lower()


def host_matches(url: str | None, host: str) -> bool:
    hostname = (urlparse(url or "").hostname or "").lower()
    expected = host.lower()
    return bool(hostname) and (hostname == expected or hostname.endswith(f".{expected}"))
