"""SSO login flow for the report portal, modelled as a state machine.

The landing page may show a cookie banner and a country/language picker
before redirecting to the identity provider. The credential form is either
one page (username + password) or two steps with a "Next" in between; the
flow probes for the password field instead of assuming a shape.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Awaitable, Callable

from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from tandem_sync.common.json_logger import JsonLogger, log_event, mask_identity
from tandem_sync.source_scraper import page_selectors
from tandem_sync.source_scraper.diagnostics import capture_step
from tandem_sync.source_scraper.errors import (
    ElementNotFoundError,
    LoginFailedError,
    MissingControlError,
    ScraperError,
    UnexpectedRedirectError,
    UnknownScraperError,
)
from tandem_sync.source_scraper.interactions import (
    ControlQuery,
    OptionSelection,
    click_if_present,
    find_control,
    host_matches,
    page_text_contains,
    pause,
    select_option,
    wait_for_any,
)
from tandem_sync.source_scraper.models import Credentials, InteractionOutcome
from tandem_sync.source_scraper.page_selectors import SiteProfile
from tandem_sync.source_scraper.timeouts import FlowTimeouts

PHASE = "login"


class LoginState(str, Enum):
    START = "start"
    LANDING_LOADED = "landing_loaded"
    COOKIE_CONSENT_HANDLED = "cookie_consent_handled"
    LOCALE_SELECTION_HANDLED = "locale_selection_handled"
    CREDENTIAL_PAGE_REACHED = "credential_page_reached"
    USERNAME_ENTERED = "username_entered"
    INTERSTITIAL_ADVANCED = "interstitial_advanced"
    PASSWORD_ENTERED = "password_entered"
    SUBMITTED = "submitted"
    RETURNED_TO_ORIGIN = "returned_to_origin"


class LoginFlow:
    def __init__(
        self,
        page: Any,
        credentials: Credentials,
        *,
        site: SiteProfile,
        timeouts: FlowTimeouts,
        logger: JsonLogger,
    ) -> None:
        self.page = page
        self.credentials = credentials
        self.site = site
        self.timeouts = timeouts
        self.logger = logger
        self.state = LoginState.START
        self.history: list[LoginState] = [LoginState.START]
        self.cookie_outcome: InteractionOutcome | None = None
        self.locale_outcome: InteractionOutcome | None = None

    async def run(self) -> LoginState:
        steps: list[Callable[[], Awaitable[LoginState | None]]] = [
            self._load_landing,
            self._handle_cookie_consent,
            self._handle_locale_selection,
            self._reach_credential_page,
            self._enter_username,
            self._advance_interstitial,
            self._enter_password,
            self._submit,
            self._verify_return,
        ]
        log_event(
            logger=self.logger,
            phase=PHASE,
            message="Starting login flow",
            username=mask_identity(self.credentials.username),
            app_url=self.site.app_url,
        )
        for step in steps:
            try:
                next_state = await step()
            except ScraperError as exc:
                log_event(
                    logger=self.logger,
                    phase=PHASE,
                    status="error",
                    message=str(exc),
                    state=self.state.value,
                    error_type=type(exc).__name__,
                    final_url=self.page.url,
                )
                raise
            except Exception as exc:
                raise UnknownScraperError(
                    f"Login step {step.__name__.lstrip('_')} failed after state {self.state.value}: {exc}"
                ) from exc
            if next_state is not None:
                self._advance(next_state)
        return self.state

    def _advance(self, state: LoginState) -> None:
        self.state = state
        self.history.append(state)
        log_event(logger=self.logger, phase=PHASE, message=f"state -> {state.value}", url=self.page.url)

    async def _capture(self, step: str) -> None:
        await capture_step(self.page, step, logger=self.logger)

    async def _load_landing(self) -> LoginState:
        await self.page.goto(
            self.site.app_url, wait_until="networkidle", timeout=self.timeouts.navigation_ms
        )
        await self._capture("01-initial-page")
        return LoginState.LANDING_LOADED

    async def _handle_cookie_consent(self) -> LoginState | None:
        self.cookie_outcome = await click_if_present(
            self.page,
            ControlQuery(texts=page_selectors.COOKIE_KEYWORDS, aria_label=False),
            logger=self.logger,
            phase=PHASE,
            step="cookie consent",
            timeout_ms=self.timeouts.probe_ms,
            poll_interval_ms=self.timeouts.poll_interval_ms,
        )
        if self.cookie_outcome is not InteractionOutcome.PERFORMED:
            return None
        await pause(self.timeouts.pause_ms)
        await self._capture("02-after-cookie-accept")
        return LoginState.COOKIE_CONSENT_HANDLED

    async def _handle_locale_selection(self) -> LoginState | None:
        if not await page_text_contains(self.page, page_selectors.LOCALE_MARKER):
            self.locale_outcome = InteractionOutcome.NOT_APPLICABLE
            log_event(logger=self.logger, phase=PHASE, message="locale selection: not applicable")
            return None

        log_event(logger=self.logger, phase=PHASE, message="Country/language selector page detected")
        await self._capture("03-country-selector")

        country = await self._select_locale_option(
            "country", page_selectors.COUNTRY_TRIGGER, self.site.country_texts
        )
        language = await self._select_locale_option(
            "language", page_selectors.LANGUAGE_TRIGGER, self.site.language_texts
        )

        continue_control = await find_control(
            self.page,
            ControlQuery(texts=page_selectors.CONTINUE_TEXTS, aria_label=False),
            timeout_ms=self.timeouts.element_ms,
            poll_interval_ms=self.timeouts.poll_interval_ms,
        )
        if continue_control is None:
            raise MissingControlError("Locale selection page has no Continue button")
        await continue_control.locator.click()
        await pause(self.timeouts.settle_ms)
        await self._capture("03f-after-continue-click")

        self.locale_outcome = InteractionOutcome.PERFORMED
        log_event(
            logger=self.logger,
            phase=PHASE,
            message="Country/language selection completed",
            country=country.chosen,
            language=language.chosen,
        )
        return LoginState.LOCALE_SELECTION_HANDLED

    async def _select_locale_option(
        self, label: str, trigger_selector: str, preferred_texts: tuple[str, ...]
    ) -> OptionSelection:
        selection = await select_option(
            self.page,
            trigger_selector=trigger_selector,
            preferred_texts=preferred_texts,
            fallback_first=True,
            timeout_ms=self.timeouts.element_ms,
            pause_ms=self.timeouts.pause_ms,
            poll_interval_ms=self.timeouts.poll_interval_ms,
        )
        if selection.outcome is not InteractionOutcome.PERFORMED:
            raise MissingControlError(
                f"Locale selection page: {label} selector unavailable ({selection.outcome.value})"
            )
        if selection.fallback_used:
            log_event(
                logger=self.logger,
                phase=PHASE,
                status="warn",
                message=f"No {label} option matched {list(preferred_texts)}; selected first option",
                chosen=selection.chosen,
            )
        await pause(self.timeouts.pause_ms)
        return selection

    async def _on_credential_page(self) -> bool:
        if await page_text_contains(self.page, page_selectors.LOGIN_PAGE_MARKER):
            return True
        username_field = await find_control(
            self.page, ControlQuery(selectors=page_selectors.USERNAME_INPUTS), timeout_ms=0
        )
        return username_field is not None

    async def _poll_for_credential_page(self) -> bool:
        while not await self._on_credential_page():
            await asyncio.sleep(self.timeouts.poll_interval_ms / 1000)
        return True

    async def _reach_credential_page(self) -> LoginState:
        if await self._on_credential_page():
            log_event(logger=self.logger, phase=PHASE, message="Already on login page (client-side navigation)")
        else:
            log_event(logger=self.logger, phase=PHASE, message="Not on login page yet, waiting for navigation")
            origin_host = self.site.origin_host
            reached = await wait_for_any(
                {
                    "credential_form": self._poll_for_credential_page,
                    "left_origin": lambda: self.page.wait_for_url(
                        lambda url: not host_matches(url, origin_host),
                        wait_until="networkidle",
                        timeout=self.timeouts.credential_page_ms,
                    ),
                },
                timeout_ms=self.timeouts.credential_page_ms,
            )
            if reached is None:
                await self._capture("04-login-page-missing")
                raise ElementNotFoundError(
                    f"Credential page not reached within {self.timeouts.credential_page_ms} ms (url={self.page.url})"
                )
            log_event(logger=self.logger, phase=PHASE, message="Navigation to login page detected", signal=reached)

        if not host_matches(self.page.url, self.site.sso_host):
            await self._capture("04-NOT-on-sso-page")
            raise UnexpectedRedirectError(
                f"Expected identity provider host {self.site.sso_host}, got {self.page.url}"
            )
        await self._capture("05-on-sso-page")
        return LoginState.CREDENTIAL_PAGE_REACHED

    async def _require_input(self, selectors: tuple[str, ...], label: str) -> Any:
        match = await find_control(
            self.page,
            ControlQuery(selectors=selectors),
            timeout_ms=self.timeouts.element_ms,
            poll_interval_ms=self.timeouts.poll_interval_ms,
        )
        if match is None:
            raise ElementNotFoundError(
                f"{label.capitalize()} field not found within {self.timeouts.element_ms} ms"
            )
        log_event(logger=self.logger, phase=PHASE, message=f"{label} field located", matched=match.label)
        return match.locator

    async def _enter_username(self) -> LoginState:
        field = await self._require_input(page_selectors.USERNAME_INPUTS, "username")
        await field.fill(self.credentials.username)
        await self._capture("05a-email-filled")
        return LoginState.USERNAME_ENTERED

    async def _advance_interstitial(self) -> LoginState | None:
        password_field = await find_control(
            self.page, ControlQuery(selectors=page_selectors.PASSWORD_INPUTS), timeout_ms=self.timeouts.probe_ms
        )
        if password_field is not None:
            log_event(logger=self.logger, phase=PHASE, message="Single-page credential form detected")
            return None

        next_control = await find_control(
            self.page,
            ControlQuery(selectors=page_selectors.SUBMIT_BUTTONS, texts=page_selectors.NEXT_TEXTS),
            timeout_ms=self.timeouts.element_ms,
            poll_interval_ms=self.timeouts.poll_interval_ms,
        )
        if next_control is None:
            raise MissingControlError("Username step has neither a password field nor a Next button")
        await next_control.locator.click()
        log_event(
            logger=self.logger,
            phase=PHASE,
            message="Two-step credential form: advanced past username step",
            matched=next_control.label,
        )
        await pause(self.timeouts.settle_ms)
        await self._capture("05b-after-next-click")
        return LoginState.INTERSTITIAL_ADVANCED

    async def _enter_password(self) -> LoginState:
        field = await self._require_input(page_selectors.PASSWORD_INPUTS, "password")
        await field.fill(self.credentials.password)
        await self._capture("06-credentials-filled")
        return LoginState.PASSWORD_ENTERED

    async def _submit(self) -> LoginState:
        match = await find_control(
            self.page,
            ControlQuery(selectors=page_selectors.SUBMIT_BUTTONS, texts=page_selectors.SUBMIT_TEXTS),
            timeout_ms=self.timeouts.element_ms,
            poll_interval_ms=self.timeouts.poll_interval_ms,
        )
        if match is None:
            match = await find_control(
                self.page, ControlQuery(selectors=page_selectors.GENERIC_SUBMIT), timeout_ms=self.timeouts.probe_ms
            )
        if match is None:
            raise ElementNotFoundError("No submit control found on credential form")
        await match.locator.click()
        log_event(logger=self.logger, phase=PHASE, message="Login form submitted", matched=match.label)
        return LoginState.SUBMITTED

    async def _verify_return(self) -> LoginState:
        origin_host = self.site.origin_host
        await pause(self.timeouts.settle_ms)
        if not host_matches(self.page.url, origin_host):
            log_event(logger=self.logger, phase=PHASE, message="Waiting for redirect after login")
            try:
                await self.page.wait_for_url(
                    lambda url: host_matches(url, origin_host),
                    wait_until="networkidle",
                    timeout=self.timeouts.post_login_ms,
                )
            except PlaywrightTimeoutError:
                pass

        if not host_matches(self.page.url, origin_host):
            await self._capture("07-login-failed")
            raise LoginFailedError(f"Login failed - did not return to {origin_host}; still on {self.page.url}")
        await self._capture("07-after-login-submit")
        log_event(logger=self.logger, phase=PHASE, message="Login successful", final_url=self.page.url)
        return LoginState.RETURNED_TO_ORIGIN
