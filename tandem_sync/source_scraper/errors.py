"""Failure taxonomy for a scrape run.

Every class here is fatal to the current run. The orchestrator converts
them into a ``Failure`` result; none of them escapes ``run()``.
"""

from __future__ import annotations


class ScraperError(Exception):
    """Base class for all scrape failures."""


class BrowserLaunchError(ScraperError):
    """The browser binary could not be resolved or the process failed to start."""


class UnexpectedRedirectError(ScraperError):
    """Navigation did not land on the expected host."""


class ElementNotFoundError(ScraperError):
    """A required control or field stayed absent past its timeout."""


class MissingControlError(ScraperError):
    """A detected flow branch lacks the control needed to continue."""


class LoginFailedError(ScraperError):
    """Post-submit verification did not return to the origin application."""


class ExportControlNotFoundError(ScraperError):
    """The export control was not found on the report view."""


class DownloadTimeoutError(ScraperError):
    """No download completed within the allotted wait."""


class ScrapeTimeoutError(ScraperError):
    """The overall run budget expired before the flows finished."""


class UnknownScraperError(ScraperError):
    """Any other exception surfaced by the browser-automation layer."""
