"""Headless-browser scraper for the Tandem Source daily timeline export."""

from tandem_sync.source_scraper.models import (
    Credentials,
    DateRange,
    DownloadArtifact,
    Failure,
    InteractionOutcome,
    ScrapeRequest,
    ScrapeResult,
    Success,
)
from tandem_sync.source_scraper.orchestrator import run

__all__ = [
    "Credentials",
    "DateRange",
    "DownloadArtifact",
    "Failure",
    "InteractionOutcome",
    "ScrapeRequest",
    "ScrapeResult",
    "Success",
    "run",
]
