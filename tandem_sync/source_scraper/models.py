from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Union

from tandem_sync.common.json_logger import mask_identity

DEFAULT_TIMEOUT_MS = 180_000


class InteractionOutcome(str, Enum):
    PERFORMED = "performed"
    NOT_APPLICABLE = "not_applicable"
    FAILED = "failed"


@dataclass(frozen=True)
class Credentials:
    username: str
    password: str = field(repr=False)

    def __repr__(self) -> str:
        return f"Credentials(username={mask_identity(self.username)!r}, password='***')"


@dataclass(frozen=True)
class ScrapeRequest:
    credentials: Credentials
    window_days: int
    timeout_ms: int = DEFAULT_TIMEOUT_MS

    def __post_init__(self) -> None:
        if self.window_days < 1:
            raise ValueError(f"window_days must be >= 1; got {self.window_days}")
        if self.timeout_ms <= 0:
            raise ValueError(f"timeout_ms must be positive; got {self.timeout_ms}")

    @classmethod
    def build(cls, *, username: str, password: str, window_days: int, timeout_ms: int = DEFAULT_TIMEOUT_MS) -> ScrapeRequest:
        return cls(
            credentials=Credentials(username=username, password=password),
            window_days=window_days,
            timeout_ms=timeout_ms,
        )


@dataclass(frozen=True)
class DownloadArtifact:
    content: bytes = field(repr=False)
    suggested_filename: str
    completed_at: datetime
    source: str = "download_event"

    @property
    def size(self) -> int:
        return len(self.content)


@dataclass(frozen=True)
class DateRange:
    start: datetime
    end: datetime

    @classmethod
    def ending_now(cls, days: int, *, now: datetime | None = None) -> DateRange:
        end = now or datetime.now(timezone.utc)
        return cls(start=end - timedelta(days=days), end=end)

    @property
    def days(self) -> float:
        return (self.end - self.start) / timedelta(days=1)


@dataclass(frozen=True)
class Success:
    artifact: DownloadArtifact
    date_range: DateRange
    range_selection: InteractionOutcome = InteractionOutcome.PERFORMED

    ok = True


@dataclass(frozen=True)
class Failure:
    error: str
    error_type: str = "UnknownScraperError"

    ok = False


ScrapeResult = Union[Success, Failure]
