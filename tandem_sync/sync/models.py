from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict


def ensure_utc(value: datetime | None) -> datetime | None:
    """SQLite returns naive datetimes; everything stored here is UTC."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass
class SyncResult:
    success: bool
    timestamp: datetime
    report_days: int
    filename: str | None = None
    error: str | None = None
    error_type: str | None = None
    run_id: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["timestamp"] = _isoformat(self.timestamp)
        return payload


@dataclass(frozen=True)
class StoredReport:
    url: str
    filename: str


@dataclass(frozen=True)
class ReportMetadata:
    filename: str
    url: str
    size_bytes: int
    created_at: datetime
    source_filename: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["created_at"] = _isoformat(self.created_at)
        return payload


@dataclass
class ServiceStatus:
    configured: bool
    last_sync_time: datetime | None
    last_sync_success: bool | None
    last_sync_error: str | None
    report_count: int
    next_scheduled_sync: datetime | None

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["last_sync_time"] = _isoformat(self.last_sync_time)
        payload["next_scheduled_sync"] = _isoformat(self.next_scheduled_sync)
        return payload
