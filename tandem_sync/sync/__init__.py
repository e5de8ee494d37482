"""Persistence and scheduling collaborators around the scraper."""

from tandem_sync.sync.handler import get_service_status, perform_sync
from tandem_sync.sync.models import ReportMetadata, ServiceStatus, StoredReport, SyncResult

__all__ = [
    "ReportMetadata",
    "ServiceStatus",
    "StoredReport",
    "SyncResult",
    "get_service_status",
    "perform_sync",
]
