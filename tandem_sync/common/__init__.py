"""Shared helpers used by the scraper and the sync layer."""

from tandem_sync.common.json_logger import JsonLogger, get_logger, log_event, new_run_id, timed_event

__all__ = ["JsonLogger", "get_logger", "log_event", "new_run_id", "timed_event"]
