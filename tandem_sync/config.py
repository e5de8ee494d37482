"""
CONFIG.PY — SINGLE SOURCE OF TRUTH (SSOT)

This module is the ONLY place allowed to read environment variables.

All config is loaded ONCE at import and cached in a single in-memory Config
object. No dynamic reload. No direct env reads outside this module.

Portal credentials are optional at load time: the sync caller checks them
with validate_scraper_config() before invoking the scraper, so an unset
credential is reported as a prerequisite failure instead of crashing import.
Malformed values (non-integer timeouts, unknown booleans) fail early.

To use a config value, import:

    from tandem_sync.config import config
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from dotenv import load_dotenv


# Directory containing the top-level package
PROJECT_ROOT = Path(__file__).resolve().parents[1]

# Load variables from .env if it exists; OS env overrides these automatically
load_dotenv(PROJECT_ROOT / ".env")

if os.getenv("DEBUG_CONFIG") == "1":
    print("[CONFIG] Loaded .env from:", PROJECT_ROOT / ".env")


logger = logging.getLogger(__name__)

CREDENTIAL_KEYS = ["TANDEM_USERNAME", "TANDEM_PASSWORD"]

EXECUTION_CONTEXTS = {"constrained", "open_host"}

TRUE_VALUES = {"1", "true", "yes", "on"}
FALSE_VALUES = {"0", "false", "no", "off"}

DEFAULT_DATA_DIR = PROJECT_ROOT / "data"


class ConfigError(RuntimeError):
    """Raised when configuration cannot be loaded."""


def _optional(env: Mapping[str, str], key: str, default: str = "") -> str:
    value = env.get(key)
    if value is None:
        return default
    stripped = value.strip()
    return stripped or default


def _parse_bool(value: str, *, key: str) -> bool:
    normalized = value.strip().lower()
    if normalized in TRUE_VALUES:
        return True
    if normalized in FALSE_VALUES:
        return False
    message = f"Config key {key} must be a boolean string; got {value!r}"
    logger.error(message)
    raise ConfigError(message)


def _parse_int(value: str, *, key: str, minimum: int | None = None) -> int:
    try:
        parsed = int(value.strip())
    except (TypeError, ValueError):
        message = f"Config key {key} must be an integer; got {value!r}"
        logger.error(message)
        raise ConfigError(message)
    if minimum is not None and parsed < minimum:
        message = f"Config key {key} must be >= {minimum}; got {parsed}"
        logger.error(message)
        raise ConfigError(message)
    return parsed


def _clean_url(value: str, *, key: str) -> str:
    stripped = value.strip().rstrip("/")
    if not stripped:
        message = f"Config key {key} cannot be blank"
        logger.error(message)
        raise ConfigError(message)
    return stripped


def _parse_execution_context(value: str) -> str:
    normalized = value.strip().lower().replace("-", "_")
    if not normalized:
        return ""
    if normalized not in EXECUTION_CONTEXTS:
        message = f"Config key EXECUTION_CONTEXT must be one of {sorted(EXECUTION_CONTEXTS)}; got {value!r}"
        logger.error(message)
        raise ConfigError(message)
    return normalized


@dataclass(slots=True, frozen=True)
class Config:
    run_env: str
    tandem_username: str
    tandem_password: str
    report_days: int
    scrape_timeout_ms: int

    tandem_base_url: str
    tandem_sso_host: str
    target_country: str
    target_language: str

    debug_browser: bool
    debug_capture_dir: str
    execution_context: str
    vercel_env: str
    aws_lambda_function_name: str
    chrome_executable: str
    chromium_executable: str
    download_watch_dir: str
    download_file_pattern: str

    database_url: str
    alembic_config: str
    reports_root: str
    json_log_file: str
    report_keep_count: int
    sync_lease_ttl_s: int
    sync_interval_hours: int

    @property
    def serverless(self) -> bool:
        return self.vercel_env == "production" or bool(self.aws_lambda_function_name)

    @classmethod
    def load_from_env(cls, environ: Mapping[str, str] | None = None) -> Config:
        env = os.environ if environ is None else environ

        default_db_path = DEFAULT_DATA_DIR / "tandem_sync.db"
        report_days = _parse_int(_optional(env, "REPORT_DAYS", "2"), key="REPORT_DAYS", minimum=1)
        scrape_timeout_ms = _parse_int(
            _optional(env, "SCRAPE_TIMEOUT_MS", "180000"), key="SCRAPE_TIMEOUT_MS", minimum=1
        )
        report_keep_count = _parse_int(
            _optional(env, "REPORT_KEEP_COUNT", "30"), key="REPORT_KEEP_COUNT", minimum=1
        )
        sync_lease_ttl_s = _parse_int(
            _optional(env, "SYNC_LEASE_TTL_S", "600"), key="SYNC_LEASE_TTL_S", minimum=1
        )
        sync_interval_hours = _parse_int(
            _optional(env, "SYNC_INTERVAL_HOURS", "12"), key="SYNC_INTERVAL_HOURS", minimum=1
        )
        debug_browser = _parse_bool(_optional(env, "DEBUG_BROWSER", "false"), key="DEBUG_BROWSER")

        return cls(
            run_env=_optional(env, "RUN_ENV", "local"),
            tandem_username=_optional(env, "TANDEM_USERNAME"),
            tandem_password=_optional(env, "TANDEM_PASSWORD"),
            report_days=report_days,
            scrape_timeout_ms=scrape_timeout_ms,
            tandem_base_url=_clean_url(
                _optional(env, "TANDEM_BASE_URL", "https://source.tandemdiabetes.com"),
                key="TANDEM_BASE_URL",
            ),
            tandem_sso_host=_optional(env, "TANDEM_SSO_HOST", "sso.tandemdiabetes.com").lower(),
            target_country=_optional(env, "TARGET_COUNTRY", "United States"),
            target_language=_optional(env, "TARGET_LANGUAGE", "English"),
            debug_browser=debug_browser,
            debug_capture_dir=_optional(env, "DEBUG_CAPTURE_DIR", str(Path.cwd() / "debug-captures")),
            execution_context=_parse_execution_context(_optional(env, "EXECUTION_CONTEXT")),
            vercel_env=_optional(env, "VERCEL_ENV"),
            aws_lambda_function_name=_optional(env, "AWS_LAMBDA_FUNCTION_NAME"),
            chrome_executable=_optional(env, "CHROME_EXECUTABLE"),
            chromium_executable=_optional(env, "CHROMIUM_EXECUTABLE"),
            download_watch_dir=_optional(env, "DOWNLOAD_WATCH_DIR"),
            download_file_pattern=_optional(env, "DOWNLOAD_FILE_PATTERN", "CSV_*.csv"),
            database_url=_optional(env, "DATABASE_URL", f"sqlite+aiosqlite:///{default_db_path}"),
            alembic_config=_optional(env, "ALEMBIC_CONFIG", str(PROJECT_ROOT / "alembic.ini")),
            reports_root=_optional(env, "REPORTS_ROOT", str(DEFAULT_DATA_DIR / "reports")),
            json_log_file=_optional(env, "JSON_LOG_FILE"),
            report_keep_count=report_keep_count,
            sync_lease_ttl_s=sync_lease_ttl_s,
            sync_interval_hours=sync_interval_hours,
        )


def validate_scraper_config(app_config: Config | None = None) -> tuple[bool, list[str]]:
    """Return whether portal credentials are present, plus the missing keys."""

    cfg = app_config or config
    values = {
        "TANDEM_USERNAME": cfg.tandem_username,
        "TANDEM_PASSWORD": cfg.tandem_password,
    }
    missing = [key for key in CREDENTIAL_KEYS if not values.get(key)]
    return not missing, missing


config = Config.load_from_env()
