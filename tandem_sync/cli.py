from __future__ import annotations

import argparse
import asyncio
import json
from typing import Any, List, Optional

from tandem_sync.common.db import dispose_engines, run_alembic_upgrade
from tandem_sync.common.json_logger import JsonLogger, get_logger, log_event, new_run_id
from tandem_sync.sync import handler

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_PREREQ = 2
EXIT_IN_PROGRESS = 3


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


async def _run_migrations(*, logger: JsonLogger, revision: str = "head") -> None:
    from tandem_sync.config import config as runtime_config

    log_event(logger=logger, phase="db", message="running migrations", revision=revision)
    await asyncio.to_thread(
        run_alembic_upgrade,
        revision=revision,
        database_url=runtime_config.database_url,
        alembic_config_path=runtime_config.alembic_config,
    )


async def _sync_async(args: argparse.Namespace) -> int:
    logger = get_logger(run_id=args.run_id or new_run_id())
    try:
        if args.run_migrations:
            await _run_migrations(logger=logger)
        result = await handler.perform_sync(logger=logger, report_days=args.report_days)
    finally:
        await dispose_engines()
        logger.close()

    _print_json(result.to_dict())
    if result.success:
        return EXIT_OK
    if result.error_type == "ConfigError":
        return EXIT_PREREQ
    if result.error == handler.SYNC_IN_PROGRESS:
        return EXIT_IN_PROGRESS
    return EXIT_FAILED


async def _status_async() -> int:
    logger = get_logger()
    try:
        status = await handler.get_service_status(logger=logger)
    finally:
        await dispose_engines()
        logger.close()
    _print_json(status.to_dict())
    return EXIT_OK


async def _reports_async() -> int:
    from tandem_sync.config import config as runtime_config

    logger = get_logger()
    try:
        stored = await handler.report_store_for(runtime_config, logger).list_reports()
    finally:
        await dispose_engines()
        logger.close()
    _print_json([report.to_dict() for report in stored])
    return EXIT_OK


async def _cleanup_async(args: argparse.Namespace) -> int:
    from tandem_sync.config import config as runtime_config

    logger = get_logger()
    keep = args.keep if args.keep is not None else runtime_config.report_keep_count
    try:
        deleted = await handler.report_store_for(runtime_config, logger).cleanup_old_reports(keep)
    finally:
        await dispose_engines()
        logger.close()
    _print_json({"deleted": deleted, "keep": keep})
    return EXIT_OK


def _positive_int(value: str) -> int:
    parsed = int(value)
    if parsed < 1:
        raise argparse.ArgumentTypeError(f"must be >= 1; got {parsed}")
    return parsed


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tandem_sync", description="Tandem Source report sync")
    subparsers = parser.add_subparsers(dest="command", required=True)

    sync_parser = subparsers.add_parser("sync", help="Log in, export the daily timeline CSV and store it")
    sync_parser.add_argument("--run-id", dest="run_id", type=str, default=None, help="Override generated run id")
    sync_parser.add_argument(
        "--report-days",
        dest="report_days",
        type=_positive_int,
        default=None,
        help="Override REPORT_DAYS for this run",
    )
    sync_parser.add_argument(
        "--run-migrations",
        action="store_true",
        dest="run_migrations",
        help="Run Alembic migrations before syncing",
    )

    subparsers.add_parser("status", help="Print last sync status and report count")
    subparsers.add_parser("reports", help="List stored reports, newest first")

    cleanup_parser = subparsers.add_parser("cleanup", help="Delete all but the newest reports")
    cleanup_parser.add_argument("--keep", type=_positive_int, default=None, help="Override REPORT_KEEP_COUNT")

    db_parser = subparsers.add_parser("db", help="Database operations")
    db_sub = db_parser.add_subparsers(dest="db_command", required=True)
    upgrade_parser = db_sub.add_parser("upgrade", help="Run Alembic upgrade head")
    upgrade_parser.add_argument("--revision", default="head")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "sync":
        return asyncio.run(_sync_async(args))

    if args.command == "status":
        return asyncio.run(_status_async())

    if args.command == "reports":
        return asyncio.run(_reports_async())

    if args.command == "cleanup":
        return asyncio.run(_cleanup_async(args))

    if args.command == "db" and args.db_command == "upgrade":
        from tandem_sync.config import config as runtime_config

        run_alembic_upgrade(
            revision=args.revision,
            database_url=runtime_config.database_url,
            alembic_config_path=runtime_config.alembic_config,
        )
        return EXIT_OK

    parser.error("Unknown command")
    return EXIT_FAILED


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
