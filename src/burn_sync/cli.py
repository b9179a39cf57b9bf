"""
Command-line interface for Burn Sync.

Provides CLI commands for operating the sync service:
- run: Subscribe to program logs and deliver burn events until interrupted
- backfill: Replay recent program history once
- init-db: Initialize the database schema
- prune: Drop old processed-signature records
- config: Print the effective configuration with secrets redacted

Usage:
    burn-sync run [--dry-run]
    burn-sync backfill [--before SIGNATURE] [--limit N] [--dry-run]
    burn-sync init-db
    burn-sync prune [--older-than-days N]
    burn-sync config
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from collections.abc import Sequence
from datetime import timedelta
from typing import Literal

from pydantic import ValidationError

from burn_sync.config import Settings, get_settings
from burn_sync.pipeline import Pipeline
from burn_sync.storage.database import DatabaseManager
from burn_sync.storage.signature_ledger import SignatureLedger, StorageError

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(level=settings.get_logging_level(), format=LOG_FORMAT)


def _load_settings() -> Settings | None:
    try:
        return get_settings()
    except ValidationError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return None


def _check_ingest_requirements(
    settings: Settings, *, command: Literal["run", "backfill"], dry_run: bool
) -> str | None:
    if dry_run and not settings.dry_run:
        settings = settings.model_copy(update={"dry_run": True})
    try:
        settings.validate_requirements(command=command)
    except ValueError as e:
        return str(e)
    return None


async def _run_pipeline(pipeline: Pipeline) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, pipeline.request_stop)
        except NotImplementedError:  # pragma: no cover
            pass
    await pipeline.run()


def cmd_run(args: argparse.Namespace, settings: Settings) -> int:
    """Run the live pipeline until SIGINT/SIGTERM."""
    error = _check_ingest_requirements(settings, command="run", dry_run=args.dry_run)
    if error:
        print(f"Error: {error}", file=sys.stderr)
        return 1

    pipeline = Pipeline(settings, dry_run=True if args.dry_run else None)
    try:
        asyncio.run(_run_pipeline(pipeline))
    except KeyboardInterrupt:
        pass
    stats = pipeline.stats
    logger.info(
        "Exiting: notifications=%d completed=%d incomplete=%d errors=%d",
        stats.notifications_received,
        stats.transactions_completed,
        stats.transactions_incomplete,
        stats.errors,
    )
    return 0


def cmd_backfill(args: argparse.Namespace, settings: Settings) -> int:
    """Run one backfill pass and print its summary."""
    error = _check_ingest_requirements(settings, command="backfill", dry_run=args.dry_run)
    if error:
        print(f"Error: {error}", file=sys.stderr)
        return 1

    pipeline = Pipeline(settings, dry_run=True if args.dry_run else None)
    try:
        result = asyncio.run(pipeline.run_backfill(before=args.before, limit=args.limit))
    except Exception as e:
        print(f"Backfill failed: {e}", file=sys.stderr)
        return 1

    print(
        json.dumps(
            {
                "processed": result.processed,
                "pages": result.pages,
                "signatures_seen": result.signatures_seen,
                "already_processed": result.already_processed,
                "chain_failed": result.chain_failed,
                "incomplete": result.incomplete,
                "missing": result.missing,
                "errors": result.errors,
                "oldest_signature": result.oldest_signature,
            },
            indent=2,
        )
    )
    return 0


async def _init_db(database_url: str) -> None:
    db = DatabaseManager(database_url)
    try:
        await db.init_schema_async()
    finally:
        await db.dispose_async()


def cmd_init_db(args: argparse.Namespace, settings: Settings) -> int:
    """
    Initialize the database schema.

    Production deployments should prefer ``alembic upgrade head``; this
    command creates any missing tables directly from the models.

    Returns:
        0 on success, 1 on error
    """
    try:
        asyncio.run(_init_db(settings.database.url))
    except Exception as e:
        print(f"Error initializing database: {e}", file=sys.stderr)
        return 1
    print("Database initialized successfully.")
    return 0


async def _prune(database_url: str, older_than: timedelta) -> int:
    db = DatabaseManager(database_url)
    try:
        return await SignatureLedger(db.get_async_session).prune(older_than)
    finally:
        await db.dispose_async()


def cmd_prune(args: argparse.Namespace, settings: Settings) -> int:
    """Delete processed-signature records older than the retention window."""
    days = args.older_than_days
    if days is None:
        days = settings.retention.retention_days
    if days is None:
        print(
            "Error: pass --older-than-days or set SIGNATURES_RETENTION_DAYS",
            file=sys.stderr,
        )
        return 1
    if days < settings.retention.min_retention_days:
        print(
            f"Error: refusing to prune with a window of {days} days "
            f"(minimum is {settings.retention.min_retention_days})",
            file=sys.stderr,
        )
        return 1

    try:
        removed = asyncio.run(_prune(settings.database.url, timedelta(days=days)))
    except StorageError as e:
        print(f"Error pruning signatures: {e}", file=sys.stderr)
        return 1
    print(f"Pruned {removed} processed signatures older than {days} days.")
    return 0


def cmd_config(args: argparse.Namespace, settings: Settings) -> int:
    print(json.dumps(settings.redacted_summary(), indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="burn-sync",
        description="Burn Sync - deliver on-chain burn events to the tokenomics ledger",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # run command
    run_parser = subparsers.add_parser(
        "run",
        help="Run the live sync service",
        description=(
            "Subscribe to the program's logs, deliver burn events to the ledger and "
            "backfill missed history periodically. Stops on SIGINT/SIGTERM."
        ),
    )
    run_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Parse and log events without calling the ledger or marking signatures",
    )
    run_parser.set_defaults(func=cmd_run)

    # backfill command
    backfill_parser = subparsers.add_parser(
        "backfill",
        help="Replay recent program history once",
    )
    backfill_parser.add_argument(
        "--before",
        type=str,
        default=None,
        help="Start below this signature (default: newest)",
    )
    backfill_parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Maximum signatures to examine (default: BACKFILL_LIMIT)",
    )
    backfill_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Parse and log events without calling the ledger or marking signatures",
    )
    backfill_parser.set_defaults(func=cmd_backfill)

    # init-db command
    init_parser = subparsers.add_parser(
        "init-db",
        help="Initialize the database schema",
    )
    init_parser.set_defaults(func=cmd_init_db)

    # prune command
    prune_parser = subparsers.add_parser(
        "prune",
        help="Drop old processed-signature records",
        description=(
            "Delete processed-signature records older than the retention window. "
            "Windows shorter than SIGNATURES_MIN_RETENTION_DAYS are refused."
        ),
    )
    prune_parser.add_argument(
        "--older-than-days",
        type=int,
        default=None,
        help="Retention window in days (default: SIGNATURES_RETENTION_DAYS)",
    )
    prune_parser.set_defaults(func=cmd_prune)

    # config command
    config_parser = subparsers.add_parser(
        "config",
        help="Print the effective configuration (secrets redacted)",
    )
    config_parser.set_defaults(func=cmd_config)

    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Main entry point for the CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    settings = _load_settings()
    if settings is None:
        return 1
    configure_logging(settings)
    return args.func(args, settings)


if __name__ == "__main__":
    sys.exit(main())
