"""Operator CLI for the ENS batch jobs.

Usage:
    python -m ensmarket.cli COMMAND [OPTIONS]

Examples:
    # Preview what a reconciliation sweep would change
    python -m ensmarket.cli reconcile --dry-run

    # Reconcile up to 200 intents untouched for 30 minutes
    python -m ensmarket.cli reconcile --limit 200 --stale-minutes 30

    # Poll the chain for recorded transactions
    python -m ensmarket.cli watch

    # Re-dispatch failed webhook deliveries
    python -m ensmarket.cli retry-webhooks --limit 20

    # Delete processed ledger rows older than 7 days
    python -m ensmarket.cli prune --processed-days 7

    # Print the status summary
    python -m ensmarket.cli status

Exit codes: 0 (success), 1 (error), 3 (skipped: another replica holds the lock)
"""

import asyncio
import json
import sys
from argparse import ArgumentParser, Namespace
from typing import Any

import structlog

from ensmarket.core.config import Settings, configure_logging
from ensmarket.core.database import get_engine, setup_db_session
from ensmarket.services.container import ServiceContainer, build_container
from ensmarket.workers.jobs import (
    JobOutcome,
    run_ops_retention_once,
    run_reconciliation_once,
    run_tx_watcher_once,
    run_webhook_retry_once,
)

logger = structlog.get_logger()

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_SKIPPED = 3


def parse_args(argv: list[str] | None = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(
        prog="python -m ensmarket.cli",
        description="Run ENS purchase intent batch jobs once",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging (DEBUG level)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    reconcile = subparsers.add_parser("reconcile", help="Run one reconciliation sweep")
    reconcile.add_argument("--limit", type=int, help="Max intents to scan (1-500)")
    reconcile.add_argument(
        "--stale-minutes", type=int, help="Only intents untouched for this long (1-10080)"
    )
    reconcile.add_argument(
        "--dry-run", action="store_true", help="Report decisions without database writes"
    )

    watch = subparsers.add_parser("watch", help="Run one transaction watcher pass")
    watch.add_argument("--limit", type=int, help="Max intents to check (1-500)")

    retry = subparsers.add_parser("retry-webhooks", help="Re-dispatch failed webhook deliveries")
    retry.add_argument("--limit", type=int, help="Max ledger rows to claim")

    prune = subparsers.add_parser(
        "prune", help="Delete old processed/dead-lettered deliveries and audit events"
    )
    prune.add_argument("--batch-limit", type=int, help="Max rows deleted per category (1-5000)")
    prune.add_argument("--processed-days", type=int, help="Keep processed deliveries this long")
    prune.add_argument(
        "--dead-letter-days", type=int, help="Keep dead-lettered deliveries this long"
    )
    prune.add_argument("--audit-days", type=int, help="Keep operator audit events this long")

    subparsers.add_parser("status", help="Print intent/webhook counts")

    return parser.parse_args(argv)


async def run_command(args: Namespace, container: ServiceContainer) -> tuple[int, dict[str, Any]]:
    """Execute one command.

    Returns:
        (exit code, JSON-safe summary)
    """
    if args.command == "status":
        return EXIT_OK, await container.worker_status.summary()

    outcome: JobOutcome
    if args.command == "reconcile":
        outcome = await run_reconciliation_once(
            container, limit=args.limit, stale_minutes=args.stale_minutes, dry_run=args.dry_run
        )
    elif args.command == "watch":
        outcome = await run_tx_watcher_once(container, limit=args.limit)
    elif args.command == "retry-webhooks":
        outcome = await run_webhook_retry_once(container, limit=args.limit)
    elif args.command == "prune":
        outcome = await run_ops_retention_once(
            container,
            batch_limit=args.batch_limit,
            processed_retention_days=args.processed_days,
            dead_letter_retention_days=args.dead_letter_days,
            audit_retention_days=args.audit_days,
        )
    else:
        raise ValueError(f"Unknown command: {args.command}")

    return (EXIT_SKIPPED if outcome.skipped else EXIT_OK), outcome.to_dict()


async def async_main(argv: list[str] | None = None) -> int:
    """Main CLI entry point (async).

    Returns:
        Exit code: 0 (success), 1 (error), 3 (skipped)
    """
    args = parse_args(argv)

    settings = Settings()  # type: ignore[call-arg]
    if args.verbose:
        settings.log_level = "DEBUG"
    configure_logging(settings)

    session_factory = setup_db_session(settings.database_url, pool_size=3)
    container = build_container(settings, session_factory=session_factory)

    logger.info("cli.start", command=args.command)
    try:
        code, summary = await run_command(args, container)
    except Exception as e:
        logger.error("cli.fatal_error", command=args.command, error=str(e), exc_info=True)
        return EXIT_ERROR
    finally:
        await get_engine(session_factory).dispose()

    print(json.dumps(summary, indent=2, default=str))
    if code == EXIT_SKIPPED:
        logger.warning("cli.skipped", command=args.command, reason="lock_held")
    else:
        logger.info("cli.complete", command=args.command)
    return code


def main(argv: list[str] | None = None) -> int:
    """Synchronous wrapper for async main."""
    return asyncio.run(async_main(argv))


if __name__ == "__main__":
    sys.exit(main())
