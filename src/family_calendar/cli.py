"""Command-line interface for the family calendar.

Meant to be driven by an external scheduler (cron, systemd timer, k8s
CronJob) for periodic syncing.
"""

import argparse
import asyncio
import logging
import sys
import uuid

from family_calendar.calendar.service import ExternalCalendarService, SyncResult
from family_calendar.database.connection import close_db, create_tables, get_db, init_db
from family_calendar.repositories.sql import build_sql_repositories

logger = logging.getLogger(__name__)


def _format_result(result: SyncResult) -> str:
    if result.status == "error":
        line = f"{result.connection_id}  error    {result.error_message}"
        if result.retry_after is not None:
            line += f" (retry after {result.retry_after}s)"
        return line
    return (
        f"{result.connection_id}  {result.status:<8} "
        f"+{result.events_added} ~{result.events_updated} -{result.events_removed}"
    )


async def _sync(user_id: uuid.UUID) -> int:
    await init_db()
    try:
        async with get_db() as session:
            service = ExternalCalendarService(*build_sql_repositories(session))
            outcome = await service.sync_all_calendars(user_id)
    finally:
        await close_db()

    if outcome.is_err:
        print(f"Sync failed: {outcome.error.message}", file=sys.stderr)
        return 1

    if not outcome.value:
        print("No external calendars connected.")
        return 0

    for result in outcome.value:
        print(_format_result(result))

    return 1 if any(r.status == "error" for r in outcome.value) else 0


async def _init_db() -> int:
    await init_db()
    try:
        await create_tables()
    finally:
        await close_db()
    print("Database tables created.")
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        prog="family-calendar",
        description="Family Calendar - external calendar sync tools",
    )
    parser.add_argument(
        "--version",
        action="version",
        version="%(prog)s 0.1.0",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Sync command
    sync_parser = subparsers.add_parser(
        "sync", help="Sync all external calendars of a user"
    )
    sync_parser.add_argument(
        "--user-id",
        required=True,
        type=uuid.UUID,
        help="UUID of the user whose calendars to sync",
    )

    # Init-db command
    subparsers.add_parser(
        "init-db", help="Create database tables (development only)"
    )

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command is None:
        parser.print_help()
        return 0

    if args.command == "sync":
        return asyncio.run(_sync(args.user_id))
    if args.command == "init-db":
        return asyncio.run(_init_db())

    parser.error(f"Unknown command: {args.command}")
    return 2


if __name__ == "__main__":
    sys.exit(main())
