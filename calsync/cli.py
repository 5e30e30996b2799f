"""Batch commands.

Usage:
    calsync sync-all --provider google_calendar [--dry-run]
    calsync cleanup-expired-events [--days 7] [--dry-run]
    calsync refresh-tokens [--hours-ahead 2] [--provider outlook_calendar] [--dry-run]
"""
import argparse
import sys

from calsync.core.config import settings
from calsync.core.database import create_db_and_tables
from calsync.core.logging_setup import configure_logging
from calsync.errors import ValidationError
from calsync.integrations.batch import (
    cleanup_expired_meet_links,
    refresh_expiring_tokens,
    sync_all_for_provider,
)
from calsync.integrations.runtime import IntegrationRuntime, get_runtime
from calsync.models import Provider

PROVIDERS = [provider.value for provider in Provider]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="calsync", description="Calendar integration batch commands")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    sync_all = subparsers.add_parser("sync-all", help="Sync all active integrations of a provider")
    sync_all.add_argument("--provider", choices=PROVIDERS, default=Provider.GOOGLE_CALENDAR.value)
    sync_all.add_argument("--dry-run", action="store_true", help="Show what would be synced")

    cleanup = subparsers.add_parser("cleanup-expired-events", help="Delete old Google Meet links")
    cleanup.add_argument(
        "--days",
        type=int,
        default=settings.meet_retention_days,
        help="Retention period in days after the meeting ended",
    )
    cleanup.add_argument("--dry-run", action="store_true", help="Count without deleting")

    refresh = subparsers.add_parser("refresh-tokens", help="Refresh tokens that expire soon")
    refresh.add_argument(
        "--hours-ahead",
        type=int,
        default=settings.token_refresh_hours_ahead,
        help="Refresh tokens expiring within this many hours",
    )
    refresh.add_argument("--provider", choices=PROVIDERS, help="Only refresh this provider")
    refresh.add_argument("--dry-run", action="store_true", help="Show what would be refreshed")

    return parser


def run(args: argparse.Namespace, runtime: IntegrationRuntime) -> int:
    """Execute a parsed command. Returns the process exit code."""
    prefix = "[dry run] " if getattr(args, "dry_run", False) else ""

    if args.command == "sync-all":
        result = sync_all_for_provider(runtime, args.provider, dry_run=args.dry_run)
        print(
            f"{prefix}{args.provider}: {result.success} synced, "
            f"{result.skipped} skipped, {result.failure} failed"
        )
        for error in result.errors:
            print(f"  error: {error}")
        return 1 if result.failure else 0

    if args.command == "cleanup-expired-events":
        removed = cleanup_expired_meet_links(runtime, args.days, dry_run=args.dry_run)
        verb = "would delete" if args.dry_run else "deleted"
        print(f"{prefix}{verb} {removed} Meet links older than {args.days} days")
        return 0

    if args.command == "refresh-tokens":
        result = refresh_expiring_tokens(
            runtime, hours_ahead=args.hours_ahead, provider=args.provider, dry_run=args.dry_run
        )
        print(
            f"{prefix}{result.success} refreshed, {result.expired} marked expired, "
            f"{result.failure} failed, {result.skipped} skipped"
        )
        for error in result.errors:
            print(f"  error: {error}")
        return 1 if result.failure else 0

    raise ValidationError(f"Unknown command: {args.command}")


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(to_file=False, verbose=args.verbose)
    create_db_and_tables()
    return run(args, get_runtime())


if __name__ == "__main__":
    sys.exit(main())
