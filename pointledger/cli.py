"""
Points Maintenance CLI

Runs the ledger maintenance jobs outside the HTTP service (cron, one-off ops).

Usage:
    # Reconcile every user
    points-maintenance reconcile

    # Reconcile one user
    points-maintenance reconcile --user-id 42

    # One-time ledger bootstrap from cached balances
    points-maintenance migrate

    # Expired-point sweep
    points-maintenance expire --verbose
"""

import argparse
import asyncio
import logging
import sys
from collections.abc import Sequence

from pointledger.config import settings
from pointledger.db.session import Database
from pointledger.exceptions import MigrationAlreadyRunError, PointsError
from pointledger.observability import get_logger, setup_logging
from pointledger.services.migration import MigrationService
from pointledger.services.reconciliation import ReconciliationService

logger = get_logger(__name__)


async def _reconcile(database: Database, user_id: int | None) -> int:
    async with database.write_session() as session:
        service = ReconciliationService(session, session_factory=database.write_session_factory)
        if user_id is not None:
            diffs = await service.reconcile_user(user_id)
            for diff in diffs:
                print(
                    f"user={diff.user_id} kind={diff.kind.value} "
                    f"stored={diff.stored} actual={diff.actual} corrected={diff.corrected}"
                )
            return 0

        report = await service.reconcile_all()

    print(
        f"checked={report.users_checked} corrected={report.users_corrected} "
        f"violations={report.integrity_violations} failed={len(report.failed_user_ids)}"
    )
    return 1 if report.failed_user_ids else 0


async def _migrate(database: Database) -> int:
    async with database.write_session() as session:
        try:
            report = await MigrationService(session).run()
        except MigrationAlreadyRunError as exc:
            print(f"Migration already ran (entry {exc.existing_entry_id}); nothing written")
            return 2

    print(
        f"processed={report.users_processed} failed={report.users_failed} "
        f"free={report.migrated_free} paid={report.migrated_paid} "
        f"mismatches={len(report.verification_mismatches)}"
    )
    return 1 if report.users_failed or report.verification_mismatches else 0


async def _expire(database: Database) -> int:
    async with database.write_session() as session:
        report = await ReconciliationService(session).expire_points()

    print(
        f"expired_entries={report.entries_expired} expired_points={report.points_expired} "
        f"failed={report.entries_failed}"
    )
    return 1 if report.entries_failed else 0


async def run(args: argparse.Namespace) -> int:
    """Dispatch a parsed command against a fresh Database."""
    database = Database(settings)
    try:
        if args.command == "reconcile":
            return await _reconcile(database, args.user_id)
        if args.command == "migrate":
            return await _migrate(database)
        return await _expire(database)
    except PointsError as exc:
        logger.error("maintenance_failed", command=args.command, error=str(exc))
        return 1
    finally:
        await database.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="points-maintenance",
        description="Points ledger maintenance jobs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  points-maintenance reconcile
  points-maintenance reconcile --user-id 42
  points-maintenance migrate
  points-maintenance expire --verbose
        """,
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    commands = parser.add_subparsers(dest="command", required=True)
    reconcile = commands.add_parser("reconcile", help="Heal cache drift against the ledger")
    reconcile.add_argument("--user-id", type=int, help="Reconcile a single user")
    commands.add_parser("migrate", help="One-time ledger bootstrap from cached balances")
    commands.add_parser("expire", help="Zero out expired ledger entries")
    return parser


def main(argv: Sequence[str] | None = None) -> None:
    args = build_parser().parse_args(argv)

    setup_logging()
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
