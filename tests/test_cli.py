"""
Tests for the maintenance CLI.
"""

from unittest.mock import AsyncMock, patch

import pytest

from pointledger import cli
from pointledger.exceptions import MigrationAlreadyRunError
from pointledger.models.domain import ExpiryReport, MigrationReport, ReconciliationReport


class TestParser:
    """Tests for build_parser."""

    def test_reconcile_user(self):
        args = cli.build_parser().parse_args(["reconcile", "--user-id", "42"])
        assert args.command == "reconcile"
        assert args.user_id == 42

    def test_reconcile_all(self):
        args = cli.build_parser().parse_args(["reconcile"])
        assert args.user_id is None

    def test_verbose_flag(self):
        args = cli.build_parser().parse_args(["--verbose", "expire"])
        assert args.verbose is True
        assert args.command == "expire"

    def test_command_required(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args([])


class FakeDatabase:
    """Stands in for Database; sessions come from the test factory."""

    def __init__(self, session_factory) -> None:
        self.write_session_factory = session_factory
        self.closed = False

    def write_session(self):
        return self.write_session_factory()

    async def close(self) -> None:
        self.closed = True


class TestRun:
    """Tests for command dispatch."""

    async def test_reconcile_all_exit_code(self, session_factory):
        database = FakeDatabase(session_factory)
        args = cli.build_parser().parse_args(["reconcile"])

        with patch.object(cli, "Database", return_value=database):
            assert await cli.run(args) == 0
        assert database.closed is True

    async def test_reconcile_failures_exit_nonzero(self, session_factory):
        args = cli.build_parser().parse_args(["reconcile"])
        report = ReconciliationReport(users_checked=2, failed_user_ids=[7])

        with (
            patch.object(cli, "Database", return_value=FakeDatabase(session_factory)),
            patch.object(
                cli.ReconciliationService, "reconcile_all", AsyncMock(return_value=report)
            ),
        ):
            assert await cli.run(args) == 1

    async def test_migrate_already_run(self, session_factory):
        args = cli.build_parser().parse_args(["migrate"])

        with (
            patch.object(cli, "Database", return_value=FakeDatabase(session_factory)),
            patch.object(
                cli.MigrationService,
                "run",
                AsyncMock(side_effect=MigrationAlreadyRunError(existing_entry_id=3)),
            ),
        ):
            assert await cli.run(args) == 2

    async def test_migrate_success(self, session_factory):
        args = cli.build_parser().parse_args(["migrate"])

        with (
            patch.object(cli, "Database", return_value=FakeDatabase(session_factory)),
            patch.object(
                cli.MigrationService,
                "run",
                AsyncMock(return_value=MigrationReport(users_processed=1, migrated_free=5)),
            ),
        ):
            assert await cli.run(args) == 0

    async def test_expire(self, session_factory):
        args = cli.build_parser().parse_args(["expire"])

        with (
            patch.object(cli, "Database", return_value=FakeDatabase(session_factory)),
            patch.object(
                cli.ReconciliationService,
                "expire_points",
                AsyncMock(return_value=ExpiryReport(entries_expired=2, points_expired=40)),
            ),
        ):
            assert await cli.run(args) == 0
