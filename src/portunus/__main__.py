"""Portunus - Entry Point

Usage:
    python -m portunus [--config PATH] [--database-url URL] [--migrations DIR] COMMAND

Commands:
    up [N]        - Apply pending migrations (all, or the next N)
    down [N]      - Revert the newest N applied migrations (default 1)
    status        - Show every migration and whether it is applied
    new LABEL     - Create empty script files for a new migration
    version       - Show version

Examples:
    python -m portunus up
    python -m portunus --database-url postgres://app@db/app up
    python -m portunus down 2 --dry-run
    python -m portunus new "add users email unique"

Exit codes:
    0 success, 1 other error, 2 a migration failed, 3 lock timeout,
    4 invalid migration source, 130 interrupted
"""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Optional, Sequence

import structlog

from portunus import __version__
from portunus.core.config import DEFAULT_MIGRATIONS_PATH, ConfigManager, find_config_file
from portunus.core.errors import (
    EXIT_APPLY_FAILED,
    EXIT_FAILURE,
    EXIT_INTERRUPTED,
    EXIT_OK,
    MigrationApplyError,
    PortunusError,
)
from portunus.core.logging import setup_logging
from portunus.core.shutdown import ShutdownManager
from portunus.domain.migration import MigrationStatus, RunReport


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="portunus",
        description="Versioned SQL schema migrations",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"Portunus {__version__}",
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to configuration file (TOML)",
    )

    parser.add_argument(
        "--database-url",
        default=None,
        help="Database URL (sqlite:///path.db or postgres://...)",
    )

    parser.add_argument(
        "--migrations",
        default=None,
        help="Migration directory",
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Log level",
    )

    parser.add_argument(
        "--json-logs",
        action="store_true",
        default=None,
        help="Emit logs as JSON",
    )

    parser.add_argument(
        "--lock-timeout",
        type=float,
        default=None,
        help="Seconds to wait for the migration lock (negative waits forever)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    up = subparsers.add_parser("up", help="Apply pending migrations")
    up.add_argument("n", type=int, nargs="?", default=None, help="Apply at most N migrations")
    up.add_argument("--dry-run", action="store_true", help="Show the plan without running it")

    down = subparsers.add_parser("down", help="Revert applied migrations")
    down.add_argument("n", type=int, nargs="?", default=1, help="Revert N migrations (default 1)")
    down.add_argument("--all", action="store_true", help="Revert every applied migration")
    down.add_argument("--dry-run", action="store_true", help="Show the plan without running it")

    subparsers.add_parser("status", help="Show migration status")

    new = subparsers.add_parser("new", help="Create a new migration")
    new.add_argument("label", help="Short description, e.g. 'add users email unique'")
    new.add_argument(
        "--irreversible",
        action="store_true",
        help="Create a single up-only script instead of an up/down pair",
    )

    subparsers.add_parser("version", help="Show version")

    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help(sys.stderr)
        parser.exit(EXIT_FAILURE)
    return args


def load_config(args: argparse.Namespace) -> ConfigManager:
    """Build the configuration, with command-line flags taking precedence."""
    config_path = find_config_file(args.config)
    config = ConfigManager(config_path)

    config.set_override("database.url", args.database_url)
    config.set_override("migrations.path", args.migrations)
    config.set_override("lock.timeout_seconds", args.lock_timeout)
    config.set_override("portunus.log_level", args.log_level)
    config.set_override("portunus.log_json", args.json_logs)
    return config


def format_status(rows: Sequence[MigrationStatus]) -> str:
    """Render status rows as a plain-text table."""
    if not rows:
        return "No migrations found."

    lines = [f"{'VERSION':<16} {'STATE':<9} {'APPLIED AT':<20} LABEL"]
    for row in rows:
        applied_at = row.applied_at.strftime("%Y-%m-%d %H:%M:%S") if row.applied_at else "-"
        label = row.label if row.reversible is not False else f"{row.label} (irreversible)"
        lines.append(f"{row.identity:<16} {row.state.value:<9} {applied_at:<20} {label}")
    return "\n".join(lines)


def format_report(report: RunReport) -> str:
    """One line per migration that ran (or would run, for a dry run)."""
    verb = "Applied" if report.direction.value == "up" else "Reverted"
    if report.dry_run:
        if not report.planned:
            return "Nothing to do."
        verb = "Would apply" if report.direction.value == "up" else "Would revert"
        return "\n".join(f"{verb} {m.identity} {m.label}" for m in report.planned)

    if not report.results:
        return "Nothing to do."
    return "\n".join(
        f"{verb} {r.identity} {r.label} ({r.execution_ms} ms)" for r in report.results
    )


def report_error(error: PortunusError) -> None:
    """Print a failure for a human reader."""
    print(f"error: {error}", file=sys.stderr)
    if isinstance(error, MigrationApplyError):
        print(f"  migration: {error.version} ({error.label})", file=sys.stderr)
        print(f"  direction: {error.direction}", file=sys.stderr)
        print(f"  statement #{error.statement_index + 1}: {error.statement}", file=sys.stderr)
        print(f"  database error: {error.cause}", file=sys.stderr)


async def run_command(args: argparse.Namespace, config: ConfigManager) -> int:
    """Run an up/down/status command against the configured database."""
    from portunus.app import Migrator

    dry_run = bool(getattr(args, "dry_run", False))
    async with await Migrator.from_config(config, dry_run=dry_run) as migrator:
        if args.command == "status":
            print(format_status(await migrator.status()))
            return EXIT_OK

        if args.command == "up":
            report = await migrator.up(args.n)
        else:
            report = await migrator.down(None if args.all else args.n)
        print(format_report(report))
        return EXIT_OK if report.complete else EXIT_APPLY_FAILED


def create_new(args: argparse.Namespace, config: ConfigManager) -> int:
    """Create script files for a new migration."""
    from portunus.services.source import create_migration

    directory = config.get_path("migrations.path", DEFAULT_MIGRATIONS_PATH)
    for path in create_migration(directory, args.label, reversible=not args.irreversible):
        print(path)
    return EXIT_OK


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    if args.command == "version":
        print(f"Portunus {__version__}")
        return EXIT_OK

    try:
        config = load_config(args)
    except PortunusError as e:
        report_error(e)
        return e.exit_code

    setup_logging(
        level=str(config.get("portunus.log_level", "INFO")),
        json_output=config.get_bool("portunus.log_json", False),
    )
    log = structlog.get_logger()
    log.debug(
        "starting_portunus",
        version=__version__,
        command=args.command,
        config=str(config.config_path) if config.config_path else "defaults",
    )

    try:
        if args.command == "new":
            return create_new(args, config)
        shutdown = ShutdownManager()
        return asyncio.run(shutdown.run(run_command(args, config)))
    except PortunusError as e:
        report_error(e)
        return e.exit_code
    except (KeyboardInterrupt, asyncio.CancelledError):
        print("interrupted: in-flight migration rolled back", file=sys.stderr)
        return EXIT_INTERRUPTED
    except (ValueError, OSError) as e:
        print(f"error: {e}", file=sys.stderr)
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
