"""Command-line entry point for Tessera.

Usage:
    python -m tessera detect
    python -m tessera migrate [--dry-run] [--no-backup] [--no-validate]
    python -m tessera backups
    python -m tessera recovery-points
    python -m tessera recover RECOVERY_POINT_ID

Configuration comes from TESSERA_* environment variables (a .env file in
the working directory is loaded first). Logs go to stderr; command output
goes to stdout.
"""

import argparse
import logging
import sys
from typing import Optional

from dotenv import load_dotenv
from pydantic import ValidationError

from tessera.config import TesseraSettings
from tessera.migration import (
    MigrationContext,
    MigrationInProgressError,
    MigrationOptions,
    MigrationOrchestrator,
    RollbackError,
    RollbackOptions,
)
from tessera.types import MigrationProgress

# Load .env file - must be done before any config access
load_dotenv()

logger = logging.getLogger(__name__)


def setup_logging(log_level: str) -> None:
    """Configure logging to stderr.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )
    logger.info(f"Logging initialized at {log_level.upper()} level")


def parse_arguments(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse CLI arguments."""
    parser = argparse.ArgumentParser(
        prog="tessera",
        description="Migrate legacy conversation and knowledge databases",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("detect", help="List legacy databases and requirements")

    migrate = subparsers.add_parser("migrate", help="Run the migration")
    migrate.add_argument("--dry-run", action="store_true", help="Check the plan only")
    migrate.add_argument("--no-backup", action="store_true", help="Skip backups")
    migrate.add_argument("--no-validate", action="store_true", help="Skip validation")

    subparsers.add_parser("backups", help="List migration backups")
    subparsers.add_parser("recovery-points", help="List recovery points")

    recover = subparsers.add_parser("recover", help="Restore a recovery point")
    recover.add_argument("recovery_point_id", help="Recovery point id")

    return parser.parse_args(argv)


def _print_progress(progress: MigrationProgress) -> None:
    print(f"[{progress.percentage:3d}%] {progress.phase.value}: {progress.current_step}")


def cmd_detect(orchestrator: MigrationOrchestrator) -> int:
    requirements = orchestrator.get_migration_requirements()
    if not requirements.required:
        print("No legacy databases found.")
        return 0

    for db in requirements.databases:
        print(f"{db.kind.value:9s} {db.path}  ({db.size} bytes, {db.record_count} records)")
    print(f"Estimated duration: {requirements.estimated_duration:.0f} s")
    print(f"Disk space required: {requirements.disk_space_required} bytes")
    for issue in requirements.compatibility.issues:
        print(f"ISSUE: {issue}")
    for warning in requirements.compatibility.warnings:
        print(f"WARNING: {warning}")
    return 0 if requirements.compatibility.compatible else 1


def cmd_migrate(
    orchestrator: MigrationOrchestrator, args: argparse.Namespace, settings: TesseraSettings
) -> int:
    options = MigrationOptions(
        dry_run=args.dry_run,
        create_backups=not args.no_backup,
        validate_data=not args.no_validate,
        retention_days=settings.backup_retention_days,
        progress_callback=_print_progress,
    )
    try:
        result = orchestrator.execute_migration(options)
    except MigrationInProgressError as e:
        print(f"ERROR: {e}")
        return 1

    print(f"Outcome: {result.outcome.value} ({result.records_migrated} records)")
    if result.failed_phase:
        print(f"Failed during: {result.failed_phase.value}")
    for warning in result.warnings:
        print(f"WARNING: {warning}")
    for error in result.errors:
        print(f"ERROR: {error}")
    if result.report_path:
        print(f"Report: {result.report_path}")
    return 0 if result.success else 1


def cmd_backups(context: MigrationContext) -> int:
    backups = context.backup_manager.list_backups()
    if not backups:
        print("No backups found.")
    for backup in backups:
        print(f"{backup.created_at.isoformat()}  {backup.kind.value:9s} {backup.backup_path}")
    return 0


def cmd_recovery_points(context: MigrationContext) -> int:
    points = context.rollback_manager.list_recovery_points()
    if not points:
        print("No recovery points found.")
    for point in points:
        print(f"{point.id}  {point.timestamp.isoformat()}  {point.label}")
    return 0


def cmd_recover(context: MigrationContext, recovery_point_id: str) -> int:
    try:
        result = context.rollback_manager.recover_partial_migration(
            recovery_point_id, RollbackOptions(continue_on_error=True)
        )
    except RollbackError as e:
        print(f"ERROR: {e}")
        return 1

    for path in result.restored:
        print(f"Restored {path}")
    for warning in result.warnings:
        print(f"WARNING: {warning}")
    for error in result.errors:
        print(f"ERROR: {error}")
    return 0 if result.success else 1


def main(argv: Optional[list[str]] = None) -> int:
    """Run the CLI and return an exit code."""
    args = parse_arguments(argv)

    try:
        settings = TesseraSettings()
    except ValidationError as e:
        sys.stderr.write(f"ERROR: Invalid or missing TESSERA_* settings:\n{e}\n")
        return 2

    setup_logging(settings.log_level)
    context = MigrationContext.from_settings(settings)
    orchestrator = MigrationOrchestrator(context)

    if args.command == "detect":
        return cmd_detect(orchestrator)
    if args.command == "migrate":
        return cmd_migrate(orchestrator, args, settings)
    if args.command == "backups":
        return cmd_backups(context)
    if args.command == "recovery-points":
        return cmd_recovery_points(context)
    return cmd_recover(context, args.recovery_point_id)


if __name__ == "__main__":
    sys.exit(main())
