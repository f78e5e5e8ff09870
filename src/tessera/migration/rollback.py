"""Rollback and recovery points.

A recovery point is a labelled SystemState snapshot plus the backups that
can bring the data directory back to it. Points are written once, one
JSON file each, and never edited.

Rollback restores a list of backups over their original paths. Invalid
backups can be skipped up front, and a failure either stops the rollback
or is collected while the remaining backups are restored.
"""

import logging
import os
import secrets
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from tessera.constants import CANDIDATE_EXTENSIONS, TRACKED_CONFIG_FILES
from tessera.migration.backup import BackupError, BackupManager, compute_file_checksum
from tessera.migration.detector import sniff_database_kind
from tessera.storage.connection import Connection, open_read_only
from tessera.types.backup import BackupRecord
from tessera.types.legacy import DatabaseKind, LegacyDatabaseInfo
from tessera.types.state import (
    ConfigFileState,
    DatabaseFileState,
    RecoveryPoint,
    SystemState,
)

logger = logging.getLogger(__name__)

RollbackProgressCallback = Callable[[str, int], None]


class RollbackError(Exception):
    """Raised when a rollback or recovery cannot be carried out."""

    pass


@dataclass
class RollbackOptions:
    """How execute_rollback treats individual backups.

    Attributes:
        validate_before_rollback: Skip backups that fail verification
        create_pre_rollback_backup: Back up the current files before overwriting
        continue_on_error: Keep restoring after a per-backup failure
    """

    validate_before_rollback: bool = True
    create_pre_rollback_backup: bool = False
    continue_on_error: bool = False


@dataclass
class RollbackResult:
    """Outcome of a rollback.

    Attributes:
        success: True when no backup failed to restore
        restored: Paths that were restored
        errors: Per-backup failures
        warnings: Skipped backups and post-restore observations
        pre_rollback_backups: Copies taken of the files before overwriting
    """

    success: bool
    restored: list[Path] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    pre_rollback_backups: list[BackupRecord] = field(default_factory=list)


class RollbackManager:
    """Captures system state, records recovery points and restores backups.

    Args:
        backup_manager: Used to verify and restore backups
        recovery_dir: Directory holding recovery point JSON files
        database_dirs: Directories whose database files are tracked
        config_dir: Directory holding the tracked configuration files
        opener: Factory for read-only connections (injectable for tests)
    """

    def __init__(
        self,
        backup_manager: BackupManager,
        recovery_dir: Path,
        database_dirs: Sequence[Path],
        config_dir: Path,
        opener: Callable[[DatabaseKind, Path], Connection] = open_read_only,
    ):
        self.backup_manager = backup_manager
        self.recovery_dir = recovery_dir
        self.database_dirs = list(database_dirs)
        self.config_dir = config_dir
        self._open = opener

    # =========================================================================
    # State capture
    # =========================================================================

    def capture_state(self) -> SystemState:
        """Snapshot every tracked database and config file."""
        database_files = []
        errors = []

        for directory in self.database_dirs:
            if not directory.is_dir():
                continue
            for path in sorted(directory.rglob("*")):
                if path.is_file() and path.suffix.lower() in CANDIDATE_EXTENSIONS:
                    state = self._database_state(path)
                    database_files.append(state)
                    if not state.is_valid:
                        errors.append(f"Database file cannot be opened: {path}")

        config_files = [self._config_state(self.config_dir / n) for n in TRACKED_CONFIG_FILES]

        return SystemState(
            timestamp=datetime.now(timezone.utc),
            database_files=database_files,
            config_files=config_files,
            is_consistent=not errors,
            validation_errors=errors,
        )

    def _database_state(self, path: Path) -> DatabaseFileState:
        try:
            stat = path.stat()
            kind = sniff_database_kind(path)
            checksum = compute_file_checksum(path)
        except OSError as e:
            logger.warning(f"Cannot read {path}: {e}")
            return DatabaseFileState(path=path, exists=path.exists())

        return DatabaseFileState(
            path=path,
            exists=True,
            kind=kind,
            size=stat.st_size,
            last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
            checksum=checksum,
            is_valid=kind is not None and self._is_openable(kind, path),
        )

    def _config_state(self, path: Path) -> ConfigFileState:
        if not path.is_file():
            return ConfigFileState(path=path, exists=False)
        stat = path.stat()
        return ConfigFileState(
            path=path,
            exists=True,
            size=stat.st_size,
            last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
            checksum=compute_file_checksum(path),
        )

    def _is_openable(self, kind: DatabaseKind, path: Path) -> bool:
        try:
            conn = self._open(kind, path)
        except Exception:
            return False
        try:
            conn.query("SELECT 1 AS ok")
            return True
        except Exception:
            return False
        finally:
            conn.close()

    # =========================================================================
    # Recovery points
    # =========================================================================

    def create_recovery_point(
        self,
        label: str,
        state: Optional[SystemState] = None,
        backups: Sequence[BackupRecord] = (),
        migration_phase: Optional[str] = None,
    ) -> str:
        """Persist a new recovery point.

        Args:
            label: Human-readable description
            state: Snapshot to store, captured now when omitted
            backups: Backups able to restore this state
            migration_phase: Phase the migration was in, if any

        Returns:
            The recovery point id

        Raises:
            RollbackError: If the point cannot be written
        """
        point = RecoveryPoint(
            id=f"rp_{int(time.time() * 1000)}_{secrets.token_hex(4)}",
            label=label,
            timestamp=datetime.now(timezone.utc),
            state=state or self.capture_state(),
            backups=list(backups),
            migration_phase=migration_phase,
        )
        path = self.recovery_dir / f"{point.id}.json"
        tmp_path = path.with_suffix(".json.tmp")

        try:
            self.recovery_dir.mkdir(parents=True, exist_ok=True)
            if path.exists():
                raise RollbackError(f"Recovery point {point.id} already exists")
            tmp_path.write_text(point.model_dump_json(indent=2), encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise RollbackError(f"Failed to write recovery point: {e}") from e

        logger.info(f"Created recovery point {point.id} ({label})")
        return point.id

    def list_recovery_points(self) -> list[RecoveryPoint]:
        """Return every readable recovery point, newest first."""
        if not self.recovery_dir.is_dir():
            return []

        points = []
        for path in self.recovery_dir.glob("*.json"):
            try:
                points.append(RecoveryPoint.model_validate_json(path.read_text(encoding="utf-8")))
            except (OSError, ValidationError) as e:
                logger.warning(f"Skipping unreadable recovery point {path}: {e}")
        points.sort(key=lambda p: p.timestamp, reverse=True)
        return points

    def get_recovery_point(self, recovery_point_id: str) -> Optional[RecoveryPoint]:
        for point in self.list_recovery_points():
            if point.id == recovery_point_id:
                return point
        return None

    # =========================================================================
    # Rollback
    # =========================================================================

    def execute_rollback(
        self,
        backups: Sequence[BackupRecord],
        options: Optional[RollbackOptions] = None,
        progress_callback: Optional[RollbackProgressCallback] = None,
    ) -> RollbackResult:
        """Restore backups over their original files.

        Args:
            backups: Backups to restore, in order
            options: Validation, pre-rollback backup and error policy
            progress_callback: Called with (step, percentage)

        Returns:
            RollbackResult with ``success = not errors``
        """
        options = options or RollbackOptions()
        result = RollbackResult(success=False)

        def report(step: str, percentage: int) -> None:
            if progress_callback is None:
                return
            try:
                progress_callback(step, percentage)
            except Exception as e:
                logger.warning(f"Rollback progress callback failed: {e}")

        report("validation", 10)
        to_restore = []
        for backup in backups:
            if backup.original_path is None:
                result.warnings.append(f"Backup {backup.id} has no original path; skipped")
            elif options.validate_before_rollback and not self.backup_manager.verify_backup(
                backup
            ):
                result.warnings.append(f"Backup {backup.backup_path} failed validation; skipped")
            else:
                to_restore.append(backup)

        if options.create_pre_rollback_backup:
            report("backup", 30)
            for backup in to_restore:
                self._pre_rollback_backup(backup, result)

        report("restoration", 50)
        for backup in to_restore:
            try:
                restored = self.backup_manager.restore_from_backup(backup)
            except BackupError as e:
                restored = False
                result.errors.append(str(e))
            else:
                if not restored:
                    result.errors.append(f"Could not restore {backup.original_path}")
            if restored:
                result.restored.append(backup.original_path)
            elif not options.continue_on_error:
                logger.error("Stopping rollback after first failure")
                break

        report("verification", 80)
        state = self.capture_state()
        if not state.is_consistent:
            result.warnings.extend(state.validation_errors)

        report("cleanup", 100)
        result.success = not result.errors
        logger.info(
            f"Rollback finished: {len(result.restored)} restored, "
            f"{len(result.errors)} errors, {len(result.warnings)} warnings"
        )
        return result

    def _pre_rollback_backup(self, backup: BackupRecord, result: RollbackResult) -> None:
        current = backup.original_path
        if current is None or not current.is_file():
            return
        try:
            stat = current.stat()
            info = LegacyDatabaseInfo(
                kind=backup.kind,
                path=current,
                size=stat.st_size,
                last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
            )
            record = self.backup_manager.create_backup(info, verify=False)
        except (OSError, BackupError) as e:
            result.warnings.append(f"Could not back up {current} before rollback: {e}")
            return
        if record is not None:
            result.pre_rollback_backups.append(record)

    def recover_partial_migration(
        self, recovery_point_id: str, options: Optional[RollbackOptions] = None
    ) -> RollbackResult:
        """Restore the backups attached to one recovery point.

        Raises:
            RollbackError: If the recovery point does not exist
        """
        point = self.get_recovery_point(recovery_point_id)
        if point is None:
            raise RollbackError(f"Rollback failed: recovery point {recovery_point_id} not found")

        logger.info(f"Recovering to {point.id} ({point.label})")
        return self.execute_rollback(point.backups, options)
