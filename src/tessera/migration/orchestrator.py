"""Migration orchestrator.

Drives one migration run through its phases in strict order:

    detection (5%) -> backup (15%) -> schema (25%) -> data (35%)
        -> validation (85%) -> cleanup (95%) -> done (100%)

Terminal outcomes are completed, failed, cancelled and dry-run-completed.
Only one run may be active per orchestrator; a second call to
``execute_migration`` raises MigrationInProgressError.

Any failure is classified by the MigrationErrorHandler. When backups were
taken earlier in the run they are restored, whatever the classifier
decided. Cancellation is cooperative: ``cancel_migration`` records a
recovery point and the run stops at the next phase checkpoint. Each run
owns its cancellation token, progress and backups, so a run started
after a cancellation never inherits or clears the cancelled one.

Example:
    >>> context = MigrationContext.from_settings(TesseraSettings())
    >>> orchestrator = MigrationOrchestrator(context)
    >>> result = orchestrator.execute_migration(MigrationOptions(dry_run=True))
    >>> result.outcome
    <MigrationOutcome.DRY_RUN_COMPLETED: 'dry-run-completed'>
"""

import dataclasses
import json
import logging
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from tessera.config import MigrationPaths, TesseraSettings
from tessera.constants import (
    DEFAULT_RETRY_DELAY_SECONDS,
    PROGRESS_BACKUP,
    PROGRESS_CLEANUP,
    PROGRESS_COMPLETE,
    PROGRESS_DATA,
    PROGRESS_DETECTION,
    PROGRESS_SCHEMA,
    PROGRESS_VALIDATION,
)
from tessera.migration.backup import BackupError, BackupManager
from tessera.migration.data import DataMigrator
from tessera.migration.detector import LegacyDatabaseDetector
from tessera.migration.error_handler import (
    ClassifiedError,
    ErrorContext,
    ErrorHandlingResult,
    ErrorKind,
    MessagePatternClassifier,
    MigrationErrorHandler,
    StructuredErrorClassifier,
)
from tessera.migration.report import MigrationReportWriter
from tessera.migration.rollback import (
    RollbackError,
    RollbackManager,
    RollbackOptions,
    RollbackResult,
)
from tessera.storage.connection import Connection
from tessera.storage.unified_store import UnifiedStore
from tessera.types.backup import BackupRecord
from tessera.types.legacy import (
    CompatibilityIssue,
    LegacyDatabaseInfo,
    MigrationRequirements,
)
from tessera.types.progress import (
    MigrationOutcome,
    MigrationProgress,
    MigrationResult,
    Phase,
    PhaseTiming,
)
from tessera.validation.validator import DataValidator, IssueSeverity

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[MigrationProgress], None]

# Checked in order; the first cause present decides the error kind
_COMPATIBILITY_ERROR_KINDS = (
    (CompatibilityIssue.UNREADABLE, ErrorKind.CORRUPTED_SOURCE_DATA),
    (CompatibilityIssue.MISSING, ErrorKind.CORRUPTED_SOURCE_DATA),
    (CompatibilityIssue.PERMISSION_DENIED, ErrorKind.PERMISSION_DENIED),
)


class MigrationInProgressError(Exception):
    """Raised when a migration is started while another one is running."""

    pass


class MigrationCancelledError(Exception):
    """Raised at a phase checkpoint after cancel_migration was called."""

    pass


class CompatibilityError(Exception):
    """Raised when detected databases cannot be migrated.

    ``error_kind`` follows the cause of the blocking issues.
    """

    def __init__(self, message: str, error_kind: ErrorKind):
        super().__init__(message)
        self.error_kind = error_kind


class ValidationFailedError(Exception):
    """Raised when the migrated data fails validation."""

    pass


class _MigrationAborted(Exception):
    """Carries an already-classified failure out of a phase."""

    def __init__(self, handling: ErrorHandlingResult):
        super().__init__(handling.message)
        self.handling = handling


class CancellationToken:
    """Cancellation flag sampled at phase checkpoints."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise MigrationCancelledError("Migration was cancelled")


@dataclass
class MigrationOptions:
    """Options for one migration run.

    Attributes:
        dry_run: Check detection, compatibility and backup capacity only
        create_backups: Back up every legacy database before writing
        verify_backups: Open each backup with its engine before accepting it
        validate_data: Run the validator on the migrated data
        retention_days: Prune backups older than this after backing up
        progress_callback: Receives a MigrationProgress snapshot per update
    """

    dry_run: bool = False
    create_backups: bool = True
    verify_backups: bool = True
    validate_data: bool = True
    retention_days: Optional[int] = None
    progress_callback: Optional[ProgressCallback] = None


@dataclass
class _MigrationRun:
    """State owned by one call to ``execute_migration``.

    A cancelled run keeps its own token, progress and backups even after
    a newer run has started on the same orchestrator.
    """

    token: CancellationToken
    progress: MigrationProgress
    callback: Optional[ProgressCallback] = None
    backups: list[BackupRecord] = field(default_factory=list)
    classified: list[ClassifiedError] = field(default_factory=list)
    recovery_point_id: Optional[str] = None
    phase_starts: list[tuple[Phase, float]] = field(default_factory=list)

    def mark_phase(self, phase: Phase) -> None:
        if not self.phase_starts or self.phase_starts[-1][0] != phase:
            self.phase_starts.append((phase, time.time()))

    def phase_timings(self, finished_at: float) -> tuple[PhaseTiming, ...]:
        ends = [started for _, started in self.phase_starts[1:]] + [finished_at]
        return tuple(
            PhaseTiming(phase=phase, started_at=started, finished_at=ended)
            for (phase, started), ended in zip(self.phase_starts, ends)
        )


@dataclass
class MigrationContext:
    """Everything the orchestrator depends on, built explicitly.

    Attributes:
        paths: Directory layout
        detector: Finds legacy databases
        backup_manager: Creates and restores backups
        error_handler: Classifies failures
        rollback_manager: Recovery points and rollback
        data_migrator: Copies rows into the unified store
        report_writer: Writes migration reports
        store_factory: Opens the unified store
        validator_factory: Builds a validator over a connection
    """

    paths: MigrationPaths
    detector: LegacyDatabaseDetector
    backup_manager: BackupManager
    error_handler: MigrationErrorHandler
    rollback_manager: RollbackManager
    data_migrator: DataMigrator
    report_writer: MigrationReportWriter
    store_factory: Callable[[Path], UnifiedStore] = UnifiedStore
    validator_factory: Callable[[Connection], DataValidator] = DataValidator

    @classmethod
    def create(
        cls,
        paths: MigrationPaths,
        batch_size: int = 500,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
    ) -> "MigrationContext":
        """Build a context with the standard components for a data directory."""
        backup_manager = BackupManager(paths.backup_dir)
        classifiers = [
            StructuredErrorClassifier(
                typed_kinds={
                    RollbackError: ErrorKind.ROLLBACK_FAILED,
                    ValidationFailedError: ErrorKind.VALIDATION_FAILED,
                }
            ),
            MessagePatternClassifier(),
        ]
        return cls(
            paths=paths,
            detector=LegacyDatabaseDetector(paths.scan_dirs),
            backup_manager=backup_manager,
            error_handler=MigrationErrorHandler(
                paths.data_dir,
                classifiers=classifiers,
                retry_delay_seconds=retry_delay_seconds,
            ),
            rollback_manager=RollbackManager(
                backup_manager,
                recovery_dir=paths.recovery_dir,
                database_dirs=paths.database_dirs,
                config_dir=paths.data_dir,
            ),
            data_migrator=DataMigrator(batch_size),
            report_writer=MigrationReportWriter(paths.reports_dir),
        )

    @classmethod
    def from_settings(cls, settings: TesseraSettings) -> "MigrationContext":
        return cls.create(
            settings.paths(),
            batch_size=settings.batch_size,
            retry_delay_seconds=settings.retry_delay_seconds,
        )




class MigrationOrchestrator:
    """Runs migrations against one data directory.

    Args:
        context: Injected components
    """

    def __init__(self, context: MigrationContext):
        self.context = context
        self._lock = threading.Lock()
        self._in_progress = False
        self._run: Optional[_MigrationRun] = None

    # =========================================================================
    # Status
    # =========================================================================

    def is_migration_in_progress(self) -> bool:
        return self._in_progress

    def get_current_progress(self) -> Optional[MigrationProgress]:
        """Return a copy of the latest run's progress, or None before the first run."""
        if self._run is None:
            return None
        return dataclasses.replace(self._run.progress)

    @property
    def classified_errors(self) -> tuple[ClassifiedError, ...]:
        """Classified failures of the latest run."""
        if self._run is None:
            return ()
        return tuple(self._run.classified)

    def get_migration_requirements(self) -> MigrationRequirements:
        return self.context.detector.get_migration_requirements()

    def is_migration_required(self) -> bool:
        return self.context.detector.detect().requires_migration

    # =========================================================================
    # Progress
    # =========================================================================

    def _emit(self, run: _MigrationRun) -> None:
        if run.callback is None:
            return
        try:
            run.callback(dataclasses.replace(run.progress))
        except Exception as e:
            logger.warning(f"Progress callback raised: {e}")

    def _update(self, run: _MigrationRun, phase: Phase, step: str, percentage: int) -> None:
        progress = run.progress
        run.mark_phase(phase)
        progress.phase = phase
        progress.current_step = step
        progress.percentage = max(progress.percentage, percentage)
        elapsed = time.time() - progress.started_at
        if 0 < progress.percentage < PROGRESS_COMPLETE:
            progress.eta_seconds = elapsed * (PROGRESS_COMPLETE - progress.percentage) / (
                progress.percentage
            )
        elif progress.percentage >= PROGRESS_COMPLETE:
            progress.eta_seconds = 0.0
        self._emit(run)

    def _checkpoint(self, run: _MigrationRun, phase: Phase, step: str, percentage: int) -> None:
        run.token.raise_if_cancelled()
        logger.info(f"Migration phase {phase.value}: {step}")
        self._update(run, phase, step, percentage)

    def _record_data_progress(self, run: _MigrationRun, migrated: int) -> None:
        progress = run.progress
        progress.records_processed = migrated
        if progress.total_records:
            span = PROGRESS_VALIDATION - PROGRESS_DATA
            fraction = min(1.0, migrated / progress.total_records)
            percentage = PROGRESS_DATA + int(span * fraction)
            percentage = min(percentage, PROGRESS_VALIDATION - 1)
            self._update(run, Phase.DATA, f"Migrated {migrated} records", percentage)

    # =========================================================================
    # Error handling
    # =========================================================================

    def handle_migration_error(
        self, error: BaseException, phase: Phase, **extra: Any
    ) -> ErrorHandlingResult:
        """Classify a failure and remember it for the latest run's report."""
        return self._handle(self._run, error, phase, **extra)

    def _handle(
        self, run: Optional[_MigrationRun], error: BaseException, phase: Phase, **extra: Any
    ) -> ErrorHandlingResult:
        context = ErrorContext(
            phase=phase,
            extra=extra,
            backups_available=bool(run.backups) if run is not None else None,
        )
        handling = self.context.error_handler.handle(error, context)
        if run is not None:
            run.classified.append(handling.error)
        return handling

    def execute_rollback_with_error_handling(
        self, backups: Sequence[BackupRecord]
    ) -> tuple[RollbackResult, Optional[ErrorHandlingResult]]:
        """Restore backups, classifying a failed rollback.

        Returns:
            The rollback result, plus the classification when it failed
        """
        return self._rollback(self._run, backups)

    def _rollback(
        self, run: Optional[_MigrationRun], backups: Sequence[BackupRecord]
    ) -> tuple[RollbackResult, Optional[ErrorHandlingResult]]:
        options = RollbackOptions(validate_before_rollback=True, continue_on_error=True)
        try:
            result = self.context.rollback_manager.execute_rollback(backups, options)
        except Exception as e:
            logger.error(f"Rollback raised: {e}")
            result = RollbackResult(success=False, errors=[str(e)])

        if result.success:
            return result, None

        error = RollbackError(f"Rollback failed: {'; '.join(result.errors)}")
        return result, self._handle(run, error, Phase.ROLLBACK)

    # =========================================================================
    # Cancellation
    # =========================================================================

    def cancel_migration(self) -> Optional[str]:
        """Ask the running migration to stop at its next checkpoint.

        A recovery point is recorded before the in-progress flag is
        cleared.

        Returns:
            Recovery point id, or None when nothing was running
        """
        with self._lock:
            run = self._run
            if not self._in_progress or run is None:
                return None

        try:
            point_id = self.context.rollback_manager.create_recovery_point(
                "Migration cancelled",
                backups=list(run.backups),
                migration_phase=run.progress.phase.value,
            )
        except RollbackError as e:
            logger.error(f"Could not record recovery point on cancellation: {e}")
            point_id = None

        run.recovery_point_id = point_id
        run.token.cancel()
        with self._lock:
            if self._run is run:
                self._in_progress = False
        logger.info("Migration cancellation requested")
        return point_id

    # =========================================================================
    # Run
    # =========================================================================

    def execute_migration(self, options: Optional[MigrationOptions] = None) -> MigrationResult:
        """Run a full migration, or a dry run.

        Args:
            options: Run options

        Returns:
            Frozen MigrationResult

        Raises:
            MigrationInProgressError: If a migration is already running
        """
        options = options or MigrationOptions()
        started_at = time.time()
        run = _MigrationRun(
            token=CancellationToken(),
            progress=MigrationProgress(
                phase=Phase.DETECTION, current_step="Starting", started_at=started_at
            ),
            callback=options.progress_callback,
        )
        with self._lock:
            if self._in_progress:
                raise MigrationInProgressError("A migration is already in progress")
            self._in_progress = True
            self._run = run

        run.mark_phase(Phase.DETECTION)
        self.context.error_handler.clear_all_retry_attempts()

        errors: list[str] = []
        warnings: list[str] = []
        records = 0
        outcome = MigrationOutcome.FAILED
        failed_phase: Optional[Phase] = None
        store: Optional[UnifiedStore] = None
        target_created = False
        target = self.context.paths.target_db_path

        try:
            requirements = self._run_detection(run, warnings)

            if not requirements.required:
                self._update(
                    run, Phase.DETECTION, "No legacy databases found", PROGRESS_COMPLETE
                )
                outcome = (
                    MigrationOutcome.DRY_RUN_COMPLETED
                    if options.dry_run
                    else MigrationOutcome.COMPLETED
                )
            elif options.dry_run:
                self._run_dry_backup_check(run, requirements, options, warnings)
                self._update(run, run.progress.phase, "Dry run completed", PROGRESS_COMPLETE)
                outcome = MigrationOutcome.DRY_RUN_COMPLETED
            else:
                self._run_backups(run, requirements.databases, options, warnings)

                self._checkpoint(run, Phase.SCHEMA, "Creating unified schema", PROGRESS_SCHEMA)
                target_created = not target.exists()
                store = self.context.store_factory(target)

                self._checkpoint(run, Phase.DATA, "Migrating data", PROGRESS_DATA)
                run.progress.total_records = sum(
                    db.record_count for db in requirements.databases
                )
                data_result = self.context.data_migrator.migrate(
                    requirements.databases,
                    store,
                    on_progress=lambda migrated: self._record_data_progress(run, migrated),
                )
                records = data_result.records_migrated
                warnings.extend(data_result.warnings)

                if options.validate_data:
                    self._checkpoint(
                        run, Phase.VALIDATION, "Validating data", PROGRESS_VALIDATION
                    )
                    self._run_validation(store, warnings)

                self._checkpoint(run, Phase.CLEANUP, "Finalizing", PROGRESS_CLEANUP)
                self._write_metadata(store, requirements.databases, records)
                self._update(run, Phase.CLEANUP, "Migration completed", PROGRESS_COMPLETE)
                outcome = MigrationOutcome.COMPLETED

        except MigrationCancelledError:
            outcome = MigrationOutcome.CANCELLED
            warnings.append("Migration was cancelled; a recovery point was recorded")
        except Exception as e:
            failed_phase = run.progress.phase
            if isinstance(e, _MigrationAborted):
                handling = e.handling
            else:
                handling = self._handle(run, e, failed_phase)
            errors.append(handling.message)

            if run.backups:
                self._update(run, Phase.ROLLBACK, "Restoring backups", run.progress.percentage)
                rollback, rollback_handling = self._rollback(run, run.backups)
                warnings.extend(rollback.warnings)
                if rollback_handling is None:
                    warnings.append("Your original data was restored from backup")
                else:
                    errors.append(rollback_handling.message)
        finally:
            if store is not None:
                store.close()
            if target_created and outcome != MigrationOutcome.COMPLETED:
                self._remove_partial_target(target)
            with self._lock:
                if self._run is run:
                    self._in_progress = False

        finished_at = time.time()
        result = MigrationResult(
            success=outcome in (MigrationOutcome.COMPLETED, MigrationOutcome.DRY_RUN_COMPLETED),
            outcome=outcome,
            phase=run.progress.phase,
            started_at=started_at,
            finished_at=finished_at,
            records_migrated=records,
            errors=tuple(errors),
            warnings=tuple(warnings),
            backups=tuple(run.backups),
            recovery_point_id=run.recovery_point_id,
            failed_phase=failed_phase,
            phase_timings=run.phase_timings(finished_at),
        )
        logger.info(
            f"Migration finished: {outcome.value} "
            f"({records} records, {len(errors)} errors, {len(warnings)} warnings)"
        )

        if not options.dry_run:
            try:
                report_path = self.context.report_writer.write(result, run.classified)
                result = dataclasses.replace(result, report_path=report_path)
            except OSError as e:
                logger.warning(f"Could not write migration report: {e}")
        return result

    # =========================================================================
    # Phases
    # =========================================================================

    def _run_detection(self, run: _MigrationRun, warnings: list[str]) -> MigrationRequirements:
        self._checkpoint(run, Phase.DETECTION, "Detecting legacy databases", PROGRESS_DETECTION)
        requirements = self.context.detector.get_migration_requirements()
        compatibility = requirements.compatibility
        warnings.extend(compatibility.warnings)
        if not compatibility.compatible:
            kind = next(
                (
                    error_kind
                    for issue, error_kind in _COMPATIBILITY_ERROR_KINDS
                    if issue in compatibility.issue_kinds
                ),
                ErrorKind.CORRUPTED_SOURCE_DATA,
            )
            raise CompatibilityError(
                f"Compatibility check failed: {'; '.join(compatibility.issues)}", kind
            )
        return requirements

    def _run_dry_backup_check(
        self,
        run: _MigrationRun,
        requirements: MigrationRequirements,
        options: MigrationOptions,
        warnings: list[str],
    ) -> None:
        self._checkpoint(run, Phase.BACKUP, "Checking backup capacity", PROGRESS_BACKUP)
        if not options.create_backups:
            warnings.append("Backups are disabled for this run")
            return
        problems = self.context.backup_manager.check_capacity(requirements.disk_space_required)
        if problems:
            raise BackupError(f"Backup capability check failed: {'; '.join(problems)}")

    def _run_backups(
        self,
        run: _MigrationRun,
        databases: Sequence[LegacyDatabaseInfo],
        options: MigrationOptions,
        warnings: list[str],
    ) -> None:
        self._checkpoint(run, Phase.BACKUP, "Creating backups", PROGRESS_BACKUP)
        if not options.create_backups:
            warnings.append("Backups are disabled for this run")
            return

        for database in databases:
            self._backup_database(run, database, options.verify_backups, warnings)

        if options.retention_days is not None:
            self.context.backup_manager.cleanup_old_backups(options.retention_days)

    def _backup_database(
        self,
        run: _MigrationRun,
        database: LegacyDatabaseInfo,
        verify: bool,
        warnings: list[str],
    ) -> None:
        while True:
            try:
                record = self.context.backup_manager.create_backup(database, verify=verify)
                if record is None:
                    raise BackupError(f"Backup verification failed for {database.path}")
                run.backups.append(record)
                return
            except Exception as e:
                handling = self._handle(run, e, Phase.BACKUP, database=str(database.path))
                if handling.should_retry:
                    logger.info(f"Retrying backup of {database.path}")
                    continue
                if handling.should_continue:
                    warnings.append(f"Continuing without a backup of {database.path.name}")
                    return
                raise _MigrationAborted(handling) from e

    def _run_validation(self, store: UnifiedStore, warnings: list[str]) -> None:
        validator = self.context.validator_factory(store)
        validation = validator.validate()
        integrity = validator.check_integrity()
        warnings.extend(w.message for w in validation.warnings)

        problems = [f"{e.rule}: {e.message}" for e in validation.errors]
        problems += [
            i.description
            for i in integrity.issues
            if i.severity in (IssueSeverity.CRITICAL, IssueSeverity.MAJOR)
        ]
        if problems:
            raise ValidationFailedError(f"Validation failed: {'; '.join(problems)}")

    def _write_metadata(
        self, store: UnifiedStore, databases: Sequence[LegacyDatabaseInfo], records: int
    ) -> None:
        store.set_metadata("migrated_at", datetime.now(timezone.utc).isoformat())
        store.set_metadata("source_databases", json.dumps([str(db.path) for db in databases]))
        store.set_metadata("records_migrated", str(records))

    def _remove_partial_target(self, target: Path) -> None:
        sidecars = [target.with_name(target.name + suffix) for suffix in ("-wal", "-shm")]
        for path in [target, *sidecars]:
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning(f"Could not remove partial target {path}: {e}")
        logger.info(f"Removed partially migrated database {target}")
