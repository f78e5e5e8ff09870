"""Legacy database migration.

Components, leaves first:
- LegacyDatabaseDetector: finds and describes legacy databases
- BackupManager: checksummed backups, verification, restore, retention
- MigrationErrorHandler: error taxonomy and recovery policy
- RollbackManager: recovery points and rollback
- DataMigrator: copies legacy rows into the unified store
- MigrationOrchestrator: runs the phases end to end

Example:
    >>> from tessera.migration import MigrationContext, MigrationOrchestrator
    >>> orchestrator = MigrationOrchestrator(MigrationContext.create(paths))
    >>> result = orchestrator.execute_migration()
"""

from tessera.migration.backup import BackupError, BackupManager, compute_file_checksum
from tessera.migration.data import DataMigrationResult, DataMigrator
from tessera.migration.detector import (
    DetectionError,
    LegacyDatabaseDetector,
    sniff_database_kind,
)
from tessera.migration.error_handler import (
    ClassifiedError,
    ErrorClassifier,
    ErrorContext,
    ErrorHandlingResult,
    ErrorKind,
    ErrorSeverity,
    MessagePatternClassifier,
    MigrationErrorHandler,
    RecoveryAction,
    RecoveryActionKind,
    RetryKey,
    StructuredErrorClassifier,
)
from tessera.migration.orchestrator import (
    CancellationToken,
    CompatibilityError,
    MigrationCancelledError,
    MigrationContext,
    MigrationInProgressError,
    MigrationOptions,
    MigrationOrchestrator,
    ValidationFailedError,
)
from tessera.migration.report import MigrationReportWriter
from tessera.migration.rollback import (
    RollbackError,
    RollbackManager,
    RollbackOptions,
    RollbackResult,
)

__all__ = [
    "BackupError",
    "BackupManager",
    "CancellationToken",
    "ClassifiedError",
    "CompatibilityError",
    "DataMigrationResult",
    "DataMigrator",
    "DetectionError",
    "ErrorClassifier",
    "ErrorContext",
    "ErrorHandlingResult",
    "ErrorKind",
    "ErrorSeverity",
    "LegacyDatabaseDetector",
    "MessagePatternClassifier",
    "MigrationCancelledError",
    "MigrationContext",
    "MigrationErrorHandler",
    "MigrationInProgressError",
    "MigrationOptions",
    "MigrationOrchestrator",
    "MigrationReportWriter",
    "RecoveryAction",
    "RecoveryActionKind",
    "RetryKey",
    "RollbackError",
    "RollbackManager",
    "RollbackOptions",
    "RollbackResult",
    "StructuredErrorClassifier",
    "ValidationFailedError",
    "compute_file_checksum",
    "sniff_database_kind",
]
