"""Shared types for Tessera.

- Legacy database descriptions: DatabaseKind, LegacyDatabaseInfo,
  DetectionResult, CompatibilityIssue, CompatibilityReport,
  MigrationRequirements
- BackupRecord
- State snapshots: DatabaseFileState, ConfigFileState, SystemState,
  RecoveryPoint
- Run tracking: Phase, MigrationOutcome, MigrationProgress, PhaseTiming,
  MigrationResult
"""

from tessera.types.backup import BackupRecord
from tessera.types.legacy import (
    CompatibilityIssue,
    CompatibilityReport,
    DatabaseKind,
    DetectionResult,
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
from tessera.types.state import (
    ConfigFileState,
    DatabaseFileState,
    RecoveryPoint,
    SystemState,
)

__all__ = [
    "BackupRecord",
    "CompatibilityIssue",
    "CompatibilityReport",
    "ConfigFileState",
    "DatabaseFileState",
    "DatabaseKind",
    "DetectionResult",
    "LegacyDatabaseInfo",
    "MigrationOutcome",
    "MigrationProgress",
    "MigrationRequirements",
    "MigrationResult",
    "Phase",
    "PhaseTiming",
    "RecoveryPoint",
    "SystemState",
]
