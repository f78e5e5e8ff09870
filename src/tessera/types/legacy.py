"""Types describing legacy databases found on disk.

LegacyDatabaseInfo is produced once by the detector and never mutated.
DetectionResult derives its aggregate fields from the database list so
they cannot drift out of sync.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class DatabaseKind(str, Enum):
    """Storage engine of a legacy database file."""

    SQLITE = "sqlite"
    COLUMNAR = "columnar"  # DuckDB knowledge stores


class CompatibilityIssue(str, Enum):
    """Why a detected database blocks the migration."""

    MISSING = "missing"
    PERMISSION_DENIED = "permission_denied"
    UNREADABLE = "unreadable"


class LegacyDatabaseInfo(BaseModel):
    """A single legacy database file and what analysis found inside it.

    Attributes:
        kind: Storage engine, decided by magic bytes
        path: Absolute path to the file
        size: File size in bytes
        last_modified: File modification time
        version: Schema version, 0 when unknown
        record_count: Total rows over all user tables
        tables: Names of user tables
        is_valid: Whether analysis could open and read the file
        metadata: Extra analysis output (per-table row counts)
    """

    model_config = ConfigDict(frozen=True)

    kind: DatabaseKind
    path: Path
    size: int = Field(ge=0)
    last_modified: datetime
    version: int = Field(default=0, ge=0)
    record_count: int = Field(default=0, ge=0)
    tables: tuple[str, ...] = ()
    is_valid: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)


class DetectionResult(BaseModel):
    """Outcome of scanning the data directory for legacy databases."""

    model_config = ConfigDict(frozen=True)

    databases: tuple[LegacyDatabaseInfo, ...] = ()

    @property
    def requires_migration(self) -> bool:
        return len(self.databases) > 0

    @property
    def total_size(self) -> int:
        return sum(db.size for db in self.databases)

    @property
    def total_records(self) -> int:
        return sum(db.record_count for db in self.databases)

    def of_kind(self, kind: DatabaseKind) -> list[LegacyDatabaseInfo]:
        """Return the detected databases of one engine."""
        return [db for db in self.databases if db.kind == kind]


@dataclass
class CompatibilityReport:
    """Result of checking whether detected databases can be migrated.

    Attributes:
        compatible: False when any blocking issue was found
        issues: Blocking problems (unreadable files)
        issue_kinds: Cause of each blocking problem, in the same order
        warnings: Non-blocking observations (unknown version, large, empty)
        recommendations: Suggested user actions
    """

    compatible: bool
    issues: list[str] = field(default_factory=list)
    issue_kinds: list[CompatibilityIssue] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)


@dataclass
class MigrationRequirements:
    """What a migration of the current data directory would involve.

    Attributes:
        required: Whether any legacy database was found
        databases: The detected databases
        compatibility: Compatibility report for those databases
        estimated_duration: Rough duration estimate in seconds
        disk_space_required: Bytes needed for backups plus the new store
    """

    required: bool
    databases: list[LegacyDatabaseInfo]
    compatibility: CompatibilityReport
    estimated_duration: float
    disk_space_required: int
