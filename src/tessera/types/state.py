"""System state snapshots and recovery points.

Recovery points are persisted as JSON, so every type here is a Pydantic
model that round-trips through ``model_dump_json``/``model_validate_json``.
"""

from datetime import datetime
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from tessera.types.backup import BackupRecord
from tessera.types.legacy import DatabaseKind


class DatabaseFileState(BaseModel):
    """Snapshot of one tracked database file."""

    model_config = ConfigDict(frozen=True)

    path: Path
    exists: bool
    kind: Optional[DatabaseKind] = None
    size: int = 0
    last_modified: Optional[datetime] = None
    checksum: Optional[str] = None
    is_valid: bool = False


class ConfigFileState(BaseModel):
    """Snapshot of one tracked configuration file."""

    model_config = ConfigDict(frozen=True)

    path: Path
    exists: bool
    size: int = 0
    last_modified: Optional[datetime] = None
    checksum: Optional[str] = None


class SystemState(BaseModel):
    """Point-in-time view of every tracked file.

    Attributes:
        timestamp: When the snapshot was taken
        database_files: Database files found in the tracked directories
        config_files: Known configuration files in the data directory
        is_consistent: False when any database failed to open
        validation_errors: Why the state is inconsistent
    """

    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    database_files: list[DatabaseFileState] = Field(default_factory=list)
    config_files: list[ConfigFileState] = Field(default_factory=list)
    is_consistent: bool = True
    validation_errors: list[str] = Field(default_factory=list)


class RecoveryPoint(BaseModel):
    """Durable, labelled snapshot that a partial migration can return to."""

    model_config = ConfigDict(frozen=True)

    id: str
    label: str
    timestamp: datetime
    state: SystemState
    backups: list[BackupRecord] = Field(default_factory=list)
    migration_phase: Optional[str] = None
