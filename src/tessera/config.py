"""Configuration settings for Tessera.

This module provides Pydantic Settings for configuration management.
All settings are loaded from environment variables with the TESSERA_ prefix.
No defaults - all values must be explicitly set in .env file.
"""

from dataclasses import dataclass
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from tessera.constants import (
    APP_DB_DIR_NAME,
    BACKUP_DIR_NAME,
    KNOWLEDGE_DIR_NAME,
    RECOVERY_POINTS_DIR_NAME,
    REPORTS_DIR_NAME,
    UNIFIED_DB_FILE_NAME,
    UNIFIED_DIR_NAME,
)


class TesseraSettings(BaseSettings):
    """Configuration settings for Tessera.

    Attributes:
        data_dir: Application data directory holding the legacy databases
        log_level: Logging level
        backup_retention_days: Age after which backups may be pruned
        batch_size: Rows copied per transaction during data migration
        retry_delay_seconds: Wait before a connection/timeout retry
    """

    model_config = SettingsConfigDict(
        env_prefix="TESSERA_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    data_dir: Path = Field(description="Application data directory")

    log_level: str = Field(
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )

    backup_retention_days: int = Field(
        ge=1, description="Backups older than this many days may be removed"
    )
    batch_size: int = Field(ge=1, description="Rows per data-migration batch")
    retry_delay_seconds: float = Field(
        ge=0.0, description="Delay before retrying a transient failure"
    )

    def get_data_dir(self) -> Path:
        """Get the data directory, expanding user home."""
        return self.data_dir.expanduser().resolve()

    def paths(self) -> "MigrationPaths":
        """Build the migration directory layout for this data directory."""
        return MigrationPaths.from_data_dir(self.get_data_dir())


@dataclass(frozen=True)
class MigrationPaths:
    """Fixed directory layout beneath the data directory."""

    data_dir: Path
    app_db_dir: Path
    knowledge_dir: Path
    backup_dir: Path
    recovery_dir: Path
    reports_dir: Path
    target_db_path: Path

    @classmethod
    def from_data_dir(cls, data_dir: Path) -> "MigrationPaths":
        return cls(
            data_dir=data_dir,
            app_db_dir=data_dir / APP_DB_DIR_NAME,
            knowledge_dir=data_dir / KNOWLEDGE_DIR_NAME,
            backup_dir=data_dir / BACKUP_DIR_NAME,
            recovery_dir=data_dir / RECOVERY_POINTS_DIR_NAME,
            reports_dir=data_dir / REPORTS_DIR_NAME,
            target_db_path=data_dir / UNIFIED_DIR_NAME / UNIFIED_DB_FILE_NAME,
        )

    @property
    def scan_dirs(self) -> tuple[Path, Path]:
        """Directories searched for legacy databases."""
        return (self.app_db_dir, self.knowledge_dir)

    @property
    def database_dirs(self) -> tuple[Path, ...]:
        """Directories whose database files are tracked in state snapshots."""
        return (self.app_db_dir, self.knowledge_dir, self.target_db_path.parent)
