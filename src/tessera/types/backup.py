"""Backup record type."""

from datetime import datetime
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from tessera.types.legacy import DatabaseKind


class BackupRecord(BaseModel):
    """A verified copy of a legacy database.

    The checksum is fixed when the copy is made; only ``is_valid`` may
    change afterwards, when a later verification fails.

    Attributes:
        id: Short random identifier, also part of the filename
        original_path: Where the database lived (None for records rebuilt
            from a backup directory listing)
        backup_path: Location of the copy
        kind: Storage engine of the copied database
        size: Size of the copy in bytes
        created_at: When the backup was taken (UTC)
        checksum: Hex SHA-256 of the copy
        is_valid: Result of the most recent verification
    """

    model_config = ConfigDict(frozen=False)

    id: str
    original_path: Optional[Path] = None
    backup_path: Path
    kind: DatabaseKind
    size: int = Field(ge=0)
    created_at: datetime
    checksum: str = Field(frozen=True, min_length=64, max_length=64)
    is_valid: bool = True
