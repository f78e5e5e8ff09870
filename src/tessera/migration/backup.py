"""Checksummed backups of legacy databases.

Each backup is a byte copy named ``{stem}_{timestamp}_{id}{ext}`` inside
the backup directory. The SHA-256 checksum is computed while copying, so
no file is ever held in memory. A backup that cannot be opened by its
engine after copying is deleted and never reported.

Example:
    >>> manager = BackupManager(paths.backup_dir)
    >>> records = manager.create_backups(detection.databases)
    >>> all(manager.verify_backup(r) for r in records)
    True
"""

import hashlib
import logging
import re
import secrets
import shutil
import time
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from tessera.constants import BACKUP_ID_BYTES, COPY_CHUNK_SIZE
from tessera.migration.detector import sniff_database_kind
from tessera.storage.connection import Connection, open_read_only
from tessera.types.backup import BackupRecord
from tessera.types.legacy import DatabaseKind, LegacyDatabaseInfo

logger = logging.getLogger(__name__)

_BACKUP_NAME = re.compile(
    r"^(?P<stem>.+)_(?P<ts>\d{4}-\d{2}-\d{2}T\d{2}-\d{2}-\d{2}-\d{3}Z)"
    r"_(?P<id>[0-9a-f]+)(?P<ext>\.[^.]+)$"
)
_TIMESTAMP_FORMAT = "%Y-%m-%dT%H-%M-%S"


class BackupError(Exception):
    """Raised when a backup cannot be created or restored."""

    pass


def compute_file_checksum(path: Path) -> str:
    """Return the hex SHA-256 digest of a file, read in chunks."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(COPY_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _copy_with_checksum(source: Path, destination: Path) -> str:
    digest = hashlib.sha256()
    with open(source, "rb") as src, open(destination, "wb") as dst:
        for chunk in iter(lambda: src.read(COPY_CHUNK_SIZE), b""):
            digest.update(chunk)
            dst.write(chunk)
    shutil.copystat(source, destination)
    return digest.hexdigest()


def _format_timestamp(moment: datetime) -> str:
    # ISO-8601 with ':' and '.' replaced so the name is valid everywhere
    return moment.strftime(_TIMESTAMP_FORMAT) + f"-{moment.microsecond // 1000:03d}Z"


def _parse_timestamp(value: str) -> datetime:
    moment = datetime.strptime(value[:19], _TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
    return moment + timedelta(milliseconds=int(value[20:23]))


class BackupManager:
    """Creates, verifies, lists, restores and prunes database backups.

    Args:
        backup_dir: Directory holding backup files (created on demand)
        opener: Factory for read-only connections (injectable for tests)
    """

    def __init__(
        self,
        backup_dir: Path,
        opener: Callable[[DatabaseKind, Path], Connection] = open_read_only,
    ):
        self.backup_dir = backup_dir
        self._open = opener

    # =========================================================================
    # Creation
    # =========================================================================

    def create_backup(
        self, database: LegacyDatabaseInfo, verify: bool = True
    ) -> Optional[BackupRecord]:
        """Copy one database into the backup directory.

        Args:
            database: Database to copy
            verify: Open the copy with its engine before accepting it

        Returns:
            The new BackupRecord, or None when verification rejected the copy

        Raises:
            BackupError: If the copy itself fails
        """
        created_at = datetime.now(timezone.utc)
        backup_id = secrets.token_hex(BACKUP_ID_BYTES)
        source = database.path
        backup_path = self.backup_dir / (
            f"{source.stem}_{_format_timestamp(created_at)}_{backup_id}{source.suffix}"
        )

        try:
            self.backup_dir.mkdir(parents=True, exist_ok=True)
            checksum = _copy_with_checksum(source, backup_path)
        except OSError as e:
            backup_path.unlink(missing_ok=True)
            raise BackupError(f"Backup creation failed for {source}: {e}") from e

        record = BackupRecord(
            id=backup_id,
            original_path=source,
            backup_path=backup_path,
            kind=database.kind,
            size=backup_path.stat().st_size,
            created_at=created_at,
            checksum=checksum,
        )

        if verify and not self._is_openable(record.kind, backup_path):
            logger.error(f"Backup of {source} is not readable; discarding {backup_path}")
            backup_path.unlink(missing_ok=True)
            return None

        logger.info(f"Backed up {source} -> {backup_path} ({record.size} bytes)")
        return record

    def create_backups(
        self,
        databases: Sequence[LegacyDatabaseInfo],
        verify: bool = True,
        retention_days: Optional[int] = None,
    ) -> list[BackupRecord]:
        """Back up several databases, one after another.

        Databases whose copy fails verification are left out of the result.

        Args:
            databases: Databases to copy
            verify: Open each copy with its engine before accepting it
            retention_days: When set, prune older backups afterwards

        Raises:
            BackupError: If any copy fails
        """
        records = []
        for database in databases:
            record = self.create_backup(database, verify=verify)
            if record is not None:
                records.append(record)
        if retention_days is not None:
            self.cleanup_old_backups(retention_days)
        return records

    def check_capacity(self, required_bytes: int) -> list[str]:
        """Report why backups could not be written, without writing any.

        Returns:
            Problems found; empty when the backup directory is usable
        """
        problems = []
        probe = self.backup_dir
        while not probe.exists() and probe.parent != probe:
            probe = probe.parent

        if not probe.is_dir():
            problems.append(f"Backup location {self.backup_dir} is not a directory")
            return problems

        try:
            free = shutil.disk_usage(probe).free
        except OSError as e:
            problems.append(f"Cannot inspect free space at {probe}: {e}")
            return problems

        if free < required_bytes:
            problems.append(
                f"Not enough free space for backups: need {required_bytes} bytes, "
                f"have {free}"
            )
        if not probe.stat().st_mode & 0o222:
            problems.append(f"Backup location {probe} is not writable")
        return problems

    # =========================================================================
    # Verification
    # =========================================================================

    def _is_openable(self, kind: DatabaseKind, path: Path) -> bool:
        try:
            conn = self._open(kind, path)
        except Exception as e:
            logger.warning(f"Cannot open {path}: {e}")
            return False
        try:
            conn.query("SELECT 1 AS ok")
            return True
        except Exception as e:
            logger.warning(f"Query against {path} failed: {e}")
            return False
        finally:
            conn.close()

    def verify_backup(self, record: BackupRecord) -> bool:
        """Check that a backup exists, is intact and can be opened.

        Existence, byte size, checksum and engine-openability must all
        agree. The result is stored on ``record.is_valid``.
        """
        path = record.backup_path
        valid = False
        if not path.is_file():
            logger.warning(f"Backup {path} is missing")
        elif path.stat().st_size != record.size:
            logger.warning(f"Backup {path} has unexpected size")
        elif compute_file_checksum(path) != record.checksum:
            logger.warning(f"Backup {path} failed checksum verification")
        else:
            valid = self._is_openable(record.kind, path)

        record.is_valid = valid
        return valid

    # =========================================================================
    # Listing and retention
    # =========================================================================

    def list_backups(self) -> list[BackupRecord]:
        """Rebuild records from the backup directory, newest first.

        Original paths are not recoverable from filenames and are left
        unset.
        """
        if not self.backup_dir.is_dir():
            return []

        records = []
        for path in self.backup_dir.iterdir():
            match = _BACKUP_NAME.match(path.name)
            if not match or not path.is_file():
                continue
            try:
                kind = sniff_database_kind(path)
                if kind is None:
                    continue
                records.append(
                    BackupRecord(
                        id=match["id"],
                        backup_path=path,
                        kind=kind,
                        size=path.stat().st_size,
                        created_at=_parse_timestamp(match["ts"]),
                        checksum=compute_file_checksum(path),
                    )
                )
            except (OSError, ValueError) as e:
                logger.warning(f"Skipping unreadable backup {path}: {e}")

        records.sort(key=lambda r: r.created_at, reverse=True)
        return records

    def cleanup_old_backups(self, retention_days: int) -> int:
        """Delete backups older than ``retention_days``.

        Age comes from the timestamp in the filename, so damaged or
        unverifiable backups expire like any other.

        Returns:
            Number of backups deleted
        """
        if not self.backup_dir.is_dir():
            return 0

        cutoff = datetime.now(timezone.utc) - timedelta(days=retention_days)
        deleted = 0
        for path in self.backup_dir.iterdir():
            match = _BACKUP_NAME.match(path.name)
            if not match or not path.is_file():
                continue
            try:
                created_at = _parse_timestamp(match["ts"])
            except ValueError:
                logger.warning(f"Skipping backup with unparseable timestamp {path}")
                continue
            if created_at >= cutoff:
                continue
            try:
                path.unlink()
                deleted += 1
                logger.info(f"Removed expired backup {path}")
            except OSError as e:
                logger.warning(f"Could not remove {path}: {e}")
        return deleted

    # =========================================================================
    # Restore
    # =========================================================================

    def restore_from_backup(
        self, record: BackupRecord, target_path: Optional[Path] = None
    ) -> bool:
        """Copy a verified backup back over the original database.

        Whatever currently sits at the target is first copied to a
        ``.pre-restore-{timestamp}`` sidecar. That copy is best-effort.

        Args:
            record: Backup to restore
            target_path: Destination, defaults to ``record.original_path``

        Returns:
            True if the restored file matches the backup checksum

        Raises:
            BackupError: If no destination is known or the copy fails
        """
        destination = target_path or record.original_path
        if destination is None:
            raise BackupError(f"No restore destination known for backup {record.id}")

        if not self.verify_backup(record):
            logger.error(f"Refusing to restore unverified backup {record.backup_path}")
            return False

        if destination.exists():
            sidecar = destination.with_name(
                f"{destination.name}.pre-restore-{int(time.time() * 1000)}"
            )
            try:
                shutil.copy2(destination, sidecar)
                logger.info(f"Saved current {destination} to {sidecar}")
            except OSError as e:
                logger.warning(f"Could not save pre-restore copy of {destination}: {e}")

        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            checksum = _copy_with_checksum(record.backup_path, destination)
        except OSError as e:
            raise BackupError(f"Restore failed for {destination}: {e}") from e

        if checksum != record.checksum:
            logger.error(f"Restored file {destination} does not match backup checksum")
            return False

        logger.info(f"Restored {destination} from {record.backup_path}")
        return True
