"""Legacy database detection.

Walks the application data directories, confirms candidate files by their
magic bytes and opens each one read-only to collect a schema version and
per-table row counts. Extension alone is never trusted: ``.db`` is used by
both legacy engines.

Example:
    >>> detector = LegacyDatabaseDetector(paths.scan_dirs)
    >>> result = detector.detect()
    >>> result.requires_migration
    True
"""

import logging
import math
import os
from collections.abc import Callable, Sequence
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from tessera.constants import (
    BASE_DURATION_SECONDS,
    DISK_SPACE_MULTIPLIER,
    DUCKDB_EXTENSIONS,
    DUCKDB_MAGIC,
    DUCKDB_MAGIC_OFFSET,
    LARGE_DATABASE_BYTES,
    SECONDS_PER_RECORD,
    SQLITE_EXTENSIONS,
    SQLITE_MAGIC,
    SQLITE_MAGIC_OFFSET,
)
from tessera.storage.connection import Connection, open_read_only
from tessera.types.legacy import (
    CompatibilityIssue,
    CompatibilityReport,
    DatabaseKind,
    DetectionResult,
    LegacyDatabaseInfo,
    MigrationRequirements,
)

logger = logging.getLogger(__name__)

_HEADER_BYTES = max(
    SQLITE_MAGIC_OFFSET + len(SQLITE_MAGIC), DUCKDB_MAGIC_OFFSET + len(DUCKDB_MAGIC)
)

Opener = Callable[[DatabaseKind, Path], Connection]


class DetectionError(Exception):
    """Raised when the data directories cannot be scanned."""

    pass


def sniff_database_kind(path: Path) -> Optional[DatabaseKind]:
    """Identify a database file by its header bytes.

    Args:
        path: File to inspect

    Returns:
        The engine whose signature matches, or None

    Raises:
        OSError: If the file cannot be read
    """
    with open(path, "rb") as f:
        header = f.read(_HEADER_BYTES)

    if header[SQLITE_MAGIC_OFFSET : SQLITE_MAGIC_OFFSET + len(SQLITE_MAGIC)] == SQLITE_MAGIC:
        return DatabaseKind.SQLITE
    if header[DUCKDB_MAGIC_OFFSET : DUCKDB_MAGIC_OFFSET + len(DUCKDB_MAGIC)] == DUCKDB_MAGIC:
        return DatabaseKind.COLUMNAR
    return None


def _extensions_for(kind: DatabaseKind) -> frozenset[str]:
    return SQLITE_EXTENSIONS if kind == DatabaseKind.SQLITE else DUCKDB_EXTENSIONS


def _quote(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


class LegacyDatabaseDetector:
    """Finds and describes legacy databases.

    Args:
        scan_dirs: Directories to walk recursively; missing ones are skipped
        opener: Factory for read-only connections (injectable for tests)
    """

    def __init__(self, scan_dirs: Sequence[Path], opener: Opener = open_read_only):
        self.scan_dirs = list(scan_dirs)
        self._open = opener

    # =========================================================================
    # Detection
    # =========================================================================

    def detect(self) -> DetectionResult:
        """Scan the data directories for legacy databases.

        Returns:
            DetectionResult listing every confirmed database in path order

        Raises:
            DetectionError: If a directory or file cannot be read
        """
        databases = []
        for path in self._candidate_files():
            try:
                kind = sniff_database_kind(path)
            except OSError as e:
                raise DetectionError(f"Cannot read {path}: {e}") from e

            if kind is None or path.suffix.lower() not in _extensions_for(kind):
                logger.debug(f"Ignoring {path}: no matching database signature")
                continue

            info = self.analyze(kind, path)
            logger.info(
                f"Detected {kind.value} database {path} "
                f"(version={info.version}, records={info.record_count})"
            )
            databases.append(info)

        return DetectionResult(databases=tuple(databases))

    def _candidate_files(self) -> list[Path]:
        def _raise(error: OSError) -> None:
            raise DetectionError(f"Cannot scan {error.filename}: {error}") from error

        candidates = []
        extensions = SQLITE_EXTENSIONS | DUCKDB_EXTENSIONS
        for root in self.scan_dirs:
            if not root.is_dir():
                continue
            for dirpath, dirnames, filenames in os.walk(root, onerror=_raise):
                dirnames.sort()
                for name in sorted(filenames):
                    path = Path(dirpath) / name
                    if path.suffix.lower() in extensions and path.is_file():
                        candidates.append(path.resolve())
        return candidates

    # =========================================================================
    # Analysis
    # =========================================================================

    def analyze(self, kind: DatabaseKind, path: Path) -> LegacyDatabaseInfo:
        """Collect version and row counts for one confirmed database.

        A file that cannot be opened or queried is still returned, with
        zeroed metadata and ``is_valid=False``.

        Raises:
            DetectionError: If the file cannot be stat'ed
        """
        try:
            stat = path.stat()
        except OSError as e:
            raise DetectionError(f"Cannot stat {path}: {e}") from e

        base: dict[str, Any] = {
            "kind": kind,
            "path": path,
            "size": stat.st_size,
            "last_modified": datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
        }

        try:
            conn = self._open(kind, path)
        except Exception as e:
            logger.warning(f"Could not open {path} for analysis: {e}")
            return LegacyDatabaseInfo(**base)

        try:
            tables = self._list_tables(conn, kind)
            counts = {
                table: conn.query(f"SELECT COUNT(*) AS n FROM {_quote(table)}")[0]["n"]
                for table in tables
            }
            version = self._read_version(conn, kind, tables)
        except Exception as e:
            logger.warning(f"Could not analyze {path}: {e}")
            return LegacyDatabaseInfo(**base)
        finally:
            conn.close()

        return LegacyDatabaseInfo(
            **base,
            version=version,
            record_count=sum(counts.values()),
            tables=tuple(tables),
            is_valid=True,
            metadata={"table_counts": counts},
        )

    def _list_tables(self, conn: Connection, kind: DatabaseKind) -> list[str]:
        if kind == DatabaseKind.SQLITE:
            rows = conn.query(
                "SELECT name FROM sqlite_master "
                "WHERE type = 'table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
            )
        else:
            rows = conn.query(
                "SELECT table_name AS name FROM information_schema.tables "
                "WHERE table_schema = 'main' AND table_type = 'BASE TABLE' "
                "ORDER BY table_name"
            )
        return [row["name"] for row in rows]

    def _read_version(self, conn: Connection, kind: DatabaseKind, tables: list[str]) -> int:
        if "schema_versions" in tables:
            rows = conn.query("SELECT MAX(version) AS v FROM schema_versions")
            return int(rows[0]["v"] or 0)
        if kind == DatabaseKind.SQLITE:
            return int(conn.query("PRAGMA user_version")[0]["user_version"])
        if "metadata" in tables:
            rows = conn.query("SELECT value FROM metadata WHERE key = 'db_version'")
            if rows and str(rows[0]["value"]).isdigit():
                return int(rows[0]["value"])
        return 0

    # =========================================================================
    # Compatibility and requirements
    # =========================================================================

    def check_compatibility(
        self, databases: Sequence[LegacyDatabaseInfo]
    ) -> CompatibilityReport:
        """Check whether the given databases can be migrated.

        Vanished, unreadable or access-denied files are blocking issues and
        each records its cause. Unknown versions, very large files and
        empty databases are only warnings.
        """
        report = CompatibilityReport(compatible=True)

        for db in databases:
            if not db.path.exists():
                report.issues.append(f"Database file no longer exists: {db.path}")
                report.issue_kinds.append(CompatibilityIssue.MISSING)
                continue
            if not os.access(db.path, os.R_OK):
                report.issues.append(f"Permission denied reading database file: {db.path}")
                report.issue_kinds.append(CompatibilityIssue.PERMISSION_DENIED)
                report.recommendations.append(
                    f"Check that your account can read {db.path.name}"
                )
                continue
            if not db.is_valid:
                report.issues.append(f"Cannot read database file: {db.path}")
                report.issue_kinds.append(CompatibilityIssue.UNREADABLE)
                report.recommendations.append(
                    f"Check that {db.path.name} is not corrupted or in use by another program"
                )
                continue
            if db.version == 0:
                report.warnings.append(f"Unknown schema version for {db.path.name}")
            if db.size > LARGE_DATABASE_BYTES:
                report.warnings.append(
                    f"Large database {db.path.name} ({db.size // (1024 * 1024)} MB) "
                    "may take a long time to migrate"
                )
                report.recommendations.append(
                    "Keep the application open until the migration finishes"
                )
            if db.record_count == 0:
                report.warnings.append(f"Database {db.path.name} contains no records")

        report.compatible = not report.issues
        return report

    def get_migration_requirements(self) -> MigrationRequirements:
        """Detect databases and estimate what migrating them needs.

        Raises:
            DetectionError: If the data directories cannot be scanned
        """
        result = self.detect()
        databases = list(result.databases)
        return MigrationRequirements(
            required=result.requires_migration,
            databases=databases,
            compatibility=self.check_compatibility(databases),
            estimated_duration=BASE_DURATION_SECONDS
            + result.total_records * SECONDS_PER_RECORD,
            disk_space_required=math.ceil(result.total_size * DISK_SPACE_MULTIPLIER),
        )
