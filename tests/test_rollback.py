"""Tests for recovery points and rollback.

This module tests RollbackManager functionality including:
- System state capture
- Recovery point persistence and listing
- Rollback with validation, pre-rollback backups and error policies
- Recovery of a partial migration from a recovery point
"""

import json

import pytest

from tessera.migration.backup import BackupManager, compute_file_checksum
from tessera.migration.detector import LegacyDatabaseDetector
from tessera.migration.rollback import RollbackError, RollbackManager, RollbackOptions
from tessera.types import DatabaseKind

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def backup_manager(paths) -> BackupManager:
    return BackupManager(paths.backup_dir)


@pytest.fixture
def rollback_manager(paths, backup_manager) -> RollbackManager:
    return RollbackManager(
        backup_manager,
        recovery_dir=paths.recovery_dir,
        database_dirs=paths.database_dirs,
        config_dir=paths.data_dir,
    )


@pytest.fixture
def three_backups(paths, make_legacy_sqlite, backup_manager):
    """Backups of three SQLite databases, the middle one corrupted.

    The originals are overwritten afterwards so a restore is observable.

    Returns:
        Tuple of (records, original_contents)
    """
    for name in ("a.db", "b.db", "c.db"):
        make_legacy_sqlite(paths.app_db_dir / name)
    detected = LegacyDatabaseDetector(paths.scan_dirs).detect().databases
    records = backup_manager.create_backups(detected)
    originals = [r.original_path.read_bytes() for r in records]

    data = bytearray(records[1].backup_path.read_bytes())
    data[-16:] = bytes(b ^ 0xFF for b in data[-16:])
    records[1].backup_path.write_bytes(bytes(data))

    for record in records:
        record.original_path.write_bytes(b"damaged by migration")
    return records, originals


# ============================================================================
# State capture
# ============================================================================


class TestCaptureState:
    """Tests for system state snapshots."""

    def test_tracks_databases_and_config(self, paths, rollback_manager, legacy_databases):
        (paths.data_dir / "config.json").write_text('{"theme": "dark"}')

        state = rollback_manager.capture_state()

        tracked = {f.path for f in state.database_files}
        assert set(legacy_databases) <= tracked
        assert state.is_consistent is True
        assert all(f.checksum and f.is_valid for f in state.database_files)

        configs = {f.path.name: f for f in state.config_files}
        assert configs["config.json"].exists is True
        assert configs["config.json"].checksum == compute_file_checksum(
            paths.data_dir / "config.json"
        )
        assert configs["settings.json"].exists is False

    def test_unopenable_database_is_inconsistent(self, paths, rollback_manager):
        (paths.app_db_dir / "broken.db").write_bytes(b"SQLite format 3\x00" + b"\xff" * 200)

        state = rollback_manager.capture_state()

        assert state.is_consistent is False
        assert len(state.validation_errors) == 1
        assert state.database_files[0].kind == DatabaseKind.SQLITE
        assert state.database_files[0].is_valid is False


# ============================================================================
# Recovery points
# ============================================================================


class TestRecoveryPoints:
    """Tests for recovery point persistence."""

    def test_create_and_get(self, paths, rollback_manager, backup_manager, legacy_databases):
        detected = LegacyDatabaseDetector(paths.scan_dirs).detect().databases
        records = backup_manager.create_backups(detected)

        point_id = rollback_manager.create_recovery_point(
            "Before migration", backups=records, migration_phase="backup"
        )

        assert point_id.startswith("rp_")
        point = rollback_manager.get_recovery_point(point_id)
        assert point.label == "Before migration"
        assert point.migration_phase == "backup"
        assert [b.id for b in point.backups] == [r.id for r in records]
        assert point.backups[0].original_path == records[0].original_path
        assert point.backups[0].checksum == records[0].checksum

    def test_written_as_json_without_temp_files(self, paths, rollback_manager):
        point_id = rollback_manager.create_recovery_point("Empty")

        files = list(paths.recovery_dir.iterdir())
        assert [f.name for f in files] == [f"{point_id}.json"]
        assert json.loads(files[0].read_text())["id"] == point_id

    def test_list_newest_first(self, rollback_manager):
        first = rollback_manager.create_recovery_point("first")
        second = rollback_manager.create_recovery_point("second")

        points = rollback_manager.list_recovery_points()

        assert [p.id for p in points] == [second, first]

    def test_list_skips_unreadable(self, paths, rollback_manager):
        rollback_manager.create_recovery_point("ok")
        (paths.recovery_dir / "garbage.json").write_text("{not json")

        assert len(rollback_manager.list_recovery_points()) == 1

    def test_unknown_point(self, rollback_manager):
        assert rollback_manager.list_recovery_points() == []
        assert rollback_manager.get_recovery_point("rp_missing") is None


# ============================================================================
# Rollback
# ============================================================================


class TestExecuteRollback:
    """Tests for restoring backups."""

    def test_continue_on_error_collects_failures(self, rollback_manager, three_backups):
        records, originals = three_backups
        options = RollbackOptions(validate_before_rollback=False, continue_on_error=True)

        result = rollback_manager.execute_rollback(records, options)

        assert result.success is False
        assert result.restored == [records[0].original_path, records[2].original_path]
        assert len(result.errors) == 1
        assert records[0].original_path.read_bytes() == originals[0]
        assert records[2].original_path.read_bytes() == originals[2]

    def test_stops_on_first_failure(self, rollback_manager, three_backups):
        records, _ = three_backups
        options = RollbackOptions(validate_before_rollback=False)

        result = rollback_manager.execute_rollback(records, options)

        assert result.restored == [records[0].original_path]
        assert len(result.errors) == 1
        assert records[2].original_path.read_bytes() == b"damaged by migration"

    def test_validation_skips_invalid_backups(self, rollback_manager, three_backups):
        records, _ = three_backups

        result = rollback_manager.execute_rollback(records)

        assert result.success is True
        assert len(result.restored) == 2
        assert any("failed validation" in w for w in result.warnings)
        assert records[1].is_valid is False

    def test_records_without_original_path_are_skipped(
        self, rollback_manager, backup_manager, three_backups
    ):
        listed = backup_manager.list_backups()

        result = rollback_manager.execute_rollback(listed)

        assert result.restored == []
        assert result.success is True
        assert len(result.warnings) >= len(listed)

    def test_pre_rollback_backup(self, rollback_manager, three_backups):
        records, _ = three_backups
        options = RollbackOptions(create_pre_rollback_backup=True)

        result = rollback_manager.execute_rollback([records[0]], options)

        assert len(result.pre_rollback_backups) == 1
        assert result.pre_rollback_backups[0].backup_path.read_bytes() == (
            b"damaged by migration"
        )

    def test_progress_steps(self, rollback_manager, three_backups):
        records, _ = three_backups
        steps = []

        rollback_manager.execute_rollback(
            [records[0]],
            RollbackOptions(create_pre_rollback_backup=True),
            progress_callback=lambda step, pct: steps.append((step, pct)),
        )

        assert [s for s, _ in steps] == [
            "validation",
            "backup",
            "restoration",
            "verification",
            "cleanup",
        ]
        assert [p for _, p in steps] == sorted(p for _, p in steps)

    def test_callback_errors_are_ignored(self, rollback_manager, three_backups):
        records, _ = three_backups

        def explode(step, percentage):
            raise RuntimeError("UI went away")

        result = rollback_manager.execute_rollback([records[0]], progress_callback=explode)
        assert result.success is True


class TestRecoverPartialMigration:
    """Tests for recovery from a recovery point."""

    def test_restores_point_backups(self, rollback_manager, three_backups):
        records, originals = three_backups
        point_id = rollback_manager.create_recovery_point("mid-migration", backups=[records[0]])

        result = rollback_manager.recover_partial_migration(point_id)

        assert result.success is True
        assert records[0].original_path.read_bytes() == originals[0]

    def test_unknown_point_raises(self, rollback_manager):
        with pytest.raises(RollbackError, match="not found"):
            rollback_manager.recover_partial_migration("rp_0_deadbeef")
