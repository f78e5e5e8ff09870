"""Tests for migration error classification and recovery policy.

This module tests:
- Structured classification (errno, exception types, sqlite3 codes)
- Message pattern classification and severity tie-breaking
- Action selection across repeated occurrences
- Retry bookkeeping per (kind, phase)
"""

import errno
import sqlite3

import pytest

from tessera.migration.backup import BackupError
from tessera.migration.error_handler import (
    ErrorContext,
    ErrorKind,
    ErrorSeverity,
    MessagePatternClassifier,
    MigrationErrorHandler,
    RecoveryActionKind,
    StructuredErrorClassifier,
)
from tessera.types import Phase

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def handler(temp_dir) -> MigrationErrorHandler:
    """Handler with no retry delay and probes that always pass."""
    handler = MigrationErrorHandler(temp_dir, retry_delay_seconds=0)
    handler._has_free_space = lambda: True
    handler._is_writable = lambda: True
    return handler


def _context(phase: Phase = Phase.DATA) -> ErrorContext:
    return ErrorContext(phase=phase)


# ============================================================================
# Classification
# ============================================================================


class TestMessageClassification:
    """Tests for substring-based classification."""

    @pytest.mark.parametrize(
        "message,phase,expected",
        [
            ("ENOSPC: no space left on device", Phase.DATA, ErrorKind.INSUFFICIENT_DISK_SPACE),
            ("EACCES: permission denied", Phase.DATA, ErrorKind.PERMISSION_DENIED),
            ("database disk image is malformed", Phase.DATA, ErrorKind.CORRUPTED_SOURCE_DATA),
            ("file is not a database", Phase.VALIDATION, ErrorKind.CORRUPTED_TARGET_DATA),
            ("unified database is corrupt", Phase.DATA, ErrorKind.CORRUPTED_TARGET_DATA),
            ("no such table: conversations", Phase.DATA, ErrorKind.SCHEMA_MISMATCH),
            ("database is locked", Phase.DATA, ErrorKind.CONNECTION_FAILED),
            ("operation timed out", Phase.DATA, ErrorKind.TIMEOUT),
            ("No module named 'duckdb'", Phase.DATA, ErrorKind.DEPENDENCY_MISSING),
            ("validation failed: 3 orphans", Phase.DATA, ErrorKind.VALIDATION_FAILED),
            ("backup verification mismatch", Phase.DATA, ErrorKind.BACKUP_FAILED),
            ("restore failed for chat.db", Phase.DATA, ErrorKind.ROLLBACK_FAILED),
            ("something odd", Phase.DATA, ErrorKind.UNKNOWN),
        ],
    )
    def test_classification_table(self, handler, message, phase, expected):
        classified = handler.classify(RuntimeError(message), _context(phase))
        assert classified.kind == expected

    def test_phase_fallbacks(self):
        classifier = MessagePatternClassifier()
        error = RuntimeError("something odd")
        assert classifier.classify(error, _context(Phase.BACKUP)) == ErrorKind.BACKUP_FAILED
        assert classifier.classify(error, _context(Phase.ROLLBACK)) == ErrorKind.ROLLBACK_FAILED
        assert classifier.classify(error, _context(Phase.DATA)) is None

    def test_most_severe_match_wins(self):
        classifier = MessagePatternClassifier()
        error = RuntimeError("restore failed: permission denied")
        assert classifier.classify(error, _context()) == ErrorKind.ROLLBACK_FAILED

    def test_severity_tie_goes_to_earlier_kind(self):
        classifier = MessagePatternClassifier()
        error = RuntimeError("backup failed: no space left on device")
        assert classifier.classify(error, _context()) == ErrorKind.INSUFFICIENT_DISK_SPACE


class TestStructuredClassification:
    """Tests for type, errno and driver-code classification."""

    def test_errno_enospc(self):
        error = OSError(errno.ENOSPC, "No space left on device")
        assert (
            StructuredErrorClassifier().classify(error, _context())
            == ErrorKind.INSUFFICIENT_DISK_SPACE
        )

    def test_errno_through_cause_chain(self):
        error = BackupError("Backup creation failed for chat.db")
        error.__cause__ = OSError(errno.ENOSPC, "No space left on device")
        assert (
            StructuredErrorClassifier().classify(error, _context(Phase.BACKUP))
            == ErrorKind.INSUFFICIENT_DISK_SPACE
        )

    def test_permission_error(self):
        error = PermissionError(errno.EACCES, "Permission denied")
        kind = StructuredErrorClassifier().classify(error, _context())
        assert kind == ErrorKind.PERMISSION_DENIED

    def test_timeout_and_import_errors(self):
        classifier = StructuredErrorClassifier()
        assert classifier.classify(TimeoutError("slow"), _context()) == ErrorKind.TIMEOUT
        assert (
            classifier.classify(ImportError("missing"), _context())
            == ErrorKind.DEPENDENCY_MISSING
        )

    def test_unknown_returns_none(self):
        assert StructuredErrorClassifier().classify(ValueError("x"), _context()) is None

    def test_sqlite_not_a_database(self, temp_dir):
        path = temp_dir / "garbage.db"
        path.write_bytes(b"this is not sqlite" * 100)
        conn = sqlite3.connect(str(path))
        try:
            with pytest.raises(sqlite3.DatabaseError) as exc_info:
                conn.execute("SELECT * FROM sqlite_master").fetchall()
        finally:
            conn.close()

        classifier = StructuredErrorClassifier()
        assert (
            classifier.classify(exc_info.value, _context(Phase.DATA))
            == ErrorKind.CORRUPTED_SOURCE_DATA
        )
        assert (
            classifier.classify(exc_info.value, _context(Phase.VALIDATION))
            == ErrorKind.CORRUPTED_TARGET_DATA
        )

    def test_typed_kind_short_circuits_message(self, temp_dir):
        handler = MigrationErrorHandler(
            temp_dir,
            classifiers=[
                StructuredErrorClassifier({ValueError: ErrorKind.VALIDATION_FAILED}),
                MessagePatternClassifier(),
            ],
        )
        classified = handler.classify(ValueError("no space left on device"), _context())
        assert classified.kind == ErrorKind.VALIDATION_FAILED

    def test_declared_error_kind_wins(self):
        class DeclaredError(Exception):
            error_kind = ErrorKind.PERMISSION_DENIED

        classifier = StructuredErrorClassifier({DeclaredError: ErrorKind.SCHEMA_MISMATCH})
        assert classifier.classify(DeclaredError("boom"), _context()) == (
            ErrorKind.PERMISSION_DENIED
        )


class TestClassifiedError:
    """Tests for the classified error payload."""

    def test_enospc_during_backup(self, handler):
        error = OSError(errno.ENOSPC, "No space left on device")
        classified = handler.classify(error, _context(Phase.BACKUP))

        assert classified.kind == ErrorKind.INSUFFICIENT_DISK_SPACE
        assert classified.severity == ErrorSeverity.HIGH
        assert classified.user_friendly_message
        assert "ENOSPC" not in classified.user_friendly_message
        assert "Errno" not in classified.user_friendly_message
        assert "No space left on device" in classified.technical_details

    def test_disk_space_action_order(self, handler):
        classified = handler.classify(RuntimeError("disk full"), _context())
        assert [a.kind for a in classified.actions] == [
            RecoveryActionKind.MANUAL_INTERVENTION,
            RecoveryActionKind.RETRY,
            RecoveryActionKind.ABORT,
        ]
        assert classified.actions[1].precondition is not None

    def test_rollback_failure_is_manual_only(self, handler):
        classified = handler.classify(RuntimeError("rollback failed"), _context(Phase.ROLLBACK))
        assert classified.severity == ErrorSeverity.CRITICAL
        assert classified.recoverable is False
        assert [a.kind for a in classified.actions] == [RecoveryActionKind.MANUAL_INTERVENTION]


# ============================================================================
# Policy
# ============================================================================


class TestHandle:
    """Tests for action selection."""

    def test_first_attempt_prefers_retry(self, handler):
        result = handler.handle(RuntimeError("database is locked"), _context())
        assert result.handled is True
        assert result.action_taken == RecoveryActionKind.RETRY
        assert result.should_retry is True
        assert result.success is True

    def test_later_attempts_prefer_skip(self, handler):
        error = RuntimeError("operation timed out")
        handler.handle(error, _context())
        result = handler.handle(error, _context())
        assert result.action_taken == RecoveryActionKind.SKIP
        assert result.should_continue is True
        assert result.should_retry is False

    def test_later_attempts_abort_without_skip(self, handler):
        error = RuntimeError("no space left on device")
        assert handler.handle(error, _context()).action_taken == RecoveryActionKind.RETRY
        result = handler.handle(error, _context())
        assert result.action_taken == RecoveryActionKind.ABORT
        assert result.should_continue is False

    def test_fourth_occurrence_aborts(self, handler):
        error = RuntimeError("operation timed out")
        actions = [handler.handle(error, _context()).action_taken for _ in range(4)]
        assert actions[:3] == [
            RecoveryActionKind.RETRY,
            RecoveryActionKind.SKIP,
            RecoveryActionKind.SKIP,
        ]
        assert actions[3] == RecoveryActionKind.ABORT

        result = handler.handle(error, _context())
        assert result.action_taken == RecoveryActionKind.ABORT
        assert result.should_retry is False
        assert result.message.startswith("Maximum retry attempts exceeded")

    def test_failed_probe_does_not_retry(self, handler):
        handler._has_free_space = lambda: False
        result = handler.handle(RuntimeError("disk full"), _context())
        assert result.action_taken == RecoveryActionKind.RETRY
        assert result.success is False
        assert result.should_retry is False

    def test_rollback_failure_requires_manual_intervention(self, handler):
        result = handler.handle(RuntimeError("rollback failed"), _context(Phase.ROLLBACK))
        assert result.action_taken == RecoveryActionKind.MANUAL_INTERVENTION
        assert result.success is False
        assert result.should_continue is False
        assert result.should_retry is False
        assert "manually" in result.message

    def test_source_corruption_never_skips_automatically(self, handler):
        result = handler.handle(RuntimeError("database disk image is malformed"), _context())
        assert result.action_taken == RecoveryActionKind.ABORT
        assert result.should_continue is False

    def test_target_corruption_rolls_back_when_backups_exist(self, temp_dir):
        handler = MigrationErrorHandler(temp_dir, backups_available=lambda: True)
        result = handler.handle(RuntimeError("target is corrupt"), _context())
        assert result.action_taken == RecoveryActionKind.ROLLBACK
        assert result.success is True

        handler = MigrationErrorHandler(temp_dir)
        result = handler.handle(RuntimeError("target is corrupt"), _context())
        assert result.action_taken == RecoveryActionKind.ROLLBACK
        assert result.success is False

    def test_context_overrides_backup_probe(self, temp_dir):
        handler = MigrationErrorHandler(temp_dir, backups_available=lambda: True)
        context = ErrorContext(phase=Phase.DATA, backups_available=False)
        result = handler.handle(RuntimeError("target is corrupt"), context)
        assert result.action_taken == RecoveryActionKind.ROLLBACK
        assert result.success is False

    def test_message_is_user_friendly(self, handler):
        result = handler.handle(OSError(errno.EACCES, "Permission denied: '/x'"), _context())
        assert "/x" not in result.message
        assert result.error.kind == ErrorKind.PERMISSION_DENIED


class TestRetryCounters:
    """Tests for per-(kind, phase) bookkeeping."""

    def test_counts_per_key(self, handler):
        error = RuntimeError("operation timed out")
        handler.handle(error, _context(Phase.DATA))
        handler.handle(error, _context(Phase.DATA))
        handler.handle(error, _context(Phase.BACKUP))

        assert handler.attempt_count(ErrorKind.TIMEOUT, Phase.DATA) == 2
        assert handler.retry_count(ErrorKind.TIMEOUT, Phase.DATA) == 1
        assert handler.attempt_count(ErrorKind.TIMEOUT, Phase.BACKUP) == 1
        assert handler.attempt_count(ErrorKind.UNKNOWN, Phase.DATA) == 0

    def test_reset_single_key(self, handler):
        error = RuntimeError("operation timed out")
        handler.handle(error, _context(Phase.DATA))
        handler.handle(error, _context(Phase.BACKUP))

        handler.reset_retry_attempts(ErrorKind.TIMEOUT, Phase.DATA)

        assert handler.attempt_count(ErrorKind.TIMEOUT, Phase.DATA) == 0
        assert handler.retry_count(ErrorKind.TIMEOUT, Phase.DATA) == 0
        assert handler.attempt_count(ErrorKind.TIMEOUT, Phase.BACKUP) == 1
        assert handler.handle(error, _context(Phase.DATA)).action_taken == RecoveryActionKind.RETRY

    def test_clear_all(self, handler):
        error = RuntimeError("operation timed out")
        for _ in range(4):
            handler.handle(error, _context())
        handler.clear_all_retry_attempts()
        assert handler.attempt_count(ErrorKind.TIMEOUT, Phase.DATA) == 0
        assert handler.handle(error, _context()).action_taken == RecoveryActionKind.RETRY
