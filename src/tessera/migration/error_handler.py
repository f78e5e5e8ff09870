"""Migration error classification and recovery policy.

Every failure raised during a migration is mapped to one ErrorKind with a
fixed severity and an ordered list of candidate recovery actions. The
handler then picks one action according to how often the same
(kind, phase) pair has already failed:

- first occurrence: automated actions win, retry > skip > anything else
- later occurrences: conservative actions win, skip > abort
- once MAX_RETRY_ATTEMPTS occurrences were seen: always abort

Classification runs through a chain of ErrorClassifier implementations.
StructuredErrorClassifier looks at exception types, errno values and
sqlite3 error codes and short-circuits the chain; MessagePatternClassifier
falls back to substring matching on the message. Pattern matching can
misfire, so when several patterns match the most severe kind wins.

Users only ever see ``ClassifiedError.user_friendly_message``. Raw
exception text goes to the log and to ``technical_details``.
"""

import errno
import json
import logging
import shutil
import sqlite3
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, NamedTuple, Optional, Protocol, runtime_checkable

from tessera.constants import (
    DEFAULT_RETRY_DELAY_SECONDS,
    MAX_RETRY_ATTEMPTS,
    MIN_FREE_SPACE_BYTES,
)
from tessera.types.progress import Phase

logger = logging.getLogger(__name__)


# =============================================================================
# Taxonomy
# =============================================================================


class ErrorKind(str, Enum):
    """Failure categories, in classification priority order."""

    INSUFFICIENT_DISK_SPACE = "insufficient_disk_space"
    PERMISSION_DENIED = "permission_denied"
    CORRUPTED_SOURCE_DATA = "corrupted_source_data"
    CORRUPTED_TARGET_DATA = "corrupted_target_data"
    SCHEMA_MISMATCH = "schema_mismatch"
    CONNECTION_FAILED = "connection_failed"
    TIMEOUT = "timeout"
    DEPENDENCY_MISSING = "dependency_missing"
    VALIDATION_FAILED = "validation_failed"
    BACKUP_FAILED = "backup_failed"
    ROLLBACK_FAILED = "rollback_failed"
    UNKNOWN = "unknown"


class ErrorSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


_SEVERITY_RANK = {
    ErrorSeverity.LOW: 0,
    ErrorSeverity.MEDIUM: 1,
    ErrorSeverity.HIGH: 2,
    ErrorSeverity.CRITICAL: 3,
}

_KIND_ORDER = {kind: index for index, kind in enumerate(ErrorKind)}


class RecoveryActionKind(str, Enum):
    RETRY = "retry"
    SKIP = "skip"
    MANUAL_INTERVENTION = "manual_intervention"
    ROLLBACK = "rollback"
    ABORT = "abort"
    IGNORE = "ignore"


class RetryKey(NamedTuple):
    """Key of the per-process retry bookkeeping."""

    kind: ErrorKind
    phase: Phase


# =============================================================================
# Result types
# =============================================================================


@dataclass(frozen=True)
class RecoveryAction:
    """A candidate response to a classified error.

    Attributes:
        kind: What the action does
        description: Short user-facing description
        automated: Whether the system can perform it without the user
        risk_level: low, medium or high
        precondition: Probe that must return True for the action to succeed
    """

    kind: RecoveryActionKind
    description: str
    automated: bool
    risk_level: str = "low"
    precondition: Optional[Callable[[], bool]] = None


@dataclass(frozen=True)
class ErrorContext:
    """Where and when an error happened.

    ``backups_available`` overrides the handler-wide rollback probe for
    this one failure when it is set.
    """

    phase: Phase
    timestamp: float = field(default_factory=time.time)
    extra: dict[str, Any] = field(default_factory=dict)
    backups_available: Optional[bool] = None


@dataclass(frozen=True)
class ClassifiedError:
    """A raw failure mapped onto the taxonomy."""

    kind: ErrorKind
    severity: ErrorSeverity
    recoverable: bool
    message: str
    user_friendly_message: str
    technical_details: str
    context: ErrorContext
    actions: tuple[RecoveryAction, ...]


@dataclass
class ErrorHandlingResult:
    """What the handler decided to do about one error.

    Attributes:
        handled: Always True once an action was chosen
        action_taken: The chosen action kind
        success: Whether the action itself succeeded
        should_continue: Caller may carry on without the failed item
        should_retry: Caller may retry the failed operation
        message: User-facing explanation
        error: The classification behind the decision
    """

    handled: bool
    action_taken: RecoveryActionKind
    success: bool
    should_continue: bool
    should_retry: bool
    message: str
    error: ClassifiedError


# =============================================================================
# Classifiers
# =============================================================================


@runtime_checkable
class ErrorClassifier(Protocol):
    """Maps an exception to an ErrorKind, or None when it cannot tell."""

    def classify(self, error: BaseException, context: ErrorContext) -> Optional[ErrorKind]:
        ...


def _corruption_kind(message: str, phase: Phase) -> ErrorKind:
    lowered = message.lower()
    if "target" in lowered or "unified" in lowered:
        return ErrorKind.CORRUPTED_TARGET_DATA
    if phase in (Phase.SCHEMA, Phase.VALIDATION):
        return ErrorKind.CORRUPTED_TARGET_DATA
    return ErrorKind.CORRUPTED_SOURCE_DATA


def _error_chain(error: BaseException) -> list[BaseException]:
    chain: list[BaseException] = []
    current: Optional[BaseException] = error
    while current is not None and current not in chain:
        chain.append(current)
        current = current.__cause__ or current.__context__
    return chain


_ERRNO_KINDS = {
    errno.ENOSPC: ErrorKind.INSUFFICIENT_DISK_SPACE,
    getattr(errno, "EDQUOT", errno.ENOSPC): ErrorKind.INSUFFICIENT_DISK_SPACE,
    errno.EACCES: ErrorKind.PERMISSION_DENIED,
    errno.EPERM: ErrorKind.PERMISSION_DENIED,
    errno.EROFS: ErrorKind.PERMISSION_DENIED,
    errno.ETIMEDOUT: ErrorKind.TIMEOUT,
    errno.ECONNREFUSED: ErrorKind.CONNECTION_FAILED,
    errno.ECONNRESET: ErrorKind.CONNECTION_FAILED,
}

# Primary sqlite3 result codes (extended code & 0xFF)
_SQLITE_CODE_KINDS = {
    3: ErrorKind.PERMISSION_DENIED,  # SQLITE_PERM
    5: ErrorKind.CONNECTION_FAILED,  # SQLITE_BUSY
    6: ErrorKind.CONNECTION_FAILED,  # SQLITE_LOCKED
    8: ErrorKind.PERMISSION_DENIED,  # SQLITE_READONLY
    13: ErrorKind.INSUFFICIENT_DISK_SPACE,  # SQLITE_FULL
    14: ErrorKind.CONNECTION_FAILED,  # SQLITE_CANTOPEN
    17: ErrorKind.SCHEMA_MISMATCH,  # SQLITE_SCHEMA
    19: ErrorKind.VALIDATION_FAILED,  # SQLITE_CONSTRAINT
    23: ErrorKind.PERMISSION_DENIED,  # SQLITE_AUTH
}
_SQLITE_CORRUPTION_CODES = {11, 26}  # SQLITE_CORRUPT, SQLITE_NOTADB


class StructuredErrorClassifier:
    """Classifies by exception type and driver error codes.

    Walks the ``__cause__`` chain, so a BackupError wrapping an
    ``OSError(ENOSPC)`` is still recognised as a disk-space problem. An
    exception carrying an ``error_kind`` attribute is taken at its word.
    """

    def __init__(self, typed_kinds: Optional[dict[type, ErrorKind]] = None):
        self.typed_kinds = typed_kinds or {}

    def classify(self, error: BaseException, context: ErrorContext) -> Optional[ErrorKind]:
        declared = getattr(error, "error_kind", None)
        if isinstance(declared, ErrorKind):
            return declared

        for exc_type, kind in self.typed_kinds.items():
            if isinstance(error, exc_type):
                return kind

        for exc in _error_chain(error):
            if isinstance(exc, OSError) and exc.errno in _ERRNO_KINDS:
                return _ERRNO_KINDS[exc.errno]
            if isinstance(exc, TimeoutError):
                return ErrorKind.TIMEOUT
            if isinstance(exc, ImportError):
                return ErrorKind.DEPENDENCY_MISSING
            if isinstance(exc, sqlite3.Error):
                code = getattr(exc, "sqlite_errorcode", None)
                if code is None:
                    continue
                primary = code & 0xFF
                if primary in _SQLITE_CORRUPTION_CODES:
                    return _corruption_kind(str(error), context.phase)
                if primary in _SQLITE_CODE_KINDS:
                    return _SQLITE_CODE_KINDS[primary]
        return None


_MESSAGE_PATTERNS: tuple[tuple[ErrorKind, tuple[str, ...]], ...] = (
    (
        ErrorKind.INSUFFICIENT_DISK_SPACE,
        ("enospc", "no space left", "disk space", "disk is full", "disk full"),
    ),
    (
        ErrorKind.PERMISSION_DENIED,
        (
            "eacces",
            "eperm",
            "permission denied",
            "operation not permitted",
            "readonly database",
            "access is denied",
        ),
    ),
    (
        ErrorKind.CORRUPTED_SOURCE_DATA,
        ("malformed", "file is not a database", "corrupt", "invalid database"),
    ),
    (
        ErrorKind.SCHEMA_MISMATCH,
        (
            "no such table",
            "no such column",
            "has no column named",
            "schema mismatch",
            "catalog error",
            "version mismatch",
        ),
    ),
    (
        ErrorKind.CONNECTION_FAILED,
        (
            "econnrefused",
            "connection failed",
            "connection refused",
            "database is locked",
            "unable to open database",
            "could not set lock",
        ),
    ),
    (ErrorKind.TIMEOUT, ("timeout", "timed out", "etimedout")),
    (
        ErrorKind.DEPENDENCY_MISSING,
        ("no module named", "cannot find module", "dependency missing", "not installed"),
    ),
    (
        ErrorKind.VALIDATION_FAILED,
        ("validation failed", "constraint failed", "foreign key", "integrity check"),
    ),
    (ErrorKind.BACKUP_FAILED, ("backup failed", "backup creation failed", "backup verification")),
    (ErrorKind.ROLLBACK_FAILED, ("rollback failed", "restore failed")),
)


class MessagePatternClassifier:
    """Classifies by substrings of the exception message.

    When several kinds match, the most severe one wins and ties go to the
    earlier kind. With no match, failures in the backup and rollback
    phases fall back to BACKUP_FAILED and ROLLBACK_FAILED.
    """

    def classify(self, error: BaseException, context: ErrorContext) -> Optional[ErrorKind]:
        message = str(error).lower()
        matches = []
        for kind, patterns in _MESSAGE_PATTERNS:
            if any(pattern in message for pattern in patterns):
                if kind == ErrorKind.CORRUPTED_SOURCE_DATA:
                    kind = _corruption_kind(message, context.phase)
                matches.append(kind)

        if matches:
            return max(
                matches,
                key=lambda k: (_SEVERITY_RANK[_PROFILES[k].severity], -_KIND_ORDER[k]),
            )
        if context.phase == Phase.BACKUP:
            return ErrorKind.BACKUP_FAILED
        if context.phase == Phase.ROLLBACK:
            return ErrorKind.ROLLBACK_FAILED
        return None


# =============================================================================
# Per-kind policy
# =============================================================================


@dataclass(frozen=True)
class _ActionTemplate:
    kind: RecoveryActionKind
    description: str
    automated: bool
    risk_level: str = "low"
    probe: Optional[str] = None


@dataclass(frozen=True)
class _ErrorProfile:
    severity: ErrorSeverity
    recoverable: bool
    message: str
    user_friendly_message: str
    actions: tuple[_ActionTemplate, ...]


_ABORT = _ActionTemplate(
    RecoveryActionKind.ABORT, "Stop the migration and keep the original data", True
)

_PROFILES: dict[ErrorKind, _ErrorProfile] = {
    ErrorKind.INSUFFICIENT_DISK_SPACE: _ErrorProfile(
        ErrorSeverity.HIGH,
        True,
        "Insufficient disk space",
        "There is not enough free disk space to complete the migration. "
        "Free up some space and try again.",
        (
            _ActionTemplate(
                RecoveryActionKind.MANUAL_INTERVENTION,
                "Free up disk space and restart the migration",
                False,
            ),
            _ActionTemplate(
                RecoveryActionKind.RETRY,
                "Retry once enough free space is available",
                True,
                probe="disk_space",
            ),
            _ABORT,
        ),
    ),
    ErrorKind.PERMISSION_DENIED: _ErrorProfile(
        ErrorSeverity.HIGH,
        True,
        "Permission denied",
        "The application does not have permission to access its data files. "
        "Check the folder permissions and try again.",
        (
            _ActionTemplate(
                RecoveryActionKind.MANUAL_INTERVENTION,
                "Grant read and write access to the data directory",
                False,
            ),
            _ActionTemplate(
                RecoveryActionKind.RETRY,
                "Retry once the data directory is writable",
                True,
                probe="permissions",
            ),
            _ABORT,
        ),
    ),
    ErrorKind.CORRUPTED_SOURCE_DATA: _ErrorProfile(
        ErrorSeverity.CRITICAL,
        False,
        "Source data is corrupted",
        "Some of your existing data appears to be damaged. Your original "
        "files have not been changed.",
        (
            _ActionTemplate(
                RecoveryActionKind.MANUAL_INTERVENTION,
                "Repair the damaged database or restore it from a backup",
                False,
            ),
            _ActionTemplate(
                RecoveryActionKind.SKIP,
                "Skip the damaged records and accept losing them",
                False,
                risk_level="high",
            ),
            _ABORT,
        ),
    ),
    ErrorKind.CORRUPTED_TARGET_DATA: _ErrorProfile(
        ErrorSeverity.CRITICAL,
        False,
        "Target database is corrupted",
        "The new database could not be written correctly. Your original "
        "data will be restored.",
        (
            _ActionTemplate(
                RecoveryActionKind.MANUAL_INTERVENTION,
                "Remove the new database and start the migration again",
                False,
            ),
            _ActionTemplate(
                RecoveryActionKind.ROLLBACK,
                "Restore the original databases from backup",
                True,
                risk_level="medium",
                probe="backups_exist",
            ),
            _ABORT,
        ),
    ),
    ErrorKind.SCHEMA_MISMATCH: _ErrorProfile(
        ErrorSeverity.HIGH,
        True,
        "Database schema mismatch",
        "Your data uses a format this version cannot convert automatically.",
        (
            _ActionTemplate(
                RecoveryActionKind.SKIP,
                "Skip the incompatible tables",
                True,
                risk_level="medium",
            ),
            _ActionTemplate(
                RecoveryActionKind.MANUAL_INTERVENTION,
                "Update the application before migrating",
                False,
            ),
            _ABORT,
        ),
    ),
    ErrorKind.CONNECTION_FAILED: _ErrorProfile(
        ErrorSeverity.MEDIUM,
        True,
        "Database connection failed",
        "A database could not be opened. Close other programs that may be "
        "using it and try again.",
        (
            _ActionTemplate(
                RecoveryActionKind.RETRY,
                "Retry the connection after a short delay",
                True,
                probe="delay",
            ),
            _ActionTemplate(
                RecoveryActionKind.MANUAL_INTERVENTION,
                "Close other programs using the database",
                False,
            ),
            _ABORT,
        ),
    ),
    ErrorKind.TIMEOUT: _ErrorProfile(
        ErrorSeverity.MEDIUM,
        True,
        "Operation timed out",
        "The migration is taking longer than expected. It will be retried.",
        (
            _ActionTemplate(
                RecoveryActionKind.RETRY,
                "Retry the operation after a short delay",
                True,
                probe="delay",
            ),
            _ActionTemplate(
                RecoveryActionKind.SKIP,
                "Skip the slow operation",
                True,
                risk_level="medium",
            ),
            _ABORT,
        ),
    ),
    ErrorKind.DEPENDENCY_MISSING: _ErrorProfile(
        ErrorSeverity.HIGH,
        True,
        "Required component missing",
        "A component needed for the migration is not installed. Reinstall "
        "the application and try again.",
        (
            _ActionTemplate(
                RecoveryActionKind.MANUAL_INTERVENTION,
                "Install the missing component",
                False,
            ),
            _ABORT,
        ),
    ),
    ErrorKind.VALIDATION_FAILED: _ErrorProfile(
        ErrorSeverity.MEDIUM,
        True,
        "Data validation failed",
        "Some migrated data did not pass validation checks.",
        (
            _ActionTemplate(
                RecoveryActionKind.SKIP,
                "Skip the invalid records",
                True,
                risk_level="medium",
            ),
            _ActionTemplate(
                RecoveryActionKind.MANUAL_INTERVENTION,
                "Review the validation report",
                False,
            ),
            _ABORT,
        ),
    ),
    ErrorKind.BACKUP_FAILED: _ErrorProfile(
        ErrorSeverity.HIGH,
        True,
        "Backup failed",
        "A safety backup of your data could not be created.",
        (
            _ActionTemplate(
                RecoveryActionKind.RETRY,
                "Retry creating the backup",
                True,
                probe="disk_space",
            ),
            _ActionTemplate(
                RecoveryActionKind.MANUAL_INTERVENTION,
                "Back up the data directory by hand",
                False,
            ),
            _ABORT,
        ),
    ),
    ErrorKind.ROLLBACK_FAILED: _ErrorProfile(
        ErrorSeverity.CRITICAL,
        False,
        "Rollback failed",
        "Your data could not be restored automatically. Please restore it "
        "manually from the files in the migration backups folder.",
        (
            _ActionTemplate(
                RecoveryActionKind.MANUAL_INTERVENTION,
                "Restore the databases from the migration backups folder",
                False,
            ),
        ),
    ),
    ErrorKind.UNKNOWN: _ErrorProfile(
        ErrorSeverity.MEDIUM,
        True,
        "Unexpected error",
        "An unexpected problem occurred during the migration.",
        (
            _ActionTemplate(RecoveryActionKind.RETRY, "Retry the operation", True),
            _ActionTemplate(
                RecoveryActionKind.SKIP,
                "Skip the failed operation",
                True,
                risk_level="medium",
            ),
            _ABORT,
        ),
    ),
}


# =============================================================================
# Handler
# =============================================================================


class MigrationErrorHandler:
    """Classifies failures and decides how the migration responds.

    Args:
        data_dir: Directory probed for free space and write access
        classifiers: Classifier chain, first non-None answer wins
        retry_delay_seconds: Wait performed by the delay probe
        backups_available: Probe telling whether rollback is possible
        max_attempts: Occurrences of one (kind, phase) before forcing abort
    """

    def __init__(
        self,
        data_dir: Path,
        classifiers: Optional[Sequence[ErrorClassifier]] = None,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        backups_available: Optional[Callable[[], bool]] = None,
        max_attempts: int = MAX_RETRY_ATTEMPTS,
    ):
        self.data_dir = data_dir
        self.classifiers = list(classifiers) if classifiers is not None else [
            StructuredErrorClassifier(),
            MessagePatternClassifier(),
        ]
        self.retry_delay_seconds = retry_delay_seconds
        self.backups_available = backups_available or (lambda: False)
        self.max_attempts = max_attempts
        self._attempts: dict[RetryKey, int] = {}
        self._retries: dict[RetryKey, int] = {}

    # -------------------------------------------------------------------------
    # Classification
    # -------------------------------------------------------------------------

    def classify(self, error: BaseException, context: ErrorContext) -> ClassifiedError:
        """Map an exception onto the taxonomy."""
        kind = ErrorKind.UNKNOWN
        for classifier in self.classifiers:
            found = classifier.classify(error, context)
            if found is not None:
                kind = found
                break

        profile = _PROFILES[kind]
        return ClassifiedError(
            kind=kind,
            severity=profile.severity,
            recoverable=profile.recoverable,
            message=profile.message,
            user_friendly_message=profile.user_friendly_message,
            technical_details=f"{type(error).__name__}: {error}",
            context=context,
            actions=tuple(self._materialize(t, context) for t in profile.actions),
        )

    def _materialize(self, template: _ActionTemplate, context: ErrorContext) -> RecoveryAction:
        def backups_exist() -> bool:
            if context.backups_available is not None:
                return context.backups_available
            return self.backups_available()

        probes: dict[str, Callable[[], bool]] = {
            "disk_space": self._has_free_space,
            "permissions": self._is_writable,
            "delay": self._wait_before_retry,
            "backups_exist": backups_exist,
        }
        return RecoveryAction(
            kind=template.kind,
            description=template.description,
            automated=template.automated,
            risk_level=template.risk_level,
            precondition=probes.get(template.probe) if template.probe else None,
        )

    # -------------------------------------------------------------------------
    # Probes
    # -------------------------------------------------------------------------

    def _existing_dir(self) -> Path:
        probe = self.data_dir
        while not probe.exists() and probe.parent != probe:
            probe = probe.parent
        return probe

    def _has_free_space(self) -> bool:
        try:
            return shutil.disk_usage(self._existing_dir()).free >= MIN_FREE_SPACE_BYTES
        except OSError as e:
            logger.warning(f"Free-space probe failed: {e}")
            return False

    def _is_writable(self) -> bool:
        probe = self._existing_dir() / f".tessera-write-probe-{time.time_ns()}"
        try:
            probe.write_bytes(b"")
            probe.unlink()
            return True
        except OSError:
            return False

    def _wait_before_retry(self) -> bool:
        if self.retry_delay_seconds > 0:
            time.sleep(self.retry_delay_seconds)
        return True

    # -------------------------------------------------------------------------
    # Policy
    # -------------------------------------------------------------------------

    def handle(self, error: BaseException, context: ErrorContext) -> ErrorHandlingResult:
        """Classify an error, pick a recovery action and carry it out.

        Args:
            error: The exception raised by a migration step
            context: Phase and time of the failure

        Returns:
            ErrorHandlingResult describing the decision
        """
        classified = self.classify(error, context)
        self._log(classified)

        key = RetryKey(classified.kind, context.phase)
        attempts = self._attempts.get(key, 0)
        self._attempts[key] = attempts + 1

        if attempts >= self.max_attempts:
            return ErrorHandlingResult(
                handled=True,
                action_taken=RecoveryActionKind.ABORT,
                success=False,
                should_continue=False,
                should_retry=False,
                message=f"Maximum retry attempts exceeded. {classified.user_friendly_message}",
                error=classified,
            )

        action = self._select_action(classified.actions, first_attempt=attempts == 0)
        return self._execute(action, classified, key)

    def _select_action(
        self, actions: Sequence[RecoveryAction], first_attempt: bool
    ) -> RecoveryAction:
        def first_of(kind: RecoveryActionKind, automated_only: bool) -> Optional[RecoveryAction]:
            for action in actions:
                if action.kind == kind and (action.automated or not automated_only):
                    return action
            return None

        if first_attempt:
            for kind in (RecoveryActionKind.RETRY, RecoveryActionKind.SKIP):
                chosen = first_of(kind, automated_only=True)
                if chosen:
                    return chosen
            automated = [a for a in actions if a.automated]
            if automated:
                return automated[0]
        else:
            for kind in (RecoveryActionKind.SKIP, RecoveryActionKind.ABORT):
                chosen = first_of(kind, automated_only=False)
                if chosen:
                    return chosen
        return actions[0]

    def _execute(
        self, action: RecoveryAction, classified: ClassifiedError, key: RetryKey
    ) -> ErrorHandlingResult:
        message = classified.user_friendly_message
        success = False
        should_continue = False
        should_retry = False

        if action.kind == RecoveryActionKind.RETRY:
            self._retries[key] = self._retries.get(key, 0) + 1
            success = action.precondition() if action.precondition else True
            should_retry = success
            if not success:
                message = f"{message} The problem is still present."
        elif action.kind in (RecoveryActionKind.SKIP, RecoveryActionKind.IGNORE):
            success = True
            should_continue = True
        elif action.kind == RecoveryActionKind.ROLLBACK:
            success = action.precondition() if action.precondition else True
        elif action.kind == RecoveryActionKind.MANUAL_INTERVENTION:
            message = f"{message} {action.description}."

        logger.info(
            f"Recovery action for {classified.kind.value} in "
            f"{classified.context.phase.value}: {action.kind.value} (success={success})"
        )
        return ErrorHandlingResult(
            handled=True,
            action_taken=action.kind,
            success=success,
            should_continue=should_continue,
            should_retry=should_retry,
            message=message,
            error=classified,
        )

    def _log(self, classified: ClassifiedError) -> None:
        entry = {
            "kind": classified.kind.value,
            "severity": classified.severity.value,
            "recoverable": classified.recoverable,
            "phase": classified.context.phase.value,
            "timestamp": classified.context.timestamp,
            "technical_details": classified.technical_details,
            "extra": classified.context.extra,
        }
        logger.error(f"Migration error: {json.dumps(entry, default=str)}")

    # -------------------------------------------------------------------------
    # Counters
    # -------------------------------------------------------------------------

    def attempt_count(self, kind: ErrorKind, phase: Phase) -> int:
        """Occurrences of (kind, phase) handled so far."""
        return self._attempts.get(RetryKey(kind, phase), 0)

    def retry_count(self, kind: ErrorKind, phase: Phase) -> int:
        """Retries chosen for (kind, phase) so far."""
        return self._retries.get(RetryKey(kind, phase), 0)

    def reset_retry_attempts(self, kind: ErrorKind, phase: Phase) -> None:
        key = RetryKey(kind, phase)
        self._attempts.pop(key, None)
        self._retries.pop(key, None)

    def clear_all_retry_attempts(self) -> None:
        self._attempts.clear()
        self._retries.clear()
