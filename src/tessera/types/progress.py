"""Migration phases, progress snapshots and final results."""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

from tessera.types.backup import BackupRecord


class Phase(str, Enum):
    """Phase of a migration run, also used to key retry counters."""

    DETECTION = "detection"
    BACKUP = "backup"
    SCHEMA = "schema"
    DATA = "data"
    VALIDATION = "validation"
    CLEANUP = "cleanup"
    ROLLBACK = "rollback"


class MigrationOutcome(str, Enum):
    """Terminal state of a migration run."""

    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    DRY_RUN_COMPLETED = "dry-run-completed"


@dataclass
class MigrationProgress:
    """Live progress of the current run.

    Attributes:
        phase: Current phase
        current_step: Human-readable description of the step
        percentage: 0-100, never decreases within a run
        started_at: Run start (epoch seconds)
        eta_seconds: Estimated time remaining, None until known
        records_processed: Rows migrated so far
        total_records: Rows expected over all databases
    """

    phase: Phase
    current_step: str
    percentage: int = 0
    started_at: float = 0.0
    eta_seconds: Optional[float] = None
    records_processed: int = 0
    total_records: int = 0


@dataclass(frozen=True)
class PhaseTiming:
    """Wall-clock span of one phase within a run (epoch seconds)."""

    phase: Phase
    started_at: float
    finished_at: float

    @property
    def duration(self) -> float:
        return self.finished_at - self.started_at


@dataclass(frozen=True)
class MigrationResult:
    """Final result of ``MigrationOrchestrator.execute_migration``.

    Attributes:
        success: True for completed and dry-run-completed outcomes
        outcome: Terminal state
        phase: Last phase reached
        started_at: Run start (epoch seconds)
        finished_at: Run end (epoch seconds)
        records_migrated: Rows written to the unified store
        errors: User-facing error messages
        warnings: Non-fatal observations
        backups: Backups taken during the run
        recovery_point_id: Recovery point captured on cancellation
        report_path: Markdown report written for the run
        failed_phase: Phase the failure happened in, None unless failed
        phase_timings: Phases in the order they ran, with their spans
    """

    success: bool
    outcome: MigrationOutcome
    phase: Phase
    started_at: float
    finished_at: float
    records_migrated: int = 0
    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    backups: tuple[BackupRecord, ...] = field(default_factory=tuple)
    recovery_point_id: Optional[str] = None
    report_path: Optional[Path] = None
    failed_phase: Optional[Phase] = None
    phase_timings: tuple[PhaseTiming, ...] = ()

    @property
    def duration(self) -> float:
        return self.finished_at - self.started_at

    @property
    def backup_paths(self) -> list[Path]:
        return [b.backup_path for b in self.backups]
