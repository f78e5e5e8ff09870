"""Migration reports.

Each non-dry run leaves a JSON report for tooling and a Markdown report
for people in the reports directory. The reports carry technical detail
(exception text, paths) that is kept out of user-facing messages.
"""

import json
import logging
from collections.abc import Sequence
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from tessera.migration.error_handler import ClassifiedError
from tessera.types.progress import MigrationResult

logger = logging.getLogger(__name__)


def _iso(moment: float) -> str:
    return datetime.fromtimestamp(moment, tz=timezone.utc).isoformat()


def _error_summary(error: ClassifiedError) -> dict[str, Any]:
    return {
        "kind": error.kind.value,
        "severity": error.severity.value,
        "recoverable": error.recoverable,
        "phase": error.context.phase.value,
        "timestamp": error.context.timestamp,
        "technical_details": error.technical_details,
        "actions": [a.kind.value for a in error.actions],
    }


def build_report(
    result: MigrationResult, classified_errors: Sequence[ClassifiedError] = ()
) -> dict[str, Any]:
    """Build the JSON-serializable report for a finished run."""
    return {
        "outcome": result.outcome.value,
        "success": result.success,
        "phase": result.phase.value,
        "failed_phase": result.failed_phase.value if result.failed_phase else None,
        "started_at": _iso(result.started_at),
        "finished_at": _iso(result.finished_at),
        "duration_seconds": round(result.duration, 3),
        "records_migrated": result.records_migrated,
        "errors": list(result.errors),
        "warnings": list(result.warnings),
        "backups": [json.loads(b.model_dump_json()) for b in result.backups],
        "recovery_point_id": result.recovery_point_id,
        "phase_timings": [
            {
                "phase": t.phase.value,
                "started_at": _iso(t.started_at),
                "duration_seconds": round(t.duration, 3),
            }
            for t in result.phase_timings
        ],
        "classified_errors": [_error_summary(e) for e in classified_errors],
    }


def render_markdown(report: dict[str, Any]) -> str:
    """Render a report dict as Markdown."""
    lines = [
        "# Migration Report",
        "",
        f"- **Outcome:** {report['outcome']}",
        f"- **Last phase:** {report['phase']}",
    ]
    if report["failed_phase"]:
        lines.append(f"- **Failed in phase:** {report['failed_phase']}")
    lines += [
        f"- **Started:** {report['started_at']}",
        f"- **Finished:** {report['finished_at']}",
        f"- **Duration:** {report['duration_seconds']} s",
        f"- **Records migrated:** {report['records_migrated']}",
        "",
    ]

    for title, key in (("Errors", "errors"), ("Warnings", "warnings")):
        if report[key]:
            lines += [f"## {title}", ""]
            lines += [f"- {item}" for item in report[key]]
            lines.append("")

    if report["phase_timings"]:
        lines += ["## Phase Timings", "", "| Phase | Started | Duration (s) |", "|---|---|---|"]
        for timing in report["phase_timings"]:
            lines.append(
                f"| {timing['phase']} | {timing['started_at']} "
                f"| {timing['duration_seconds']} |"
            )
        lines.append("")

    if report["backups"]:
        lines += ["## Backups", "", "| Original | Backup | Size | SHA-256 |", "|---|---|---|---|"]
        for backup in report["backups"]:
            lines.append(
                f"| {backup['original_path']} | {backup['backup_path']} "
                f"| {backup['size']} | `{backup['checksum'][:16]}` |"
            )
        lines.append("")

    if report["classified_errors"]:
        lines += ["## Technical Details", ""]
        for error in report["classified_errors"]:
            lines.append(
                f"- `{error['kind']}` ({error['severity']}, phase {error['phase']}): "
                f"{error['technical_details']}"
            )
        lines.append("")

    return "\n".join(lines)


class MigrationReportWriter:
    """Writes JSON and Markdown reports into one directory."""

    def __init__(self, reports_dir: Path):
        self.reports_dir = reports_dir

    def write(
        self, result: MigrationResult, classified_errors: Sequence[ClassifiedError] = ()
    ) -> Path:
        """Write both report files.

        Returns:
            Path of the Markdown report

        Raises:
            OSError: If the reports cannot be written
        """
        report = build_report(result, classified_errors)
        stamp = datetime.fromtimestamp(result.started_at, tz=timezone.utc).strftime(
            "%Y%m%dT%H%M%S%fZ"
        )
        self.reports_dir.mkdir(parents=True, exist_ok=True)
        json_path = self.reports_dir / f"migration_{stamp}.json"
        md_path = self.reports_dir / f"migration_{stamp}.md"
        json_path.write_text(json.dumps(report, indent=2), encoding="utf-8")
        md_path.write_text(render_markdown(report), encoding="utf-8")
        logger.info(f"Wrote migration report {md_path}")
        return md_path
