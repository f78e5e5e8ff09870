"""Rule-based validation of the unified database.

Each ValidationRule is a named, categorized predicate run against a live
Connection. Rules run one after another; a rule that raises is reported
as an error-severity result and the remaining rules still run.

``check_integrity`` is a separate pass that does not use the rule
registry. It counts rows per table, orphaned child rows and duplicate
keys, and reports each problem as an IntegrityIssue:
- inaccessible table: critical
- orphaned rows, duplicate keys: major
"""

import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from tessera.constants import (
    LARGE_CONVERSATION_COUNT,
    LARGE_MESSAGE_COUNT,
    REQUIRED_INDEXES,
    REQUIRED_TABLES,
    UNIFIED_SCHEMA_VERSION,
    VECTOR_QUERY_SLOW_MS,
)
from tessera.storage.connection import Connection

logger = logging.getLogger(__name__)


class ValidationCategory(str, Enum):
    STRUCTURE = "structure"
    DATA = "data"
    RELATIONSHIPS = "relationships"
    PERFORMANCE = "performance"


class RuleSeverity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class IssueSeverity(str, Enum):
    CRITICAL = "critical"
    MAJOR = "major"
    MINOR = "minor"


# =============================================================================
# Result Types
# =============================================================================


@dataclass
class ValidationRuleResult:
    """Outcome of one rule.

    Attributes:
        rule: Rule name
        passed: Whether the predicate held
        severity: Severity of the rule
        message: Short explanation
        affected_records: Rows involved in a failure
        details: Extra rule-specific data
    """

    rule: str
    passed: bool
    severity: RuleSeverity
    message: str
    affected_records: int = 0
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class ValidationRule:
    """A named, categorized check."""

    name: str
    description: str
    category: ValidationCategory
    severity: RuleSeverity
    check: Callable[[Connection], tuple[bool, str, int]]


@dataclass
class DataValidationResult:
    """Outcome of a validation pass.

    ``is_valid`` is False only when an error-severity rule failed;
    warnings and info never affect it.
    """

    is_valid: bool
    errors: list[ValidationRuleResult] = field(default_factory=list)
    warnings: list[ValidationRuleResult] = field(default_factory=list)
    info: list[ValidationRuleResult] = field(default_factory=list)
    summary: dict[str, Any] = field(default_factory=dict)


@dataclass
class IntegrityIssue:
    """A structural problem found by check_integrity."""

    type: str  # orphaned, duplicate, missing
    table: str
    description: str
    affected_records: int
    severity: IssueSeverity


@dataclass
class IntegrityCheckResult:
    is_valid: bool
    issues: list[IntegrityIssue] = field(default_factory=list)
    statistics: dict[str, int] = field(default_factory=dict)


# =============================================================================
# Rule predicates
# =============================================================================


def _scalar(conn: Connection, sql: str, params: Iterable[Any] = ()) -> Any:
    rows = conn.query(sql, list(params))
    if not rows:
        return None
    return next(iter(rows[0].values()))


def _check_schema_version(conn: Connection) -> tuple[bool, str, int]:
    version = _scalar(conn, "SELECT MAX(version) AS v FROM schema_version") or 0
    if version < UNIFIED_SCHEMA_VERSION:
        return False, f"Schema version {version} is older than {UNIFIED_SCHEMA_VERSION}", 0
    return True, f"Schema version {version}", 0


def _existing_objects(conn: Connection, object_type: str) -> set[str]:
    rows = conn.query("SELECT name FROM sqlite_master WHERE type = ?", [object_type])
    return {row["name"] for row in rows}


def _check_required_tables(conn: Connection) -> tuple[bool, str, int]:
    missing = sorted(set(REQUIRED_TABLES) - _existing_objects(conn, "table"))
    if missing:
        return False, f"Missing tables: {', '.join(missing)}", 0
    return True, "All required tables exist", 0


def _check_required_indexes(conn: Connection) -> tuple[bool, str, int]:
    missing = sorted(set(REQUIRED_INDEXES) - _existing_objects(conn, "index"))
    if missing:
        return False, f"Missing indexes: {', '.join(missing)}", 0
    return True, "All required indexes exist", 0


def _check_vector_extension(conn: Connection) -> tuple[bool, str, int]:
    version = _scalar(conn, "SELECT vec_version() AS v")
    return True, f"sqlite-vec {version} loaded", 0


def _count_check(sql: str, what: str) -> Callable[[Connection], tuple[bool, str, int]]:
    def check(conn: Connection) -> tuple[bool, str, int]:
        count = _scalar(conn, sql) or 0
        if count:
            return False, f"{count} {what}", count
        return True, f"No {what}", 0

    return check


_check_conversations = _count_check(
    """
    SELECT COUNT(*) FROM conversations
    WHERE conv_id = '' OR created_at IS NULL OR updated_at < created_at
    """,
    "conversations with missing ids or inconsistent timestamps",
)

_check_messages = _count_check(
    """
    SELECT COUNT(*) FROM messages
    WHERE msg_id = '' OR content IS NULL
       OR role NOT IN ('user', 'assistant', 'system', 'function')
    """,
    "messages with missing ids, content or an invalid role",
)

_check_knowledge_files = _count_check(
    """
    SELECT COUNT(*) FROM knowledge_files
    WHERE name = '' OR path = ''
       OR status NOT IN ('pending', 'processing', 'completed', 'error')
    """,
    "knowledge files with missing names, paths or an invalid status",
)


def _check_vectors(conn: Connection) -> tuple[bool, str, int]:
    broken = _scalar(
        conn,
        "SELECT COUNT(*) FROM knowledge_vectors WHERE vec_length(embedding) != dimensions",
    ) or 0
    if broken:
        return False, f"{broken} vectors whose length does not match their dimensions", broken
    dims = conn.query("SELECT DISTINCT dimensions FROM knowledge_vectors")
    if len(dims) > 1:
        found = sorted(row["dimensions"] for row in dims)
        return False, f"Inconsistent vector dimensions: {found}", len(found)
    return True, "Vector embeddings are consistent", 0


def _check_foreign_keys(conn: Connection) -> tuple[bool, str, int]:
    violations = conn.query("PRAGMA foreign_key_check")
    if violations:
        return False, f"{len(violations)} foreign key violations", len(violations)
    return True, "No foreign key violations", 0


_check_orphaned_attachments = _count_check(
    """
    SELECT COUNT(*) FROM message_attachments a
    LEFT JOIN messages m ON m.msg_id = a.message_id
    WHERE m.msg_id IS NULL
    """,
    "attachments referencing missing messages",
)

_check_circular_references = _count_check(
    """
    WITH RECURSIVE chain(start_id, current_id, depth) AS (
        SELECT msg_id, parent_id, 1 FROM messages
        WHERE parent_id IS NOT NULL AND parent_id != ''
        UNION ALL
        SELECT chain.start_id, m.parent_id, chain.depth + 1
        FROM chain JOIN messages m ON m.msg_id = chain.current_id
        WHERE chain.current_id != chain.start_id
          AND m.parent_id IS NOT NULL
          AND chain.depth < 1000
    )
    SELECT COUNT(DISTINCT start_id) FROM chain WHERE current_id = start_id
    """,
    "messages in circular parent chains",
)


def _check_vector_search(conn: Connection) -> tuple[bool, str, int]:
    sample = conn.query("SELECT embedding, dimensions FROM knowledge_vectors LIMIT 1")
    if not sample:
        return True, "No vectors to search", 0
    start = time.perf_counter()
    conn.query(
        """
        SELECT id, vec_distance_cosine(embedding, ?) AS distance
        FROM knowledge_vectors WHERE dimensions = ?
        ORDER BY distance LIMIT 5
        """,
        [sample[0]["embedding"], sample[0]["dimensions"]],
    )
    elapsed_ms = (time.perf_counter() - start) * 1000
    if elapsed_ms > VECTOR_QUERY_SLOW_MS:
        return False, f"Vector search took {elapsed_ms:.0f} ms", 0
    return True, f"Vector search took {elapsed_ms:.0f} ms", 0


def _check_query_performance(conn: Connection) -> tuple[bool, str, int]:
    conversations = _scalar(conn, "SELECT COUNT(*) FROM conversations") or 0
    messages = _scalar(conn, "SELECT COUNT(*) FROM messages") or 0
    if conversations > LARGE_CONVERSATION_COUNT or messages > LARGE_MESSAGE_COUNT:
        return (
            False,
            f"Large dataset ({conversations} conversations, {messages} messages); "
            "consider running ANALYZE",
            0,
        )
    return True, "Dataset size is within normal limits", 0


def default_rules() -> list[ValidationRule]:
    """Build the standard rule catalogue."""
    return [
        ValidationRule(
            "schema_version_check",
            "Schema is up to date",
            ValidationCategory.STRUCTURE,
            RuleSeverity.ERROR,
            _check_schema_version,
        ),
        ValidationRule(
            "required_tables_check",
            "Required tables exist",
            ValidationCategory.STRUCTURE,
            RuleSeverity.ERROR,
            _check_required_tables,
        ),
        ValidationRule(
            "required_indexes_check",
            "Required indexes exist",
            ValidationCategory.STRUCTURE,
            RuleSeverity.WARNING,
            _check_required_indexes,
        ),
        ValidationRule(
            "vector_extension_check",
            "sqlite-vec is loaded",
            ValidationCategory.STRUCTURE,
            RuleSeverity.ERROR,
            _check_vector_extension,
        ),
        ValidationRule(
            "conversation_data_integrity",
            "Conversation rows are well formed",
            ValidationCategory.DATA,
            RuleSeverity.ERROR,
            _check_conversations,
        ),
        ValidationRule(
            "message_data_integrity",
            "Message rows are well formed",
            ValidationCategory.DATA,
            RuleSeverity.ERROR,
            _check_messages,
        ),
        ValidationRule(
            "knowledge_file_data_integrity",
            "Knowledge file rows are well formed",
            ValidationCategory.DATA,
            RuleSeverity.ERROR,
            _check_knowledge_files,
        ),
        ValidationRule(
            "vector_data_integrity",
            "Embeddings have consistent dimensions",
            ValidationCategory.DATA,
            RuleSeverity.ERROR,
            _check_vectors,
        ),
        ValidationRule(
            "foreign_key_constraints",
            "Foreign keys resolve",
            ValidationCategory.RELATIONSHIPS,
            RuleSeverity.ERROR,
            _check_foreign_keys,
        ),
        ValidationRule(
            "orphaned_records_check",
            "Attachments reference messages",
            ValidationCategory.RELATIONSHIPS,
            RuleSeverity.WARNING,
            _check_orphaned_attachments,
        ),
        ValidationRule(
            "circular_references_check",
            "Message parents do not loop",
            ValidationCategory.RELATIONSHIPS,
            RuleSeverity.ERROR,
            _check_circular_references,
        ),
        ValidationRule(
            "vector_index_performance",
            "Vector search responds quickly",
            ValidationCategory.PERFORMANCE,
            RuleSeverity.INFO,
            _check_vector_search,
        ),
        ValidationRule(
            "query_performance_check",
            "Tables are a manageable size",
            ValidationCategory.PERFORMANCE,
            RuleSeverity.WARNING,
            _check_query_performance,
        ),
    ]


# =============================================================================
# Integrity pass
# =============================================================================

_DATA_TABLES = (
    "conversations",
    "messages",
    "message_attachments",
    "knowledge_files",
    "knowledge_chunks",
    "knowledge_vectors",
)

# (child table, child column, parent table, parent column)
_REFERENCES = (
    ("messages", "conversation_id", "conversations", "conv_id"),
    ("message_attachments", "message_id", "messages", "msg_id"),
    ("knowledge_chunks", "file_id", "knowledge_files", "id"),
    ("knowledge_vectors", "chunk_id", "knowledge_chunks", "id"),
)

# (table, key column)
_UNIQUE_KEYS = (
    ("conversations", "conv_id"),
    ("messages", "msg_id"),
)


class DataValidator:
    """Runs validation rules and integrity checks against a connection.

    Args:
        conn: Connection to the unified database
        rules: Rule catalogue, defaults to default_rules()
    """

    def __init__(self, conn: Connection, rules: Optional[list[ValidationRule]] = None):
        self.conn = conn
        self.rules = rules if rules is not None else default_rules()

    def add_rule(self, rule: ValidationRule) -> None:
        self.rules.append(rule)

    def categories(self) -> list[ValidationCategory]:
        return sorted({rule.category for rule in self.rules}, key=list(ValidationCategory).index)

    def rules_by_category(self, category: ValidationCategory) -> list[ValidationRule]:
        return [rule for rule in self.rules if rule.category == category]

    def _run_rule(self, rule: ValidationRule) -> ValidationRuleResult:
        try:
            passed, message, affected = rule.check(self.conn)
        except Exception as e:
            logger.warning(f"Validation rule {rule.name} failed to run: {e}")
            return ValidationRuleResult(
                rule=rule.name,
                passed=False,
                severity=RuleSeverity.ERROR,
                message=f"Rule execution failed: {e}",
            )
        return ValidationRuleResult(
            rule=rule.name,
            passed=passed,
            severity=rule.severity,
            message=message,
            affected_records=affected,
        )

    def validate(
        self, categories: Optional[Iterable[ValidationCategory]] = None
    ) -> DataValidationResult:
        """Run every rule, or only the rules of the given categories.

        Returns:
            DataValidationResult; failed rules are filed under errors or
            warnings by severity, info rules are always listed under info
        """
        selected = set(categories) if categories is not None else None
        rules = [r for r in self.rules if selected is None or r.category in selected]

        start = time.perf_counter()
        result = DataValidationResult(is_valid=True)
        passed = 0

        for rule in rules:
            outcome = self._run_rule(rule)
            if outcome.passed:
                passed += 1
            if outcome.severity == RuleSeverity.INFO:
                result.info.append(outcome)
            elif not outcome.passed and outcome.severity == RuleSeverity.ERROR:
                result.errors.append(outcome)
            elif not outcome.passed:
                result.warnings.append(outcome)

        result.is_valid = not result.errors
        result.summary = {
            "total_rules": len(rules),
            "passed": passed,
            "failed": len(rules) - passed,
            "duration_seconds": time.perf_counter() - start,
        }
        logger.info(
            f"Validation finished: {passed}/{len(rules)} rules passed, "
            f"{len(result.errors)} errors, {len(result.warnings)} warnings"
        )
        return result

    def check_integrity(self) -> IntegrityCheckResult:
        """Count rows, orphaned references and duplicate keys."""
        result = IntegrityCheckResult(is_valid=True)
        accessible = set()

        for table in _DATA_TABLES:
            try:
                result.statistics[table] = _scalar(self.conn, f"SELECT COUNT(*) FROM {table}")
                accessible.add(table)
            except Exception as e:
                result.issues.append(
                    IntegrityIssue(
                        type="missing",
                        table=table,
                        description=f"Table {table} is not accessible: {e}",
                        affected_records=0,
                        severity=IssueSeverity.CRITICAL,
                    )
                )

        for child, column, parent, parent_column in _REFERENCES:
            if child not in accessible or parent not in accessible:
                continue
            orphans = _scalar(
                self.conn,
                f"""
                SELECT COUNT(*) FROM {child} c
                LEFT JOIN {parent} p ON p.{parent_column} = c.{column}
                WHERE p.{parent_column} IS NULL
                """,
            ) or 0
            if orphans:
                result.issues.append(
                    IntegrityIssue(
                        type="orphaned",
                        table=child,
                        description=f"{orphans} rows in {child} reference missing {parent}",
                        affected_records=orphans,
                        severity=IssueSeverity.MAJOR,
                    )
                )

        for table, key in _UNIQUE_KEYS:
            if table not in accessible:
                continue
            groups = _scalar(
                self.conn,
                f"""
                SELECT COUNT(*) FROM (
                    SELECT {key} FROM {table} GROUP BY {key} HAVING COUNT(*) > 1
                )
                """,
            ) or 0
            if groups:
                result.issues.append(
                    IntegrityIssue(
                        type="duplicate",
                        table=table,
                        description=f"{groups} duplicate {key} values in {table}",
                        affected_records=groups,
                        severity=IssueSeverity.MAJOR,
                    )
                )

        result.is_valid = not any(
            issue.severity in (IssueSeverity.CRITICAL, IssueSeverity.MAJOR)
            for issue in result.issues
        )
        return result
