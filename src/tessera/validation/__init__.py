"""Validation of the unified database after migration.

- DataValidator: rule registry plus a standalone integrity pass
- default_rules: the standard structure/data/relationships/performance rules
"""

from tessera.validation.validator import (
    DataValidationResult,
    DataValidator,
    IntegrityCheckResult,
    IntegrityIssue,
    IssueSeverity,
    RuleSeverity,
    ValidationCategory,
    ValidationRule,
    ValidationRuleResult,
    default_rules,
)

__all__ = [
    "DataValidationResult",
    "DataValidator",
    "IntegrityCheckResult",
    "IntegrityIssue",
    "IssueSeverity",
    "RuleSeverity",
    "ValidationCategory",
    "ValidationRule",
    "ValidationRuleResult",
    "default_rules",
]
