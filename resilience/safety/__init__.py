"""Pattern-based input/output content screening."""

from resilience.safety.filter import (
    INPUT_BLOCKED_MESSAGE,
    OUTPUT_REPLACEMENT_MESSAGE,
    SafetyFilter,
    SafetyIssue,
    SafetyResult,
)
from resilience.safety.rules import IssueType, PatternRule, Severity

__all__ = [
    "SafetyFilter",
    "SafetyIssue",
    "SafetyResult",
    "IssueType",
    "PatternRule",
    "Severity",
    "INPUT_BLOCKED_MESSAGE",
    "OUTPUT_REPLACEMENT_MESSAGE",
]
