"""Input and output content screening.

Input screening unions the issues from every rule table (length, prompt
injection, toxicity, PII, encoding) and then applies one blocking policy:

- any HIGH severity issue blocks
- a MEDIUM prompt-injection issue blocks
- everything else is sanitized (PII redacted, whitespace collapsed, angle and
  brace characters stripped)

Output screening replaces toxic responses outright, redacts PII, and always
redacts system leakage (provider names and model ids, key-like tokens,
internal addresses) so provider identity never reaches the end user.
"""

from __future__ import annotations

import re
from collections.abc import AsyncIterable, AsyncIterator, Iterable
from dataclasses import dataclass, field
from typing import Literal

import structlog

from resilience.safety.rules import (
    ENCODING_RULES,
    INJECTION_RULES,
    LEAKAGE_RULES,
    PII_RULES,
    TOXIC_KEYWORD_RULES,
    VIOLENCE_RULE,
    IssueType,
    PatternRule,
    Severity,
    profanity_rule,
)

log = structlog.get_logger(__name__)

DEFAULT_MAX_INPUT_LENGTH = 10000

INPUT_BLOCKED_MESSAGE = (
    "I'm sorry, but I can't process that request due to safety concerns. "
    "Please rephrase your question."
)
OUTPUT_REPLACEMENT_MESSAGE = (
    "I apologize, but I can't provide that response. "
    "Let me try again with a different approach."
)

_WHITESPACE = re.compile(r"\s+")
_UNSAFE_CHARS = re.compile(r"[<>{}]")


@dataclass(frozen=True)
class SafetyIssue:
    """A single finding from one rule."""

    type: IssueType
    severity: Severity
    description: str
    rule: str

    def __str__(self) -> str:
        return f"{self.type}: {self.description}"


@dataclass
class SafetyResult:
    """Outcome of input validation."""

    is_valid: bool
    issues: list[SafetyIssue]
    sanitized_text: str
    severity: Severity
    blocked: bool
    messages: list[str] = field(init=False)

    def __post_init__(self) -> None:
        self.messages = [str(issue) for issue in self.issues]

    def has_issue(self, issue_type: IssueType) -> bool:
        return any(issue.type == issue_type for issue in self.issues)


def _overall_severity(issues: Iterable[SafetyIssue]) -> Severity:
    return max((issue.severity for issue in issues), key=lambda s: s.rank, default=Severity.LOW)


class SafetyFilter:
    """Pattern-based content screening driven by declarative rule tables.

    Usage:
        safety = SafetyFilter()
        result = safety.validate_input(user_text)
        if result.blocked:
            return INPUT_BLOCKED_MESSAGE
        prompt = result.sanitized_text
        ...
        reply = safety.validate_output(model_text)
    """

    def __init__(
        self,
        *,
        max_input_length: int = DEFAULT_MAX_INPUT_LENGTH,
        profanity_threshold: int = 3,
        extra_rules: Iterable[PatternRule] = (),
        leak_terms: Iterable[str] = (),
    ) -> None:
        self._max_input_length = max_input_length
        self._input_rules: tuple[PatternRule, ...] = (
            *INJECTION_RULES,
            *TOXIC_KEYWORD_RULES,
            profanity_rule(profanity_threshold),
            VIOLENCE_RULE,
            *PII_RULES,
            *ENCODING_RULES,
            *extra_rules,
        )
        self._output_toxicity: tuple[PatternRule, ...] = TOXIC_KEYWORD_RULES
        self._leak_terms: list[str] = []
        self._leak_pattern: re.Pattern[str] | None = None
        self.register_leak_terms(leak_terms)

    # ------------------------------------------------------------------ #
    # Input
    # ------------------------------------------------------------------ #

    def scan(self, text: str) -> list[SafetyIssue]:
        """Run every input rule and return the union of their issues."""
        issues: list[SafetyIssue] = []
        if len(text) > self._max_input_length:
            issues.append(
                SafetyIssue(
                    type=IssueType.LENGTH,
                    severity=Severity.MEDIUM,
                    description=(
                        f"Input exceeds maximum length of {self._max_input_length} characters"
                    ),
                    rule="max_length",
                )
            )
        for rule in self._input_rules:
            matches = rule.count(text)
            if not matches:
                continue
            description = rule.description
            if rule.issue_type == IssueType.PII:
                description = f"{description} ({matches} instance(s))"
            issues.append(
                SafetyIssue(
                    type=rule.issue_type,
                    severity=rule.severity,
                    description=description,
                    rule=rule.name,
                )
            )
        return issues

    def validate_input(self, text: str) -> SafetyResult:
        """Screen user input, returning sanitized text or a block decision."""
        issues = self.scan(text)
        blocked = any(
            issue.severity == Severity.HIGH
            or (issue.type == IssueType.PROMPT_INJECTION and issue.severity == Severity.MEDIUM)
            for issue in issues
        )
        severity = _overall_severity(issues)

        if blocked:
            log.warning(
                "safety.input_blocked",
                severity=severity,
                rules=[issue.rule for issue in issues],
            )
            sanitized = ""
        else:
            sanitized = self.sanitize(text[: self._max_input_length])
            if issues:
                log.info(
                    "safety.input_sanitized",
                    severity=severity,
                    rules=[issue.rule for issue in issues],
                )

        return SafetyResult(
            is_valid=not blocked and not issues,
            issues=issues,
            sanitized_text=sanitized,
            severity=severity,
            blocked=blocked,
        )

    def sanitize(self, text: str) -> str:
        """Redact PII, collapse whitespace and strip angle/brace characters."""
        sanitized = self.redact_pii(text)
        sanitized = _WHITESPACE.sub(" ", sanitized).strip()
        return _UNSAFE_CHARS.sub("", sanitized)

    def validate_research_content(
        self,
        content: str,
        kind: Literal["search", "report", "summary"],
    ) -> SafetyResult:
        """Input validation plus minimum-length hints for research workflows."""
        result = self.validate_input(content)
        extra: list[SafetyIssue] = []
        if kind == "search" and len(content) < 10:
            extra.append(
                SafetyIssue(
                    type=IssueType.LENGTH,
                    severity=Severity.LOW,
                    description="Search query might be too short for effective results",
                    rule="search_min_length",
                )
            )
        if kind == "report" and len(content) < 100:
            extra.append(
                SafetyIssue(
                    type=IssueType.LENGTH,
                    severity=Severity.LOW,
                    description="Report content might be too brief",
                    rule="report_min_length",
                )
            )
        if not extra:
            return result

        issues = result.issues + extra
        return SafetyResult(
            is_valid=False,
            issues=issues,
            sanitized_text=result.sanitized_text,
            severity=_overall_severity(issues),
            blocked=result.blocked,
        )

    # ------------------------------------------------------------------ #
    # Output
    # ------------------------------------------------------------------ #

    def register_leak_terms(self, terms: Iterable[str]) -> None:
        """Add provider names / model ids that must never appear in output."""
        for term in terms:
            term = term.strip()
            if term and term.lower() not in {t.lower() for t in self._leak_terms}:
                self._leak_terms.append(term)
        if self._leak_terms:
            # Longest first so "gpt-4o-mini" wins over "gpt-4o"
            ordered = sorted(self._leak_terms, key=len, reverse=True)
            self._leak_pattern = re.compile(
                "|".join(re.escape(term) for term in ordered),
                re.IGNORECASE,
            )

    def validate_output(self, text: str) -> str:
        """Return text that is safe to show the end user."""
        if any(rule.count(text) for rule in self._output_toxicity):
            log.warning("safety.output_replaced", reason="toxicity")
            return OUTPUT_REPLACEMENT_MESSAGE
        return self.redact_system_info(self.redact_pii(text))

    def redact_pii(self, text: str) -> str:
        redacted = text
        for rule in PII_RULES:
            redacted = rule.pattern.sub(rule.replacement or "", redacted)
        return redacted

    def redact_system_info(self, text: str) -> str:
        redacted = text
        if self._leak_pattern is not None:
            redacted = self._leak_pattern.sub("the AI system", redacted)
        for pattern, replacement in LEAKAGE_RULES:
            redacted = pattern.sub(replacement, redacted)
        return redacted

    async def filter_stream(self, chunks: AsyncIterable[str]) -> AsyncIterator[str]:
        """Redact a streamed response without splitting a token across chunks.

        Text is held back until a whitespace boundary so a pattern spanning
        two chunks is still seen whole.
        """
        buffer = ""
        async for chunk in chunks:
            buffer += chunk
            cut = max(buffer.rfind(" "), buffer.rfind("\n"))
            if cut < 0:
                continue
            head, buffer = buffer[: cut + 1], buffer[cut + 1 :]
            yield self.redact_system_info(self.redact_pii(head))
        if buffer:
            yield self.redact_system_info(self.redact_pii(buffer))
