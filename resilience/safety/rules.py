"""Declarative safety rule tables.

Each rule maps a compiled pattern to an issue type and severity. The filter
walks the tables; it never hardcodes a check. Adding a rule means adding a
row here.

Rule fields beyond the pattern:
- ``requires``: a second pattern that must also match (conjunctions)
- ``unless``: a pattern whose presence suppresses the rule (e.g. fiction)
- ``min_count``: number of matches needed before the rule fires (density)
- ``replacement``: redaction text, for rules that sanitize instead of flag
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import StrEnum


class IssueType(StrEnum):
    PROMPT_INJECTION = "prompt_injection"
    TOXICITY = "toxicity"
    PII = "pii"
    LENGTH = "length"
    ENCODING = "encoding"


class Severity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {Severity.LOW: 0, Severity.MEDIUM: 1, Severity.HIGH: 2}


@dataclass(frozen=True)
class PatternRule:
    """A single declarative content check."""

    name: str
    pattern: re.Pattern[str]
    issue_type: IssueType
    severity: Severity
    description: str
    requires: re.Pattern[str] | None = None
    unless: re.Pattern[str] | None = None
    min_count: int = 1
    replacement: str | None = None

    def count(self, text: str) -> int:
        """Return the number of matches, or 0 if the rule does not fire."""
        if self.unless is not None and self.unless.search(text):
            return 0
        if self.requires is not None and not self.requires.search(text):
            return 0
        found = len(self.pattern.findall(text))
        return found if found >= self.min_count else 0


def _rx(pattern: str) -> re.Pattern[str]:
    return re.compile(pattern, re.IGNORECASE)


REDACTED = "[REDACTED]"


# ---------------------------------------------------------------------------
# Prompt injection
# ---------------------------------------------------------------------------

INJECTION_RULES: tuple[PatternRule, ...] = (
    PatternRule(
        name="ignore_instructions",
        pattern=_rx(r"ignore\s+(?:previous|all|prior)\s+instructions"),
        issue_type=IssueType.PROMPT_INJECTION,
        severity=Severity.HIGH,
        description="Potential prompt injection detected",
    ),
    PatternRule(
        name="identity_swap",
        pattern=_rx(r"you\s+are\s+now\s+a\s+different"),
        issue_type=IssueType.PROMPT_INJECTION,
        severity=Severity.HIGH,
        description="Potential prompt injection detected",
    ),
    PatternRule(
        name="pretend",
        pattern=_rx(r"pretend\s+to\s+be"),
        issue_type=IssueType.PROMPT_INJECTION,
        severity=Severity.HIGH,
        description="Potential prompt injection detected",
    ),
    PatternRule(
        name="system_forget",
        pattern=_rx(r"system\s*:\s*forget"),
        issue_type=IssueType.PROMPT_INJECTION,
        severity=Severity.HIGH,
        description="Potential prompt injection detected",
    ),
    PatternRule(
        name="hex_escape",
        pattern=_rx(r"\\x[0-9a-f]{2}"),
        issue_type=IssueType.PROMPT_INJECTION,
        severity=Severity.HIGH,
        description="Hex-escaped content detected",
    ),
    PatternRule(
        name="script_injection",
        pattern=_rx(r"<script|javascript:|data:"),
        issue_type=IssueType.PROMPT_INJECTION,
        severity=Severity.HIGH,
        description="Script or data URI injection detected",
    ),
    PatternRule(
        name="template_injection",
        pattern=re.compile(r"\{\{.*?\}\}", re.DOTALL),
        issue_type=IssueType.PROMPT_INJECTION,
        severity=Severity.HIGH,
        description="Template injection syntax detected",
    ),
    PatternRule(
        name="role_confusion",
        pattern=_rx(r"\b(?:assistant|system|user)\s*:"),
        issue_type=IssueType.PROMPT_INJECTION,
        severity=Severity.MEDIUM,
        description="Role confusion attempt detected",
    ),
    PatternRule(
        name="instruction_override",
        pattern=_rx(r"\b(?:forget|ignore|bypass|override)\b"),
        requires=_rx(r"\b(?:instructions?|rules?|guidelines?|prompts?)\b"),
        issue_type=IssueType.PROMPT_INJECTION,
        severity=Severity.HIGH,
        description="Instruction manipulation attempt detected",
    ),
)


# ---------------------------------------------------------------------------
# Toxicity
# ---------------------------------------------------------------------------

TOXIC_KEYWORDS: tuple[str, ...] = (
    "hate",
    "violence",
    "harm",
    "illegal",
    "exploit",
    "discriminat",
    "threat",
    "harass",
    "abuse",
)

_FICTION_CONTEXT = _rx(r"\b(?:game|movie|book|fiction|story|novel|film)s?\b")

TOXIC_KEYWORD_RULES: tuple[PatternRule, ...] = tuple(
    PatternRule(
        name=f"toxic_{keyword}",
        pattern=_rx(rf"\b{keyword}"),
        issue_type=IssueType.TOXICITY,
        severity=Severity.MEDIUM,
        description=f"Potentially toxic content detected: {keyword}",
    )
    for keyword in TOXIC_KEYWORDS
)

VIOLENCE_RULE = PatternRule(
    name="violent_language",
    pattern=_rx(r"\b(?:kill|murder|die|death|hurt|pain|blood)\b"),
    unless=_FICTION_CONTEXT,
    issue_type=IssueType.TOXICITY,
    severity=Severity.HIGH,
    description="Violent language detected",
)

_PROFANITY = _rx(r"\b(?:damn|hell|shit|fuck|bitch)\b")


def profanity_rule(threshold: int) -> PatternRule:
    """Profanity density rule: fires when matches exceed threshold."""
    return PatternRule(
        name="profanity_density",
        pattern=_PROFANITY,
        min_count=threshold + 1,
        issue_type=IssueType.TOXICITY,
        severity=Severity.MEDIUM,
        description="High profanity content detected",
    )


# ---------------------------------------------------------------------------
# PII (order matters: longer digit runs are redacted before phone numbers)
# ---------------------------------------------------------------------------

PII_RULES: tuple[PatternRule, ...] = (
    PatternRule(
        name="ssn",
        pattern=re.compile(r"\b\d{3}-\d{2}-\d{4}\b"),
        issue_type=IssueType.PII,
        severity=Severity.MEDIUM,
        description="Government ID number detected",
        replacement=REDACTED,
    ),
    PatternRule(
        name="payment_card",
        pattern=re.compile(r"\b(?:\d[ -]?){12,18}\d\b"),
        issue_type=IssueType.PII,
        severity=Severity.MEDIUM,
        description="Payment card number detected",
        replacement=REDACTED,
    ),
    PatternRule(
        name="email",
        pattern=re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
        issue_type=IssueType.PII,
        severity=Severity.MEDIUM,
        description="Email address detected",
        replacement=REDACTED,
    ),
    PatternRule(
        name="phone",
        pattern=re.compile(r"\b\d{3}[-.]\d{3}[-.]\d{4}\b"),
        issue_type=IssueType.PII,
        severity=Severity.MEDIUM,
        description="Phone number detected",
        replacement=REDACTED,
    ),
)


# ---------------------------------------------------------------------------
# Encoding anomalies
# ---------------------------------------------------------------------------

ENCODING_RULES: tuple[PatternRule, ...] = (
    PatternRule(
        name="url_encoding",
        pattern=_rx(r"(?:%[0-9a-f]{2})+"),
        issue_type=IssueType.ENCODING,
        severity=Severity.MEDIUM,
        description="URL encoding detected",
    ),
    PatternRule(
        name="base64_blob",
        pattern=re.compile(r"[A-Za-z0-9+/]{20,}={0,2}"),
        issue_type=IssueType.ENCODING,
        severity=Severity.LOW,
        description="Base64 encoding detected",
    ),
)


# ---------------------------------------------------------------------------
# Output leakage (provider identity, credentials, internal addresses)
# ---------------------------------------------------------------------------

LEAKAGE_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (_rx(r"\b(?:sk|pk|rk)-[A-Za-z0-9_-]{8,}"), "[SYSTEM INFO]"),
    (_rx(r"\bBearer\s+[A-Za-z0-9._~+/-]{10,}=*"), "[SYSTEM INFO]"),
    (_rx(r"\bapi[_\s-]?keys?\b|\bsecret[_\s-]?keys?\b|\baccess[_\s-]?tokens?\b"), "[SYSTEM INFO]"),
    (_rx(r"\bgpt-\d[\w.-]*"), "the AI system"),
    (_rx(r"\bopenai\b"), "the AI system"),
    (_rx(r"\bgemini(?:-[\w.]+)*"), "the AI system"),
    (_rx(r"\bclaude(?:-[\w.]+)*"), "the AI assistant"),
    (_rx(r"\banthropic\b"), "the AI assistant"),
    (_rx(r"\blocalhost(?::\d+)?\b"), "[INTERNAL ADDRESS]"),
    (
        re.compile(
            r"\b(?:127\.\d{1,3}|10\.\d{1,3}|192\.168|172\.(?:1[6-9]|2\d|3[01]))"
            r"\.\d{1,3}\.\d{1,3}(?::\d+)?\b"
        ),
        "[INTERNAL ADDRESS]",
    ),
)
