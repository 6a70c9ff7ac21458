"""Task type identification and complexity scoring.

Complexity score = input length bucket + context size bonus + task-type base
weight + one point per complexity-indicating phrase pattern.

Input length buckets:   < 200 chars -> 1, < 1000 -> 2, otherwise 3
Context size bonus:     > 2000 chars -> 2, > 500 -> 1
Task-type base weight:  search 1, summarization 2, writing 3, analysis 4,
                        general 2

Score -> level: <= 4 LOW, <= 7 MEDIUM, otherwise HIGH
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import StrEnum

import structlog

log = structlog.get_logger(__name__)


class TaskType(StrEnum):
    SEARCH = "search"
    WRITING = "writing"
    ANALYSIS = "analysis"
    SUMMARIZATION = "summarization"
    GENERAL = "general"


class Complexity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass
class ComplexityScore:
    """Result of complexity scoring.

    Attributes:
        score: Sum of all factor points
        level: Bucketed complexity level
        factors: Individual factor points for observability
    """

    score: int
    level: Complexity
    factors: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class _TaskRule:
    task_type: TaskType
    task_keywords: tuple[str, ...]  # matched against the task description
    input_phrases: tuple[str, ...]  # matched against the user input


class TaskClassifier:
    """Classifies requests with keyword rules and scores their complexity."""

    # Evaluated in order; first match wins
    TASK_RULES: tuple[_TaskRule, ...] = (
        _TaskRule(TaskType.SEARCH, ("search", "find"), ("search for", "find information")),
        _TaskRule(TaskType.WRITING, ("write", "create", "generate"), ("write a",)),
        _TaskRule(
            TaskType.ANALYSIS,
            ("analyze", "analysis", "compare"),
            ("what does this mean",),
        ),
        _TaskRule(
            TaskType.SUMMARIZATION,
            ("summary", "summarize"),
            ("summarize", "brief overview"),
        ),
    )

    TASK_WEIGHTS: dict[TaskType, int] = {
        TaskType.SEARCH: 1,
        TaskType.SUMMARIZATION: 2,
        TaskType.WRITING: 3,
        TaskType.ANALYSIS: 4,
        TaskType.GENERAL: 2,
    }

    COMPLEXITY_PATTERNS: tuple[re.Pattern[str], ...] = (
        re.compile(r"\b(?:analyze|analysis|compare|contrast|evaluate)\b", re.IGNORECASE),
        re.compile(r"\b(?:complex|complicated|intricate|sophisticated)\b", re.IGNORECASE),
        re.compile(r"\b(?:multiple|various|several|different)\b", re.IGNORECASE),
        re.compile(r"\b(?:detailed|comprehensive|thorough|in-depth)\b", re.IGNORECASE),
    )

    LOW_MAX = 4
    MEDIUM_MAX = 7

    def identify_task_type(self, task: str, user_input: str) -> TaskType:
        """Return the first task type whose keywords match task or input."""
        task_lower = task.lower()
        input_lower = user_input.lower()
        for rule in self.TASK_RULES:
            if any(keyword in task_lower for keyword in rule.task_keywords):
                return rule.task_type
            if any(phrase in input_lower for phrase in rule.input_phrases):
                return rule.task_type
        return TaskType.GENERAL

    def estimate_complexity(
        self,
        user_input: str,
        task_type: TaskType,
        context: list[str] | None = None,
    ) -> ComplexityScore:
        """Score a request's complexity from length, context, type and phrasing."""
        factors: dict[str, int] = {}

        length = len(user_input)
        factors["input_length"] = 1 if length < 200 else 2 if length < 1000 else 3

        context_length = sum(len(c) for c in context or [])
        factors["context_length"] = 2 if context_length > 2000 else 1 if context_length > 500 else 0

        factors["task_type"] = self.TASK_WEIGHTS[task_type]
        factors["phrasing"] = sum(
            1 for pattern in self.COMPLEXITY_PATTERNS if pattern.search(user_input)
        )

        score = sum(factors.values())
        if score <= self.LOW_MAX:
            level = Complexity.LOW
        elif score <= self.MEDIUM_MAX:
            level = Complexity.MEDIUM
        else:
            level = Complexity.HIGH

        log.debug(
            "task_classifier.complexity_scored",
            task_type=task_type,
            score=score,
            level=level,
            factors=factors,
        )
        return ComplexityScore(score=score, level=level, factors=factors)
