"""Task classification and provider selection.

Public API:
    TaskType        - search, writing, analysis, summarization, general
    Complexity      - low, medium, high
    TaskClassifier  - Keyword/heuristic classification and complexity scoring
    TaskAnalysis    - Derived per-request analysis (never cached)
    ModelSelection  - Chosen provider, fallbacks and reasoning
    TaskRouter      - Picks the best provider and task-aware fallback order
"""

from resilience.routing.classifier import (
    Complexity,
    ComplexityScore,
    TaskClassifier,
    TaskType,
)
from resilience.routing.router import (
    ModelSelection,
    ScenarioRecommendation,
    TaskAnalysis,
    TaskRouter,
)

__all__ = [
    "TaskType",
    "Complexity",
    "ComplexityScore",
    "TaskClassifier",
    "TaskAnalysis",
    "ModelSelection",
    "ScenarioRecommendation",
    "TaskRouter",
]
