"""Task router - picks the best-suited provider and a task-aware fallback order.

Selection:
1. Classify the request (task type + complexity)
2. Look up the recommended capability tier in PREFERENCE_TABLE
3. Pick the highest-priority available provider of that tier
4. If none matches, rank available providers task-specifically
   (cheapest-first for search, most-capable-first for analysis and writing,
   balanced-first for summarization, gateway priority otherwise)
5. Fallbacks = the next two providers by suitability score

Fallback order is intentionally task-aware and may differ from the gateway's
static priority. The router never mutates provider health; it only reads the
gateway's availability view.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import structlog

from resilience.budget.validator import TokenBudgetValidator
from resilience.providers.descriptor import ModelTier, ProviderDescriptor
from resilience.providers.gateway import ProviderGateway
from resilience.routing.classifier import Complexity, TaskClassifier, TaskType

log = structlog.get_logger(__name__)

# Reference per-token price used for pre-call cost estimates
_BASE_COST_PER_TOKEN = 0.00002
# Providers below this per-token cost count as "cheap"
_CHEAP_COST_PER_TOKEN = 0.00001
# Context windows above this count as "large"
_LARGE_CONTEXT_TOKENS = 50000
_FALLBACK_COUNT = 2


@dataclass(frozen=True)
class _Preference:
    tier: ModelTier
    cost_multiplier: float
    reasoning: str


_SEARCH_CHEAP = _Preference(
    ModelTier.LIGHT, 0.1, "Search queries benefit from fast, cost-effective models"
)
_SEARCH_STRONG = _Preference(
    ModelTier.HEAVY, 0.5, "Involved search queries need stronger query planning"
)
_SUMMARY_LIGHT = _Preference(
    ModelTier.LIGHT, 0.2, "Simple summarization works well with a fast model"
)
_SUMMARY_BALANCED = _Preference(
    ModelTier.STANDARD, 0.3, "Complex summarization benefits from long-context comprehension"
)
_WRITING_BALANCED = _Preference(
    ModelTier.STANDARD, 0.4, "Balanced models handle structured writing well"
)
_WRITING_HEAVY = _Preference(
    ModelTier.HEAVY, 0.8, "High-quality writing requires the most capable model"
)
_ANALYSIS = _Preference(ModelTier.HEAVY, 0.9, "Analysis tasks require the most capable models")
_GENERAL_LIGHT = _Preference(ModelTier.LIGHT, 0.5, "Simple general tasks use a fast model")
_GENERAL_HEAVY = _Preference(ModelTier.HEAVY, 0.5, "General tasks use balanced model selection")

PREFERENCE_TABLE: dict[tuple[TaskType, Complexity], _Preference] = {
    (TaskType.SEARCH, Complexity.LOW): _SEARCH_CHEAP,
    (TaskType.SEARCH, Complexity.MEDIUM): _SEARCH_STRONG,
    (TaskType.SEARCH, Complexity.HIGH): _SEARCH_STRONG,
    (TaskType.SUMMARIZATION, Complexity.LOW): _SUMMARY_LIGHT,
    (TaskType.SUMMARIZATION, Complexity.MEDIUM): _SUMMARY_BALANCED,
    (TaskType.SUMMARIZATION, Complexity.HIGH): _SUMMARY_BALANCED,
    (TaskType.WRITING, Complexity.LOW): _WRITING_BALANCED,
    (TaskType.WRITING, Complexity.MEDIUM): _WRITING_BALANCED,
    (TaskType.WRITING, Complexity.HIGH): _WRITING_HEAVY,
    (TaskType.ANALYSIS, Complexity.LOW): _ANALYSIS,
    (TaskType.ANALYSIS, Complexity.MEDIUM): _ANALYSIS,
    (TaskType.ANALYSIS, Complexity.HIGH): _ANALYSIS,
    (TaskType.GENERAL, Complexity.LOW): _GENERAL_LIGHT,
    (TaskType.GENERAL, Complexity.MEDIUM): _GENERAL_HEAVY,
    (TaskType.GENERAL, Complexity.HIGH): _GENERAL_HEAVY,
}


@dataclass(frozen=True)
class ScenarioRecommendation:
    primary: ModelTier
    fallback: ModelTier
    reasoning: str


SCENARIOS: dict[str, ScenarioRecommendation] = {
    "research_query": ScenarioRecommendation(
        ModelTier.LIGHT,
        ModelTier.HEAVY,
        "Fast, cost-effective for search queries with high-quality fallback",
    ),
    "report_writing": ScenarioRecommendation(
        ModelTier.HEAVY,
        ModelTier.STANDARD,
        "High-quality writing with structured thinking fallback",
    ),
    "data_analysis": ScenarioRecommendation(
        ModelTier.STANDARD,
        ModelTier.HEAVY,
        "Strong analytical capabilities with most-capable fallback",
    ),
    "quick_summary": ScenarioRecommendation(
        ModelTier.LIGHT,
        ModelTier.STANDARD,
        "Fast summarization with quality enhancement option",
    ),
}


@dataclass
class TaskAnalysis:
    """Derived per-request analysis. Recomputed every request, never cached."""

    task_type: TaskType
    complexity: Complexity
    complexity_score: int
    estimated_tokens: int
    estimated_cost: float
    recommended_tier: ModelTier
    rationale: str
    chosen_provider: str | None = None


@dataclass
class ModelSelection:
    """The router's decision for one request."""

    provider: ProviderDescriptor
    reasoning: str
    estimated_cost: float
    fallback_options: list[ProviderDescriptor] = field(default_factory=list)
    analysis: TaskAnalysis | None = None

    @property
    def ordered_keys(self) -> list[str]:
        """Provider keys in the order the gateway should try them."""
        return [self.provider.key, *(p.key for p in self.fallback_options)]


class TaskRouter:
    """Classifies requests and selects a provider plus fallback order."""

    def __init__(
        self,
        gateway: ProviderGateway,
        *,
        classifier: TaskClassifier | None = None,
        validator: TokenBudgetValidator | None = None,
    ) -> None:
        self._gateway = gateway
        self._classifier = classifier or TaskClassifier()
        self._validator = validator or TokenBudgetValidator()

    def analyze(self, task: str, user_input: str, context: list[str] | None = None) -> TaskAnalysis:
        """Classify a request and estimate its token cost."""
        task_type = self._classifier.identify_task_type(task, user_input)
        complexity = self._classifier.estimate_complexity(user_input, task_type, context)
        estimated_tokens = self._validator.estimate_tokens(
            user_input + " ".join(context or [])
        )
        preference = PREFERENCE_TABLE[(task_type, complexity.level)]
        return TaskAnalysis(
            task_type=task_type,
            complexity=complexity.level,
            complexity_score=complexity.score,
            estimated_tokens=estimated_tokens,
            estimated_cost=estimated_tokens * _BASE_COST_PER_TOKEN * preference.cost_multiplier,
            recommended_tier=preference.tier,
            rationale=preference.reasoning,
        )

    def select_model(
        self,
        task: str,
        user_input: str,
        context: list[str] | None = None,
    ) -> ModelSelection | None:
        """Pick the best provider for a request.

        Returns:
            ModelSelection, or None only when no provider is configured
        """
        if not self._gateway.providers:
            log.warning("task_router.no_providers")
            return None

        analysis = self.analyze(task, user_input, context)
        # With every provider cooling down, rank all of them; the gateway still
        # enforces health when it calls
        candidates = self._gateway.available_providers() or list(self._gateway.providers)

        provider = next((p for p in candidates if p.tier == analysis.recommended_tier), None)
        if provider is None:
            provider = self._rank_for_task(analysis.task_type, candidates)[0]
            log.info(
                "task_router.recommendation_unavailable",
                recommended_tier=analysis.recommended_tier,
                fallback_provider=provider.key,
            )

        analysis.chosen_provider = provider.key
        fallbacks = self._fallbacks(provider, analysis, candidates)

        log.info(
            "task_router.route_selected",
            task_type=analysis.task_type,
            complexity=analysis.complexity,
            provider=provider.key,
            fallbacks=[p.key for p in fallbacks],
            estimated_tokens=analysis.estimated_tokens,
        )
        return ModelSelection(
            provider=provider,
            reasoning=(
                f"Selected {provider.key} for {analysis.task_type} task with "
                f"{analysis.complexity} complexity. {analysis.rationale}"
            ),
            estimated_cost=analysis.estimated_cost,
            fallback_options=fallbacks,
            analysis=analysis,
        )

    # ------------------------------------------------------------------ #
    # Ranking helpers
    # ------------------------------------------------------------------ #

    @staticmethod
    def _rank_for_task(
        task_type: TaskType,
        providers: list[ProviderDescriptor],
    ) -> list[ProviderDescriptor]:
        """Task-specific ordering used when no provider matches the preferred tier."""
        if task_type == TaskType.SEARCH:
            return sorted(providers, key=lambda p: (p.cost_per_token, p.priority))
        if task_type in (TaskType.ANALYSIS, TaskType.WRITING):
            return sorted(providers, key=lambda p: (-p.capability, p.priority))
        if task_type == TaskType.SUMMARIZATION:
            tier_order = {ModelTier.STANDARD: 0, ModelTier.LIGHT: 1, ModelTier.HEAVY: 2}
            return sorted(providers, key=lambda p: (tier_order[p.tier], p.priority))
        return sorted(providers, key=lambda p: p.priority)

    @staticmethod
    def suitability(provider: ProviderDescriptor, analysis: TaskAnalysis) -> int:
        """Base capability weight + task-specific bonus + complexity-size bonus."""
        score = provider.capability
        cheap = provider.cost_per_token < _CHEAP_COST_PER_TOKEN

        if analysis.task_type == TaskType.SEARCH and cheap:
            score += 3
        elif analysis.task_type == TaskType.ANALYSIS and provider.capability >= 4:
            score += 3
        elif analysis.task_type == TaskType.WRITING and provider.tier in (
            ModelTier.HEAVY,
            ModelTier.STANDARD,
        ):
            score += 2

        if (
            analysis.complexity == Complexity.HIGH
            and provider.max_input_tokens > _LARGE_CONTEXT_TOKENS
        ):
            score += 2
        elif analysis.complexity == Complexity.LOW and cheap:
            score += 1

        return score

    def _fallbacks(
        self,
        primary: ProviderDescriptor,
        analysis: TaskAnalysis,
        candidates: list[ProviderDescriptor],
    ) -> list[ProviderDescriptor]:
        others = [p for p in candidates if p.key != primary.key]
        ranked = sorted(others, key=lambda p: (-self.suitability(p, analysis), p.priority))
        return ranked[:_FALLBACK_COUNT]

    def recommendations_for_scenario(self, scenario: str) -> ScenarioRecommendation:
        """Canned tier recommendations for common research workflows."""
        return SCENARIOS.get(scenario, SCENARIOS["research_query"])
