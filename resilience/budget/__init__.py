"""Token budget enforcement and content chunking."""

from resilience.budget.estimators import (
    CharRatioEstimator,
    TiktokenEstimator,
    TokenEstimator,
    build_estimator,
)
from resilience.budget.validator import BudgetResult, TokenBudgetValidator

__all__ = [
    "TokenEstimator",
    "CharRatioEstimator",
    "TiktokenEstimator",
    "build_estimator",
    "BudgetResult",
    "TokenBudgetValidator",
]
