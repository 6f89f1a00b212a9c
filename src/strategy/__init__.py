from .evaluator import (
    ArbitrageOpportunity,
    EvaluatorConfig,
    OpportunityEvaluator,
    price_difference_pct,
)
from .fees import CostModel

__all__ = [
    "ArbitrageOpportunity",
    "CostModel",
    "EvaluatorConfig",
    "OpportunityEvaluator",
    "price_difference_pct",
]
