"""Complexity routing: scoring, tier selection and weight updates."""

from .history import RoutingHistory
from .router import (
    HARD_STOP_KEYWORDS,
    ComplexityFactors,
    ComplexityRouter,
    RoutingDecision,
    Tier,
    WeightVector,
    compute_complexity,
    detect_hard_stop,
)
from .weights import WeightProposal, WeightProposer, WeightUpdater

__all__ = [
    # Router
    "HARD_STOP_KEYWORDS",
    "ComplexityFactors",
    "ComplexityRouter",
    "RoutingDecision",
    "Tier",
    "WeightVector",
    "compute_complexity",
    "detect_hard_stop",
    # History
    "RoutingHistory",
    # Weights
    "WeightProposal",
    "WeightProposer",
    "WeightUpdater",
]
