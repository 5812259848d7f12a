"""Correlation-based weight proposer.

Correlates each complexity component with the routing error across a batch of
samples and shrinks the weights of components that track the error. Proposals
are only made while routing accuracy is below 85%.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Sequence
from dataclasses import replace

from ..routing import WeightProposal, WeightVector
from .samples import LearningSample

logger = logging.getLogger(__name__)

LEARNING_RATE = 0.5
CORRELATION_THRESHOLD = 0.3
TARGET_ACCURACY = 0.85

# complexity factor -> weight it scales
FACTOR_WEIGHTS = {
    "criteria_component": "criteria_weight",
    "files_component": "files_weight",
    "context_component": "context_weight",
}


def routing_accuracy(samples: Sequence[LearningSample]) -> float:
    if not samples:
        return 0.0
    return sum(1 for s in samples if s.was_correctly_routed) / len(samples)


def factor_correlations(samples: Sequence[LearningSample]) -> dict[str, float]:
    """Uncentered correlation between each factor and the routing error magnitude."""
    correlations: dict[str, float] = {}
    for factor in FACTOR_WEIGHTS:
        sum_product = sum_factor_sq = sum_error_sq = 0.0
        for sample in samples:
            value = float(sample.complexity_factors.get(factor, 0.0))
            error = sample.routing_error_magnitude
            sum_product += value * error
            sum_factor_sq += value * value
            sum_error_sq += error * error
        denominator = math.sqrt(sum_factor_sq * sum_error_sq)
        correlations[factor] = sum_product / denominator if denominator > 1e-4 else 0.0
    return correlations


class CorrelationProposer:
    """Implements the WeightProposer protocol."""

    def __init__(
        self,
        learning_rate: float = LEARNING_RATE,
        threshold: float = CORRELATION_THRESHOLD,
        target_accuracy: float = TARGET_ACCURACY,
    ) -> None:
        self.learning_rate = learning_rate
        self.threshold = threshold
        self.target_accuracy = target_accuracy

    def propose(
        self, samples: Sequence[LearningSample], current: WeightVector
    ) -> WeightProposal | None:
        accuracy = routing_accuracy(samples)
        if accuracy >= self.target_accuracy:
            logger.info("Routing accuracy %.1f%% is on target, no proposal", accuracy * 100)
            return None

        correlations = factor_correlations(samples)
        changes: dict[str, float] = {}
        for factor, weight_name in FACTOR_WEIGHTS.items():
            correlation = correlations[factor]
            if abs(correlation) > self.threshold:
                old = getattr(current, weight_name)
                changes[weight_name] = old * (1.0 - self.learning_rate * correlation)

        if not changes:
            return None

        proposed = replace(current, **changes)
        magnitude = sum(abs(v - getattr(current, k)) for k, v in changes.items())
        strongest = sorted(correlations.items(), key=lambda kv: -abs(kv[1]))
        rationale = (
            f"Routing accuracy {accuracy:.1%} over {len(samples)} samples; "
            + ", ".join(f"{name} r={value:.2f}" for name, value in strongest)
        )
        return WeightProposal(
            weights=proposed,
            magnitude=magnitude,
            sample_count=len(samples),
            rationale=rationale,
        )
