"""Learning loop: outcome aggregation, learning samples and weight proposals."""

from .outcomes import (
    BuildOutcome,
    CIEvent,
    CodeWritingOutcome,
    MultiDimensionalOutcome,
    OutcomeAggregator,
    PullRequestOutcome,
    TestsOutcome,
    parse_build_results,
    parse_pr_results,
    parse_test_results,
)
from .proposer import CorrelationProposer, factor_correlations, routing_accuracy
from .samples import (
    LearningSample,
    LearningSampleBuilder,
    estimate_actual_complexity,
    judge_routing,
    success_score,
)

__all__ = [
    # Outcomes
    "BuildOutcome",
    "CIEvent",
    "CodeWritingOutcome",
    "MultiDimensionalOutcome",
    "OutcomeAggregator",
    "PullRequestOutcome",
    "TestsOutcome",
    "parse_build_results",
    "parse_pr_results",
    "parse_test_results",
    # Samples
    "LearningSample",
    "LearningSampleBuilder",
    "estimate_actual_complexity",
    "judge_routing",
    "success_score",
    # Proposals
    "CorrelationProposer",
    "factor_correlations",
    "routing_accuracy",
]
