"""Learning Sample Builder - training samples for router weight calibration.

Composite success score (0-1)::

    code_writing * 0.40 + tests * 0.25 + build * 0.20 + pr_ci * 0.15

Binary dimensions score 1.0/0.0; tests and PR/CI fall back to a pass ratio,
then to 0.5 when there is no data.

Routing correctness, first match wins:

    fast tier,    score >= 0.8                         -> correct
    capable tier, predicted >= 0.45                    -> correct
    fast tier,    score < 0.5,  predicted < 0.45       -> incorrect (under-routed)
    capable tier, score >= 0.8, predicted < 0.45       -> incorrect (over-routed)
    anything else                                      -> correct (flagged as defaulted)
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
from typing import Any

from ..errors import WorkOrderNotFoundError
from ..routing import RoutingHistory, Tier
from ..storage import Database, isoformat
from ..workorders import WorkOrder, WorkOrderRepository
from .outcomes import MultiDimensionalOutcome, OutcomeAggregator

logger = logging.getLogger(__name__)

SCORE_WEIGHTS = {"code_writing": 0.40, "tests": 0.25, "build": 0.20, "pr_ci": 0.15}
NEUTRAL_SCORE = 0.5

COMPLEX_THRESHOLD = 0.45
GOOD_SCORE = 0.8
BAD_SCORE = 0.5

FAST_RUN_MS = 30_000
FAST_BUILD_MS = 60_000
HEAVY_REVIEW_COMMENTS = 5


@dataclass(frozen=True)
class LearningSample:
    """One finished work order, as seen by the weight proposer. Never mutated."""

    work_order_id: str
    predicted_complexity: float
    complexity_factors: dict[str, float]
    complexity_weights: dict[str, float]
    selected_tier: Tier
    selected_model: str
    outcome: MultiDimensionalOutcome
    success_score: float
    overall_success: bool
    success_dimensions: tuple[str, ...]
    was_correctly_routed: bool
    routing_error_magnitude: float
    routing_judgment_defaulted: bool = False
    # populated on persisted samples only
    sample_id: int | None = field(default=None, compare=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "work_order_id": self.work_order_id,
            "predicted_complexity": self.predicted_complexity,
            "complexity_factors": dict(self.complexity_factors),
            "complexity_weights": dict(self.complexity_weights),
            "selected_tier": str(self.selected_tier),
            "selected_model": self.selected_model,
            "outcome": self.outcome.to_dict(),
            "success_score": self.success_score,
            "overall_success": self.overall_success,
            "success_dimensions": list(self.success_dimensions),
            "was_correctly_routed": self.was_correctly_routed,
            "routing_error_magnitude": self.routing_error_magnitude,
            "routing_judgment_defaulted": self.routing_judgment_defaulted,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], sample_id: int | None = None) -> LearningSample:
        return cls(
            work_order_id=data["work_order_id"],
            predicted_complexity=data["predicted_complexity"],
            complexity_factors=data.get("complexity_factors", {}),
            complexity_weights=data.get("complexity_weights", {}),
            selected_tier=Tier(data["selected_tier"]),
            selected_model=data["selected_model"],
            outcome=MultiDimensionalOutcome.from_dict(data["outcome"]),
            success_score=data["success_score"],
            overall_success=data["overall_success"],
            success_dimensions=tuple(data.get("success_dimensions", ())),
            was_correctly_routed=data["was_correctly_routed"],
            routing_error_magnitude=data["routing_error_magnitude"],
            routing_judgment_defaulted=data.get("routing_judgment_defaulted", False),
            sample_id=sample_id,
        )


# ═══════════════════════════════════════════════════════════════════════════
# SCORING
# ═══════════════════════════════════════════════════════════════════════════


def _ratio(passed: int, failed: int) -> float:
    total = passed + failed
    return passed / total if total > 0 else NEUTRAL_SCORE


def success_score(outcome: MultiDimensionalOutcome) -> float:
    code = 1.0 if outcome.code_writing.success else 0.0
    tests = 1.0 if outcome.tests.success else _ratio(outcome.tests.passed, outcome.tests.failed)
    build = 1.0 if outcome.build.success else 0.0
    pr_ci = (
        1.0
        if outcome.pr_ci.pr_merged
        else _ratio(outcome.pr_ci.ci_checks_passed, outcome.pr_ci.ci_checks_failed)
    )
    score = (
        code * SCORE_WEIGHTS["code_writing"]
        + tests * SCORE_WEIGHTS["tests"]
        + build * SCORE_WEIGHTS["build"]
        + pr_ci * SCORE_WEIGHTS["pr_ci"]
    )
    return round(score, 6)


def judge_routing(tier: Tier, predicted: float, score: float) -> tuple[bool, bool]:
    """Return (was_correctly_routed, defaulted)."""
    if tier is Tier.FAST and score >= GOOD_SCORE:
        return True, False
    if tier is Tier.CAPABLE and predicted >= COMPLEX_THRESHOLD:
        return True, False
    if tier is Tier.FAST and score < BAD_SCORE and predicted < COMPLEX_THRESHOLD:
        return False, False
    if tier is Tier.CAPABLE and score >= GOOD_SCORE and predicted < COMPLEX_THRESHOLD:
        return False, False
    return True, True


def estimate_actual_complexity(outcome: MultiDimensionalOutcome, score: float) -> float:
    """Reverse-engineer what the complexity should have been from how the work went."""
    code, tests, build, pr_ci = outcome.code_writing, outcome.tests, outcome.build, outcome.pr_ci
    if score >= 0.95 and code.execution_time_ms < FAST_RUN_MS and build.time_ms < FAST_BUILD_MS:
        return 0.2
    if not code.success and build.success:
        return 0.4
    if not tests.success and build.success:
        return 0.5
    if not build.success:
        return 0.7
    if not pr_ci.pr_merged or pr_ci.review_comments > HEAVY_REVIEW_COMMENTS:
        return 0.8
    return max(0.1, 1.0 - score)


def success_dimensions(outcome: MultiDimensionalOutcome) -> tuple[str, ...]:
    dims: list[str] = []
    if outcome.code_writing.success:
        dims.append("code_writing")
    if outcome.tests.success:
        dims.append("tests")
    if outcome.build.success:
        dims.append("build")
    if outcome.pr_ci.pr_merged:
        dims.append("pr_merged")
    return tuple(dims)


# ═══════════════════════════════════════════════════════════════════════════
# BUILDER
# ═══════════════════════════════════════════════════════════════════════════


class LearningSampleBuilder:
    """Builds and persists one learning sample per finished work order."""

    def __init__(
        self,
        db: Database,
        repository: WorkOrderRepository | None = None,
        aggregator: OutcomeAggregator | None = None,
    ) -> None:
        self.db = db
        self.repository = repository or WorkOrderRepository(db)
        self.aggregator = aggregator or OutcomeAggregator(db)
        self.routing_history = RoutingHistory(db)

    def build(self, work_order: WorkOrder) -> LearningSample:
        """Compute a sample without writing it. Same inputs give the same sample."""
        outcome = self.aggregator.aggregate(work_order)
        decision = self.routing_history.latest(work_order.id)

        if decision is not None:
            predicted = decision.score
            factors = decision.factors.as_dict()
            weights = decision.weights.as_dict()
        else:
            predicted = work_order.complexity_score or 0.0
            factors = dict(work_order.metadata.get("complexity_factors") or {})
            weights = dict(work_order.metadata.get("complexity_weights") or {})

        tier = Tier(outcome.code_writing.tier)
        score = success_score(outcome)
        correct, defaulted = judge_routing(tier, predicted, score)
        actual = estimate_actual_complexity(outcome, score)
        dims = success_dimensions(outcome)

        return LearningSample(
            work_order_id=work_order.id,
            predicted_complexity=predicted,
            complexity_factors=factors,
            complexity_weights=weights,
            selected_tier=tier,
            selected_model=outcome.code_writing.model,
            outcome=outcome,
            success_score=score,
            overall_success=len(dims) == 4,
            success_dimensions=dims,
            was_correctly_routed=correct,
            routing_error_magnitude=round(abs(predicted - actual), 6),
            routing_judgment_defaulted=defaulted,
        )

    def emit(self, work_order_id: str) -> LearningSample:
        """Build and append the sample for a finished work order.

        Raises:
            WorkOrderNotFoundError: if the work order does not exist
        """
        work_order = self.repository.get(work_order_id)
        if work_order is None:
            raise WorkOrderNotFoundError(work_order_id)

        sample = self.build(work_order)
        sample_id = self.db.execute_insert(
            """INSERT INTO learning_samples
               (work_order_id, predicted_complexity, selected_tier, selected_model,
                success_score, overall_success, was_correctly_routed,
                routing_error_magnitude, payload, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                sample.work_order_id,
                sample.predicted_complexity,
                str(sample.selected_tier),
                sample.selected_model,
                sample.success_score,
                int(sample.overall_success),
                int(sample.was_correctly_routed),
                sample.routing_error_magnitude,
                json.dumps(sample.to_dict()),
                isoformat(),
            ),
        )
        logger.info(
            "Learning sample for %s: score %.2f, correctly routed %s, error %.3f",
            work_order_id,
            sample.success_score,
            sample.was_correctly_routed,
            sample.routing_error_magnitude,
        )
        return replace(sample, sample_id=sample_id)

    def recent(self, limit: int = 500) -> list[LearningSample]:
        """Most recent persisted samples, newest first."""
        rows = self.db.execute(
            "SELECT id, payload FROM learning_samples ORDER BY id DESC LIMIT ?", (limit,)
        )
        return [LearningSample.from_dict(json.loads(row["payload"]), row["id"]) for row in rows]
