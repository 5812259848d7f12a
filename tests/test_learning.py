"""Tests for outcome aggregation, learning samples and weight proposals."""

from __future__ import annotations

from collections.abc import Callable

import pytest

from overseer.errors import WorkOrderNotFoundError
from overseer.learning import (
    BuildOutcome,
    CIEvent,
    CodeWritingOutcome,
    CorrelationProposer,
    LearningSample,
    LearningSampleBuilder,
    MultiDimensionalOutcome,
    OutcomeAggregator,
    PullRequestOutcome,
    estimate_actual_complexity,
    factor_correlations,
    judge_routing,
    parse_build_results,
    parse_pr_results,
    parse_test_results,
    routing_accuracy,
    success_score,
)
from overseer.learning.outcomes import TestsOutcome as Tests
from overseer.routing import ComplexityRouter, RoutingHistory, Tier, WeightVector
from overseer.storage import Database
from overseer.workorders import (
    WorkOrder,
    WorkOrderRepository,
    WorkOrderStateMachine,
    WorkOrderStatus,
)

S = WorkOrderStatus


def _outcome(
    code: bool = True,
    tests: Tests | None = None,
    build: BuildOutcome | None = None,
    pr: PullRequestOutcome | None = None,
    execution_time_ms: int = 0,
) -> MultiDimensionalOutcome:
    return MultiDimensionalOutcome(
        work_order_id="wo-1",
        code_writing=CodeWritingOutcome(success=code, execution_time_ms=execution_time_ms),
        tests=tests or Tests(),
        build=build or BuildOutcome(),
        pr_ci=pr or PullRequestOutcome(),
    )


MERGED = PullRequestOutcome(pr_merged=True)


@pytest.fixture
def aggregator(db: Database) -> OutcomeAggregator:
    return OutcomeAggregator(db)


@pytest.fixture
def builder(
    db: Database, repository: WorkOrderRepository, aggregator: OutcomeAggregator
) -> LearningSampleBuilder:
    return LearningSampleBuilder(db, repository, aggregator)


@pytest.fixture
def completed_work_order(
    make_work_order: Callable[..., WorkOrder], state_machine: WorkOrderStateMachine
) -> WorkOrder:
    wo = make_work_order()
    state_machine.transition(wo.id, S.PROCESSING)
    return state_machine.transition(wo.id, S.COMPLETED)


# ═══════════════════════════════════════════════════════════════════════════
# SCORING
# ═══════════════════════════════════════════════════════════════════════════


class TestSuccessScore:
    """Test the weighted composite score."""

    def test_everything_succeeded(self) -> None:
        assert success_score(_outcome(pr=MERGED)) == 1.0

    def test_neutral_pr_without_checks(self) -> None:
        """No PR data scores the PR dimension at 0.5."""
        assert success_score(_outcome()) == pytest.approx(0.925)

    def test_partial_dimensions(self) -> None:
        outcome = _outcome(
            code=False,
            tests=Tests(success=False, passed=3, failed=1),
            build=BuildOutcome(success=False),
        )
        # tests 0.75 * 0.25 + pr 0.5 * 0.15
        assert success_score(outcome) == pytest.approx(0.2625)

    def test_ci_check_ratio(self) -> None:
        outcome = _outcome(pr=PullRequestOutcome(ci_checks_passed=3, ci_checks_failed=1))
        assert success_score(outcome) == pytest.approx(0.85 + 0.75 * 0.15)


class TestJudgeRouting:
    """Test the routing correctness table, first match wins."""

    @pytest.mark.parametrize(
        ("tier", "predicted", "score", "expected"),
        [
            (Tier.FAST, 0.2, 0.9, (True, False)),
            (Tier.CAPABLE, 0.5, 0.1, (True, False)),
            (Tier.FAST, 0.2, 0.3, (False, False)),
            (Tier.CAPABLE, 0.2, 0.9, (False, False)),
            (Tier.FAST, 0.6, 0.3, (True, True)),
            (Tier.CAPABLE, 0.2, 0.6, (True, True)),
        ],
    )
    def test_table(
        self, tier: Tier, predicted: float, score: float, expected: tuple[bool, bool]
    ) -> None:
        assert judge_routing(tier, predicted, score) == expected


class TestActualComplexity:
    def test_quick_clean_run(self) -> None:
        outcome = _outcome(pr=MERGED)
        assert estimate_actual_complexity(outcome, success_score(outcome)) == 0.2

    def test_code_failed(self) -> None:
        assert estimate_actual_complexity(_outcome(code=False), 0.6) == 0.4

    def test_tests_failed(self) -> None:
        assert estimate_actual_complexity(_outcome(tests=Tests(success=False)), 0.6) == 0.5

    def test_build_failed(self) -> None:
        outcome = _outcome(code=False, build=BuildOutcome(success=False))
        assert estimate_actual_complexity(outcome, 0.2) == 0.7

    def test_not_merged(self) -> None:
        assert estimate_actual_complexity(_outcome(), 0.925) == 0.8

    def test_slow_but_successful(self) -> None:
        outcome = _outcome(pr=MERGED, execution_time_ms=120_000)
        assert estimate_actual_complexity(outcome, 1.0) == 0.1


# ═══════════════════════════════════════════════════════════════════════════
# EVENT PARSING
# ═══════════════════════════════════════════════════════════════════════════


class TestEventParsing:
    """Test reducing CI events to outcome dimensions."""

    def test_pr_merge_time(self) -> None:
        events = [
            CIEvent(
                "pull_request",
                payload={
                    "merged": True,
                    "created_at": "2026-01-01T10:00:00Z",
                    "merged_at": "2026-01-01T12:00:00Z",
                    "review_comments": 2,
                },
            ),
            CIEvent("workflow_run", "Build", "success"),
            CIEvent("workflow_run", "Test", "failure"),
            CIEvent("check_suite", None, "completed"),
        ]
        pr = parse_pr_results(events)

        assert pr.pr_merged is True
        assert pr.merge_time_hours == 2.0
        assert pr.review_comments == 2
        assert pr.ci_checks_passed == 2
        assert pr.ci_checks_failed == 1

    def test_merged_state(self) -> None:
        pr = parse_pr_results([CIEvent("pull_request", payload={"state": "merged"})])
        assert pr.pr_merged is True

    def test_no_pr_events(self) -> None:
        pr = parse_pr_results([CIEvent("workflow_run", "Build", "success")])
        assert pr == PullRequestOutcome()

    def test_every_test_workflow_must_pass(self) -> None:
        events = [
            CIEvent("workflow_run", "Test", "failure", {"test_stats": {"passed": 8, "failed": 2}}),
            CIEvent(
                "workflow_run",
                "Integration Tests",
                "success",
                {"test_stats": {"passed": 10, "failed": 0}, "coverage": {"total": 81.5}},
            ),
        ]
        tests = parse_test_results(events)

        assert tests.success is False
        assert tests.passed == 18
        assert tests.failed == 2
        assert tests.coverage_percent == 81.5

    def test_rerun_replaces_earlier_run(self) -> None:
        events = [
            CIEvent("workflow_run", "Test", "failure", {"test_stats": {"passed": 8, "failed": 2}}),
            CIEvent("workflow_run", "Test", "success", {"test_stats": {"passed": 10, "failed": 0}}),
        ]
        tests = parse_test_results(events)

        assert tests.success is True
        assert (tests.passed, tests.failed) == (10, 0)

    def test_no_test_runs_assumed_passed(self) -> None:
        assert parse_test_results([]) == Tests()

    def test_build_errors(self) -> None:
        events = [CIEvent("workflow_run", "Compile", "failed", {"error_count": 3, "duration_ms": 900})]
        build = parse_build_results(events)

        assert build.success is False
        assert build.error_count == 3
        assert build.time_ms == 900


class TestOutcomeAggregator:
    """Test reading outcomes back from storage."""

    def test_falls_back_to_status_and_settings(
        self, aggregator: OutcomeAggregator, completed_work_order: WorkOrder
    ) -> None:
        code = aggregator.code_writing(completed_work_order)

        assert code.success is True
        assert code.tier == "fast"
        assert code.model == "gpt-4o-mini"

    def test_falls_back_to_routing_decision(
        self,
        db: Database,
        aggregator: OutcomeAggregator,
        make_work_order: Callable[..., WorkOrder],
    ) -> None:
        wo = make_work_order(title="Fix SQL injection in search")
        RoutingHistory(db).record(ComplexityRouter().route(wo))

        code = aggregator.code_writing(wo)
        assert code.success is False
        assert code.tier == "capable"
        assert code.model == "claude-sonnet-4-5"

    def test_latest_execution_used(
        self, aggregator: OutcomeAggregator, completed_work_order: WorkOrder
    ) -> None:
        wo = completed_work_order
        aggregator.record_execution(wo.id, success=False, tier=Tier.FAST, model="m1", cost=0.1)
        aggregator.record_execution(
            wo.id,
            success=True,
            tier=Tier.CAPABLE,
            model="m2",
            cost=1.2,
            execution_time_ms=4000,
            failure_classes=["lint_error"],
        )
        code = aggregator.code_writing(wo)

        assert code.success is True
        assert code.tier == "capable"
        assert code.cost == 1.2
        assert code.errors == 1
        assert code.failure_class == "lint_error"

    def test_aggregate(
        self, aggregator: OutcomeAggregator, completed_work_order: WorkOrder
    ) -> None:
        wo = completed_work_order
        aggregator.record_ci_event(wo.id, "workflow_run", workflow_name="Build", status="failure")
        aggregator.record_ci_event(wo.id, "pull_request", payload={"merged": False})

        outcome = aggregator.aggregate(wo)
        assert outcome.work_order_id == wo.id
        assert outcome.build.success is False
        assert outcome.pr_ci.pr_merged is False
        assert outcome.pr_ci.ci_checks_failed == 1


# ═══════════════════════════════════════════════════════════════════════════
# SAMPLES
# ═══════════════════════════════════════════════════════════════════════════


class TestLearningSampleBuilder:
    """Test building and persisting samples."""

    def test_emit_and_read_back(
        self,
        builder: LearningSampleBuilder,
        aggregator: OutcomeAggregator,
        completed_work_order: WorkOrder,
    ) -> None:
        wo = completed_work_order
        aggregator.record_execution(wo.id, success=True, tier=Tier.FAST, model="gpt-4o-mini")
        aggregator.record_ci_event(wo.id, "pull_request", payload={"merged": True})

        sample = builder.emit(wo.id)

        assert sample.sample_id is not None
        assert sample.success_score == 1.0
        assert sample.overall_success is True
        assert sample.was_correctly_routed is True
        assert sample.success_dimensions == ("code_writing", "tests", "build", "pr_merged")
        assert builder.recent() == [sample]
        assert builder.recent()[0].sample_id == sample.sample_id

    def test_overall_success_needs_merge(
        self, builder: LearningSampleBuilder, completed_work_order: WorkOrder
    ) -> None:
        sample = builder.emit(completed_work_order.id)

        assert sample.overall_success is False
        assert "pr_merged" not in sample.success_dimensions
        assert sample.success_score == pytest.approx(0.925)

    def test_build_is_deterministic(
        self, builder: LearningSampleBuilder, completed_work_order: WorkOrder
    ) -> None:
        assert builder.build(completed_work_order) == builder.build(completed_work_order)

    def test_uses_routing_decision(
        self,
        db: Database,
        builder: LearningSampleBuilder,
        make_work_order: Callable[..., WorkOrder],
    ) -> None:
        wo = make_work_order(acceptance_criteria=["a", "b", "c"], files_in_scope=["x.py", "y.py"])
        decision = ComplexityRouter().route(wo)
        RoutingHistory(db).record(decision)

        sample = builder.build(wo)
        assert sample.predicted_complexity == decision.score
        assert sample.complexity_factors["criteria_component"] == pytest.approx(0.3)
        assert sample.complexity_weights == WeightVector().as_dict()
        assert sample.selected_tier is Tier.CAPABLE

    def test_unknown_work_order(self, builder: LearningSampleBuilder) -> None:
        with pytest.raises(WorkOrderNotFoundError):
            builder.emit("missing")

    def test_recent_newest_first(
        self,
        builder: LearningSampleBuilder,
        completed_work_order: WorkOrder,
        make_work_order: Callable[..., WorkOrder],
    ) -> None:
        first = builder.emit(completed_work_order.id)
        second = builder.emit(make_work_order().id)

        assert [s.work_order_id for s in builder.recent()] == [
            second.work_order_id,
            first.work_order_id,
        ]
        assert len(builder.recent(limit=1)) == 1


# ═══════════════════════════════════════════════════════════════════════════
# PROPOSALS
# ═══════════════════════════════════════════════════════════════════════════


def _sample(criteria: float, error: float, correct: bool) -> LearningSample:
    outcome = _outcome()
    return LearningSample(
        work_order_id="wo-1",
        predicted_complexity=0.2,
        complexity_factors={"criteria_component": criteria},
        complexity_weights=WeightVector().as_dict(),
        selected_tier=Tier.FAST,
        selected_model="gpt-4o-mini",
        outcome=outcome,
        success_score=success_score(outcome),
        overall_success=False,
        success_dimensions=(),
        was_correctly_routed=correct,
        routing_error_magnitude=error,
    )


class TestCorrelationProposer:
    """Test shrinking weights that track routing error."""

    def test_accuracy(self) -> None:
        samples = [_sample(0.1, 0.1, True)] * 3 + [_sample(0.1, 0.1, False)]
        assert routing_accuracy(samples) == 0.75
        assert routing_accuracy([]) == 0.0

    def test_correlations(self) -> None:
        correlations = factor_correlations([_sample(0.5, 0.5, False)] * 10)

        assert correlations["criteria_component"] == pytest.approx(1.0)
        assert correlations["files_component"] == 0.0

    def test_proposes_smaller_criteria_weight(self) -> None:
        proposal = CorrelationProposer().propose(
            [_sample(0.5, 0.5, False)] * 60, WeightVector()
        )

        assert proposal is not None
        assert proposal.weights.criteria_weight == pytest.approx(0.05)
        assert proposal.weights.files_weight == WeightVector().files_weight
        assert proposal.magnitude == pytest.approx(0.05)
        assert proposal.sample_count == 60
        assert "criteria_component r=1.00" in proposal.rationale

    def test_on_target_accuracy(self) -> None:
        samples = [_sample(0.5, 0.5, True)] * 60
        assert CorrelationProposer().propose(samples, WeightVector()) is None

    def test_weak_correlation(self) -> None:
        samples = [_sample(0.0, 0.5, False)] * 60
        assert CorrelationProposer().propose(samples, WeightVector()) is None
