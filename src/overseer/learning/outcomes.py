"""Outcome Aggregator - multi-dimensional results for a finished work order.

Four dimensions feed the learning sample:

- code writing: the latest execution outcome (success, failure classes, time,
  tier, model, cost)
- tests: the latest run of every test workflow, combined
- build: the latest run of every build/compile workflow, combined
- PR/CI: the latest pull-request event plus the CI check counts

Missing signals fall back to neutral or success-leaning defaults so a sample can
always be built.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from ..config import Settings
from ..routing import RoutingHistory, Tier
from ..storage import Database, isoformat
from ..workorders import WorkOrder, WorkOrderStatus

logger = logging.getLogger(__name__)

CI_PASS_STATUSES = frozenset({"success", "completed"})
CI_FAIL_STATUSES = frozenset({"failure", "failed"})
PR_EVENT_TYPES = frozenset({"pull_request", "pull_request_review"})
CI_EVENT_TYPES = frozenset({"check_suite", "workflow_run"})


@dataclass(frozen=True)
class CodeWritingOutcome:
    success: bool
    errors: int = 0
    failure_class: str | None = None
    execution_time_ms: int = 0
    tier: str = str(Tier.FAST)
    model: str = ""
    cost: float = 0.0


@dataclass(frozen=True)
class TestsOutcome:
    __test__ = False

    success: bool = True
    passed: int = 0
    failed: int = 0
    execution_time_ms: int = 0
    coverage_percent: float | None = None


@dataclass(frozen=True)
class BuildOutcome:
    success: bool = True
    time_ms: int = 0
    error_count: int = 0
    warnings: int = 0


@dataclass(frozen=True)
class PullRequestOutcome:
    pr_merged: bool = False
    review_comments: int = 0
    merge_time_hours: float = 0.0
    ci_checks_passed: int = 0
    ci_checks_failed: int = 0


@dataclass(frozen=True)
class MultiDimensionalOutcome:
    work_order_id: str
    code_writing: CodeWritingOutcome
    tests: TestsOutcome = field(default_factory=TestsOutcome)
    build: BuildOutcome = field(default_factory=BuildOutcome)
    pr_ci: PullRequestOutcome = field(default_factory=PullRequestOutcome)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MultiDimensionalOutcome:
        return cls(
            work_order_id=data["work_order_id"],
            code_writing=CodeWritingOutcome(**data["code_writing"]),
            tests=TestsOutcome(**data.get("tests", {})),
            build=BuildOutcome(**data.get("build", {})),
            pr_ci=PullRequestOutcome(**data.get("pr_ci", {})),
        )


@dataclass(frozen=True)
class CIEvent:
    event_type: str
    workflow_name: str | None = None
    status: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)


# ═══════════════════════════════════════════════════════════════════════════
# EVENT PARSING
# ═══════════════════════════════════════════════════════════════════════════


def _workflow_events(events: list[CIEvent], keywords: tuple[str, ...]) -> list[CIEvent]:
    """Latest run of each matching workflow, in first-seen order."""
    latest: dict[str, CIEvent] = {}
    for e in events:
        name = e.workflow_name or ""
        if e.event_type == "workflow_run" and any(k in name.lower() for k in keywords):
            latest[name] = e
    return list(latest.values())


def parse_test_results(events: list[CIEvent]) -> TestsOutcome:
    """Combine the latest run of every test workflow; no test runs means tests are assumed passed."""
    test_events = _workflow_events(events, ("test", "vitest", "jest", "pytest"))
    if not test_events:
        return TestsOutcome()

    coverage = None
    for e in test_events:
        total = (e.payload.get("coverage") or {}).get("total")
        if total is not None:
            coverage = float(total)
    stats = [e.payload.get("test_stats") or {} for e in test_events]
    return TestsOutcome(
        success=all(e.status in CI_PASS_STATUSES for e in test_events),
        passed=sum(int(s.get("passed") or 0) for s in stats),
        failed=sum(int(s.get("failed") or 0) for s in stats),
        execution_time_ms=sum(int(e.payload.get("duration_ms") or 0) for e in test_events),
        coverage_percent=coverage,
    )


def parse_build_results(events: list[CIEvent]) -> BuildOutcome:
    """Combine the latest run of every build/compile workflow; none means the build is assumed clean."""
    build_events = _workflow_events(events, ("build", "compile"))
    if not build_events:
        return BuildOutcome()

    return BuildOutcome(
        success=all(e.status in CI_PASS_STATUSES for e in build_events),
        time_ms=sum(int(e.payload.get("duration_ms") or 0) for e in build_events),
        error_count=sum(int(e.payload.get("error_count") or 0) for e in build_events),
        warnings=sum(int(e.payload.get("warning_count") or 0) for e in build_events),
    )


def parse_pr_results(events: list[CIEvent]) -> PullRequestOutcome:
    """Latest pull-request state and CI check counts; no PR events means not merged."""
    pr_events = [e for e in events if e.event_type in PR_EVENT_TYPES]
    if not pr_events:
        return PullRequestOutcome()

    ci_events = [e for e in events if e.event_type in CI_EVENT_TYPES]
    pr = pr_events[-1].payload

    merge_hours = 0.0
    if pr.get("merged_at") and pr.get("created_at"):
        created = datetime.fromisoformat(str(pr["created_at"]).replace("Z", "+00:00"))
        merged = datetime.fromisoformat(str(pr["merged_at"]).replace("Z", "+00:00"))
        merge_hours = (merged - created).total_seconds() / 3600

    return PullRequestOutcome(
        pr_merged=pr.get("merged") is True or pr.get("state") == "merged",
        review_comments=int(pr.get("review_comments") or pr.get("comments") or 0),
        merge_time_hours=merge_hours,
        ci_checks_passed=sum(1 for e in ci_events if e.status in CI_PASS_STATUSES),
        ci_checks_failed=sum(1 for e in ci_events if e.status in CI_FAIL_STATUSES),
    )


# ═══════════════════════════════════════════════════════════════════════════
# AGGREGATOR
# ═══════════════════════════════════════════════════════════════════════════


class OutcomeAggregator:
    """Reads execution outcomes and CI events back out of the database."""

    def __init__(self, db: Database, settings: Settings | None = None) -> None:
        self.db = db
        self.settings = settings or Settings()
        self.routing_history = RoutingHistory(db)

    def record_execution(
        self,
        work_order_id: str,
        *,
        success: bool,
        tier: Tier | str,
        model: str,
        cost: float = 0.0,
        execution_time_ms: int = 0,
        failure_classes: list[str] | None = None,
    ) -> int:
        return self.db.execute_insert(
            """INSERT INTO execution_outcomes
               (work_order_id, success, failure_classes, execution_time_ms, tier, model, cost, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                work_order_id,
                int(success),
                json.dumps(failure_classes or []),
                execution_time_ms,
                str(tier),
                model,
                cost,
                isoformat(),
            ),
        )

    def record_ci_event(
        self,
        work_order_id: str,
        event_type: str,
        *,
        workflow_name: str | None = None,
        status: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> int:
        return self.db.execute_insert(
            """INSERT INTO ci_events (work_order_id, event_type, workflow_name, status, payload, created_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (work_order_id, event_type, workflow_name, status, json.dumps(payload or {}), isoformat()),
        )

    def ci_events(self, work_order_id: str) -> list[CIEvent]:
        rows = self.db.execute(
            "SELECT event_type, workflow_name, status, payload FROM ci_events "
            "WHERE work_order_id = ? ORDER BY id",
            (work_order_id,),
        )
        return [
            CIEvent(
                event_type=row["event_type"],
                workflow_name=row["workflow_name"],
                status=row["status"],
                payload=json.loads(row["payload"]),
            )
            for row in rows
        ]

    def code_writing(self, work_order: WorkOrder) -> CodeWritingOutcome:
        rows = self.db.execute(
            "SELECT * FROM execution_outcomes WHERE work_order_id = ? ORDER BY id DESC LIMIT 1",
            (work_order.id,),
        )
        if rows:
            row = rows[0]
            failure_classes = json.loads(row["failure_classes"])
            return CodeWritingOutcome(
                success=bool(row["success"]),
                errors=len(failure_classes),
                failure_class=failure_classes[0] if failure_classes else None,
                execution_time_ms=int(row["execution_time_ms"]),
                tier=row["tier"],
                model=row["model"],
                cost=float(row["cost"]),
            )

        # No execution recorded: fall back to the routing decision and status
        decision = self.routing_history.latest(work_order.id)
        tier = decision.tier if decision else Tier.FAST
        model = decision.model if decision else self.settings.tier_models.fast
        logger.debug("No execution outcome for %s, using defaults", work_order.id)
        return CodeWritingOutcome(
            success=work_order.status is WorkOrderStatus.COMPLETED,
            tier=str(tier),
            model=model,
            cost=float(work_order.actual_cost or 0.0),
        )

    def aggregate(self, work_order: WorkOrder) -> MultiDimensionalOutcome:
        events = self.ci_events(work_order.id)
        return MultiDimensionalOutcome(
            work_order_id=work_order.id,
            code_writing=self.code_writing(work_order),
            tests=parse_test_results(events),
            build=parse_build_results(events),
            pr_ci=parse_pr_results(events),
        )
