"""Tests for the work order scheduler."""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from overseer.config import Settings
from overseer.engine import ExecutionResult, WorkOrderScheduler
from overseer.escalation import CriticalErrorHandler, EscalationEngine
from overseer.learning import LearningSampleBuilder
from overseer.routing import ComplexityRouter, RoutingHistory, Tier
from overseer.safety import BudgetGuard
from overseer.storage import Database
from overseer.workorders import (
    WorkOrder,
    WorkOrderRepository,
    WorkOrderStateMachine,
    WorkOrderStatus,
)

pytestmark = pytest.mark.anyio

S = WorkOrderStatus


class FakeProvider:
    """Records calls; returns a fixed result, raises, or sleeps first."""

    def __init__(
        self,
        result: ExecutionResult | None = None,
        error: Exception | None = None,
        delay: float = 0.0,
    ) -> None:
        self.result = result or ExecutionResult(success=True, cost=0.5)
        self.error = error
        self.delay = delay
        self.calls: list[tuple[str, Tier, str]] = []
        self.active = 0
        self.max_active = 0

    async def execute(self, work_order: WorkOrder, tier: Tier, model: str) -> ExecutionResult:
        self.calls.append((work_order.id, tier, model))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.error is not None:
                raise self.error
            return ExecutionResult(**vars(self.result))
        finally:
            self.active -= 1


@pytest.fixture
def budget_guard(db: Database, settings: Settings) -> BudgetGuard:
    return BudgetGuard(db, settings)


@pytest.fixture
def make_scheduler(
    db: Database,
    state_machine: WorkOrderStateMachine,
    settings: Settings,
    budget_guard: BudgetGuard,
) -> Callable[..., WorkOrderScheduler]:
    def _make(
        provider: FakeProvider, *, escalate: bool = False, **kwargs: Any
    ) -> WorkOrderScheduler:
        engine = EscalationEngine(db, state_machine, settings, budget_guard) if escalate else None
        return WorkOrderScheduler(
            state_machine,
            ComplexityRouter(settings),
            budget_guard,
            provider,
            kwargs.pop("settings", settings),
            escalation_engine=engine,
            **kwargs,
        )

    return _make


# ═══════════════════════════════════════════════════════════════════════════
# EXECUTION
# ═══════════════════════════════════════════════════════════════════════════


class TestProcess:
    """Test one work order through route, reserve, execute and record."""

    async def test_success_completes(
        self,
        db: Database,
        repository: WorkOrderRepository,
        budget_guard: BudgetGuard,
        make_work_order: Callable[..., WorkOrder],
        make_scheduler: Callable[..., WorkOrderScheduler],
    ) -> None:
        wo = make_work_order(estimated_cost=2.0)
        builder = LearningSampleBuilder(db, repository)
        provider = FakeProvider(ExecutionResult(success=True, cost=1.5))
        scheduler = make_scheduler(provider, sample_builder=builder)

        outcome = await scheduler.process(wo.id)

        assert outcome.status is S.COMPLETED
        assert outcome.executed
        assert provider.calls == [(wo.id, Tier.FAST, "gpt-4o-mini")]
        assert budget_guard.daily_total() == 1.5

        stored = repository.get(wo.id)
        assert stored is not None
        assert stored.status is S.COMPLETED
        assert stored.actual_cost == 1.5
        assert stored.complexity_score == 0.15
        assert stored.metadata["last_tier"] == "fast"
        assert len(stored.metadata["attempts"]) == 1

        assert RoutingHistory(db).latest(wo.id) is not None
        [sample] = builder.recent()
        assert sample.work_order_id == wo.id
        assert sample.selected_tier is Tier.FAST

    async def test_pull_request_waits_for_ci(
        self,
        repository: WorkOrderRepository,
        make_work_order: Callable[..., WorkOrder],
        make_scheduler: Callable[..., WorkOrderScheduler],
    ) -> None:
        wo = make_work_order()
        provider = FakeProvider(ExecutionResult(success=True, cost=0.4, github_pr_number=42))

        outcome = await make_scheduler(provider).process(wo.id)

        assert outcome.status is S.PROCESSING
        stored = repository.get(wo.id)
        assert stored is not None
        assert stored.status is S.PROCESSING
        assert stored.github_pr_number == 42
        assert stored.actual_cost == 0.4

    async def test_failure_escalates(
        self,
        repository: WorkOrderRepository,
        make_work_order: Callable[..., WorkOrder],
        make_scheduler: Callable[..., WorkOrderScheduler],
    ) -> None:
        wo = make_work_order()
        provider = FakeProvider(
            ExecutionResult(success=False, cost=0.3, error="3 tests failed", failure_classes=["test_fail"])
        )

        outcome = await make_scheduler(provider, escalate=True).process(wo.id)

        assert outcome.status is S.ESCALATED
        assert outcome.escalation_id is not None
        stored = repository.get(wo.id)
        assert stored is not None
        assert stored.status is S.ESCALATED
        assert stored.metadata["error_type"] == "test_fail"
        assert stored.metadata["error_messages"] == ["3 tests failed"]
        assert stored.metadata["escalation_id"] == outcome.escalation_id

    async def test_timeout(
        self,
        tmp_path: Path,
        repository: WorkOrderRepository,
        make_work_order: Callable[..., WorkOrder],
        make_scheduler: Callable[..., WorkOrderScheduler],
    ) -> None:
        wo = make_work_order()
        fast_timeout = Settings(data_dir=tmp_path, execution_timeout_seconds=0.05)
        scheduler = make_scheduler(FakeProvider(delay=5.0), settings=fast_timeout)

        outcome = await scheduler.process(wo.id)

        assert outcome.status is S.FAILED
        assert outcome.result is not None
        assert outcome.result.failure_classes == ["timeout"]
        stored = repository.get(wo.id)
        assert stored is not None
        assert stored.metadata["error_type"] == "timeout"

    async def test_provider_exception_classified(
        self,
        db: Database,
        repository: WorkOrderRepository,
        make_work_order: Callable[..., WorkOrder],
        make_scheduler: Callable[..., WorkOrderScheduler],
    ) -> None:
        wo = make_work_order()
        handler = CriticalErrorHandler(db)
        provider = FakeProvider(error=RuntimeError("git push failed: fatal: unable to access"))

        outcome = await make_scheduler(provider, critical_handler=handler).process(wo.id)

        assert outcome.status is S.FAILED
        stored = repository.get(wo.id)
        assert stored is not None
        assert stored.metadata["error_type"] == "orchestration_error"
        assert stored.metadata["error_messages"] == [
            "RuntimeError: git push failed: fatal: unable to access"
        ]
        [row] = handler.recent()
        assert row["severity"] == "warning"
        assert row["work_order_id"] == wo.id


# ═══════════════════════════════════════════════════════════════════════════
# BUDGET AND ROUTING
# ═══════════════════════════════════════════════════════════════════════════


class TestBudgetAndRouting:
    """Test budget and forced-tier interaction with routing."""

    async def test_emergency_kill_blocks(
        self,
        repository: WorkOrderRepository,
        budget_guard: BudgetGuard,
        make_work_order: Callable[..., WorkOrder],
        make_scheduler: Callable[..., WorkOrderScheduler],
    ) -> None:
        budget_guard.check_and_reserve(100.0, "other-service")
        wo = make_work_order()
        provider = FakeProvider()

        outcome = await make_scheduler(provider).process(wo.id)

        assert outcome.skipped_reason == "emergency budget kill"
        assert outcome.decision is not None
        assert outcome.decision.can_proceed is False
        assert provider.calls == []
        stored = repository.get(wo.id)
        assert stored is not None and stored.status is S.PENDING

    async def test_reservation_declined(
        self,
        budget_guard: BudgetGuard,
        make_work_order: Callable[..., WorkOrder],
        make_scheduler: Callable[..., WorkOrderScheduler],
    ) -> None:
        budget_guard.check_and_reserve(99.5, "other-service")
        wo = make_work_order()
        provider = FakeProvider()

        outcome = await make_scheduler(provider).process(wo.id)

        assert outcome.reservation is not None
        assert outcome.reservation.can_proceed is False
        assert outcome.skipped_reason is not None
        assert outcome.skipped_reason.startswith("Reservation of $1.00")
        assert outcome.status is S.PENDING
        assert provider.calls == []

    async def test_hard_cap_forces_fast_tier(
        self,
        budget_guard: BudgetGuard,
        make_work_order: Callable[..., WorkOrder],
        make_scheduler: Callable[..., WorkOrderScheduler],
    ) -> None:
        budget_guard.check_and_reserve(60.0, "other-service")
        wo = make_work_order(title="Rotate API keys for the payments service")
        provider = FakeProvider()

        await make_scheduler(provider).process(wo.id)

        assert provider.calls == [(wo.id, Tier.FAST, "gpt-4o-mini")]

    async def test_escalation_retry_forces_tier(
        self,
        make_work_order: Callable[..., WorkOrder],
        make_scheduler: Callable[..., WorkOrderScheduler],
    ) -> None:
        wo = make_work_order(metadata={"force_tier": "capable"})
        provider = FakeProvider()

        outcome = await make_scheduler(provider).process(wo.id)

        assert provider.calls == [(wo.id, Tier.CAPABLE, "claude-sonnet-4-5")]
        assert outcome.decision is not None
        assert outcome.decision.reason.startswith("Escalation retry")

    async def test_not_pending_skipped(
        self,
        state_machine: WorkOrderStateMachine,
        make_work_order: Callable[..., WorkOrder],
        make_scheduler: Callable[..., WorkOrderScheduler],
    ) -> None:
        wo = make_work_order()
        state_machine.transition(wo.id, S.PROCESSING)
        provider = FakeProvider()

        outcome = await make_scheduler(provider).process(wo.id)

        assert outcome.skipped_reason == "status is processing"
        assert provider.calls == []

    async def test_unknown_work_order(
        self, make_scheduler: Callable[..., WorkOrderScheduler]
    ) -> None:
        outcome = await make_scheduler(FakeProvider()).process("missing")
        assert outcome.skipped_reason == "not found"


# ═══════════════════════════════════════════════════════════════════════════
# BATCHES
# ═══════════════════════════════════════════════════════════════════════════


class TestBatches:
    async def test_concurrency_bounded(
        self,
        tmp_path: Path,
        make_work_order: Callable[..., WorkOrder],
        make_scheduler: Callable[..., WorkOrderScheduler],
    ) -> None:
        ids = [make_work_order().id for _ in range(5)]
        provider = FakeProvider(delay=0.05)
        limited = Settings(data_dir=tmp_path, max_concurrent_executions=2)

        outcomes = await make_scheduler(provider, settings=limited).run_batch(ids)

        assert [o.work_order_id for o in outcomes] == ids
        assert all(o.status is S.COMPLETED for o in outcomes)
        assert 1 <= provider.max_active <= 2

    async def test_run_pending(
        self,
        state_machine: WorkOrderStateMachine,
        make_work_order: Callable[..., WorkOrder],
        make_scheduler: Callable[..., WorkOrderScheduler],
    ) -> None:
        pending = {make_work_order().id, make_work_order().id}
        done = make_work_order()
        state_machine.transition(done.id, S.PROCESSING)

        outcomes = await make_scheduler(FakeProvider()).run_pending()

        assert {o.work_order_id for o in outcomes} == pending
        assert all(o.executed for o in outcomes)

    async def test_outcome_to_dict(
        self,
        make_work_order: Callable[..., WorkOrder],
        make_scheduler: Callable[..., WorkOrderScheduler],
    ) -> None:
        wo = make_work_order()
        [outcome] = await make_scheduler(FakeProvider()).run_batch([wo.id])

        data = outcome.to_dict()
        assert data["status"] == "completed"
        assert data["executed"] is True
        assert data["cost"] == 0.5
        assert data["decision"]["tier"] == "fast"

    async def test_bookkeeping_runs_off_the_event_loop(
        self,
        db: Database,
        settings: Settings,
        state_machine: WorkOrderStateMachine,
        make_work_order: Callable[..., WorkOrder],
    ) -> None:
        class ThreadRecordingGuard(BudgetGuard):
            def __init__(self, *args: Any) -> None:
                super().__init__(*args)
                self.threads: list[int] = []

            def check_and_reserve(self, *args: Any, **kwargs: Any) -> Any:
                self.threads.append(threading.get_ident())
                return super().check_and_reserve(*args, **kwargs)

            def commit_actual(self, *args: Any) -> float:
                self.threads.append(threading.get_ident())
                return super().commit_actual(*args)

        guard = ThreadRecordingGuard(db, settings)
        scheduler = WorkOrderScheduler(
            state_machine, ComplexityRouter(settings), guard, FakeProvider(), settings
        )
        wo = make_work_order()

        [outcome] = await scheduler.run_batch([wo.id])

        assert outcome.status is S.COMPLETED
        assert len(guard.threads) == 2
        assert threading.get_ident() not in guard.threads
