"""Work Order Scheduler - route, reserve budget, execute and record.

Per work order::

    pending --route--> budget reservation --> processing --execute-->
        completed | failed | (processing, awaiting CI when a PR was opened)

Concurrency is bounded by an ``asyncio.Semaphore``; execution is wrapped in
``asyncio.wait_for`` and a timeout is recorded as failure class ``timeout``.

Usage:
    scheduler = WorkOrderScheduler(state_machine, router, budget_guard, provider)
    outcomes = await scheduler.run_batch(["wo-1", "wo-2"])
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Protocol

from ..config import Settings
from ..errors import OverseerError
from ..escalation import classify_error, should_escalate
from ..learning import LearningSampleBuilder, OutcomeAggregator
from ..routing import ComplexityRouter, RoutingDecision, RoutingHistory, Tier
from ..safety import BudgetGuard, Reservation
from ..storage import isoformat
from ..workorders import WorkOrder, WorkOrderStateMachine, WorkOrderStatus

if TYPE_CHECKING:
    from ..escalation import CriticalErrorHandler, EscalationEngine

logger = logging.getLogger(__name__)

# Reserved when a work order carries no cost estimate
DEFAULT_COST_ESTIMATE = 1.0
ATTEMPT_HISTORY_LIMIT = 10


@dataclass
class ExecutionResult:
    """What the external executor reports back for one attempt."""

    success: bool
    cost: float = 0.0
    output: str = ""
    error: str = ""
    failure_classes: list[str] = field(default_factory=list)
    execution_time_ms: int = 0
    github_pr_number: int | None = None


class ExecutionProvider(Protocol):
    """Runs a work order on a model; owned by the caller."""

    async def execute(self, work_order: WorkOrder, tier: Tier, model: str) -> ExecutionResult: ...


@dataclass
class ScheduleOutcome:
    work_order_id: str
    status: WorkOrderStatus
    decision: RoutingDecision | None = None
    reservation: Reservation | None = None
    result: ExecutionResult | None = None
    escalation_id: str | None = None
    skipped_reason: str | None = None

    @property
    def executed(self) -> bool:
        return self.result is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "work_order_id": self.work_order_id,
            "status": str(self.status),
            "decision": self.decision.to_dict() if self.decision else None,
            "executed": self.executed,
            "success": self.result.success if self.result else None,
            "cost": self.result.cost if self.result else None,
            "escalation_id": self.escalation_id,
            "skipped_reason": self.skipped_reason,
        }


class WorkOrderScheduler:
    """Processes pending work orders concurrently under the budget guard."""

    def __init__(
        self,
        state_machine: WorkOrderStateMachine,
        router: ComplexityRouter,
        budget_guard: BudgetGuard,
        provider: ExecutionProvider,
        settings: Settings | None = None,
        aggregator: OutcomeAggregator | None = None,
        sample_builder: LearningSampleBuilder | None = None,
        escalation_engine: EscalationEngine | None = None,
        critical_handler: CriticalErrorHandler | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self.state_machine = state_machine
        self.repository = state_machine.repository
        self.router = router
        self.budget_guard = budget_guard
        self.provider = provider
        db = budget_guard.db
        self.aggregator = aggregator or OutcomeAggregator(db, self.settings)
        self.sample_builder = sample_builder
        self.escalation_engine = escalation_engine
        self.critical_handler = critical_handler
        self.routing_history = RoutingHistory(db)
        self._semaphore = asyncio.Semaphore(self.settings.max_concurrent_executions)

    def _apply_forced_tier(self, work_order: WorkOrder, decision: RoutingDecision) -> RoutingDecision:
        """Honor a tier forced by an escalation retry unless the budget forced the fast tier."""
        forced = work_order.metadata.get("force_tier")
        if not forced or decision.budget_level in ("hard_cap_exceeded", "emergency_kill"):
            return decision
        tier = Tier(forced)
        model = work_order.metadata.get("force_model") or self.router.model_for(tier)
        return replace(
            decision,
            tier=tier,
            model=model,
            fallback_tier=None,
            reason=f"Escalation retry: {tier} tier forced. {decision.reason}",
        )

    async def process(self, work_order_id: str) -> ScheduleOutcome:
        """Run one work order through routing, budget, execution and recording."""
        async with self._semaphore:
            return await self._process(work_order_id)

    async def _process(self, work_order_id: str) -> ScheduleOutcome:
        # sqlite work runs off the event loop; each call opens its own connection
        prepared = await asyncio.to_thread(self._prepare, work_order_id)
        if isinstance(prepared, ScheduleOutcome):
            return prepared
        work_order, decision, reservation = prepared
        result = await self._execute(work_order, decision)
        return await asyncio.to_thread(self._finish, work_order, decision, reservation, result)

    def _prepare(
        self, work_order_id: str
    ) -> ScheduleOutcome | tuple[WorkOrder, RoutingDecision, Reservation]:
        """Route, reserve and claim the work order; an outcome means it was skipped."""
        work_order = self.repository.get(work_order_id)
        if work_order is None:
            return ScheduleOutcome(work_order_id, WorkOrderStatus.PENDING, skipped_reason="not found")
        if work_order.status is not WorkOrderStatus.PENDING:
            return ScheduleOutcome(
                work_order_id, work_order.status, skipped_reason=f"status is {work_order.status}"
            )

        budget = self.budget_guard.status()
        decision = self._apply_forced_tier(work_order, self.router.route(work_order, budget.level))
        self.routing_history.record(decision)
        self.repository.update(work_order_id, complexity_score=decision.score)

        if not decision.can_proceed:
            logger.warning("Not executing %s: %s", work_order_id, decision.reason)
            return ScheduleOutcome(
                work_order_id, work_order.status, decision, skipped_reason="emergency budget kill"
            )

        estimate = work_order.estimated_cost or DEFAULT_COST_ESTIMATE
        reservation = self.budget_guard.check_and_reserve(
            estimate, work_order_id, {"tier": str(decision.tier), "model": decision.model}
        )
        if not reservation.can_proceed:
            return ScheduleOutcome(
                work_order_id,
                work_order.status,
                decision,
                reservation,
                skipped_reason=reservation.reason,
            )

        try:
            work_order = self.state_machine.transition(
                work_order_id,
                WorkOrderStatus.PROCESSING,
                metadata={
                    "last_tier": str(decision.tier),
                    "last_model": decision.model,
                    "complexity_factors": decision.factors.as_dict(),
                    "complexity_weights": decision.weights.as_dict(),
                },
                reason=decision.reason,
            )
        except OverseerError as e:
            self.budget_guard.cancel(reservation.reservation_id or "")
            logger.info("Skipping %s: %s", work_order_id, e)
            return ScheduleOutcome(
                work_order_id, work_order.status, decision, reservation, skipped_reason=str(e)
            )

        return work_order, decision, reservation

    def _finish(
        self,
        work_order: WorkOrder,
        decision: RoutingDecision,
        reservation: Reservation,
        result: ExecutionResult,
    ) -> ScheduleOutcome:
        work_order_id = work_order.id
        assert reservation.reservation_id is not None
        self.budget_guard.commit_actual(reservation.reservation_id, result.cost)
        self.aggregator.record_execution(
            work_order_id,
            success=result.success,
            tier=decision.tier,
            model=decision.model,
            cost=result.cost,
            execution_time_ms=result.execution_time_ms,
            failure_classes=result.failure_classes,
        )

        outcome = ScheduleOutcome(work_order_id, work_order.status, decision, reservation, result)
        self._record_result(work_order, decision, result, outcome)
        return outcome

    async def _execute(self, work_order: WorkOrder, decision: RoutingDecision) -> ExecutionResult:
        start = time.monotonic()
        timeout = self.settings.execution_timeout_seconds
        try:
            result = await asyncio.wait_for(
                self.provider.execute(work_order, decision.tier, decision.model), timeout=timeout
            )
        except asyncio.TimeoutError:
            logger.warning("Execution of %s timed out after %.0fs", work_order.id, timeout)
            result = ExecutionResult(
                success=False,
                error=f"Execution timed out after {timeout}s",
                failure_classes=["timeout"],
            )
        except Exception as exc:
            failure_class = classify_error(exc)
            if self.critical_handler is not None:
                self.critical_handler.handle_critical_error(
                    "executor", "execute", exc, work_order.id, severity="warning"
                )
            result = ExecutionResult(
                success=False,
                error=f"{type(exc).__name__}: {exc}",
                failure_classes=[str(failure_class)],
            )
        if not result.execution_time_ms:
            result.execution_time_ms = int((time.monotonic() - start) * 1000)
        return result

    def _record_result(
        self,
        work_order: WorkOrder,
        decision: RoutingDecision,
        result: ExecutionResult,
        outcome: ScheduleOutcome,
    ) -> None:
        attempts = list(work_order.metadata.get("attempts") or [])
        attempts.append(
            {
                "proposer_name": str(decision.tier),
                "model_used": decision.model,
                "error_type": result.failure_classes[0] if result.failure_classes else None,
                "cost": result.cost,
                "timestamp": isoformat(),
            }
        )
        fields: dict[str, Any] = {"actual_cost": (work_order.actual_cost or 0.0) + result.cost}

        if result.success and result.github_pr_number is not None:
            # CI verdict decides completion
            fields["github_pr_number"] = result.github_pr_number
            self.repository.update(work_order.id, **fields)
            self.state_machine.merge_metadata(
                work_order.id, {"attempts": attempts[-ATTEMPT_HISTORY_LIMIT:]}
            )
            outcome.status = WorkOrderStatus.PROCESSING
            return

        if result.success:
            self.state_machine.transition(
                work_order.id,
                WorkOrderStatus.COMPLETED,
                metadata={"attempts": attempts[-ATTEMPT_HISTORY_LIMIT:]},
                fields=fields,
                reason="execution succeeded",
            )
            outcome.status = WorkOrderStatus.COMPLETED
            if self.sample_builder is not None:
                self.sample_builder.emit(work_order.id)
            return

        messages = list(work_order.metadata.get("error_messages") or [])
        if result.error:
            messages.append(result.error)
        failed = self.state_machine.transition(
            work_order.id,
            WorkOrderStatus.FAILED,
            metadata={
                "attempts": attempts[-ATTEMPT_HISTORY_LIMIT:],
                "error_type": result.failure_classes[0] if result.failure_classes else "unknown",
                "error_messages": messages[-ATTEMPT_HISTORY_LIMIT:],
            },
            fields=fields,
            reason=result.error or "execution failed",
        )
        outcome.status = WorkOrderStatus.FAILED

        if self.escalation_engine is not None and should_escalate(failed, self.settings):
            try:
                escalation, _ = self.escalation_engine.create_escalation(
                    work_order.id, reason=result.error or "execution failed"
                )
            except OverseerError as e:
                logger.error("Could not escalate %s: %s", work_order.id, e)
            else:
                outcome.escalation_id = escalation.id
                outcome.status = WorkOrderStatus.ESCALATED

    async def run_batch(self, work_order_ids: Sequence[str]) -> list[ScheduleOutcome]:
        """Process several work orders concurrently; results keep the input order."""
        return list(await asyncio.gather(*(self.process(wo_id) for wo_id in work_order_ids)))

    async def run_pending(self, limit: int = 100) -> list[ScheduleOutcome]:
        pending = self.repository.list(status=WorkOrderStatus.PENDING, limit=limit)
        return await self.run_batch([wo.id for wo in pending])
