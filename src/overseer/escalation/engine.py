"""Escalation Engine - create, persist and resolve escalations.

Creating an escalation snapshots the trigger, the options and the
recommendation in one insert, so the record is durable before the call
returns. Executing a decision moves the work order through the state machine
with the matching remediation; if that fails the escalation stays open with
the error recorded.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from datetime import datetime
from typing import Any

from ..config import Settings
from ..errors import (
    ConcurrentUpdateError,
    EscalationAlreadyResolvedError,
    EscalationCriteriaError,
    EscalationNotFoundError,
    InvalidOptionError,
    InvalidTransitionError,
    WorkOrderNotFoundError,
)
from ..safety import BudgetGuard
from ..storage import Database, isoformat, utcnow
from ..workorders import (
    Remediation,
    WorkOrderRepository,
    WorkOrderStateMachine,
    WorkOrderStatus,
    is_legal,
)
from . import rules
from .models import (
    Escalation,
    EscalationDecision,
    EscalationResult,
    EscalationStatus,
    Recommendation,
    ResolutionOption,
    ResolutionOutcome,
    Strategy,
    TriggerType,
    to_jsonable,
)

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 50
PRIOR_WEIGHT = 5

STRATEGY_REMEDIATION: dict[Strategy, Remediation] = {
    Strategy.RETRY_DIFFERENT_APPROACH: Remediation.RETRY,
    Strategy.PIVOT_SOLUTION: Remediation.PIVOT,
    Strategy.AMEND_UPSTREAM: Remediation.AMEND,
    Strategy.ABORT_REDESIGN: Remediation.ABORT,
}

STRATEGY_OUTCOMES: dict[Strategy, tuple[ResolutionOutcome, str]] = {
    Strategy.RETRY_DIFFERENT_APPROACH: (
        ResolutionOutcome.SUCCESS,
        "Retry with higher capability model scheduled",
    ),
    Strategy.PIVOT_SOLUTION: (
        ResolutionOutcome.SUCCESS,
        "Technical pivot required human oversight",
    ),
    Strategy.AMEND_UPSTREAM: (
        ResolutionOutcome.SUCCESS,
        "Upstream dependency issue identified for amendment",
    ),
    Strategy.ABORT_REDESIGN: (
        ResolutionOutcome.PARTIAL,
        "Complete redesign necessary after repeated failures",
    ),
    Strategy.MANUAL_INTERVENTION: (
        ResolutionOutcome.PARTIAL,
        "Manual intervention required - automation limits reached",
    ),
}


def _row_to_escalation(row: sqlite3.Row) -> Escalation:
    chosen = json.loads(row["chosen_option"]) if row["chosen_option"] else None
    return Escalation(
        id=row["id"],
        work_order_id=row["work_order_id"],
        trigger_type=TriggerType(row["trigger_type"]),
        status=EscalationStatus(row["status"]),
        context=json.loads(row["context"]),
        created_at=datetime.fromisoformat(row["created_at"]),
        chosen_option=ResolutionOption(**chosen) if chosen else None,
        resolution_outcome=(
            ResolutionOutcome(row["resolution_outcome"]) if row["resolution_outcome"] else None
        ),
        resolution_notes=row["resolution_notes"],
        lessons_learned=json.loads(row["lessons_learned"]),
        last_error=row["last_error"],
        resolved_at=datetime.fromisoformat(row["resolved_at"]) if row["resolved_at"] else None,
    )


class EscalationEngine:
    """Detects escalation-worthy work orders and executes human decisions."""

    def __init__(
        self,
        db: Database,
        state_machine: WorkOrderStateMachine,
        settings: Settings | None = None,
        budget_guard: BudgetGuard | None = None,
    ) -> None:
        self.db = db
        self.state_machine = state_machine
        self.repository: WorkOrderRepository = state_machine.repository
        self.settings = settings or Settings()
        self.budget_guard = budget_guard

    # ── queries ────────────────────────────────────────────────────────────

    def get_escalation(self, escalation_id: str) -> Escalation:
        rows = self.db.execute("SELECT * FROM escalations WHERE id = ?", (escalation_id,))
        if not rows:
            raise EscalationNotFoundError(escalation_id)
        return _row_to_escalation(rows[0])

    def list_escalations(
        self, status: EscalationStatus | str | None = None, limit: int = 50
    ) -> list[Escalation]:
        if status is None:
            rows = self.db.execute(
                "SELECT * FROM escalations ORDER BY created_at DESC LIMIT ?", (limit,)
            )
        else:
            rows = self.db.execute(
                "SELECT * FROM escalations WHERE status = ? ORDER BY created_at DESC LIMIT ?",
                (str(status), limit),
            )
        return [_row_to_escalation(row) for row in rows]

    def cost_spent(self, work_order_id: str) -> float:
        """Total recorded execution cost for a work order."""
        rows = self.db.execute(
            "SELECT COUNT(*) AS n, COALESCE(SUM(cost), 0.0) AS total "
            "FROM execution_outcomes WHERE work_order_id = ?",
            (work_order_id,),
        )
        if rows[0]["n"]:
            return float(rows[0]["total"])
        work_order = self.repository.get(work_order_id)
        return float(work_order.actual_cost or 0.0) if work_order else 0.0

    def historical_success_rates(self) -> dict[Strategy, float]:
        """Per-strategy success rate of resolved escalations, blended with the defaults.

        Each default counts as ``PRIOR_WEIGHT`` earlier resolutions, so one
        outcome nudges a rate instead of pinning it to 0 or 1. A rate that still
        comes out as zero falls back to the default.
        """
        rows = self.db.execute(
            "SELECT chosen_option, resolution_outcome FROM escalations "
            "WHERE status = 'resolved' AND chosen_option IS NOT NULL "
            "ORDER BY resolved_at DESC LIMIT ?",
            (HISTORY_LIMIT,),
        )
        counts: dict[Strategy, list[int]] = {}
        for row in rows:
            strategy = Strategy(json.loads(row["chosen_option"])["strategy"])
            success, total = counts.setdefault(strategy, [0, 0])
            counts[strategy] = [
                success + (row["resolution_outcome"] == ResolutionOutcome.SUCCESS),
                total + 1,
            ]

        rates = dict(rules.DEFAULT_SUCCESS_RATES)
        for strategy, (success, total) in counts.items():
            default = rates.get(strategy)
            if default is None or not total:
                continue
            blended = (success + default * PRIOR_WEIGHT) / (total + PRIOR_WEIGHT)
            rates[strategy] = round(blended, 4) or default
        return rates

    def _supersede_prior_resolution(self, work_order_id: str) -> None:
        """A new escalation means the last successful remediation did not hold."""
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT id FROM escalations WHERE work_order_id = ? AND status = 'resolved' "
                "AND resolution_outcome = ? ORDER BY resolved_at DESC LIMIT 1",
                (work_order_id, str(ResolutionOutcome.SUCCESS)),
            ).fetchone()
            if row is None:
                return
            conn.execute(
                "UPDATE escalations SET resolution_outcome = ? WHERE id = ?",
                (str(ResolutionOutcome.FAILURE), row["id"]),
            )
        logger.info("Escalation %s revised to failure: work order escalated again", row["id"])

    # ── creation ───────────────────────────────────────────────────────────

    def create_escalation(
        self, work_order_id: str, *, force: bool = False, reason: str | None = None
    ) -> tuple[Escalation, Recommendation]:
        """Open an escalation for a work order.

        Args:
            work_order_id: Work order to escalate
            force: Skip the escalation criteria (used for critical errors and verdicts)
            reason: Free-text reason stored in the context

        Raises:
            WorkOrderNotFoundError: if the work order does not exist
            EscalationCriteriaError: if ``force`` is False and no criterion is met
        """
        work_order = self.repository.get(work_order_id)
        if work_order is None:
            raise WorkOrderNotFoundError(work_order_id)
        if not force and not rules.should_escalate(work_order, self.settings):
            raise EscalationCriteriaError(
                f"Work order {work_order_id} does not meet escalation criteria"
            )

        self._supersede_prior_resolution(work_order_id)
        spent = self.cost_spent(work_order_id)
        trigger = rules.classify_trigger(work_order, spent, self.settings)
        options = rules.generate_resolution_options(
            trigger, work_order, self.historical_success_rates(), self.settings
        )
        escalation_id = uuid.uuid4().hex
        recommendation = rules.generate_recommendation(trigger, options, work_order, escalation_id)

        context: dict[str, Any] = {
            "trigger": to_jsonable(trigger),
            "options": [to_jsonable(o) for o in options],
            "recommendation": to_jsonable(recommendation),
            "reason": reason,
            "created_by": "escalation-engine",
        }
        created_at = utcnow()
        self.db.execute_insert(
            """INSERT INTO escalations (id, work_order_id, trigger_type, status, context, created_at)
               VALUES (?, ?, ?, 'open', ?, ?)""",
            (escalation_id, work_order_id, str(trigger.trigger_type), json.dumps(context), isoformat(created_at)),
        )
        logger.warning(
            "Escalation %s opened for %s (%s), recommending option %s",
            escalation_id,
            work_order_id,
            trigger.trigger_type,
            recommendation.recommended_option_id,
        )

        linkage = {"escalation_triggered": True, "escalation_id": escalation_id}
        if is_legal(work_order.status, WorkOrderStatus.ESCALATED):
            self.state_machine.transition(
                work_order_id,
                WorkOrderStatus.ESCALATED,
                metadata=linkage,
                reason=reason or f"escalation {trigger.trigger_type}",
            )
        else:
            self.state_machine.merge_metadata(work_order_id, linkage)

        return self.get_escalation(escalation_id), recommendation

    def check_budget(self) -> Escalation | None:
        """Open a system-scoped escalation if today's spend is near or past the limits.

        At most one open budget escalation exists per day.
        """
        if self.budget_guard is None:
            return None

        daily = self.budget_guard.daily_total()
        should, reason = rules.check_budget_escalation(daily, self.settings)
        if not should:
            return None

        now = self.budget_guard.clock()
        day_start = isoformat(now.replace(hour=0, minute=0, second=0, microsecond=0))
        with self.db.transaction() as conn:
            existing = conn.execute(
                "SELECT id FROM escalations WHERE work_order_id IS NULL AND trigger_type = ? "
                "AND status = 'open' AND created_at >= ? LIMIT 1",
                (str(TriggerType.BUDGET_OVERRUN), day_start),
            ).fetchone()
            if existing is not None:
                escalation_id = str(existing["id"])
            else:
                escalation_id = uuid.uuid4().hex
                context = {
                    "scope": "system",
                    "daily_total": round(daily, 4),
                    "threshold_exceeded": reason,
                    "options": [],
                    "recommendation": None,
                }
                conn.execute(
                    """INSERT INTO escalations (id, work_order_id, trigger_type, status, context, created_at)
                       VALUES (?, NULL, ?, 'open', ?, ?)""",
                    (escalation_id, str(TriggerType.BUDGET_OVERRUN), json.dumps(context), isoformat(now)),
                )
                logger.warning("Budget escalation %s: %s", escalation_id, reason)
        return self.get_escalation(escalation_id)

    # ── resolution ─────────────────────────────────────────────────────────

    def execute_decision(self, decision: EscalationDecision) -> EscalationResult:
        """Carry out a human's chosen option.

        Raises:
            EscalationNotFoundError: unknown escalation id
            EscalationAlreadyResolvedError: the escalation was resolved before
            InvalidOptionError: the option id is not one of the escalation's options
            InvalidTransitionError: the work order cannot take the remediation; the
                escalation stays open with the error recorded
        """
        escalation = self.get_escalation(decision.escalation_id)
        if escalation.status is EscalationStatus.RESOLVED:
            raise EscalationAlreadyResolvedError(escalation.id)
        if escalation.work_order_id is None:
            raise InvalidOptionError(
                f"Escalation {escalation.id} is system-scoped; use acknowledge()"
            )

        option = next(
            (o for o in escalation.options if o.option_id == decision.chosen_option_id), None
        )
        if option is None:
            raise InvalidOptionError(
                f"Invalid option {decision.chosen_option_id!r} for escalation {escalation.id}"
            )

        try:
            self._apply_strategy(escalation.work_order_id, option)
        except (InvalidTransitionError, ConcurrentUpdateError, WorkOrderNotFoundError) as e:
            self.db.execute(
                "UPDATE escalations SET last_error = ? WHERE id = ?", (str(e), escalation.id)
            )
            logger.error("Escalation %s: option %s failed: %s", escalation.id, option.option_id, e)
            raise

        outcome, lesson = STRATEGY_OUTCOMES[option.strategy]
        notes = f"Option {option.option_id} chosen: {option.description}. {decision.human_notes}".strip()
        self._resolve(escalation.id, option, outcome, notes, [lesson])

        trigger_type = escalation.trigger_type
        return EscalationResult(
            escalation_id=escalation.id,
            resolution_outcome=outcome,
            final_cost=option.estimated_cost,
            lessons_learned=[lesson],
            pattern_for_memory=(
                f"{trigger_type} → {option.strategy} (success_rate: {option.success_probability})"
            ),
        )

    def acknowledge(self, escalation_id: str, notes: str = "") -> Escalation:
        """Resolve a system-scoped escalation after a human has handled it."""
        escalation = self.get_escalation(escalation_id)
        if escalation.status is EscalationStatus.RESOLVED:
            raise EscalationAlreadyResolvedError(escalation_id)
        self._resolve(
            escalation_id,
            None,
            ResolutionOutcome.PARTIAL,
            notes or "Acknowledged",
            ["Manual intervention required - automation limits reached"],
        )
        return self.get_escalation(escalation_id)

    def _apply_strategy(self, work_order_id: str, option: ResolutionOption) -> None:
        remediation = STRATEGY_REMEDIATION.get(option.strategy)
        if remediation is None:
            return

        if remediation is Remediation.RETRY:
            work_order = self.repository.get(work_order_id)
            if work_order is None:
                raise WorkOrderNotFoundError(work_order_id)
            budget = work_order.context_budget_estimate or rules.DEFAULT_RETRY_CONTEXT_BUDGET
            self.state_machine.transition(
                work_order_id,
                WorkOrderStatus.PENDING,
                remediation=remediation,
                metadata={
                    "retry_with_escalation": True,
                    "force_tier": "capable",
                    "force_model": self.settings.tier_models.capable,
                    "context_budget_increase": rules.RETRY_CONTEXT_MULTIPLIER,
                    "retry_count": work_order.retry_count + 1,
                },
                fields={"context_budget_estimate": int(budget * rules.RETRY_CONTEXT_MULTIPLIER)},
                reason=f"escalation option {option.option_id}",
            )
        elif remediation is Remediation.PIVOT:
            self.state_machine.transition(
                work_order_id,
                WorkOrderStatus.NEEDS_REVIEW,
                remediation=remediation,
                metadata={
                    "pivot_required": True,
                    "human_review_reason": "Technical pivot needed based on escalation",
                },
                reason=f"escalation option {option.option_id}",
            )
        elif remediation is Remediation.AMEND:
            self.state_machine.transition(
                work_order_id,
                WorkOrderStatus.BLOCKED,
                remediation=remediation,
                metadata={
                    "blocked_reason": "Upstream work order amendment required",
                    "pending_upstream_fix": True,
                },
                reason=f"escalation option {option.option_id}",
            )
        else:
            self.state_machine.transition(
                work_order_id,
                WorkOrderStatus.FAILED,
                remediation=remediation,
                metadata={"aborted": True, "redesign_required": True},
                reason=f"escalation option {option.option_id}",
            )

    def _resolve(
        self,
        escalation_id: str,
        option: ResolutionOption | None,
        outcome: ResolutionOutcome,
        notes: str,
        lessons: list[str],
    ) -> None:
        with self.db.transaction() as conn:
            cursor = conn.execute(
                """UPDATE escalations
                   SET status = 'resolved', chosen_option = ?, resolution_outcome = ?,
                       resolution_notes = ?, lessons_learned = ?, last_error = NULL,
                       resolved_at = ?
                   WHERE id = ? AND status = 'open'""",
                (
                    json.dumps(to_jsonable(option)) if option else None,
                    str(outcome),
                    notes,
                    json.dumps(lessons),
                    isoformat(),
                    escalation_id,
                ),
            )
            if cursor.rowcount != 1:
                raise EscalationAlreadyResolvedError(escalation_id)
        logger.info("Escalation %s resolved (%s)", escalation_id, outcome)
