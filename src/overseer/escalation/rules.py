"""Escalation rules: detection, trigger classification, options and recommendation.

Everything here is a pure function of the work order, its spend and the
settings; persistence and side effects live in :mod:`overseer.escalation.engine`.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from datetime import datetime
from typing import Final

from ..config import Settings
from ..safety.budget import check_budget_escalation as check_budget_escalation
from ..storage import utcnow
from ..workorders import RiskLevel, WorkOrder, WorkOrderStatus
from .models import (
    EscalationTrigger,
    Recommendation,
    ResolutionOption,
    Strategy,
    TradeOff,
    TriggerContext,
    TriggerType,
)

DEFAULT_SUCCESS_RATES: Final[dict[Strategy, float]] = {
    Strategy.RETRY_DIFFERENT_APPROACH: 0.65,
    Strategy.PIVOT_SOLUTION: 0.75,
    Strategy.AMEND_UPSTREAM: 0.80,
    Strategy.ABORT_REDESIGN: 0.90,
}

COST_MULTIPLIERS: Final[dict[Strategy, float]] = {
    Strategy.RETRY_DIFFERENT_APPROACH: 1.5,
    Strategy.PIVOT_SOLUTION: 2.0,
    Strategy.AMEND_UPSTREAM: 1.2,
    Strategy.ABORT_REDESIGN: 3.0,
}

RETRY_CONTEXT_MULTIPLIER: Final = 1.5
DEFAULT_RETRY_CONTEXT_BUDGET: Final = 4000
CONFIDENCE_CAP: Final = 0.95

# (keywords, label); first match wins
FAILURE_PATTERNS: Final[tuple[tuple[tuple[str, ...], str], ...]] = (
    (("typescript", "ts2"), "TypeScript compilation errors"),
    (("contract", "breaking"), "Contract violations"),
    (("test", "assertion"), "Test failures"),
    (("timeout", "exceeded"), "Resource/timeout issues"),
    (("conflict", "merge"), "Git merge conflicts"),
)


def should_escalate(
    work_order: WorkOrder, settings: Settings | None = None, now: datetime | None = None
) -> bool:
    """True if the work order meets any escalation criterion.

    - retry_count >= max retries (3)
    - status failed and no escalation triggered yet
    - actual cost more than 2x the estimate
    - processing for more than 24 hours since creation
    """
    s = settings or Settings()
    now = now or utcnow()
    meta = work_order.metadata

    if work_order.retry_count >= s.escalation_max_retries:
        return True
    if work_order.status is WorkOrderStatus.FAILED and not meta.get("escalation_triggered"):
        return True
    overrun = work_order.cost_overrun_ratio
    if overrun is not None and overrun > s.escalation_cost_overrun_ratio:
        return True
    if work_order.status is WorkOrderStatus.PROCESSING:
        hours = (now - work_order.created_at).total_seconds() / 3600
        if hours > s.escalation_stuck_hours:
            return True
    return False


def classify_trigger(
    work_order: WorkOrder, cost_spent: float, settings: Settings | None = None
) -> EscalationTrigger:
    """Classify why the work order is escalating.

    Precedence: sentinel_hard_failure > budget_overrun > contract_violation /
    aider_irreconcilable > proposer_exhausted.
    """
    s = settings or Settings()
    meta = work_order.metadata

    attempts = [
        {
            "attempt_number": i + 1,
            "proposer_used": a.get("proposer_name"),
            "model_used": a.get("model_used"),
            "error_type": a.get("error_type"),
            "cost": a.get("cost") or 0,
            "timestamp": a.get("timestamp"),
        }
        for i, a in enumerate(meta.get("attempts") or [])
    ]

    error_type = meta.get("error_type")
    if (meta.get("sentinel_failures") or 0) > s.escalation_sentinel_failure_limit:
        trigger_type = TriggerType.SENTINEL_HARD_FAILURE
    elif cost_spent > s.escalation_budget_overrun_cost:
        trigger_type = TriggerType.BUDGET_OVERRUN
    elif error_type == "contract_violation":
        trigger_type = TriggerType.CONTRACT_VIOLATION
    elif error_type == "aider_conflict":
        trigger_type = TriggerType.AIDER_IRRECONCILABLE
    elif error_type == "conflicting_requirements":
        trigger_type = TriggerType.CONFLICTING_REQUIREMENTS
    else:
        trigger_type = TriggerType.PROPOSER_EXHAUSTED

    return EscalationTrigger(
        trigger_type=trigger_type,
        work_order_id=work_order.id,
        agent_name=meta.get("last_agent") or "proposer",
        failure_count=work_order.retry_count or 1,
        context=TriggerContext(
            error_messages=list(meta.get("error_messages") or ["Unknown error"]),
            cost_spent_so_far=cost_spent,
            attempts_history=attempts,
            current_state=str(work_order.status),
            blocking_issue=meta.get("blocking_issue") or "Unknown blocking issue",
        ),
    )


def generate_resolution_options(
    trigger: EscalationTrigger,
    work_order: WorkOrder,
    success_rates: Mapping[Strategy, float] | None = None,
    settings: Settings | None = None,
) -> list[ResolutionOption]:
    """Build the remediation options for a trigger; retry is always offered."""
    s = settings or Settings()
    rates = {**DEFAULT_SUCCESS_RATES, **(success_rates or {})}
    base_cost = work_order.estimated_cost or 0.0
    tt = trigger.trigger_type
    capable_model = s.tier_models.capable
    retry_budget = int(
        (work_order.context_budget_estimate or DEFAULT_RETRY_CONTEXT_BUDGET) * RETRY_CONTEXT_MULTIPLIER
    )

    options = [
        ResolutionOption(
            option_id="A",
            strategy=Strategy.RETRY_DIFFERENT_APPROACH,
            description=(
                f"Retry with {capable_model} (highest capability tier) "
                "and increased context budget (+50%)"
            ),
            estimated_cost=base_cost * COST_MULTIPLIERS[Strategy.RETRY_DIFFERENT_APPROACH],
            success_probability=rates[Strategy.RETRY_DIFFERENT_APPROACH],
            time_to_resolution="2-4 hours",
            risk_level=RiskLevel.LOW,
            compounding_risks=["May fail again if root issue is architectural"],
            execution_steps=[
                f"Switch to {capable_model}",
                f"Increase context budget to {retry_budget} tokens",
                "Add failure context from previous attempts",
                "Re-route with high-priority flag",
            ],
        )
    ]

    if tt in (TriggerType.PROPOSER_EXHAUSTED, TriggerType.CONTRACT_VIOLATION):
        options.append(
            ResolutionOption(
                option_id="B",
                strategy=Strategy.PIVOT_SOLUTION,
                description=(
                    "Pivot to alternative technical approach "
                    "(e.g., use different library, simpler architecture)"
                ),
                estimated_cost=base_cost * COST_MULTIPLIERS[Strategy.PIVOT_SOLUTION],
                success_probability=rates[Strategy.PIVOT_SOLUTION],
                time_to_resolution="4-8 hours",
                risk_level=RiskLevel.MEDIUM,
                compounding_risks=[
                    "May require updating contracts",
                    "Could impact dependent work orders",
                    "Additional testing required",
                ],
                execution_steps=[
                    "Human reviews work order requirements",
                    "Generate alternative decomposition",
                    "Update contracts if needed",
                    "Create new work order with pivot approach",
                ],
            )
        )

    if tt in (TriggerType.CONTRACT_VIOLATION, TriggerType.CONFLICTING_REQUIREMENTS):
        options.append(
            ResolutionOption(
                option_id="C",
                strategy=Strategy.AMEND_UPSTREAM,
                description=(
                    "Fix root cause in earlier work orders "
                    "(likely dependency issue or incomplete foundation)"
                ),
                estimated_cost=base_cost * COST_MULTIPLIERS[Strategy.AMEND_UPSTREAM],
                success_probability=rates[Strategy.AMEND_UPSTREAM],
                time_to_resolution="6-12 hours",
                risk_level=RiskLevel.MEDIUM,
                compounding_risks=[
                    "May require re-testing earlier work orders",
                    "Could cascade to dependent work orders",
                    "Rollback risk if changes conflict",
                ],
                execution_steps=[
                    "Identify which upstream work order needs amendment",
                    "Create amendment work order",
                    "Re-test affected work orders",
                    "Retry current work order after fix",
                ],
            )
        )

    if (
        trigger.context.cost_spent_so_far > s.escalation_abort_cost
        or trigger.failure_count > s.escalation_abort_failures
    ):
        options.append(
            ResolutionOption(
                option_id="D",
                strategy=Strategy.ABORT_REDESIGN,
                description="Abort current approach and re-decompose the feature from scratch",
                estimated_cost=base_cost * COST_MULTIPLIERS[Strategy.ABORT_REDESIGN],
                success_probability=rates[Strategy.ABORT_REDESIGN],
                time_to_resolution="1-2 days",
                risk_level=RiskLevel.HIGH,
                compounding_risks=[
                    "Sunk cost from failed attempts",
                    "Timeline delay for feature",
                    "May impact other planned work orders",
                ],
                execution_steps=[
                    "Mark current work order as aborted",
                    "Extract lessons learned from failures",
                    "Submit revised requirements for decomposition",
                    "Review new decomposition",
                    "Create fresh work orders with updated approach",
                ],
            )
        )

    return options


def classify_failure_pattern(error_messages: Sequence[str]) -> str:
    text = " ".join(error_messages).lower()
    for keywords, label in FAILURE_PATTERNS:
        if any(k in text for k in keywords):
            return label
    return "Unknown failure pattern"


def option_score(option: ResolutionOption) -> float:
    """Cost efficiency: success probability per dollar (cost floored at 1)."""
    return option.success_probability / max(option.estimated_cost, 1.0)


def trade_offs(option: ResolutionOption, cost_spent: float) -> TradeOff:
    pros: list[str] = []
    cons: list[str] = []

    if option.success_probability > 0.75:
        pros.append("High success probability")
    if option.estimated_cost < cost_spent:
        pros.append("Lower cost than spent so far")
    if option.risk_level is RiskLevel.LOW:
        pros.append("Low risk")
    if "2-4" in option.time_to_resolution:
        pros.append("Fast resolution")

    if option.success_probability < 0.70:
        cons.append("Lower success probability")
    if option.estimated_cost > cost_spent * 2:
        cons.append("High additional cost")
    if option.risk_level is RiskLevel.HIGH:
        cons.append("High risk")
    if len(option.compounding_risks) > 2:
        cons.append("Multiple compounding risks")

    return TradeOff(option_id=option.option_id, pros=pros, cons=cons)


def recommendation_confidence(option: ResolutionOption, failure_count: int) -> float:
    confidence = option.success_probability
    if failure_count > 3:
        confidence *= 0.8
    if option.risk_level is RiskLevel.HIGH:
        confidence *= 0.9
    elif option.risk_level is RiskLevel.LOW:
        confidence *= 1.1
    return round(min(confidence, CONFIDENCE_CAP), 4)


def _reasoning(option: ResolutionOption, trigger: EscalationTrigger) -> str:
    reasons = [
        f"Option {option.option_id} ({option.strategy}) is recommended based on cost-efficiency analysis.",
        f"Success probability: {option.success_probability * 100:.0f}%, "
        f"estimated cost: ${option.estimated_cost:.2f}, "
        f"time to resolution: {option.time_to_resolution}.",
    ]
    if trigger.failure_count > 2:
        reasons.append(
            f"After {trigger.failure_count} failed attempts, this approach offers the best "
            "balance of success likelihood and resource efficiency."
        )
    spent = trigger.context.cost_spent_so_far
    if spent > 10:
        reasons.append(
            f"Given ${spent:.2f} already spent, minimizing additional cost while "
            "maximizing success is critical."
        )
    return " ".join(reasons)


def generate_recommendation(
    trigger: EscalationTrigger,
    options: Sequence[ResolutionOption],
    work_order: WorkOrder,
    escalation_id: str,
) -> Recommendation:
    """Pick the most cost-efficient option and explain the trade-offs.

    Ties keep the earlier option (A before B ...).
    """
    if not options:
        raise ValueError("generate_recommendation needs at least one option")

    best = max(options, key=option_score)
    spent = trigger.context.cost_spent_so_far
    scope = work_order.description[:200]
    if len(work_order.description) > 200:
        scope += "..."

    return Recommendation(
        escalation_id=escalation_id,
        work_order_id=work_order.id,
        recommended_option_id=best.option_id,
        reasoning=_reasoning(best, trigger),
        confidence=recommendation_confidence(best, trigger.failure_count),
        trade_offs=[trade_offs(o, spent) for o in options],
        context_summary={
            "total_cost_spent": spent,
            "total_attempts": trigger.failure_count,
            "failure_pattern": classify_failure_pattern(trigger.context.error_messages),
            "original_scope": scope,
        },
    )

