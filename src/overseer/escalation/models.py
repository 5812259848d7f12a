"""Escalation data models."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from ..workorders import RiskLevel


class TriggerType(StrEnum):
    SENTINEL_HARD_FAILURE = "sentinel_hard_failure"
    BUDGET_OVERRUN = "budget_overrun"
    CONTRACT_VIOLATION = "contract_violation"
    AIDER_IRRECONCILABLE = "aider_irreconcilable"
    CONFLICTING_REQUIREMENTS = "conflicting_requirements"
    PROPOSER_EXHAUSTED = "proposer_exhausted"


class Strategy(StrEnum):
    RETRY_DIFFERENT_APPROACH = "retry_different_approach"
    PIVOT_SOLUTION = "pivot_solution"
    AMEND_UPSTREAM = "amend_upstream"
    ABORT_REDESIGN = "abort_redesign"
    MANUAL_INTERVENTION = "manual_intervention"


class EscalationStatus(StrEnum):
    OPEN = "open"
    RESOLVED = "resolved"


class ResolutionOutcome(StrEnum):
    SUCCESS = "success"
    FAILURE = "failure"
    PARTIAL = "partial"


@dataclass
class TriggerContext:
    """Snapshot of what went wrong, captured when the escalation is created."""

    error_messages: list[str] = field(default_factory=lambda: ["Unknown error"])
    cost_spent_so_far: float = 0.0
    attempts_history: list[dict[str, Any]] = field(default_factory=list)
    current_state: str = ""
    blocking_issue: str = "Unknown blocking issue"


@dataclass
class EscalationTrigger:
    trigger_type: TriggerType
    work_order_id: str
    failure_count: int
    context: TriggerContext
    agent_name: str = "proposer"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EscalationTrigger:
        return cls(
            trigger_type=TriggerType(data["trigger_type"]),
            work_order_id=data["work_order_id"],
            failure_count=data["failure_count"],
            context=TriggerContext(**data["context"]),
            agent_name=data.get("agent_name", "proposer"),
        )


@dataclass
class ResolutionOption:
    """One way out of an escalation, with its cost and risk."""

    option_id: str
    strategy: Strategy
    description: str
    estimated_cost: float
    success_probability: float
    time_to_resolution: str
    risk_level: RiskLevel
    compounding_risks: list[str] = field(default_factory=list)
    execution_steps: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.strategy = Strategy(self.strategy)
        self.risk_level = RiskLevel(self.risk_level)
        if not 0.0 <= self.success_probability <= 1.0:
            raise ValueError(
                f"success_probability must be in [0.0, 1.0], got {self.success_probability}"
            )
        if self.estimated_cost < 0.0:
            raise ValueError(f"estimated_cost must be >= 0.0, got {self.estimated_cost}")


@dataclass
class TradeOff:
    option_id: str
    pros: list[str] = field(default_factory=list)
    cons: list[str] = field(default_factory=list)


@dataclass
class Recommendation:
    escalation_id: str
    work_order_id: str
    recommended_option_id: str
    reasoning: str
    confidence: float
    trade_offs: list[TradeOff] = field(default_factory=list)
    context_summary: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Recommendation:
        return cls(
            escalation_id=data["escalation_id"],
            work_order_id=data["work_order_id"],
            recommended_option_id=data["recommended_option_id"],
            reasoning=data["reasoning"],
            confidence=data["confidence"],
            trade_offs=[TradeOff(**t) for t in data.get("trade_offs", [])],
            context_summary=data.get("context_summary", {}),
        )


@dataclass
class Escalation:
    """A structured handoff to a human reviewer.

    ``work_order_id`` is None for system-scoped escalations (budget).
    """

    id: str
    work_order_id: str | None
    trigger_type: TriggerType
    status: EscalationStatus
    context: dict[str, Any]
    created_at: datetime
    chosen_option: ResolutionOption | None = None
    resolution_outcome: ResolutionOutcome | None = None
    resolution_notes: str | None = None
    lessons_learned: list[str] = field(default_factory=list)
    last_error: str | None = None
    resolved_at: datetime | None = None

    @property
    def is_system(self) -> bool:
        return self.work_order_id is None

    @property
    def options(self) -> list[ResolutionOption]:
        return [ResolutionOption(**o) for o in self.context.get("options", [])]

    @property
    def recommendation(self) -> Recommendation | None:
        data = self.context.get("recommendation")
        return Recommendation.from_dict(data) if data else None

    @property
    def trigger(self) -> EscalationTrigger | None:
        data = self.context.get("trigger")
        return EscalationTrigger.from_dict(data) if data else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "work_order_id": self.work_order_id,
            "trigger_type": str(self.trigger_type),
            "status": str(self.status),
            "context": self.context,
            "chosen_option": to_jsonable(self.chosen_option) if self.chosen_option else None,
            "resolution_outcome": str(self.resolution_outcome) if self.resolution_outcome else None,
            "resolution_notes": self.resolution_notes,
            "lessons_learned": list(self.lessons_learned),
            "last_error": self.last_error,
            "created_at": self.created_at.isoformat(),
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
        }


@dataclass
class EscalationDecision:
    """A human's choice for an open escalation."""

    escalation_id: str
    chosen_option_id: str
    human_notes: str = ""


@dataclass
class EscalationResult:
    escalation_id: str
    resolution_outcome: ResolutionOutcome
    final_cost: float
    lessons_learned: list[str]
    pattern_for_memory: str


def to_jsonable(obj: Any) -> Any:
    """asdict() with enums flattened to their string values."""
    data = asdict(obj)

    def _flatten(value: Any) -> Any:
        if isinstance(value, StrEnum):
            return str(value)
        if isinstance(value, dict):
            return {k: _flatten(v) for k, v in value.items()}
        if isinstance(value, list):
            return [_flatten(v) for v in value]
        return value

    return _flatten(data)
