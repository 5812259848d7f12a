"""Work order data model."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from ..storage import utcnow


class WorkOrderStatus(StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    ESCALATED = "escalated"
    BLOCKED = "blocked"
    NEEDS_REVIEW = "needs_review"


class RiskLevel(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass
class WorkOrder:
    """A unit of work carrying requirements, scope and lifecycle status.

    ``complexity_score`` is written by the router; callers never set it directly.
    ``metadata`` holds retry_count, last_tier, escalation linkage, dependency ids,
    sentinel_failures, error_type, error_messages and attempts.
    """

    id: str
    title: str
    description: str = ""
    status: WorkOrderStatus = WorkOrderStatus.PENDING
    risk_level: RiskLevel = RiskLevel.LOW
    complexity_score: float = 0.0
    acceptance_criteria: list[str] = field(default_factory=list)
    files_in_scope: list[str] = field(default_factory=list)
    context_budget_estimate: int | None = None
    estimated_cost: float = 0.0
    actual_cost: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    github_pr_number: int | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    version: int = 1

    def __post_init__(self) -> None:
        self.status = WorkOrderStatus(self.status)
        self.risk_level = RiskLevel(self.risk_level)
        if not 0.0 <= self.complexity_score <= 1.0:
            raise ValueError(
                f"complexity_score must be in [0.0, 1.0], got {self.complexity_score}"
            )
        if self.estimated_cost < 0.0:
            raise ValueError(f"estimated_cost must be >= 0.0, got {self.estimated_cost}")
        # files_in_scope has set semantics; keep first-seen order
        self.files_in_scope = list(dict.fromkeys(self.files_in_scope))

    @property
    def retry_count(self) -> int:
        return int(self.metadata.get("retry_count", 0) or 0)

    @property
    def cost_overrun_ratio(self) -> float | None:
        """actual/estimated, or None before execution has been attempted."""
        if self.actual_cost is None or self.estimated_cost <= 0:
            return None
        return self.actual_cost / self.estimated_cost

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "status": str(self.status),
            "risk_level": str(self.risk_level),
            "complexity_score": self.complexity_score,
            "acceptance_criteria": list(self.acceptance_criteria),
            "files_in_scope": list(self.files_in_scope),
            "context_budget_estimate": self.context_budget_estimate,
            "estimated_cost": self.estimated_cost,
            "actual_cost": self.actual_cost,
            "metadata": dict(self.metadata),
            "github_pr_number": self.github_pr_number,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "version": self.version,
        }
