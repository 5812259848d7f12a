"""Complexity Router - score a work order and pick an execution tier.

Scoring formula::

    score = clamp(
        min(criteria * w1, cap1)
        + min(files * w2, cap2)
        + min(max(0, context_budget - base) * w3, cap3),
        0, 1,
    )

Scores below the complexity threshold route to the fast tier, everything else
to the capable tier. Security and architecture keywords in the title or
description force the capable tier regardless of score ("hard stop"), and a
daily budget past its hard cap forces the fast tier regardless of both.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any, Final

from ..config import Settings
from ..safety.budget import BudgetLevel
from ..storage import utcnow
from ..workorders import WorkOrder

logger = logging.getLogger(__name__)

# ═══════════════════════════════════════════════════════════════════════════
# HARD STOP KEYWORDS
# ═══════════════════════════════════════════════════════════════════════════

HARD_STOP_KEYWORDS: Final[dict[str, tuple[str, ...]]] = {
    "security": (
        "sql injection",
        "xss",
        "csrf",
        "authentication",
        "authorization",
        "encryption",
        "password hashing",
        "api keys",
        "secrets management",
        "access control",
        "input validation",
        "sanitization",
        "security",
    ),
    "architecture": (
        "api contract",
        "schema change",
        "breaking change",
        "database migration",
        "schema migration",
        "event schema",
        "integration contract",
        "system design",
        "architectural decision",
    ),
}

# Substituted when a work order leaves the signal empty
DEFAULT_CRITERIA_COUNT: Final = 1
DEFAULT_FILES_COUNT: Final = 1


# ═══════════════════════════════════════════════════════════════════════════
# DATA STRUCTURES
# ═══════════════════════════════════════════════════════════════════════════


class Tier(StrEnum):
    FAST = "fast"
    CAPABLE = "capable"


@dataclass(frozen=True)
class WeightVector:
    """Per-signal weights and caps of the complexity formula."""

    criteria_weight: float = 0.1
    criteria_cap: float = 0.5
    files_weight: float = 0.05
    files_cap: float = 0.3
    context_base: int = 2000
    context_weight: float = 1 / 8000
    context_cap: float = 0.2

    def __post_init__(self) -> None:
        for name, value in self.as_dict().items():
            if value < 0:
                raise ValueError(f"{name} must be >= 0, got {value}")

    def as_dict(self) -> dict[str, float]:
        return {k: float(v) for k, v in asdict(self).items()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WeightVector:
        known = {k: data[k] for k in cls.__dataclass_fields__ if k in data}
        if "context_base" in known:
            known["context_base"] = int(known["context_base"])
        return cls(**known)


@dataclass(frozen=True)
class ComplexityFactors:
    """Breakdown of a complexity score by signal."""

    criteria_count: int
    files_count: int
    context_budget: int
    criteria_component: float
    files_component: float
    context_component: float

    def as_dict(self) -> dict[str, float]:
        return asdict(self)


@dataclass(frozen=True)
class RoutingDecision:
    """Immutable record of the tier chosen for a work order."""

    work_order_id: str
    tier: Tier
    model: str
    score: float
    factors: ComplexityFactors
    weights: WeightVector
    reason: str
    hard_stop: bool = False
    matched_keywords: tuple[str, ...] = ()
    fallback_tier: Tier | None = None
    can_proceed: bool = True
    budget_level: str | None = None
    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if not 0.0 <= self.score <= 1.0:
            raise ValueError(f"score must be in [0.0, 1.0], got {self.score}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "work_order_id": self.work_order_id,
            "tier": str(self.tier),
            "model": self.model,
            "score": self.score,
            "factors": self.factors.as_dict(),
            "weights": self.weights.as_dict(),
            "reason": self.reason,
            "hard_stop": self.hard_stop,
            "matched_keywords": list(self.matched_keywords),
            "fallback_tier": str(self.fallback_tier) if self.fallback_tier else None,
            "can_proceed": self.can_proceed,
            "budget_level": self.budget_level,
            "created_at": self.created_at.isoformat(),
        }


# ═══════════════════════════════════════════════════════════════════════════
# SCORING
# ═══════════════════════════════════════════════════════════════════════════


def compute_complexity(
    acceptance_criteria: list[str] | None,
    files_in_scope: list[str] | None,
    context_budget_estimate: int | None,
    weights: WeightVector | None = None,
) -> tuple[float, ComplexityFactors]:
    """Score a work order's signals.

    Missing or empty signals fall back to one criterion, one file and the base
    context budget; this never raises.
    """
    w = weights or WeightVector()
    criteria = len(acceptance_criteria) if acceptance_criteria else DEFAULT_CRITERIA_COUNT
    files = len(set(files_in_scope)) if files_in_scope else DEFAULT_FILES_COUNT
    budget = context_budget_estimate if context_budget_estimate else w.context_base

    criteria_component = min(criteria * w.criteria_weight, w.criteria_cap)
    files_component = min(files * w.files_weight, w.files_cap)
    context_component = min(max(0, budget - w.context_base) * w.context_weight, w.context_cap)

    total = criteria_component + files_component + context_component
    score = round(max(0.0, min(1.0, total)), 4)
    factors = ComplexityFactors(
        criteria_count=criteria,
        files_count=files,
        context_budget=budget,
        criteria_component=round(criteria_component, 4),
        files_component=round(files_component, 4),
        context_component=round(context_component, 4),
    )
    return score, factors


def detect_hard_stop(title: str, description: str = "") -> tuple[str, ...]:
    """Return every hard-stop keyword found in the title or description."""
    text = f"{title or ''} {description or ''}".lower()
    matched: list[str] = []
    for keywords in HARD_STOP_KEYWORDS.values():
        for keyword in keywords:
            if keyword in text and keyword not in matched:
                matched.append(keyword)
    return tuple(matched)


# ═══════════════════════════════════════════════════════════════════════════
# ROUTER
# ═══════════════════════════════════════════════════════════════════════════


class ComplexityRouter:
    """Pick an execution tier for a work order.

    Weights are injected and may be swapped out-of-band by a
    :class:`~overseer.routing.weights.WeightUpdater`.
    """

    def __init__(self, settings: Settings | None = None, weights: WeightVector | None = None) -> None:
        self.settings = settings or Settings()
        self._weights = weights or WeightVector()
        self._lock = threading.Lock()

    @property
    def weights(self) -> WeightVector:
        with self._lock:
            return self._weights

    def set_weights(self, weights: WeightVector) -> WeightVector:
        """Swap the weight vector, returning the previous one."""
        with self._lock:
            previous, self._weights = self._weights, weights
        logger.info("Router weights updated: %s", weights.as_dict())
        return previous

    def model_for(self, tier: Tier) -> str:
        return getattr(self.settings.tier_models, str(tier))

    def route(
        self, work_order: WorkOrder, budget_level: BudgetLevel | str | None = None
    ) -> RoutingDecision:
        """Produce a routing decision; never raises for missing work order data.

        Args:
            work_order: Work order to route
            budget_level: Current daily budget level, if the caller checked it

        Returns:
            RoutingDecision with tier, model, score breakdown and reason
        """
        weights = self.weights
        threshold = self.settings.complexity_threshold
        score, factors = compute_complexity(
            work_order.acceptance_criteria,
            work_order.files_in_scope,
            work_order.context_budget_estimate,
            weights,
        )
        matched = detect_hard_stop(work_order.title, work_order.description)
        level = BudgetLevel(budget_level) if budget_level is not None else None

        if matched:
            tier = Tier.CAPABLE
            reason = (
                f"Hard stop: matched {', '.join(matched)}; "
                f"capable tier forced (score {score:.2f})"
            )
        elif score < threshold:
            tier = Tier.FAST
            reason = f"Complexity {score:.2f} < {threshold:.2f}; fast tier"
        else:
            tier = Tier.CAPABLE
            reason = f"Complexity {score:.2f} >= {threshold:.2f}; capable tier"

        can_proceed = True
        if level in (BudgetLevel.HARD_CAP_EXCEEDED, BudgetLevel.EMERGENCY_KILL):
            if tier is not Tier.FAST:
                reason = f"Budget {level}: fast tier forced. {reason}"
            tier = Tier.FAST
        if level is BudgetLevel.EMERGENCY_KILL:
            can_proceed = False
            reason = f"{reason}. Execution blocked by emergency budget kill"

        if matched or level in (BudgetLevel.HARD_CAP_EXCEEDED, BudgetLevel.EMERGENCY_KILL):
            fallback = None
        else:
            fallback = Tier.CAPABLE if tier is Tier.FAST else Tier.FAST

        decision = RoutingDecision(
            work_order_id=work_order.id,
            tier=tier,
            model=self.model_for(tier),
            score=score,
            factors=factors,
            weights=weights,
            reason=reason,
            hard_stop=bool(matched),
            matched_keywords=matched,
            fallback_tier=fallback,
            can_proceed=can_proceed,
            budget_level=str(level) if level else None,
        )
        logger.debug("Routed %s: %s", work_order.id, reason)
        return decision
