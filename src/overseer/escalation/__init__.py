"""Escalation: detection, options, recommendations and human decisions."""

from .critical import CriticalErrorHandler, FailureClass, classify_error
from .engine import EscalationEngine
from .models import (
    Escalation,
    EscalationDecision,
    EscalationResult,
    EscalationStatus,
    EscalationTrigger,
    Recommendation,
    ResolutionOption,
    ResolutionOutcome,
    Strategy,
    TradeOff,
    TriggerContext,
    TriggerType,
)
from .rules import (
    check_budget_escalation,
    classify_trigger,
    generate_recommendation,
    generate_resolution_options,
    should_escalate,
)

__all__ = [
    # Engine
    "EscalationEngine",
    # Critical errors
    "CriticalErrorHandler",
    "FailureClass",
    "classify_error",
    # Models
    "Escalation",
    "EscalationDecision",
    "EscalationResult",
    "EscalationStatus",
    "EscalationTrigger",
    "Recommendation",
    "ResolutionOption",
    "ResolutionOutcome",
    "Strategy",
    "TradeOff",
    "TriggerContext",
    "TriggerType",
    # Rules
    "check_budget_escalation",
    "classify_trigger",
    "generate_recommendation",
    "generate_resolution_options",
    "should_escalate",
]
