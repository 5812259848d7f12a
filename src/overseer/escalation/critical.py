"""Critical error handling: classify, persist and escalate component failures."""

from __future__ import annotations

import json
import logging
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from ..errors import OverseerError
from ..storage import Database, isoformat

if TYPE_CHECKING:
    from .engine import EscalationEngine

logger = logging.getLogger(__name__)


class FailureClass(StrEnum):
    DEPENDENCY_MISSING = "dependency_missing"
    COMPILE_ERROR = "compile_error"
    CONTRACT_VIOLATION = "contract_violation"
    TEST_FAIL = "test_fail"
    LINT_ERROR = "lint_error"
    ORCHESTRATION_ERROR = "orchestration_error"
    BUDGET_EXCEEDED = "budget_exceeded"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


ORCHESTRATION_COMPONENTS = frozenset({"executor", "github"})

# Checked in order; dependency before compile so "cannot find module" is not
# taken for a missing type name.
_KEYWORDS: tuple[tuple[FailureClass, tuple[str, ...]], ...] = (
    (
        FailureClass.DEPENDENCY_MISSING,
        ("cannot find module", "module not found", "dependency", "blocked by", "waiting for", "prerequisite"),
    ),
    (
        FailureClass.COMPILE_ERROR,
        ("typescript", "tsc", "type error", "cannot find name", "is not assignable to", "syntaxerror"),
    ),
    (FailureClass.CONTRACT_VIOLATION, ("contract violation", "breaking change")),
    (FailureClass.TEST_FAIL, ("pytest", "jest", "vitest", "spec failed")),
    (FailureClass.LINT_ERROR, ("eslint", "lint error", "prettier", "ruff", "flake8")),
    (
        FailureClass.ORCHESTRATION_ERROR,
        (
            "git",
            "pull request",
            "branch",
            "spawn",
            "command failed",
            "fatal:",
            "repository",
            "unable to access",
        ),
    ),
    (FailureClass.BUDGET_EXCEEDED, ("budget", "emergency_kill", "cost limit", "hard cap reached")),
    (FailureClass.TIMEOUT, ("timeout", "timed out", "exceeded time limit")),
)


def classify_error(
    error: BaseException | str,
    component: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> FailureClass:
    """Map an error to a failure class by keyword."""
    message = str(error).lower()
    if isinstance(error, TimeoutError):
        return FailureClass.TIMEOUT

    for failure_class, keywords in _KEYWORDS:
        if any(k in message for k in keywords):
            return failure_class
        if failure_class is FailureClass.COMPILE_ERROR:
            if "property" in message and "does not exist" in message:
                return failure_class
        elif failure_class is FailureClass.CONTRACT_VIOLATION:
            validation = (metadata or {}).get("contract_validation") or {}
            if validation.get("has_violations"):
                return failure_class
        elif failure_class is FailureClass.TEST_FAIL:
            if "test" in message and any(k in message for k in ("fail", "expected", "assertion")):
                return failure_class
        elif failure_class is FailureClass.ORCHESTRATION_ERROR:
            if component and component.lower() in ORCHESTRATION_COMPONENTS:
                return failure_class

    return FailureClass.UNKNOWN


class CriticalErrorHandler:
    """Record component failures and escalate the critical ones tied to a work order.

    Escalation failures are logged, never raised: a failing error path must not
    take down the caller.
    """

    def __init__(self, db: Database, escalation_engine: EscalationEngine | None = None) -> None:
        self.db = db
        self.escalation_engine = escalation_engine

    def handle_critical_error(
        self,
        component: str,
        operation: str,
        error: BaseException | str,
        work_order_id: str | None = None,
        severity: str = "critical",
        metadata: dict[str, Any] | None = None,
    ) -> tuple[FailureClass, str | None]:
        """Classify and persist one error; escalate if critical and work-order scoped.

        Returns:
            (failure_class, escalation_id or None)
        """
        failure_class = classify_error(error, component, metadata)
        logger.error(
            "[%s] %s failed (%s): %s", component, operation, failure_class, error
        )

        escalation_id: str | None = None
        if severity == "critical" and work_order_id and self.escalation_engine is not None:
            try:
                escalation, _ = self.escalation_engine.create_escalation(
                    work_order_id,
                    force=True,
                    reason=f"{component} failure: {operation} ({failure_class})",
                )
                escalation_id = escalation.id
            except OverseerError as e:
                logger.error("Escalation for %s failed: %s", work_order_id, e)

        self.db.execute_insert(
            """INSERT INTO critical_errors
               (component, operation, work_order_id, severity, failure_class, message,
                metadata, escalation_id, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                component,
                operation,
                work_order_id,
                severity,
                str(failure_class),
                str(error),
                json.dumps(metadata or {}, default=str),
                escalation_id,
                isoformat(),
            ),
        )
        return failure_class, escalation_id

    def recent(self, limit: int = 50) -> list[dict[str, Any]]:
        rows = self.db.execute(
            "SELECT * FROM critical_errors ORDER BY id DESC LIMIT ?", (limit,)
        )
        return [
            {**dict(row), "metadata": json.loads(row["metadata"])}
            for row in rows
        ]
