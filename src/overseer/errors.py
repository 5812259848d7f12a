"""Exception types shared across overseer components."""

from __future__ import annotations


class OverseerError(Exception):
    """Base class for all overseer errors."""


class InvalidTransitionError(OverseerError):
    """Raised when a work order status change is not a legal transition."""

    def __init__(self, work_order_id: str, current: str, attempted: str, detail: str = "") -> None:
        self.work_order_id = work_order_id
        self.current = current
        self.attempted = attempted
        message = f"Work order {work_order_id}: illegal transition {current} -> {attempted}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class ConcurrentUpdateError(OverseerError):
    """Raised when an optimistic version check fails too many times."""

    def __init__(self, work_order_id: str, expected_version: int) -> None:
        self.work_order_id = work_order_id
        self.expected_version = expected_version
        super().__init__(
            f"Work order {work_order_id} was modified concurrently (expected version {expected_version})"
        )


class WorkOrderNotFoundError(OverseerError):
    """Raised when a work order cannot be located."""

    def __init__(self, work_order_id: str, attempts: int = 1) -> None:
        self.work_order_id = work_order_id
        self.attempts = attempts
        super().__init__(f"Work order not found: {work_order_id} (after {attempts} attempt(s))")


class ReservationNotFoundError(OverseerError):
    """Raised when a budget reservation id is unknown or already settled."""

    def __init__(self, reservation_id: str) -> None:
        self.reservation_id = reservation_id
        super().__init__(f"Budget reservation not found: {reservation_id}")


class EscalationNotFoundError(OverseerError):
    """Raised when an escalation id does not exist."""

    def __init__(self, escalation_id: str) -> None:
        self.escalation_id = escalation_id
        super().__init__(f"Escalation not found: {escalation_id}")


class EscalationAlreadyResolvedError(OverseerError):
    """Raised when a decision is submitted for an escalation that is already resolved."""

    def __init__(self, escalation_id: str) -> None:
        self.escalation_id = escalation_id
        super().__init__(f"Escalation already resolved: {escalation_id}")


class EscalationCriteriaError(OverseerError):
    """Raised when an escalation is requested for a work order that does not qualify."""


class InvalidOptionError(OverseerError):
    """Raised when a decision names an option that the escalation does not offer."""


class WeightUpdateRejected(OverseerError):
    """Raised when a proposed weight vector violates the update safety limits."""

    def __init__(self, reasons: list[str]) -> None:
        self.reasons = reasons
        super().__init__("Weight update rejected: " + "; ".join(reasons))
