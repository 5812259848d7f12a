"""Work orders: data model, persistence and the lifecycle state machine."""

from .models import RiskLevel, WorkOrder, WorkOrderStatus
from .repository import WorkOrderRepository
from .state_machine import (
    NORMAL_TRANSITIONS,
    REMEDIABLE_STATES,
    REMEDIATION_TARGETS,
    Remediation,
    WorkOrderStateMachine,
    is_legal,
)

__all__ = [
    # Models
    "RiskLevel",
    "WorkOrder",
    "WorkOrderStatus",
    # Persistence
    "WorkOrderRepository",
    # Lifecycle
    "NORMAL_TRANSITIONS",
    "REMEDIABLE_STATES",
    "REMEDIATION_TARGETS",
    "Remediation",
    "WorkOrderStateMachine",
    "is_legal",
]
