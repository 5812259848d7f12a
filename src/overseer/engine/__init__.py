"""Work order execution engine."""

from .scheduler import (
    ExecutionProvider,
    ExecutionResult,
    ScheduleOutcome,
    WorkOrderScheduler,
)

__all__ = [
    "ExecutionProvider",
    "ExecutionResult",
    "ScheduleOutcome",
    "WorkOrderScheduler",
]
