"""Work order lifecycle: the single entry point for status changes.

Normal flow::

    pending -> processing -> {completed, failed, escalated, blocked, needs_review}
    failed -> escalated

Remediation flow (only when an escalation decision is being executed)::

    {failed, escalated, blocked, needs_review} -> pending       (retry)
                                               -> needs_review  (pivot)
                                               -> blocked       (amend)
                                               -> failed        (abort)

``completed`` is terminal. Writes are serialized per work order id with an
in-process lock and guarded in the store by an optimistic version check; on a
version conflict the order is re-read and the metadata patch re-applied, so
concurrent merges from different components never drop each other's keys.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from enum import StrEnum
from typing import Any

from ..errors import ConcurrentUpdateError, InvalidTransitionError, WorkOrderNotFoundError
from ..storage import isoformat
from .models import WorkOrder, WorkOrderStatus
from .repository import WorkOrderRepository

logger = logging.getLogger(__name__)

S = WorkOrderStatus

NORMAL_TRANSITIONS: dict[WorkOrderStatus, frozenset[WorkOrderStatus]] = {
    S.PENDING: frozenset({S.PROCESSING}),
    S.PROCESSING: frozenset({S.COMPLETED, S.FAILED, S.ESCALATED, S.BLOCKED, S.NEEDS_REVIEW}),
    S.FAILED: frozenset({S.ESCALATED}),
    S.ESCALATED: frozenset(),
    S.BLOCKED: frozenset(),
    S.NEEDS_REVIEW: frozenset(),
    S.COMPLETED: frozenset(),
}

REMEDIABLE_STATES = frozenset({S.FAILED, S.ESCALATED, S.BLOCKED, S.NEEDS_REVIEW})

STATUS_HISTORY_LIMIT = 20


class Remediation(StrEnum):
    RETRY = "retry"
    PIVOT = "pivot"
    AMEND = "amend"
    ABORT = "abort"


REMEDIATION_TARGETS: dict[Remediation, WorkOrderStatus] = {
    Remediation.RETRY: S.PENDING,
    Remediation.PIVOT: S.NEEDS_REVIEW,
    Remediation.AMEND: S.BLOCKED,
    Remediation.ABORT: S.FAILED,
}


def is_legal(
    current: WorkOrderStatus, target: WorkOrderStatus, remediation: Remediation | None = None
) -> bool:
    """Return True if ``current -> target`` is allowed.

    Without a remediation only the normal flow applies and self-transitions are
    rejected. With one, ``target`` must be the remediation's destination and the
    order must be in a remediable state (re-applying the current state is allowed
    so a repeated decision does not fail).
    """
    if remediation is None:
        return target in NORMAL_TRANSITIONS[current]
    return current in REMEDIABLE_STATES and REMEDIATION_TARGETS[remediation] == target


class WorkOrderStateMachine:
    """Validates and persists work order status changes."""

    def __init__(self, repository: WorkOrderRepository, max_attempts: int = 5) -> None:
        self.repository = repository
        self.max_attempts = max_attempts
        self._locks: defaultdict[str, threading.Lock] = defaultdict(threading.Lock)
        self._locks_guard = threading.Lock()

    def _lock_for(self, work_order_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks[work_order_id]

    def _load(self, work_order_id: str) -> WorkOrder:
        work_order = self.repository.get(work_order_id)
        if work_order is None:
            raise WorkOrderNotFoundError(work_order_id)
        return work_order

    def transition(
        self,
        work_order_id: str,
        target: WorkOrderStatus | str,
        *,
        remediation: Remediation | str | None = None,
        metadata: dict[str, Any] | None = None,
        fields: dict[str, Any] | None = None,
        reason: str = "",
    ) -> WorkOrder:
        """Move a work order to ``target``.

        Args:
            work_order_id: Work order to change
            target: Requested status
            remediation: Escalation strategy authorizing a remediation transition
            metadata: Keys merged into the stored metadata
            fields: Other columns written in the same update (e.g. actual_cost)
            reason: Recorded in the status history

        Returns:
            The stored work order after the change

        Raises:
            InvalidTransitionError: if the transition is not legal from the current state
            ConcurrentUpdateError: if the version check keeps failing
        """
        target = WorkOrderStatus(target)
        remedy = Remediation(remediation) if remediation is not None else None
        fields = dict(fields or {})
        if "status" in fields or "metadata" in fields:
            raise ValueError("status and metadata are set through target/metadata")

        with self._lock_for(work_order_id):
            current = self._load(work_order_id)
            for _ in range(self.max_attempts):
                if not is_legal(current.status, target, remedy):
                    detail = f"remediation={remedy}" if remedy else "no remediation authorized"
                    raise InvalidTransitionError(
                        work_order_id, str(current.status), str(target), detail
                    )

                merged = {**current.metadata, **(metadata or {})}
                history = list(merged.get("status_history", []))
                history.append(
                    {
                        "from": str(current.status),
                        "to": str(target),
                        "at": isoformat(),
                        "reason": reason,
                        "remediation": str(remedy) if remedy else None,
                    }
                )
                merged["status_history"] = history[-STATUS_HISTORY_LIMIT:]

                changes = {"status": target, "metadata": merged, **fields}
                if self.repository.compare_and_set(work_order_id, current.version, changes):
                    logger.info(
                        "Work order %s: %s -> %s%s",
                        work_order_id,
                        current.status,
                        target,
                        f" ({reason})" if reason else "",
                    )
                    return self._load(work_order_id)

                logger.debug("Version conflict on %s, re-reading", work_order_id)
                current = self._load(work_order_id)

        raise ConcurrentUpdateError(work_order_id, current.version)

    def merge_metadata(self, work_order_id: str, updates: dict[str, Any]) -> WorkOrder:
        """Merge keys into metadata without touching status."""
        with self._lock_for(work_order_id):
            current = self._load(work_order_id)
            for _ in range(self.max_attempts):
                merged = {**current.metadata, **updates}
                if self.repository.compare_and_set(
                    work_order_id, current.version, {"metadata": merged}
                ):
                    return self._load(work_order_id)
                current = self._load(work_order_id)

        raise ConcurrentUpdateError(work_order_id, current.version)
