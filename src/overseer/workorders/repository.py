"""SQLite persistence for work orders."""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime
from typing import Any

from ..errors import ConcurrentUpdateError, WorkOrderNotFoundError
from ..storage import Database, isoformat
from .models import WorkOrder, WorkOrderStatus

logger = logging.getLogger(__name__)

_JSON_FIELDS = ("acceptance_criteria", "files_in_scope", "metadata")
_WRITABLE_FIELDS = frozenset(
    {
        "title",
        "description",
        "status",
        "risk_level",
        "complexity_score",
        "acceptance_criteria",
        "files_in_scope",
        "context_budget_estimate",
        "estimated_cost",
        "actual_cost",
        "metadata",
        "github_pr_number",
    }
)


def _row_to_work_order(row: sqlite3.Row) -> WorkOrder:
    return WorkOrder(
        id=row["id"],
        title=row["title"],
        description=row["description"],
        status=WorkOrderStatus(row["status"]),
        risk_level=row["risk_level"],
        complexity_score=row["complexity_score"],
        acceptance_criteria=json.loads(row["acceptance_criteria"]),
        files_in_scope=json.loads(row["files_in_scope"]),
        context_budget_estimate=row["context_budget_estimate"],
        estimated_cost=row["estimated_cost"],
        actual_cost=row["actual_cost"],
        metadata=json.loads(row["metadata"]),
        github_pr_number=row["github_pr_number"],
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
        version=row["version"],
    )


def _encode(name: str, value: Any) -> Any:
    if name in _JSON_FIELDS:
        return json.dumps(value)
    if name in ("status", "risk_level"):
        return str(value)
    return value


class WorkOrderRepository:
    """CRUD access to the ``work_orders`` table.

    Status changes belong to :class:`WorkOrderStateMachine`; :meth:`update`
    refuses them so no other caller can write a status directly.
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    def create(self, work_order: WorkOrder) -> WorkOrder:
        self.db.execute_insert(
            """INSERT INTO work_orders
               (id, title, description, status, risk_level, complexity_score,
                acceptance_criteria, files_in_scope, context_budget_estimate,
                estimated_cost, actual_cost, metadata, github_pr_number,
                created_at, updated_at, version)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                work_order.id,
                work_order.title,
                work_order.description,
                str(work_order.status),
                str(work_order.risk_level),
                work_order.complexity_score,
                json.dumps(work_order.acceptance_criteria),
                json.dumps(work_order.files_in_scope),
                work_order.context_budget_estimate,
                work_order.estimated_cost,
                work_order.actual_cost,
                json.dumps(work_order.metadata),
                work_order.github_pr_number,
                isoformat(work_order.created_at),
                isoformat(work_order.updated_at),
                work_order.version,
            ),
        )
        logger.debug("Created work order %s", work_order.id)
        return work_order

    def get(self, work_order_id: str) -> WorkOrder | None:
        rows = self.db.execute("SELECT * FROM work_orders WHERE id = ?", (work_order_id,))
        return _row_to_work_order(rows[0]) if rows else None

    def find_by_pr(self, pr_number: int) -> WorkOrder | None:
        rows = self.db.execute(
            "SELECT * FROM work_orders WHERE github_pr_number = ? ORDER BY created_at DESC LIMIT 1",
            (pr_number,),
        )
        return _row_to_work_order(rows[0]) if rows else None

    def list(self, status: WorkOrderStatus | str | None = None, limit: int = 100) -> list[WorkOrder]:
        if status is None:
            rows = self.db.execute(
                "SELECT * FROM work_orders ORDER BY created_at DESC LIMIT ?", (limit,)
            )
        else:
            rows = self.db.execute(
                "SELECT * FROM work_orders WHERE status = ? ORDER BY created_at DESC LIMIT ?",
                (str(status), limit),
            )
        return [_row_to_work_order(row) for row in rows]

    def compare_and_set(
        self, work_order_id: str, expected_version: int, changes: dict[str, Any]
    ) -> bool:
        """Write ``changes`` only if the stored version still equals ``expected_version``.

        Returns False when another writer got there first. The version is bumped
        on every successful write.
        """
        unknown = set(changes) - _WRITABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown work order fields: {sorted(unknown)}")

        assignments = [f"{name} = ?" for name in changes]
        params: list[Any] = [_encode(name, value) for name, value in changes.items()]
        assignments += ["updated_at = ?", "version = version + 1"]
        params += [isoformat(), work_order_id, expected_version]

        with self.db.connect() as conn:
            cursor = conn.execute(
                f"UPDATE work_orders SET {', '.join(assignments)} WHERE id = ? AND version = ?",
                tuple(params),
            )
            return cursor.rowcount == 1

    def update(self, work_order_id: str, max_attempts: int = 5, **changes: Any) -> WorkOrder:
        """Update non-status fields, retrying on version conflicts."""
        if "status" in changes:
            raise ValueError("status changes must go through WorkOrderStateMachine")

        for _ in range(max_attempts):
            current = self.get(work_order_id)
            if current is None:
                raise WorkOrderNotFoundError(work_order_id)
            if self.compare_and_set(work_order_id, current.version, changes):
                updated = self.get(work_order_id)
                assert updated is not None
                return updated

        raise ConcurrentUpdateError(work_order_id, current.version)
