"""Daily spending guard shared by every paid call.

The ledger total for the current UTC day may never pass the emergency-kill
ceiling. ``check_and_reserve`` reads the total and inserts the reservation
inside one ``BEGIN IMMEDIATE`` transaction, so concurrent callers are admitted
one at a time until the next one would not fit.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Any

from ..config import Settings
from ..errors import ReservationNotFoundError
from ..storage import Database, isoformat, utcnow

logger = logging.getLogger(__name__)

BUDGET_TRIGGER = "budget_overrun"


class BudgetLevel(StrEnum):
    NORMAL = "normal"
    WARNING = "warning"
    HARD_CAP_EXCEEDED = "hard_cap_exceeded"
    EMERGENCY_KILL = "emergency_kill"


@dataclass
class Reservation:
    """Result of a reservation attempt. A decline is a normal result."""

    can_proceed: bool
    new_total: float
    level: BudgetLevel
    reservation_id: str | None = None
    remaining: float = 0.0
    reason: str = ""
    escalation_id: str | None = None


@dataclass
class BudgetStatus:
    """Snapshot of today's spend against the thresholds."""

    level: BudgetLevel
    daily_total: float
    soft_cap: float
    hard_cap: float
    emergency_kill: float

    @property
    def remaining(self) -> float:
        return max(0.0, self.emergency_kill - self.daily_total)

    @property
    def hard_cap_utilization(self) -> float:
        return self.daily_total / self.hard_cap if self.hard_cap > 0 else 1.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "level": str(self.level),
            "daily_total": round(self.daily_total, 4),
            "soft_cap": self.soft_cap,
            "hard_cap": self.hard_cap,
            "emergency_kill": self.emergency_kill,
            "remaining": round(self.remaining, 4),
            "hard_cap_utilization": round(self.hard_cap_utilization, 4),
        }


def check_budget_escalation(
    daily_spend: float, settings: Settings | None = None
) -> tuple[bool, str]:
    """Return (should_escalate, reason) for today's spend."""
    s = settings or Settings()
    if daily_spend >= s.budget_emergency_kill:
        return True, (
            f"Emergency kill threshold reached: ${daily_spend:.2f} >= ${s.budget_emergency_kill:.2f}"
        )
    threshold = s.budget_hard_cap * s.budget_escalation_hard_cap_ratio
    if daily_spend >= threshold:
        return True, (
            f"Approaching hard cap ({s.budget_escalation_hard_cap_ratio:.0%}): "
            f"${daily_spend:.2f} of ${s.budget_hard_cap:.2f}"
        )
    return False, ""


class BudgetGuard:
    """Atomic check-and-reserve against the daily ceiling."""

    def __init__(
        self,
        db: Database,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.settings = settings or Settings()
        self.clock = clock
        self._lock = threading.Lock()

    @property
    def ceiling(self) -> float:
        return self.settings.budget_emergency_kill

    def level_for(self, total: float) -> BudgetLevel:
        s = self.settings
        if total >= s.budget_emergency_kill:
            return BudgetLevel.EMERGENCY_KILL
        if total >= s.budget_hard_cap:
            return BudgetLevel.HARD_CAP_EXCEEDED
        if total >= min(s.budget_soft_cap, s.budget_warn_ratio * s.budget_emergency_kill):
            return BudgetLevel.WARNING
        return BudgetLevel.NORMAL

    def _day_start(self) -> str:
        now = self.clock()
        return isoformat(now.replace(hour=0, minute=0, second=0, microsecond=0))

    def _total(self, conn: sqlite3.Connection) -> float:
        row = conn.execute(
            "SELECT COALESCE(SUM(amount), 0.0) AS total FROM budget_ledger WHERE created_at >= ?",
            (self._day_start(),),
        ).fetchone()
        return float(row["total"])

    def check_and_reserve(
        self, amount: float, owner: str, metadata: dict[str, Any] | None = None
    ) -> Reservation:
        """Reserve ``amount`` for ``owner`` if it fits under today's ceiling.

        Args:
            amount: Estimated cost in USD
            owner: Service or work order the spend is attributed to
            metadata: Stored with the ledger entry

        Returns:
            Reservation; ``can_proceed`` is False when the amount does not fit
        """
        if amount < 0:
            raise ValueError(f"amount must be >= 0.0, got {amount}")

        with self._lock, self.db.transaction() as conn:
            total = self._total(conn)
            if total + amount > self.ceiling:
                level = self.level_for(total)
                should_escalate, why = check_budget_escalation(total, self.settings)
                escalation_id = (
                    self._ensure_budget_escalation(conn, total, amount, owner, why)
                    if should_escalate
                    else None
                )
                logger.warning(
                    "Budget reservation declined for %s: $%.2f + $%.2f > $%.2f",
                    owner,
                    total,
                    amount,
                    self.ceiling,
                )
                return Reservation(
                    can_proceed=False,
                    new_total=total,
                    level=level,
                    remaining=max(0.0, self.ceiling - total),
                    reason=f"Reservation of ${amount:.2f} would exceed daily ceiling ${self.ceiling:.2f}",
                    escalation_id=escalation_id,
                )

            reservation_id = uuid.uuid4().hex
            conn.execute(
                """INSERT INTO budget_ledger (id, amount, service, kind, metadata, created_at)
                   VALUES (?, ?, ?, 'reservation', ?, ?)""",
                (reservation_id, amount, owner, json.dumps(metadata or {}), isoformat(self.clock())),
            )
            new_total = total + amount
            level = self.level_for(new_total)
            escalation_id = None
            if level is BudgetLevel.EMERGENCY_KILL:
                escalation_id = self._ensure_budget_escalation(
                    conn, new_total, 0.0, owner, check_budget_escalation(new_total, self.settings)[1]
                )
            elif level is not BudgetLevel.NORMAL:
                logger.warning("Daily budget at %s: $%.2f", level, new_total)

        return Reservation(
            can_proceed=True,
            new_total=new_total,
            level=level,
            reservation_id=reservation_id,
            remaining=max(0.0, self.ceiling - new_total),
            escalation_id=escalation_id,
        )

    def commit_actual(self, reservation_id: str, actual: float) -> float:
        """Replace a reservation's estimate with the actual cost; returns today's total."""
        if actual < 0:
            raise ValueError(f"actual must be >= 0.0, got {actual}")

        with self._lock, self.db.transaction() as conn:
            cursor = conn.execute(
                "UPDATE budget_ledger SET amount = ?, kind = 'actual' "
                "WHERE id = ? AND kind = 'reservation'",
                (actual, reservation_id),
            )
            if cursor.rowcount != 1:
                raise ReservationNotFoundError(reservation_id)
            total = self._total(conn)
            if self.level_for(total) is BudgetLevel.EMERGENCY_KILL:
                self._ensure_budget_escalation(
                    conn, total, 0.0, reservation_id, check_budget_escalation(total, self.settings)[1]
                )
            return total

    def cancel(self, reservation_id: str) -> bool:
        """Release an unused reservation."""
        with self._lock, self.db.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM budget_ledger WHERE id = ? AND kind = 'reservation'",
                (reservation_id,),
            )
            return cursor.rowcount == 1

    def daily_total(self) -> float:
        with self.db.connect() as conn:
            return self._total(conn)

    def status(self) -> BudgetStatus:
        total = self.daily_total()
        s = self.settings
        return BudgetStatus(
            level=self.level_for(total),
            daily_total=total,
            soft_cap=s.budget_soft_cap,
            hard_cap=s.budget_hard_cap,
            emergency_kill=s.budget_emergency_kill,
        )

    def _ensure_budget_escalation(
        self,
        conn: sqlite3.Connection,
        total: float,
        attempted: float,
        owner: str,
        reason: str,
    ) -> str:
        """Write (once per day) the system-scoped escalation inside the caller's transaction."""
        row = conn.execute(
            "SELECT id FROM escalations WHERE work_order_id IS NULL AND trigger_type = ? "
            "AND status = 'open' AND created_at >= ? ORDER BY created_at LIMIT 1",
            (BUDGET_TRIGGER, self._day_start()),
        ).fetchone()
        if row is not None:
            return str(row["id"])

        level = self.level_for(total)
        escalation_id = uuid.uuid4().hex
        context = {
            "scope": "system",
            "level": str(level),
            "threshold_exceeded": reason,
            "daily_total": round(total, 4),
            "attempted_amount": attempted,
            "owner": owner,
            "thresholds": {
                "soft_cap": self.settings.budget_soft_cap,
                "hard_cap": self.settings.budget_hard_cap,
                "emergency_kill": self.settings.budget_emergency_kill,
            },
            "options": [],
            "recommendation": None,
        }
        conn.execute(
            """INSERT INTO escalations (id, work_order_id, trigger_type, status, context, created_at)
               VALUES (?, NULL, ?, 'open', ?, ?)""",
            (escalation_id, BUDGET_TRIGGER, json.dumps(context), isoformat(self.clock())),
        )
        if level is BudgetLevel.EMERGENCY_KILL:
            logger.critical("Emergency budget kill at $%.2f; escalation %s opened", total, escalation_id)
        else:
            logger.warning("Budget escalation %s opened: %s", escalation_id, reason)
        return escalation_id
