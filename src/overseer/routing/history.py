"""Persisted routing decisions (append-only)."""

from __future__ import annotations

import json
from datetime import datetime

from ..storage import Database, isoformat
from .router import ComplexityFactors, RoutingDecision, Tier, WeightVector


class RoutingHistory:
    def __init__(self, db: Database) -> None:
        self.db = db

    def record(self, decision: RoutingDecision) -> int:
        return self.db.execute_insert(
            """INSERT INTO routing_decisions
               (work_order_id, tier, model, score, hard_stop, reason, payload, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                decision.work_order_id,
                str(decision.tier),
                decision.model,
                decision.score,
                int(decision.hard_stop),
                decision.reason,
                json.dumps(decision.to_dict()),
                isoformat(decision.created_at),
            ),
        )

    def latest(self, work_order_id: str) -> RoutingDecision | None:
        rows = self.db.execute(
            "SELECT payload FROM routing_decisions WHERE work_order_id = ? ORDER BY id DESC LIMIT 1",
            (work_order_id,),
        )
        if not rows:
            return None
        data = json.loads(rows[0]["payload"])
        return RoutingDecision(
            work_order_id=data["work_order_id"],
            tier=Tier(data["tier"]),
            model=data["model"],
            score=data["score"],
            factors=ComplexityFactors(**data["factors"]),
            weights=WeightVector.from_dict(data["weights"]),
            reason=data["reason"],
            hard_stop=data["hard_stop"],
            matched_keywords=tuple(data["matched_keywords"]),
            fallback_tier=Tier(data["fallback_tier"]) if data["fallback_tier"] else None,
            can_proceed=data["can_proceed"],
            budget_level=data["budget_level"],
            created_at=datetime.fromisoformat(data["created_at"]),
        )
