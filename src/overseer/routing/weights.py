"""Out-of-band router weight updates.

A :class:`WeightProposer` turns a batch of learning samples into a proposed
weight vector. :class:`WeightUpdater` checks the proposal against safety
limits, swaps it into the router and records lineage so it can be rolled back.
Requires 50+ samples and a week between updates.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Protocol

from ..errors import WeightUpdateRejected
from ..storage import Database, isoformat, utcnow
from .router import ComplexityRouter, WeightVector

if TYPE_CHECKING:
    from ..learning.samples import LearningSample

logger = logging.getLogger(__name__)

MIN_SAMPLES = 50
MAX_WEIGHT_DELTA = 0.15
MAX_TOTAL_DELTA = 0.30
COOLDOWN = timedelta(hours=168)

# context_base is a token count, not a weight; proposals may not move it
_TUNABLE = (
    "criteria_weight",
    "criteria_cap",
    "files_weight",
    "files_cap",
    "context_weight",
    "context_cap",
)


@dataclass
class WeightProposal:
    """Proposed weight vector with the evidence behind it."""

    weights: WeightVector
    magnitude: float
    sample_count: int
    rationale: str = ""

    def __post_init__(self) -> None:
        if self.magnitude < 0.0:
            raise ValueError(f"magnitude must be >= 0.0, got {self.magnitude}")


class WeightProposer(Protocol):
    """Consumes learning samples and proposes a new weight vector."""

    def propose(
        self, samples: Sequence[LearningSample], current: WeightVector
    ) -> WeightProposal | None: ...


def weight_deltas(current: WeightVector, proposed: WeightVector) -> dict[str, float]:
    return {name: abs(getattr(proposed, name) - getattr(current, name)) for name in _TUNABLE}


class WeightUpdater:
    """Validate, apply and roll back router weight vectors."""

    def __init__(self, db: Database, router: ComplexityRouter) -> None:
        self.db = db
        self.router = router

    def restore(self) -> WeightVector | None:
        """Load the latest recorded vector into the router, if any."""
        rows = self.db.execute("SELECT weights FROM weight_versions ORDER BY id DESC LIMIT 1")
        if not rows:
            return None
        weights = WeightVector.from_dict(json.loads(rows[0]["weights"]))
        self.router.set_weights(weights)
        return weights

    def propose(
        self, proposer: WeightProposer, samples: Sequence[LearningSample]
    ) -> WeightProposal | None:
        """Ask the proposer for a new vector; None below the sample minimum."""
        if len(samples) < MIN_SAMPLES:
            logger.info("Weight proposal skipped: %d samples < %d", len(samples), MIN_SAMPLES)
            return None
        return proposer.propose(samples, self.router.weights)

    def validate(self, proposal: WeightProposal, now: datetime | None = None) -> list[str]:
        """Return the reasons a proposal violates the safety limits (empty if none)."""
        now = now or utcnow()
        current = self.router.weights
        reasons: list[str] = []

        if proposal.sample_count < MIN_SAMPLES:
            reasons.append(f"only {proposal.sample_count} samples (< {MIN_SAMPLES})")
        if proposal.weights.context_base != current.context_base:
            reasons.append("context_base may not change")

        deltas = weight_deltas(current, proposal.weights)
        for name, delta in deltas.items():
            if delta > MAX_WEIGHT_DELTA:
                reasons.append(f"{name} moves {delta:.3f} (> {MAX_WEIGHT_DELTA})")
        total = sum(deltas.values())
        if total > MAX_TOTAL_DELTA:
            reasons.append(f"total change {total:.3f} (> {MAX_TOTAL_DELTA})")

        last = self._last_applied_at()
        if last is not None and now - last < COOLDOWN:
            reasons.append(f"last update at {last.isoformat()} is inside the cooldown")
        return reasons

    def apply(self, proposal: WeightProposal, now: datetime | None = None) -> str:
        """Apply a proposal and return the new version string.

        Raises:
            WeightUpdateRejected: if any safety limit is violated
        """
        now = now or utcnow()
        reasons = self.validate(proposal, now)
        if reasons:
            raise WeightUpdateRejected(reasons)

        version = self._next_version()
        if version == "1.0.1":
            # first update: record the vector it replaces so rollback has a target
            self._record("1.0.0", self.router.weights, 0.0, 0, "initial weights", now)
        total = sum(weight_deltas(self.router.weights, proposal.weights).values())
        self._record(version, proposal.weights, total, proposal.sample_count, proposal.rationale, now)
        self.router.set_weights(proposal.weights)
        logger.info("Applied weight version %s (change %.3f)", version, total)
        return version

    def rollback(self) -> WeightVector | None:
        """Revert the router to the previous recorded vector."""
        rows = self.db.execute("SELECT version, weights FROM weight_versions ORDER BY id DESC LIMIT 2")
        if len(rows) < 2:
            return None

        previous = WeightVector.from_dict(json.loads(rows[1]["weights"]))
        self._record(
            self._next_version(), previous, 0.0, 0, f"rollback to {rows[1]['version']}", utcnow()
        )
        self.router.set_weights(previous)
        return previous

    def _record(
        self,
        version: str,
        weights: WeightVector,
        magnitude: float,
        evidence_count: int,
        rationale: str,
        applied_at: datetime,
    ) -> None:
        self.db.execute_insert(
            """INSERT INTO weight_versions
               (version, weights, magnitude, evidence_count, rationale, applied_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (
                version,
                json.dumps(weights.as_dict()),
                magnitude,
                evidence_count,
                rationale,
                isoformat(applied_at),
            ),
        )

    def _last_applied_at(self) -> datetime | None:
        rows = self.db.execute(
            "SELECT applied_at FROM weight_versions WHERE evidence_count > 0 ORDER BY id DESC LIMIT 1"
        )
        return datetime.fromisoformat(rows[0]["applied_at"]) if rows else None

    def _next_version(self) -> str:
        rows = self.db.execute("SELECT version FROM weight_versions ORDER BY id DESC LIMIT 1")
        if not rows:
            return "1.0.1"

        # 1.0.4 -> 1.0.5
        parts = rows[0]["version"].split(".")
        parts[-1] = str(int(parts[-1]) + 1)
        return ".".join(parts)
