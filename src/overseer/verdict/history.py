"""Test History Ledger - per-test pass/fail outcomes for flakiness tracking.

Each test keeps at most ``window`` rows; older outcomes are trimmed on write.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

import aiosqlite

from ..storage import isoformat, utcnow
from .flakiness import FlakinessClassifier, TestStats


@dataclass
class TestHistoryRecord:
    """One observed outcome of one test."""

    __test__ = False

    test_name: str
    passed: bool
    run_id: str
    work_order_id: str | None = None
    recorded_at: datetime = field(default_factory=utcnow)


class TestHistoryLedger:
    """Persistent rolling window of test outcomes."""

    __test__ = False

    def __init__(self, db_path: str | Path, window: int = 50) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.window = window
        self._db: aiosqlite.Connection | None = None

    async def __aenter__(self) -> TestHistoryLedger:
        await self._init_db()
        return self

    async def __aexit__(
        self,
        exc_type: type | None,
        exc_val: BaseException | None,
        exc_tb: object | None,
    ) -> None:
        await self.close()

    async def _init_db(self) -> None:
        self._db = await aiosqlite.connect(str(self.db_path))
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS test_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                test_name TEXT NOT NULL,
                passed INTEGER NOT NULL,
                run_id TEXT NOT NULL,
                work_order_id TEXT,
                recorded_at TEXT NOT NULL,
                CHECK (passed IN (0, 1))
            )
        """)
        await self._db.execute("""
            CREATE INDEX IF NOT EXISTS idx_test_history_name
            ON test_history(test_name, id DESC)
        """)
        await self._db.commit()

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    async def record(self, records: Iterable[TestHistoryRecord]) -> int:
        """Store outcomes and trim each touched test to the window."""
        assert self._db is not None
        touched: set[str] = set()
        count = 0
        for rec in records:
            await self._db.execute(
                "INSERT INTO test_history (test_name, passed, run_id, work_order_id, recorded_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (rec.test_name, int(rec.passed), rec.run_id, rec.work_order_id, isoformat(rec.recorded_at)),
            )
            touched.add(rec.test_name)
            count += 1

        for name in touched:
            await self._db.execute(
                """DELETE FROM test_history
                   WHERE test_name = ? AND id NOT IN (
                       SELECT id FROM test_history WHERE test_name = ?
                       ORDER BY id DESC LIMIT ?
                   )""",
                (name, name, self.window),
            )
        await self._db.commit()
        return count

    async def outcomes(self, test_name: str) -> tuple[list[bool], datetime | None]:
        """Return the windowed outcomes oldest-first and the last time the test ran."""
        assert self._db is not None
        cursor = await self._db.execute(
            "SELECT passed, recorded_at FROM test_history WHERE test_name = ? "
            "ORDER BY id DESC LIMIT ?",
            (test_name, self.window),
        )
        rows = await cursor.fetchall()
        if not rows:
            return [], None
        last_seen = datetime.fromisoformat(rows[0][1])
        return [bool(row[0]) for row in reversed(rows)], last_seen

    async def get_stats(self, test_name: str, classifier: FlakinessClassifier) -> TestStats:
        outcomes, last_seen = await self.outcomes(test_name)
        return classifier.stats(test_name, outcomes, last_seen)

    async def suppressed(
        self, test_names: Iterable[str], classifier: FlakinessClassifier
    ) -> dict[str, TestStats]:
        """Stats for the given tests that should currently be ignored."""
        result: dict[str, TestStats] = {}
        for name in dict.fromkeys(test_names):
            stats = await self.get_stats(name, classifier)
            if stats.should_ignore:
                result[name] = stats
        return result
