"""SQLite database with WAL mode and immediate-lock transactions."""

from __future__ import annotations

import sqlite3
from collections.abc import Generator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

BUSY_TIMEOUT_SECONDS = 30.0


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(moment: datetime | None = None) -> str:
    """Timestamp format used by every table (lexicographically ordered)."""
    return (moment or utcnow()).astimezone(timezone.utc).isoformat(timespec="microseconds")


class Database:
    """SQLite storage layer with WAL mode for overseer."""

    def __init__(self, data_dir: Path | None = None) -> None:
        self.data_dir = data_dir or Path.home() / ".overseer"
        self.db_path = self.data_dir / "data" / "overseer.db"

    def _ensure_dirs(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        (self.data_dir / "data").mkdir(exist_ok=True)

    def _open(self, **kwargs: Any) -> sqlite3.Connection:
        self._ensure_dirs()
        conn = sqlite3.connect(str(self.db_path), timeout=BUSY_TIMEOUT_SECONDS, **kwargs)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a database connection with WAL mode."""
        conn = self._open()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """Open a write transaction that holds the database write lock from the start.

        ``BEGIN IMMEDIATE`` takes the reserved lock before the first read, so a
        read-check-write sequence inside the block cannot interleave with another
        writer in any thread or process.
        """
        conn = self._open(isolation_level=None)
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except Exception:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    def ensure_tables(self) -> None:
        """Create all tables if they don't exist."""
        with self.connect() as conn:
            conn.executescript(_SCHEMA)

    def execute(self, sql: str, params: tuple[Any, ...] = ()) -> list[sqlite3.Row]:
        """Execute a query and return results."""
        with self.connect() as conn:
            cursor = conn.execute(sql, params)
            return cursor.fetchall()

    def execute_insert(self, sql: str, params: tuple[Any, ...] = ()) -> int:
        """Execute an insert and return lastrowid."""
        with self.connect() as conn:
            cursor = conn.execute(sql, params)
            return cursor.lastrowid or 0


_SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS work_orders (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL DEFAULT 'pending',
    risk_level TEXT NOT NULL DEFAULT 'low',
    complexity_score REAL NOT NULL DEFAULT 0.0,
    acceptance_criteria TEXT NOT NULL DEFAULT '[]',
    files_in_scope TEXT NOT NULL DEFAULT '[]',
    context_budget_estimate INTEGER,
    estimated_cost REAL NOT NULL DEFAULT 0.0,
    actual_cost REAL,
    metadata TEXT NOT NULL DEFAULT '{}',
    github_pr_number INTEGER,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    version INTEGER NOT NULL DEFAULT 1
);

CREATE INDEX IF NOT EXISTS idx_work_orders_pr ON work_orders(github_pr_number);

CREATE TABLE IF NOT EXISTS routing_decisions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    work_order_id TEXT NOT NULL,
    tier TEXT NOT NULL,
    model TEXT NOT NULL,
    score REAL NOT NULL,
    hard_stop INTEGER NOT NULL DEFAULT 0,
    reason TEXT NOT NULL,
    payload TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_routing_wo ON routing_decisions(work_order_id, id DESC);

CREATE TABLE IF NOT EXISTS budget_ledger (
    id TEXT PRIMARY KEY,
    amount REAL NOT NULL,
    service TEXT NOT NULL,
    kind TEXT NOT NULL DEFAULT 'reservation',
    metadata TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    CHECK (amount >= 0.0)
);

CREATE INDEX IF NOT EXISTS idx_budget_created ON budget_ledger(created_at);

CREATE TABLE IF NOT EXISTS escalations (
    id TEXT PRIMARY KEY,
    work_order_id TEXT,
    trigger_type TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'open',
    context TEXT NOT NULL DEFAULT '{}',
    chosen_option TEXT,
    resolution_outcome TEXT,
    resolution_notes TEXT,
    lessons_learned TEXT NOT NULL DEFAULT '[]',
    last_error TEXT,
    created_at TEXT NOT NULL,
    resolved_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_escalations_status ON escalations(status);

CREATE TABLE IF NOT EXISTS execution_outcomes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    work_order_id TEXT NOT NULL,
    success INTEGER NOT NULL,
    failure_classes TEXT NOT NULL DEFAULT '[]',
    execution_time_ms INTEGER NOT NULL DEFAULT 0,
    tier TEXT NOT NULL,
    model TEXT NOT NULL,
    cost REAL NOT NULL DEFAULT 0.0,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS ci_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    work_order_id TEXT NOT NULL,
    event_type TEXT NOT NULL,
    workflow_name TEXT,
    status TEXT,
    payload TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_ci_events_wo ON ci_events(work_order_id, id);

CREATE TABLE IF NOT EXISTS learning_samples (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    work_order_id TEXT NOT NULL,
    predicted_complexity REAL NOT NULL,
    selected_tier TEXT NOT NULL,
    selected_model TEXT NOT NULL,
    success_score REAL NOT NULL,
    overall_success INTEGER NOT NULL,
    was_correctly_routed INTEGER NOT NULL,
    routing_error_magnitude REAL NOT NULL,
    payload TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS critical_errors (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    component TEXT NOT NULL,
    operation TEXT NOT NULL,
    work_order_id TEXT,
    severity TEXT NOT NULL,
    failure_class TEXT NOT NULL,
    message TEXT NOT NULL,
    metadata TEXT NOT NULL DEFAULT '{}',
    escalation_id TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS weight_versions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    version TEXT NOT NULL,
    weights TEXT NOT NULL,
    magnitude REAL NOT NULL DEFAULT 0.0,
    evidence_count INTEGER NOT NULL DEFAULT 0,
    rationale TEXT NOT NULL DEFAULT '',
    applied_at TEXT NOT NULL
);

INSERT OR IGNORE INTO schema_version (version) VALUES (1);
"""
