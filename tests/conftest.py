"""Shared fixtures: a throwaway data directory per test."""

from __future__ import annotations

import uuid
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from overseer.config import Settings
from overseer.storage import Database
from overseer.workorders import WorkOrder, WorkOrderRepository, WorkOrderStateMachine


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(data_dir=tmp_path, work_order_fetch_delay_seconds=0.0)


@pytest.fixture
def db(settings: Settings) -> Database:
    database = Database(settings.data_dir)
    database.ensure_tables()
    return database


@pytest.fixture
def repository(db: Database) -> WorkOrderRepository:
    return WorkOrderRepository(db)


@pytest.fixture
def state_machine(repository: WorkOrderRepository) -> WorkOrderStateMachine:
    return WorkOrderStateMachine(repository)


@pytest.fixture
def make_work_order(repository: WorkOrderRepository) -> Callable[..., WorkOrder]:
    """Store a work order; keyword arguments override the defaults."""

    def _make(**overrides: Any) -> WorkOrder:
        fields: dict[str, Any] = {
            "id": f"wo-{uuid.uuid4().hex[:8]}",
            "title": "Add pagination to the orders endpoint",
            "description": "Return 50 orders per page with a next cursor",
        }
        fields.update(overrides)
        return repository.create(WorkOrder(**fields))

    return _make
