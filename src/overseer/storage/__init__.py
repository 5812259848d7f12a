"""Persistence for overseer: a single SQLite file in WAL mode."""

from .database import Database, isoformat, utcnow

__all__ = ["Database", "isoformat", "utcnow"]
