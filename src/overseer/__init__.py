"""Overseer: adaptive routing, budget guarding and escalation learning for work orders."""

__version__ = "0.1.0"
