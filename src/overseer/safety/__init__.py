"""Budget safety: the shared daily spending guard."""

from .budget import BudgetGuard, BudgetLevel, BudgetStatus, Reservation

__all__ = ["BudgetGuard", "BudgetLevel", "BudgetStatus", "Reservation"]
