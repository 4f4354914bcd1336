"""Background job runtime shared by the worker loops."""

from src.services.periodic import PeriodicJob

__all__ = ["PeriodicJob"]
