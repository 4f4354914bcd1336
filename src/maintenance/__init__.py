"""Corpus maintenance: retention cleanup run hourly by the worker."""

from src.maintenance.cleanup import CLEANUP_TABLES, CleanupJob, CleanupResult
from src.maintenance.config import MaintenanceConfig

__all__ = [
    "CLEANUP_TABLES",
    "CleanupJob",
    "CleanupResult",
    "MaintenanceConfig",
]
