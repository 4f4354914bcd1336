"""Retry helpers shared by the background workers."""

from src.queues.backoff import ExponentialBackoff

__all__ = ["ExponentialBackoff"]
