"""Transparency reads: post explanations, feed stats, counterfactuals, audit log."""

from src.transparency.service import TransparencyService, rank_by, redact_details

__all__ = [
    "TransparencyService",
    "rank_by",
    "redact_details",
]
