"""Feed scoring: five-component weighted ranking under the current epoch.

Usage:
    from src.scoring import ScoringPipeline, ScoringScheduler

    pipeline = ScoringPipeline(repository, redis_client, epoch_repo, rules_cache)
    scheduler = ScoringScheduler(pipeline)
    await scheduler.start()
"""

from src.scoring.components import (
    BridgingScorer,
    SourceDiversityTracker,
    score_engagement,
    score_recency,
    score_relevance,
)
from src.scoring.config import ScoringConfig
from src.scoring.lock import ScoringLock
from src.scoring.pipeline import ScoringPipeline
from src.scoring.repository import ScoringRepository
from src.scoring.scheduler import ScoringScheduler
from src.scoring.schemas import ComponentScores, Post, PostScore, ScoringRunResult

__all__ = [
    "BridgingScorer",
    "ComponentScores",
    "Post",
    "PostScore",
    "ScoringConfig",
    "ScoringLock",
    "ScoringPipeline",
    "ScoringRepository",
    "ScoringRunResult",
    "ScoringScheduler",
    "SourceDiversityTracker",
    "score_engagement",
    "score_recency",
    "score_relevance",
]
