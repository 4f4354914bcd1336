"""Community governance of the feed's ranking weights and content rules.

Components:
- EpochManager: Epoch lifecycle (running -> voting -> results -> running)
- VoteService: Ballot validation and storage
- VoteAggregator: Trimmed-mean weights and threshold keyword consensus
- ContentRulesCache / check_content_rules: Keyword filtering of posts
- EpochScheduler: Scheduled votes, auto-close and reminders
- OutboxWorker: Announcement delivery from the transactional outbox
"""

from src.governance.aggregation import (
    VoteAggregator,
    compute_consensus_rules,
    compute_consensus_weights,
    trimmed_mean,
)
from src.governance.config import GovernanceConfig, OutboxConfig
from src.governance.content_filter import (
    ContentRulesCache,
    FilterResult,
    check_content_rules,
    filter_posts,
)
from src.governance.epoch_manager import EpochManager, TransitionResult
from src.governance.errors import (
    ConflictError,
    GovernanceError,
    NoActiveEpochError,
    NotFoundError,
    ValidationError,
    WeightNormalizationError,
)
from src.governance.outbox import (
    AnnouncementPublisher,
    LoggingPublisher,
    OutboxRepository,
    OutboxWorker,
)
from src.governance.scheduler import EpochScheduler
from src.governance.schemas import ContentRules, Epoch, ScheduledVote, Vote
from src.governance.votes import NotSubscribedError, VoteService
from src.governance.weights import (
    VOTABLE_WEIGHT_PARAMS,
    Weights,
    normalize_keywords,
    normalize_weights,
)

__all__ = [
    "AnnouncementPublisher",
    "ConflictError",
    "ContentRules",
    "ContentRulesCache",
    "Epoch",
    "EpochManager",
    "EpochScheduler",
    "FilterResult",
    "GovernanceConfig",
    "GovernanceError",
    "LoggingPublisher",
    "NoActiveEpochError",
    "NotFoundError",
    "NotSubscribedError",
    "OutboxConfig",
    "OutboxRepository",
    "OutboxWorker",
    "ScheduledVote",
    "TransitionResult",
    "VOTABLE_WEIGHT_PARAMS",
    "ValidationError",
    "Vote",
    "VoteAggregator",
    "VoteService",
    "WeightNormalizationError",
    "Weights",
    "check_content_rules",
    "compute_consensus_rules",
    "compute_consensus_weights",
    "filter_posts",
    "normalize_keywords",
    "normalize_weights",
    "trimmed_mean",
]
