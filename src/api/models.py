"""
Request and response models for the community feed API.
"""

import datetime as dt
from typing import Any, Literal

from pydantic import BaseModel, Field

from src.governance.schemas import Epoch, ScheduledVote, Vote


class ComponentHealth(BaseModel):
    """Health of a single infrastructure component."""

    status: str = Field(..., description="healthy or unhealthy")
    latency_ms: float | None = Field(default=None, description="Check latency in milliseconds")
    details: dict[str, Any] = Field(default_factory=dict)


class HealthResponse(BaseModel):
    """Response model for health check."""

    status: str = Field(
        ...,
        description="Overall service status: healthy, degraded, or unhealthy",
    )
    components: dict[str, ComponentHealth] = Field(default_factory=dict)
    current_epoch_id: int | None = Field(default=None, description="Current governance epoch")
    feed_updated_at: str | None = Field(default=None, description="Last ranking publish time")
    version: str = Field(default="0.1.0")


class ErrorResponse(BaseModel):
    """Response model for errors."""

    detail: Any = Field(
        ...,
        description="Error message, or {error, message} for governance errors",
    )
    error_type: str = Field(
        default="error",
        description="Error type",
    )


# Feed generator models


class SkeletonItem(BaseModel):
    post: str


class FeedSkeletonResponse(BaseModel):
    """``app.bsky.feed.getFeedSkeleton`` output."""

    feed: list[SkeletonItem]
    cursor: str | None = None


class FeedDescriptor(BaseModel):
    uri: str


class DescribeFeedGeneratorResponse(BaseModel):
    """``app.bsky.feed.describeFeedGenerator`` output."""

    did: str
    feeds: list[FeedDescriptor]


# Governance models


class WeightsModel(BaseModel):
    """The five ranking weights."""

    recency: float
    engagement: float
    bridging: float
    source_diversity: float
    relevance: float


class ContentRulesModel(BaseModel):
    include_keywords: list[str] = Field(default_factory=list)
    exclude_keywords: list[str] = Field(default_factory=list)


class EpochItem(BaseModel):
    """A governance epoch."""

    id: int
    phase: str
    status: str
    weights: WeightsModel
    content_rules: ContentRulesModel
    vote_count: int
    voting_started_at: str | None = None
    voting_ends_at: str | None = None
    voting_closed_at: str | None = None
    auto_transition: bool = False
    proposed_weights: WeightsModel | None = None
    proposed_content_rules: ContentRulesModel | None = None
    results_approved_at: str | None = None
    results_approved_by: str | None = None
    description: str | None = None
    created_at: str


class EpochResponse(BaseModel):
    epoch: EpochItem
    latency_ms: float = Field(..., description="Processing latency in milliseconds")


class VoteRequest(BaseModel):
    """A ballot: weights, keywords, or both."""

    weights: dict[str, Any] | None = Field(
        default=None,
        description="All five weights, each 0-1, summing to 1.0",
    )
    include_keywords: list[str] | None = Field(default=None, max_length=20)
    exclude_keywords: list[str] | None = Field(default=None, max_length=20)


class VoteItem(BaseModel):
    voter_did: str
    epoch_id: int
    weights: WeightsModel | None = None
    include_keywords: list[str] = Field(default_factory=list)
    exclude_keywords: list[str] = Field(default_factory=list)
    voted_at: str


class VoteResponse(BaseModel):
    vote: VoteItem
    is_new: bool = Field(..., description="False when an earlier ballot was replaced")
    latency_ms: float = Field(..., description="Processing latency in milliseconds")


class MyVoteResponse(BaseModel):
    vote: VoteItem | None = None
    latency_ms: float = Field(..., description="Processing latency in milliseconds")


# Admin models


class StartVotingRequest(BaseModel):
    duration_hours: int | None = Field(default=None, ge=1, le=168)
    announce: bool = True


class EndVotingRequest(BaseModel):
    announce: bool = True


class ApproveResultsRequest(BaseModel):
    announce: bool = True


class ExtendVotingRequest(BaseModel):
    hours: int = Field(..., ge=1, le=168)


class WeightsOverrideRequest(BaseModel):
    """Partial weights; omitted components keep their value before renormalizing."""

    recency: float | None = Field(default=None, ge=0.0, le=1.0)
    engagement: float | None = Field(default=None, ge=0.0, le=1.0)
    bridging: float | None = Field(default=None, ge=0.0, le=1.0)
    source_diversity: float | None = Field(default=None, ge=0.0, le=1.0)
    relevance: float | None = Field(default=None, ge=0.0, le=1.0)


class ContentRulesOverrideRequest(BaseModel):
    include_keywords: list[str] | None = None
    exclude_keywords: list[str] | None = None


class KeywordRequest(BaseModel):
    type: Literal["include", "exclude"]
    keyword: str = Field(..., min_length=1, max_length=200)
    confirm: bool = Field(
        default=False,
        description="Required to remove the last include keyword",
    )


class ScheduleVoteRequest(BaseModel):
    starts_at: dt.datetime
    duration_hours: int | None = Field(default=None, ge=1, le=168)
    announce: bool = True


class ScheduledVoteItem(BaseModel):
    id: int | None
    starts_at: str
    duration_hours: int
    created_by: str
    announced: bool
    started_at: str | None = None
    created_at: str


class ScheduledVoteResponse(BaseModel):
    scheduled_vote: ScheduledVoteItem
    latency_ms: float = Field(..., description="Processing latency in milliseconds")


class ScheduleListResponse(BaseModel):
    scheduled_votes: list[ScheduledVoteItem]
    latency_ms: float = Field(..., description="Processing latency in milliseconds")


class TransitionResponse(BaseModel):
    closed_epoch_id: int
    new_epoch: EpochItem
    vote_count: int
    forced: bool
    latency_ms: float = Field(..., description="Processing latency in milliseconds")


class GovernanceStatusResponse(BaseModel):
    """Admin overview of the current round."""

    epoch: EpochItem
    vote_count: int
    vote_statistics: dict[str, Any] | None = None
    scheduled_votes: list[ScheduledVoteItem] = Field(default_factory=list)
    latency_ms: float = Field(..., description="Processing latency in milliseconds")


class ScoringRunResponse(BaseModel):
    run: dict[str, Any] | None = Field(
        default=None,
        description="Run summary; null if a run was already in progress",
    )
    latency_ms: float = Field(..., description="Processing latency in milliseconds")


# Transparency models


class ComponentBreakdown(BaseModel):
    raw_score: float
    weight: float
    weighted: float


class RankCounterfactual(BaseModel):
    pure_engagement_rank: int
    community_governed_rank: int
    difference: int = Field(..., description="Positive when governance ranks the post higher")


class PostExplanationResponse(BaseModel):
    """Why a post ranks where it does."""

    post_uri: str
    epoch_id: int
    epoch_description: str | None = None
    total_score: float
    rank: int
    components: dict[str, ComponentBreakdown]
    governance_weights: WeightsModel
    counterfactual: RankCounterfactual
    scored_at: str
    component_details: dict[str, Any] = Field(default_factory=dict)
    latency_ms: float = Field(..., description="Processing latency in milliseconds")


class FeedStatsResponse(BaseModel):
    epoch: dict[str, Any]
    feed_stats: dict[str, Any]
    governance: dict[str, Any]
    last_scoring_run: dict[str, Any] | None = None
    latency_ms: float = Field(..., description="Processing latency in milliseconds")


class CounterfactualPost(BaseModel):
    post_uri: str
    original_score: float
    original_rank: int
    counterfactual_score: float
    counterfactual_rank: int
    rank_delta: int = Field(..., description="Positive when the post moves up")


class CounterfactualSummary(BaseModel):
    total_posts: int
    posts_moved_up: int
    posts_moved_down: int
    posts_unchanged: int
    max_rank_change: int
    avg_rank_change: float


class CounterfactualResponse(BaseModel):
    """The current ranking recomputed under alternative weights."""

    alternate_weights: WeightsModel
    current_weights: WeightsModel
    posts: list[CounterfactualPost]
    summary: CounterfactualSummary
    latency_ms: float = Field(..., description="Processing latency in milliseconds")


class AuditEntryItem(BaseModel):
    id: int | None = None
    action: str
    actor_did: str | None = None
    epoch_id: int | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: str


class PaginationInfo(BaseModel):
    total: int
    limit: int
    offset: int
    has_more: bool


class AuditLogResponse(BaseModel):
    entries: list[AuditEntryItem]
    pagination: PaginationInfo
    latency_ms: float = Field(..., description="Processing latency in milliseconds")


# Converters


def _iso(value: dt.datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def epoch_to_item(epoch: Epoch) -> EpochItem:
    return EpochItem(
        id=epoch.id,
        phase=epoch.phase,
        status=epoch.status,
        weights=WeightsModel(**epoch.weights.to_dict()),
        content_rules=ContentRulesModel(**epoch.content_rules.to_dict()),
        vote_count=epoch.vote_count,
        voting_started_at=_iso(epoch.voting_started_at),
        voting_ends_at=_iso(epoch.voting_ends_at),
        voting_closed_at=_iso(epoch.voting_closed_at),
        auto_transition=epoch.auto_transition,
        proposed_weights=(
            WeightsModel(**epoch.proposed_weights.to_dict())
            if epoch.proposed_weights is not None
            else None
        ),
        proposed_content_rules=(
            ContentRulesModel(**epoch.proposed_content_rules.to_dict())
            if epoch.proposed_content_rules is not None
            else None
        ),
        results_approved_at=_iso(epoch.results_approved_at),
        results_approved_by=epoch.results_approved_by,
        description=epoch.description,
        created_at=epoch.created_at.isoformat(),
    )


def vote_to_item(vote: Vote) -> VoteItem:
    return VoteItem(
        voter_did=vote.voter_did,
        epoch_id=vote.epoch_id,
        weights=WeightsModel(**vote.weights.to_dict()) if vote.weights is not None else None,
        include_keywords=list(vote.include_keywords),
        exclude_keywords=list(vote.exclude_keywords),
        voted_at=vote.voted_at.isoformat(),
    )


def scheduled_to_item(scheduled: ScheduledVote) -> ScheduledVoteItem:
    return ScheduledVoteItem(
        id=scheduled.id,
        starts_at=scheduled.starts_at.isoformat(),
        duration_hours=scheduled.duration_hours,
        created_by=scheduled.created_by,
        announced=scheduled.announced,
        started_at=_iso(scheduled.started_at),
        created_at=scheduled.created_at.isoformat(),
    )
