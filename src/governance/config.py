"""Governance configuration.

Controls vote aggregation, keyword limits, voting windows and the epoch
scheduler. All settings can be overridden via ``GOVERNANCE_*`` environment
variables.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class GovernanceConfig(BaseSettings):
    """
    Configuration for epochs, ballots and their aggregation.

    Example:
        GOVERNANCE_MIN_VOTES_FOR_TRANSITION=10
        GOVERNANCE_DEFAULT_VOTING_HOURS=48
    """

    model_config = SettingsConfigDict(
        env_prefix="GOVERNANCE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Aggregation
    trim_fraction: float = Field(
        default=0.1,
        ge=0.0,
        lt=0.5,
        description="Fraction trimmed from each end of a component's sorted values.",
    )
    trim_min_votes: int = Field(
        default=10,
        ge=1,
        description="Below this many ballots the plain mean is used.",
    )
    keyword_threshold: float = Field(
        default=0.3,
        gt=0.0,
        le=1.0,
        description="Share of keyword voters a keyword needs to be adopted.",
    )
    min_votes_for_transition: int = Field(
        default=5,
        ge=0,
        description="Ballots required for a non-forced epoch transition.",
    )

    # Ballot limits
    max_keywords: int = Field(default=20, ge=1, le=100)
    max_keyword_length: int = Field(default=50, ge=1, le=200)
    weight_sum_tolerance: float = Field(default=0.01, gt=0.0, le=0.1)

    # Voting windows
    default_voting_hours: int = Field(default=72, ge=1, le=168)
    min_voting_hours: int = Field(default=1, ge=1)
    max_voting_hours: int = Field(default=168, ge=1)
    reminder_hours_before_close: int = Field(
        default=24,
        ge=1,
        description="Send the closing reminder once this close to voting_ends_at.",
    )

    # Content rules cache
    content_rules_cache_key: str = "content_rules:current"
    content_rules_cache_ttl_seconds: int = Field(default=300, ge=10)

    # Epoch scheduler
    scheduler_interval_seconds: float = Field(
        default=300.0,
        ge=5.0,
        description="Interval between governance automation ticks.",
    )


class OutboxConfig(BaseSettings):
    """
    Configuration for the announcement outbox worker.

    All settings can be overridden via environment variables prefixed with OUTBOX_.
    """

    model_config = SettingsConfigDict(
        env_prefix="OUTBOX_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    poll_interval_seconds: float = Field(default=15.0, ge=0.5, le=600.0)
    batch_size: int = Field(default=20, ge=1, le=500)
    max_attempts: int = Field(
        default=5,
        ge=1,
        le=50,
        description="Delivery attempts before an event is left undelivered for inspection.",
    )
    backoff_base_seconds: float = Field(default=30.0, ge=1.0)
    backoff_max_seconds: float = Field(default=3600.0, ge=1.0)
    pin_key: str = Field(
        default="bot:latest_announcement",
        description="Redis key holding the announcement pinned to the feed's first page.",
    )
    vote_url_path: str = "/vote"
