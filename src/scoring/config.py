"""Configuration for the feed scoring pipeline.

Provides Pydantic settings for the run cadence, scoring window, published
feed size, cross-process lock and the per-component constants. All settings
can be overridden via SCORING_* environment variables.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ScoringConfig(BaseSettings):
    """Configuration for the periodic scoring pipeline.

    Settings can be overridden via environment variables prefixed with SCORING_.

    Example:
        SCORING_INTERVAL_SECONDS=120
        SCORING_WINDOW_HOURS=48
        SCORING_FEED_MAX_POSTS=500
    """

    model_config = SettingsConfigDict(
        env_prefix="SCORING_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Cadence
    interval_seconds: float = Field(
        default=300.0,
        ge=5.0,
        description="Interval between scheduled scoring runs",
    )
    timeout_seconds: float = Field(
        default=120.0,
        ge=1.0,
        description="Hard timeout for a single scoring run",
    )

    # Corpus window and output
    window_hours: int = Field(
        default=72,
        ge=1,
        le=720,
        description="Only posts newer than this are scored",
    )
    feed_max_posts: int = Field(
        default=1000,
        ge=1,
        le=10000,
        description="Number of top posts published to feed:current",
    )

    # Cross-process lock
    lock_key: str = Field(default="scoring:lock")
    lock_ttl_seconds: int = Field(
        default=300,
        ge=10,
        description="Lock expiry; bounds how long a crashed holder blocks others",
    )

    # Engagement
    like_weight: float = Field(default=1.0, ge=0.0)
    repost_weight: float = Field(default=2.0, ge=0.0)
    reply_weight: float = Field(default=3.0, ge=0.0)
    engagement_saturation: int = Field(
        default=1001,
        ge=2,
        description="Raw engagement at which the score reaches 1.0 (log scale)",
    )

    # Bridging
    bridging_max_engagers: int = Field(default=50, ge=2)
    bridging_max_follows: int = Field(default=200, ge=1)
    bridging_max_pairwise: int = Field(default=20, ge=2)
    bridging_min_engagers: int = Field(default=2, ge=2)
    bridging_default_score: float = Field(default=0.3, ge=0.0, le=1.0)

    # Source diversity
    source_diversity_penalties: list[float] = Field(
        default=[1.0, 0.7, 0.5, 0.3],
        min_length=1,
        description="Score for an author's 1st, 2nd, 3rd, ... post in a run",
    )

    # Relevance
    relevance_default: float = Field(default=0.5, ge=0.0, le=1.0)

    # Redis keys for the published ranking
    feed_key: str = "feed:current"
    feed_epoch_key: str = "feed:epoch"
    feed_updated_at_key: str = "feed:updated_at"
    feed_count_key: str = "feed:count"
