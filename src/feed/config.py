"""Feed serving configuration.

All settings can be overridden via ``FEED_*`` environment variables.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class FeedConfig(BaseSettings):
    """
    Configuration for feed skeleton pagination.

    Example:
        FEED_SNAPSHOT_TTL_SECONDS=600
        FEED_DEFAULT_LIMIT=30
    """

    model_config = SettingsConfigDict(
        env_prefix="FEED_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    snapshot_ttl_seconds: int = Field(
        default=600,
        ge=30,
        description="How long a first-page ranking snapshot stays readable; outlives one scoring interval",
    )
    snapshot_key_prefix: str = "snapshot:"
    default_limit: int = Field(default=50, ge=1, le=100)
    max_limit: int = Field(default=100, ge=1, le=100)
    max_posts: int = Field(
        default=1000,
        ge=1,
        description="Ranked posts copied into each snapshot",
    )
    feed_key: str = "feed:current"
    pin_key: str = "bot:latest_announcement"
