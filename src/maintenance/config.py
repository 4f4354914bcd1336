"""Configuration for corpus maintenance.

All settings can be overridden via MAINTENANCE_* environment variables.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class MaintenanceConfig(BaseSettings):
    """Configuration for the hourly cleanup job.

    Example:
        MAINTENANCE_RETENTION_HOURS=96
        MAINTENANCE_BATCH_SIZE=2000
    """

    model_config = SettingsConfigDict(
        env_prefix="MAINTENANCE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    interval_seconds: float = Field(
        default=3600.0,
        ge=60.0,
        description="Interval between cleanup runs",
    )
    retention_hours: int = Field(
        default=72,
        ge=1,
        description="Rows older than this are eligible for deletion",
    )
    batch_size: int = Field(
        default=5000,
        ge=100,
        le=100000,
        description="Maximum rows deleted per statement",
    )
    max_batches: int = Field(
        default=200,
        ge=1,
        description="Upper bound on batches per table per run",
    )
    protect_feed_key: str = Field(
        default="feed:current",
        description="Redis ranking whose posts are never deleted",
    )
