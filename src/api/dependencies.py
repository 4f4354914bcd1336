"""
Dependency injection for FastAPI endpoints.

Services are process-wide singletons created on first use and torn down by
``cleanup_dependencies`` at shutdown. Tests replace them through
``app.dependency_overrides``.
"""

import redis.asyncio as redis
import structlog

from src.config.settings import get_settings
from src.feed.config import FeedConfig
from src.feed.service import FeedService
from src.governance.config import GovernanceConfig
from src.governance.content_filter import ContentRulesCache
from src.governance.epoch_manager import EpochManager
from src.governance.repository import (
    AuditLogRepository,
    EpochRepository,
    ScheduledVoteRepository,
    VoteRepository,
)
from src.governance.votes import VoteService
from src.scoring.config import ScoringConfig
from src.scoring.pipeline import ScoringPipeline
from src.scoring.repository import ScoringRepository
from src.scoring.scheduler import ScoringScheduler
from src.storage.database import Database
from src.storage.redis_client import create_redis_client
from src.transparency.service import TransparencyService

logger = structlog.get_logger(__name__)

# Global service instances (initialized on first request)
_database: Database | None = None
_redis_client: redis.Redis | None = None
_rules_cache: ContentRulesCache | None = None
_epoch_manager: EpochManager | None = None
_vote_service: VoteService | None = None
_feed_service: FeedService | None = None
_transparency_service: TransparencyService | None = None
_scoring_scheduler: ScoringScheduler | None = None


async def get_database() -> Database:
    """Get the connected database, connecting on first use."""
    global _database

    if _database is None:
        _database = Database()
        await _database.connect()
    return _database


async def get_redis_client() -> redis.Redis:
    """Get the shared decode_responses Redis client."""
    global _redis_client

    if _redis_client is None:
        _redis_client = create_redis_client()
    return _redis_client


async def get_rules_cache() -> ContentRulesCache:
    global _rules_cache

    if _rules_cache is None:
        database = await get_database()
        _rules_cache = ContentRulesCache(
            await get_redis_client(), EpochRepository(database), GovernanceConfig()
        )
    return _rules_cache


async def get_scoring_scheduler() -> ScoringScheduler:
    """
    Get the in-process scoring runner.

    The API never starts its interval loop; it only triggers out-of-band runs
    after governance changes and serves ``/admin/scoring/run``.
    """
    global _scoring_scheduler

    if _scoring_scheduler is None:
        database = await get_database()
        pipeline = ScoringPipeline(
            ScoringRepository(database),
            await get_redis_client(),
            EpochRepository(database),
            rules_cache=await get_rules_cache(),
            config=ScoringConfig(),
        )
        _scoring_scheduler = ScoringScheduler(pipeline)
    return _scoring_scheduler


async def get_epoch_manager() -> EpochManager:
    """Get the epoch manager wired to rescoring and the rules cache."""
    global _epoch_manager

    if _epoch_manager is None:
        database = await get_database()
        scheduler = await get_scoring_scheduler()
        _epoch_manager = EpochManager(
            database,
            scheduled_repo=ScheduledVoteRepository(database),
            rules_cache=await get_rules_cache(),
            config=GovernanceConfig(),
            on_results_applied=scheduler.trigger,
        )
    return _epoch_manager


async def get_vote_service() -> VoteService:
    global _vote_service

    if _vote_service is None:
        _vote_service = VoteService(await get_database(), config=GovernanceConfig())
    return _vote_service


async def get_feed_service() -> FeedService:
    global _feed_service

    if _feed_service is None:
        settings = get_settings()
        _feed_service = FeedService(
            await get_redis_client(),
            feed_uri=settings.feed_uri,
            database=await get_database(),
            config=FeedConfig(),
        )
    return _feed_service


async def get_transparency_service() -> TransparencyService:
    global _transparency_service

    if _transparency_service is None:
        database = await get_database()
        _transparency_service = TransparencyService(
            ScoringRepository(database),
            EpochRepository(database),
            VoteRepository(database),
            AuditLogRepository(database),
            redis_client=await get_redis_client(),
            feed_count_key=ScoringConfig().feed_count_key,
        )
    return _transparency_service


async def cleanup_dependencies() -> None:
    """Clean up global dependencies on shutdown."""
    global _database, _redis_client, _rules_cache, _epoch_manager
    global _vote_service, _feed_service, _transparency_service, _scoring_scheduler

    if _scoring_scheduler is not None:
        # Waits for a triggered rescoring run to finish
        await _scoring_scheduler.stop()
        _scoring_scheduler = None

    _epoch_manager = None
    _vote_service = None
    _feed_service = None
    _transparency_service = None
    _rules_cache = None

    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None

    if _database is not None:
        await _database.close()
        _database = None

    logger.info("API dependencies closed")
