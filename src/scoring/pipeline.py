"""
Feed scoring pipeline.

One run:

1. load the current epoch (abort quietly if governance is not bootstrapped)
2. load non-deleted posts inside the scoring window, newest first
3. drop posts rejected by the current content rules
4. score every post on five components and combine them with the epoch's
   weights
5. upsert each decomposed score into ``post_scores``
6. publish the top ``feed_max_posts`` to Redis in one MULTI/EXEC

A post that fails to score is logged and counted; it never aborts the run.
The whole run holds the cross-process ``ScoringLock`` and is bounded by
``timeout_seconds``.
"""

import asyncio
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

import redis.asyncio as redis
import structlog

from src.governance.content_filter import ContentRulesCache, filter_posts
from src.governance.repository import EpochRepository
from src.governance.schemas import ContentRules, Epoch
from src.observability.metrics import get_metrics
from src.scoring.components import (
    BridgingScorer,
    SourceDiversityTracker,
    score_engagement,
    score_recency,
    score_relevance,
)
from src.scoring.config import ScoringConfig
from src.scoring.lock import ScoringLock
from src.scoring.repository import ScoringRepository
from src.scoring.schemas import ComponentScores, Post, PostScore, ScoringRunResult

logger = structlog.get_logger(__name__)

STATUS_CURRENT_RUN = "current_scoring_run"
STATUS_LAST_RUN = "last_scoring_run"


class ScoringPipeline:
    """
    Scores the corpus under the current epoch and publishes the ranking.

    Usage:
        pipeline = ScoringPipeline(db_repo, redis_client, epoch_repo, rules_cache)
        result = await pipeline.run()
    """

    def __init__(
        self,
        repository: ScoringRepository,
        redis_client: redis.Redis,
        epoch_repo: EpochRepository,
        rules_cache: ContentRulesCache | None = None,
        config: ScoringConfig | None = None,
        lock: ScoringLock | None = None,
    ) -> None:
        self._config = config or ScoringConfig()
        self._repo = repository
        self._redis = redis_client
        self._epochs = epoch_repo
        self._rules_cache = rules_cache
        self._lock = lock or ScoringLock(
            redis_client, self._config.lock_key, self._config.lock_ttl_seconds
        )
        self._bridging = BridgingScorer(repository, self._config)
        self._metrics = get_metrics()

    @property
    def config(self) -> ScoringConfig:
        return self._config

    async def run(self) -> ScoringRunResult:
        """Run once under the lock and timeout.

        Returns:
            The run summary; ``status`` is ``skipped`` if another process
            holds the lock and ``no_epoch`` before governance bootstrap.

        Raises:
            asyncio.TimeoutError: The run exceeded ``timeout_seconds``.
        """
        result = ScoringRunResult(run_id=uuid.uuid4().hex[:12])
        started = time.perf_counter()

        async with self._lock.hold() as acquired:
            if not acquired:
                result.status = "skipped"
                logger.info("Scoring run skipped, lock held elsewhere", run_id=result.run_id)
                self._metrics.record_scoring_run("skipped", 0.0, 0, 0, 0)
                return result

            try:
                await asyncio.wait_for(
                    self._execute(result), timeout=self._config.timeout_seconds
                )
            except asyncio.TimeoutError:
                result.status = "timeout"
                result.elapsed_seconds = time.perf_counter() - started
                logger.error(
                    "Scoring run timed out",
                    run_id=result.run_id,
                    timeout_seconds=self._config.timeout_seconds,
                )
                await self._finish(result)
                raise
            except Exception:
                result.status = "failed"
                result.elapsed_seconds = time.perf_counter() - started
                await self._finish(result)
                raise

        result.elapsed_seconds = time.perf_counter() - started
        await self._finish(result)
        return result

    async def _execute(self, result: ScoringRunResult) -> None:
        logger.info("Starting scoring run", run_id=result.run_id)

        epoch = await self._epochs.get_current()
        if epoch is None:
            result.status = "no_epoch"
            logger.error("No active governance epoch found, cannot score", run_id=result.run_id)
            return

        result.epoch_id = epoch.id
        await self._set_status(STATUS_CURRENT_RUN, {
            "run_id": result.run_id,
            "epoch_id": epoch.id,
            "active": True,
            "started_at": datetime.now(timezone.utc).isoformat(),
        })

        cutoff = datetime.now(timezone.utc) - timedelta(hours=self._config.window_hours)
        posts = await self._repo.get_posts_for_scoring(cutoff)
        result.posts_loaded = len(posts)

        rules = await self._current_rules()
        passed, result.posts_filtered = filter_posts(posts, rules)
        if result.posts_filtered:
            logger.info(
                "Content filtering applied",
                run_id=result.run_id,
                total_posts=len(posts),
                passed_filter=len(passed),
                filtered_out=result.posts_filtered,
                include_keywords=len(rules.include_keywords),
                exclude_keywords=len(rules.exclude_keywords),
            )

        scores = await self.score_posts(passed, epoch, result)
        scores.sort(key=lambda s: s.total, reverse=True)
        result.published = await self.publish(scores, epoch.id)

    async def _current_rules(self) -> ContentRules:
        if self._rules_cache is None:
            return ContentRules()
        return await self._rules_cache.get_current()

    def compute_scores(
        self,
        post: Post,
        bridging: float,
        diversity: SourceDiversityTracker,
        now: datetime | None = None,
    ) -> ComponentScores:
        """Raw component scores for one post (advances the diversity tracker)."""
        return ComponentScores(
            recency=score_recency(post.created_at, self._config.window_hours, now),
            engagement=score_engagement(
                post.like_count, post.repost_count, post.reply_count, self._config
            ),
            bridging=bridging,
            source_diversity=diversity.score(post.author_did),
            relevance=score_relevance(post, self._config),
        )

    async def score_posts(
        self,
        posts: list[Post],
        epoch: Epoch,
        result: ScoringRunResult,
    ) -> list[PostScore]:
        """Score and persist each post; failures are counted, not raised."""
        diversity = SourceDiversityTracker(self._config.source_diversity_penalties)
        now = datetime.now(timezone.utc)
        scores: list[PostScore] = []

        for post in posts:
            try:
                bridging = await self._bridging.score(post.uri)
                raw = self.compute_scores(post, bridging, diversity, now)
                score = PostScore.compute(post, epoch.id, raw, epoch.weights, result.run_id)
                await self._repo.upsert_score(score)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                result.errors += 1
                logger.error("Failed to score post", uri=post.uri, error=str(e))
                continue
            scores.append(score)
            result.posts_scored += 1

        return scores

    async def publish(self, ranked: list[PostScore], epoch_id: int) -> int:
        """Atomically replace the published ranking with ``ranked``'s head.

        Returns:
            Number of posts published.
        """
        top = ranked[: self._config.feed_max_posts]
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.delete(self._config.feed_key)
            if top:
                pipe.zadd(self._config.feed_key, {s.post_uri: s.total for s in top})
            pipe.set(self._config.feed_epoch_key, str(epoch_id))
            pipe.set(self._config.feed_updated_at_key, datetime.now(timezone.utc).isoformat())
            pipe.set(self._config.feed_count_key, str(len(top)))
            await pipe.execute()

        self._metrics.set_feed_size(len(top))
        if not top:
            logger.warning("Published an empty feed", epoch_id=epoch_id)
        else:
            logger.info("Feed written to Redis", post_count=len(top), epoch_id=epoch_id)
        return len(top)

    async def _finish(self, result: ScoringRunResult) -> None:
        self._metrics.record_scoring_run(
            result.status,
            result.elapsed_seconds,
            result.posts_scored,
            result.posts_filtered,
            result.errors,
        )
        completed_at = datetime.now(timezone.utc).isoformat()
        await self._set_status(STATUS_CURRENT_RUN, {
            "run_id": result.run_id,
            "epoch_id": result.epoch_id,
            "active": False,
            "completed_at": completed_at,
        })
        await self._set_status(STATUS_LAST_RUN, {**result.to_dict(), "completed_at": completed_at})
        logger.info("Scoring run finished", **result.to_dict())

    async def _set_status(self, key: str, value: dict[str, Any]) -> None:
        try:
            await self._repo.set_status(key, value)
        except Exception as e:
            logger.warning("Failed to record scoring status", key=key, error=str(e))
