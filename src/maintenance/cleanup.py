"""
Hourly corpus cleanup.

Removes rows the ranking can no longer use:

- posts that were soft-deleted, or that aged past retention without ever
  being scored (scored posts stay for explainability; a post's scores and
  engagement rows go with it through ``ON DELETE CASCADE``)
- likes and reposts that were soft-deleted, or whose subject post is gone
- soft-deleted follows

Posts in the published ranking are never deleted. Each table is emptied in
bounded batches with a yield between batches so a large backlog never holds
long locks or starves the event loop. ``dry_run`` counts instead of
deleting.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

import redis.asyncio as redis
import structlog

from src.governance.weights import parse_int
from src.maintenance.config import MaintenanceConfig
from src.observability.metrics import get_metrics
from src.services.periodic import PeriodicJob
from src.storage.database import Database, parse_affected_rows

logger = structlog.get_logger(__name__)

STATUS_LAST_CLEANUP = "last_cleanup_run"

# Eligibility per table. $1 is the retention cutoff; only posts take the
# protected URIs as $2.
_ELIGIBLE = {
    "posts": """
        (p.deleted = TRUE
         OR (p.indexed_at < $1
             AND NOT EXISTS (SELECT 1 FROM post_scores ps WHERE ps.post_uri = p.uri)))
        AND p.uri != ALL($2::text[])
    """,
    "likes": """
        p.deleted = TRUE
        OR (p.created_at < $1
            AND NOT EXISTS (SELECT 1 FROM posts x WHERE x.uri = p.subject_uri))
    """,
    "reposts": """
        p.deleted = TRUE
        OR (p.created_at < $1
            AND NOT EXISTS (SELECT 1 FROM posts x WHERE x.uri = p.subject_uri))
    """,
    "follows": "p.deleted = TRUE AND p.created_at < $1",
}

CLEANUP_TABLES = tuple(_ELIGIBLE)


def _params(table: str, cutoff: datetime, protected: list[str]) -> list[Any]:
    return [cutoff, protected] if table == "posts" else [cutoff]


def _delete_sql(table: str) -> str:
    limit_param = 3 if table == "posts" else 2
    return f"""
        DELETE FROM {table} WHERE uri IN (
            SELECT p.uri FROM {table} p
            WHERE {_ELIGIBLE[table]}
            LIMIT ${limit_param}
        )
    """


def _count_sql(table: str) -> str:
    return f"SELECT COUNT(*) FROM {table} p WHERE {_ELIGIBLE[table]}"


@dataclass
class CleanupResult:
    """Rows removed (or, in a dry run, eligible) per table."""

    deleted: dict[str, int] = field(default_factory=dict)
    dry_run: bool = False
    protected_posts: int = 0
    interrupted: bool = False
    elapsed_seconds: float = 0.0

    @property
    def total(self) -> int:
        return sum(self.deleted.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "deleted": dict(self.deleted),
            "total": self.total,
            "dry_run": self.dry_run,
            "protected_posts": self.protected_posts,
            "interrupted": self.interrupted,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
        }


class CleanupJob(PeriodicJob):
    """
    Periodic retention enforcement for the corpus tables.

    Usage:
        job = CleanupJob(database, redis_client)
        await job.start()            # hourly
        result = await job.cleanup(dry_run=True)
    """

    name = "cleanup"

    def __init__(
        self,
        database: Database,
        redis_client: redis.Redis | None = None,
        config: MaintenanceConfig | None = None,
    ) -> None:
        self._config = config or MaintenanceConfig()
        super().__init__(self._config.interval_seconds)
        self._db = database
        self._redis = redis_client
        self._metrics = get_metrics()

    async def _run(self) -> CleanupResult:
        return await self.cleanup()

    async def cleanup(self, dry_run: bool = False) -> CleanupResult:
        """Run one cleanup pass over every table.

        A failure on one table is logged and the remaining tables still run.
        """
        started = time.perf_counter()
        result = CleanupResult(dry_run=dry_run)
        cutoff = datetime.now(timezone.utc) - timedelta(hours=self._config.retention_hours)
        protected = await self._protected_uris()
        result.protected_posts = len(protected)

        logger.info(
            "Starting cleanup run",
            dry_run=dry_run,
            retention_hours=self._config.retention_hours,
            protected_posts=len(protected),
        )

        for table in CLEANUP_TABLES:
            if self.stopping.is_set():
                result.interrupted = True
                break
            try:
                if dry_run:
                    count = await self._db.fetchval(
                        _count_sql(table), *_params(table, cutoff, protected)
                    )
                    result.deleted[table] = parse_int(count)
                else:
                    result.deleted[table] = await self._delete_batches(table, cutoff, protected)
            except Exception as e:
                logger.error("Cleanup failed for table", table=table, error=str(e))
                result.deleted.setdefault(table, 0)

        result.elapsed_seconds = time.perf_counter() - started
        logger.info("Cleanup run complete", **result.to_dict())

        if not dry_run:
            await self._record(result)
        return result

    async def _delete_batches(
        self, table: str, cutoff: datetime, protected: list[str]
    ) -> int:
        sql = _delete_sql(table)
        params = _params(table, cutoff, protected)
        batch_size = self._config.batch_size
        total = 0

        for _ in range(self._config.max_batches):
            status = await self._db.execute(sql, *params, batch_size)
            deleted = parse_affected_rows(status)
            total += deleted
            self._metrics.record_cleanup(table, deleted)

            if deleted:
                logger.debug("Cleanup batch", table=table, deleted=deleted, total=total)
            if deleted < batch_size or self.stopping.is_set():
                break
            # Let other tasks run between batches
            await asyncio.sleep(0)
        else:
            logger.warning(
                "Cleanup batch limit reached, remaining rows wait for the next run",
                table=table,
                max_batches=self._config.max_batches,
            )

        return total

    async def _protected_uris(self) -> list[str]:
        if self._redis is None:
            return []
        try:
            return list(await self._redis.zrange(self._config.protect_feed_key, 0, -1))
        except Exception as e:
            logger.warning(
                "Failed to read published feed, proceeding with no protected posts",
                error=str(e),
            )
            return []

    async def _record(self, result: CleanupResult) -> None:
        try:
            await self._db.execute(
                """
                INSERT INTO system_status (key, value, updated_at)
                VALUES ($1, $2, NOW())
                ON CONFLICT (key) DO UPDATE SET value = EXCLUDED.value, updated_at = NOW()
                """,
                STATUS_LAST_CLEANUP,
                result.to_dict(),
            )
        except Exception as e:
            logger.warning("Failed to store cleanup result", error=str(e))
