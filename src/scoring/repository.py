"""
Scoring persistence: corpus reads, score upserts and run status.

The corpus tables are owned by the ingestion collaborator and only read
here. ``post_scores`` is keyed by (post_uri, epoch_id); rescoring a post
under the same epoch overwrites its row.
"""

import logging
from datetime import datetime
from typing import Any

from src.governance.weights import WEIGHT_KEYS, Weights, parse_float, parse_int
from src.scoring.schemas import ComponentScores, Post, PostScore
from src.storage.database import Database

logger = logging.getLogger(__name__)

_SCORE_COLUMNS = [f"{key}_score" for key in WEIGHT_KEYS]
_WEIGHT_COLUMNS = [f"{key}_weight" for key in WEIGHT_KEYS]
_WEIGHTED_COLUMNS = [f"{key}_weighted" for key in WEIGHT_KEYS]
_ALL_VALUE_COLUMNS = _SCORE_COLUMNS + _WEIGHT_COLUMNS + _WEIGHTED_COLUMNS

_VALUE_COLUMN_LIST = ", ".join(_ALL_VALUE_COLUMNS)
# $1 post_uri, $2 epoch_id, then $3..$17 for the fifteen values
_VALUE_PARAMS = ", ".join(f"${i}" for i in range(3, 3 + len(_ALL_VALUE_COLUMNS)))
_VALUE_EXCLUDED = ", ".join(f"{col} = EXCLUDED.{col}" for col in _ALL_VALUE_COLUMNS)

_UPSERT_SCORE_SQL = f"""
    INSERT INTO post_scores (
        post_uri, epoch_id, {_VALUE_COLUMN_LIST},
        total_score, component_details
    ) VALUES ($1, $2, {_VALUE_PARAMS}, $18, $19)
    ON CONFLICT (post_uri, epoch_id) DO UPDATE SET
        {_VALUE_EXCLUDED},
        total_score = EXCLUDED.total_score,
        component_details = EXCLUDED.component_details,
        scored_at = NOW()
"""

# Restricts to rows written by one pipeline run; the run id is always $3
_RUN_SCOPE = "component_details->>'run_id' = $3"
_RANKABLE_COLUMNS = frozenset(["total_score", *_SCORE_COLUMNS])


class ScoringRepository:
    """Database access for the scoring pipeline and transparency reads."""

    def __init__(self, database: Database) -> None:
        self._db = database

    async def get_posts_for_scoring(self, cutoff: datetime) -> list[Post]:
        """Non-deleted posts newer than ``cutoff``, newest first."""
        rows = await self._db.fetch(
            """
            SELECT p.uri, p.cid, p.author_did, p.text, p.reply_root, p.reply_parent,
                   p.langs, p.has_media, p.created_at,
                   COALESCE(pe.like_count, 0) AS like_count,
                   COALESCE(pe.repost_count, 0) AS repost_count,
                   COALESCE(pe.reply_count, 0) AS reply_count
            FROM posts p
            LEFT JOIN post_engagement pe ON p.uri = pe.post_uri
            WHERE p.deleted = FALSE
              AND p.created_at > $1
            ORDER BY p.created_at DESC
            """,
            cutoff,
        )
        return [_row_to_post(row) for row in rows]

    async def get_post(self, uri: str) -> Post | None:
        row = await self._db.fetchrow(
            """
            SELECT p.uri, p.cid, p.author_did, p.text, p.reply_root, p.reply_parent,
                   p.langs, p.has_media, p.created_at,
                   COALESCE(pe.like_count, 0) AS like_count,
                   COALESCE(pe.repost_count, 0) AS repost_count,
                   COALESCE(pe.reply_count, 0) AS reply_count
            FROM posts p
            LEFT JOIN post_engagement pe ON p.uri = pe.post_uri
            WHERE p.uri = $1
            """,
            uri,
        )
        return _row_to_post(row) if row else None

    async def get_engagers(self, post_uri: str, limit: int) -> list[str]:
        """Distinct DIDs that liked or reposted a post."""
        rows = await self._db.fetch(
            """
            SELECT DISTINCT author_did FROM (
                SELECT author_did FROM likes WHERE subject_uri = $1 AND deleted = FALSE
                UNION ALL
                SELECT author_did FROM reposts WHERE subject_uri = $1 AND deleted = FALSE
            ) AS engagers
            LIMIT $2
            """,
            post_uri,
            limit,
        )
        return [row["author_did"] for row in rows]

    async def get_follow_sets(self, dids: list[str], limit_per_did: int) -> dict[str, set[str]]:
        """Up to ``limit_per_did`` followed DIDs for each of ``dids``."""
        if not dids:
            return {}
        rows = await self._db.fetch(
            """
            SELECT author_did, subject_did FROM (
                SELECT author_did, subject_did,
                       ROW_NUMBER() OVER (PARTITION BY author_did ORDER BY created_at DESC) AS rn
                FROM follows
                WHERE author_did = ANY($1::text[]) AND deleted = FALSE
            ) ranked
            WHERE rn <= $2
            """,
            dids,
            limit_per_did,
        )
        follow_sets: dict[str, set[str]] = {did: set() for did in dids}
        for row in rows:
            follow_sets.setdefault(row["author_did"], set()).add(row["subject_did"])
        return follow_sets

    async def upsert_score(self, score: PostScore) -> None:
        await self._db.execute(
            _UPSERT_SCORE_SQL,
            score.post_uri,
            score.epoch_id,
            *score.raw.as_tuple(),
            *score.weights.as_tuple(),
            *score.weighted.as_tuple(),
            score.total,
            score.component_details,
        )

    async def get_score(
        self,
        post_uri: str,
        epoch_id: int | None = None,
        run_id: str | None = None,
    ) -> PostScore | None:
        """A post's score under ``epoch_id`` (optionally from one run), or its latest score."""
        if epoch_id is None:
            row = await self._db.fetchrow(
                """
                SELECT * FROM post_scores WHERE post_uri = $1
                ORDER BY scored_at DESC LIMIT 1
                """,
                post_uri,
            )
        elif run_id is None:
            row = await self._db.fetchrow(
                "SELECT * FROM post_scores WHERE post_uri = $1 AND epoch_id = $2",
                post_uri,
                epoch_id,
            )
        else:
            row = await self._db.fetchrow(
                f"""
                SELECT * FROM post_scores
                WHERE post_uri = $1 AND epoch_id = $2 AND {_RUN_SCOPE}
                """,
                post_uri,
                epoch_id,
                run_id,
            )
        return _row_to_score(row) if row else None

    async def list_scores(
        self, epoch_id: int, limit: int, run_id: str | None = None
    ) -> list[PostScore]:
        """Top scores for an epoch by stored total."""
        if run_id is None:
            rows = await self._db.fetch(
                """
                SELECT ps.*, p.author_did FROM post_scores ps
                LEFT JOIN posts p ON p.uri = ps.post_uri
                WHERE ps.epoch_id = $1
                ORDER BY ps.total_score DESC
                LIMIT $2
                """,
                epoch_id,
                limit,
            )
        else:
            rows = await self._db.fetch(
                """
                SELECT ps.*, p.author_did FROM post_scores ps
                LEFT JOIN posts p ON p.uri = ps.post_uri
                WHERE ps.epoch_id = $1 AND ps.component_details->>'run_id' = $3
                ORDER BY ps.total_score DESC
                LIMIT $2
                """,
                epoch_id,
                limit,
                run_id,
            )
        return [_row_to_score(row) for row in rows]

    async def count_ranked_above(
        self,
        epoch_id: int,
        column: str,
        value: float,
        run_id: str | None = None,
    ) -> int:
        """Number of an epoch's scores strictly greater than ``value`` in ``column``."""
        if column not in _RANKABLE_COLUMNS:
            raise ValueError(f"Cannot rank by {column!r}")
        if run_id is None:
            count = await self._db.fetchval(
                f"SELECT COUNT(*) FROM post_scores WHERE epoch_id = $1 AND {column} > $2",
                epoch_id,
                value,
            )
        else:
            count = await self._db.fetchval(
                f"""
                SELECT COUNT(*) FROM post_scores
                WHERE epoch_id = $1 AND {column} > $2 AND {_RUN_SCOPE}
                """,
                epoch_id,
                value,
                run_id,
            )
        return parse_int(count)

    async def score_summary(self, epoch_id: int) -> dict[str, Any]:
        """Counts, medians and per-component averages for an epoch's scored posts."""
        averages = ", ".join(f"AVG({col}) AS avg_{col}" for col in _SCORE_COLUMNS)
        row = await self._db.fetchrow(
            f"""
            SELECT COUNT(*) AS post_count,
                   COUNT(DISTINCT p.author_did) AS unique_authors,
                   AVG(ps.total_score) AS avg_total,
                   PERCENTILE_CONT(0.5) WITHIN GROUP (ORDER BY ps.total_score) AS median_total,
                   PERCENTILE_CONT(0.5) WITHIN GROUP (ORDER BY ps.bridging_score)
                       AS median_bridging,
                   {averages}
            FROM post_scores ps
            LEFT JOIN posts p ON p.uri = ps.post_uri
            WHERE ps.epoch_id = $1
            """,
            epoch_id,
        )
        if row is None:
            return {
                "post_count": 0,
                "unique_authors": 0,
                "avg_total": 0.0,
                "median_total": 0.0,
                "median_bridging": 0.0,
                "averages": {},
            }
        return {
            "post_count": parse_int(row["post_count"]),
            "unique_authors": parse_int(row["unique_authors"]),
            "avg_total": _average(row["avg_total"]),
            "median_total": _average(row["median_total"]),
            "median_bridging": _average(row["median_bridging"]),
            "averages": {
                key: _average(row[f"avg_{key}_score"]) for key in WEIGHT_KEYS
            },
        }

    async def get_status(self, key: str) -> Any:
        return await self._db.fetchval(
            "SELECT value FROM system_status WHERE key = $1", key
        )

    async def set_status(self, key: str, value: Any) -> None:
        await self._db.execute(
            """
            INSERT INTO system_status (key, value, updated_at)
            VALUES ($1, $2, NOW())
            ON CONFLICT (key) DO UPDATE SET value = EXCLUDED.value, updated_at = NOW()
            """,
            key,
            value,
        )


def _average(value: Any) -> float:
    """AVG() is NULL over an empty set."""
    return round(parse_float(value), 4) if value is not None else 0.0


def _row_to_post(row: Any) -> Post:
    """Convert an asyncpg Record to a Post."""
    return Post(
        uri=row["uri"],
        cid=row.get("cid"),
        author_did=row["author_did"],
        text=row.get("text"),
        reply_root=row.get("reply_root"),
        reply_parent=row.get("reply_parent"),
        langs=list(row.get("langs") or []),
        has_media=bool(row.get("has_media")),
        created_at=row["created_at"],
        like_count=parse_int(row.get("like_count")),
        repost_count=parse_int(row.get("repost_count")),
        reply_count=parse_int(row.get("reply_count")),
    )


def _components(row: Any, suffix: str) -> ComponentScores:
    return ComponentScores(
        **{key: parse_float(row[f"{key}_{suffix}"]) for key in WEIGHT_KEYS}
    )


def _row_to_score(row: Any) -> PostScore:
    """Convert an asyncpg Record to a PostScore."""
    details = row.get("component_details") or {}
    return PostScore(
        post_uri=row["post_uri"],
        epoch_id=row["epoch_id"],
        author_did=row.get("author_did"),
        raw=_components(row, "score"),
        weights=Weights(**{key: parse_float(row[f"{key}_weight"]) for key in WEIGHT_KEYS}),
        weighted=_components(row, "weighted"),
        total=parse_float(row["total_score"]),
        component_details=details if isinstance(details, dict) else {},
        scored_at=row["scored_at"],
    )
