"""
Feed skeleton serving.

The first page freezes the current ranking (``feed:current``) into a
short-lived ``snapshot:{id}`` key and every later page reads that snapshot,
so a client paging through the feed never sees duplicates or gaps while the
scorer republishes. An expired snapshot yields an empty page; the client
restarts from the top.

Reads fail soft: Redis trouble produces an empty feed and a warning, never
an error response.
"""

import json
import secrets
from dataclasses import dataclass, field
from typing import Any

import redis.asyncio as redis
import structlog

from src.feed.config import FeedConfig
from src.feed.cursor import decode_cursor, encode_cursor
from src.storage.database import Database

logger = structlog.get_logger(__name__)


class UnsupportedAlgorithmError(ValueError):
    """The requested feed URI is not served by this generator."""


@dataclass
class FeedPage:
    """One page of post URIs plus the cursor for the next page."""

    posts: list[str] = field(default_factory=list)
    cursor: str | None = None
    snapshot_id: str | None = None
    pinned: str | None = None

    def to_skeleton(self) -> dict[str, Any]:
        """Render as an ``app.bsky.feed.getFeedSkeleton`` response body."""
        body: dict[str, Any] = {"feed": [{"post": uri} for uri in self.posts]}
        if self.cursor:
            body["cursor"] = self.cursor
        return body


class FeedService:
    """
    Serves paginated feed skeletons from Redis snapshots.

    Usage:
        service = FeedService(redis_client, feed_uri=settings.feed_uri, database=db)
        page = await service.get_feed_skeleton(feed_uri, cursor=None, limit=30)
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        feed_uri: str,
        database: Database | None = None,
        config: FeedConfig | None = None,
    ) -> None:
        self._redis = redis_client
        self._feed_uri = feed_uri
        self._db = database
        self._config = config or FeedConfig()

    @property
    def feed_uri(self) -> str:
        return self._feed_uri

    def _snapshot_key(self, snapshot_id: str) -> str:
        return f"{self._config.snapshot_key_prefix}{snapshot_id}"

    async def get_feed_skeleton(
        self,
        feed: str,
        cursor: str | None = None,
        limit: int | None = None,
    ) -> FeedPage:
        """Return one page of the feed.

        Args:
            feed: Requested feed AT-URI; must be this generator's feed.
            cursor: Cursor from the previous page, None for the first page.
            limit: Page size, 1 to ``max_limit``.

        Raises:
            UnsupportedAlgorithmError: ``feed`` is not ours.
            InvalidCursorError: ``cursor`` is malformed.
            ValueError: ``limit`` is out of range.
        """
        if feed != self._feed_uri:
            logger.warning("Unknown feed requested", feed=feed, expected=self._feed_uri)
            raise UnsupportedAlgorithmError("Unknown feed")

        limit = self._config.default_limit if limit is None else limit
        if not 1 <= limit <= self._config.max_limit:
            raise ValueError(f"limit must be between 1 and {self._config.max_limit}")

        if cursor:
            parsed = decode_cursor(cursor)
            snapshot_id, offset = parsed.snapshot_id, parsed.offset
            uris = await self._read_snapshot(snapshot_id)
            if uris is None:
                logger.debug("Snapshot expired", snapshot_id=snapshot_id)
                return FeedPage(snapshot_id=snapshot_id)
        else:
            snapshot_id, offset = secrets.token_hex(4), 0
            uris = await self._create_snapshot(snapshot_id)
            if not uris:
                return FeedPage(snapshot_id=snapshot_id)

        page = uris[offset:offset + limit]
        full_page = len(page) == limit

        # Pinned on the first page only, even when a cursor points back at offset 0
        pinned = await self._pinned_uri() if not cursor else None
        if pinned and pinned not in page:
            page = page[: limit - 1]
            posts = [pinned, *page]
        else:
            pinned = None
            posts = page

        # Next page starts after the last body post actually served
        next_offset = offset + len(page)
        return FeedPage(
            posts=posts,
            cursor=encode_cursor(snapshot_id, next_offset) if full_page else None,
            snapshot_id=snapshot_id,
            pinned=pinned,
        )

    async def _create_snapshot(self, snapshot_id: str) -> list[str]:
        try:
            uris = await self._redis.zrevrange(
                self._config.feed_key, 0, self._config.max_posts - 1
            )
        except Exception as e:
            logger.warning("Failed to read ranking, serving empty feed", error=str(e))
            return []

        if not uris:
            logger.debug("No posts in feed")
            return []

        try:
            await self._redis.setex(
                self._snapshot_key(snapshot_id),
                self._config.snapshot_ttl_seconds,
                json.dumps(list(uris)),
            )
        except Exception as e:
            logger.warning("Failed to store feed snapshot", snapshot_id=snapshot_id, error=str(e))
        return list(uris)

    async def _read_snapshot(self, snapshot_id: str) -> list[str] | None:
        try:
            data = await self._redis.get(self._snapshot_key(snapshot_id))
        except Exception as e:
            logger.warning("Failed to read feed snapshot", snapshot_id=snapshot_id, error=str(e))
            return None
        if not data:
            return None
        try:
            uris = json.loads(data)
        except ValueError:
            logger.warning("Corrupt feed snapshot", snapshot_id=snapshot_id)
            return None
        return uris if isinstance(uris, list) else None

    async def _pinned_uri(self) -> str | None:
        try:
            data = await self._redis.get(self._config.pin_key)
        except Exception as e:
            logger.warning("Failed to read pinned announcement", error=str(e))
            return None
        if not data:
            return None
        try:
            uri = json.loads(data).get("uri")
        except (ValueError, AttributeError):
            return None
        return uri if isinstance(uri, str) and uri else None

    async def track_subscriber(self, did: str) -> None:
        """Record ``did`` as an active subscriber; failures only log."""
        if self._db is None or not did.startswith("did:"):
            return
        try:
            await self._db.execute(
                """
                INSERT INTO subscribers (did, first_seen, last_seen, is_active)
                VALUES ($1, NOW(), NOW(), TRUE)
                ON CONFLICT (did) DO UPDATE SET last_seen = NOW(), is_active = TRUE
                """,
                did,
            )
        except Exception as e:
            logger.warning("Subscriber upsert failed", did=did, error=str(e))

    def describe(self, service_did: str) -> dict[str, Any]:
        """``app.bsky.feed.describeFeedGenerator`` response body."""
        return {"did": service_did, "feeds": [{"uri": self._feed_uri}]}
