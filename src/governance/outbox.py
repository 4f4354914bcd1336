"""
Governance announcement outbox.

Epoch transitions insert an ``OutboxEvent`` into ``governance_outbox`` inside
the same transaction that changes the epoch, so an announcement exists if and
only if the transition committed. ``OutboxWorker`` later renders each event
to text, checks ``announcement_settings`` and hands it to an
``AnnouncementPublisher``. Failed deliveries are retried with exponential
backoff persisted in ``available_at``.
"""

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

import redis.asyncio as redis
import structlog

from src.config.settings import get_settings
from src.governance.config import OutboxConfig
from src.governance.schemas import (
    EVENT_RESULTS_APPROVED,
    EVENT_VOTE_SCHEDULED,
    EVENT_VOTING_CLOSED,
    EVENT_VOTING_OPENED,
    EVENT_VOTING_REMINDER,
    OutboxEvent,
)
from src.governance.weights import VOTABLE_WEIGHT_PARAMS, Weights
from src.observability.metrics import get_metrics
from src.queues.backoff import ExponentialBackoff
from src.services.periodic import PeriodicJob
from src.storage.database import Database

logger = logging.getLogger(__name__)
worker_logger = structlog.get_logger(__name__)


class OutboxRepository:
    """Persistence for ``governance_outbox``, ``announcement_settings`` and ``announcements``."""

    def __init__(self, database: Database) -> None:
        self._db = database

    async def enqueue(self, event: OutboxEvent, conn: Any | None = None) -> int:
        """Insert an event; pass the transaction connection to commit atomically."""
        executor = conn if conn is not None else self._db
        event_id = await executor.fetchval(
            """
            INSERT INTO governance_outbox (event_type, epoch_id, payload)
            VALUES ($1, $2, $3)
            RETURNING id
            """,
            event.event_type,
            event.epoch_id,
            event.payload,
        )
        event.id = event_id
        logger.debug("Enqueued outbox event %s (%s)", event_id, event.event_type)
        return event_id

    async def fetch_pending(self, limit: int, max_attempts: int) -> list[OutboxEvent]:
        """Undelivered events whose retry time has come, oldest first."""
        rows = await self._db.fetch(
            """
            SELECT * FROM governance_outbox
            WHERE delivered_at IS NULL
              AND attempts < $2
              AND available_at <= NOW()
            ORDER BY id
            LIMIT $1
            """,
            limit,
            max_attempts,
        )
        return [_row_to_event(row) for row in rows]

    async def mark_delivered(self, event_id: int) -> None:
        await self._db.execute(
            """
            UPDATE governance_outbox
            SET delivered_at = NOW(), attempts = attempts + 1, last_error = NULL
            WHERE id = $1
            """,
            event_id,
        )

    async def mark_failed(self, event_id: int, error: str, retry_in_seconds: float) -> None:
        await self._db.execute(
            """
            UPDATE governance_outbox
            SET attempts = attempts + 1,
                last_error = $2,
                available_at = NOW() + make_interval(secs => $3)
            WHERE id = $1
            """,
            event_id,
            error[:1000],
            retry_in_seconds,
        )

    async def count_pending(self) -> int:
        value = await self._db.fetchval(
            "SELECT COUNT(*) FROM governance_outbox WHERE delivered_at IS NULL"
        )
        return int(value or 0)

    async def is_enabled(self, setting_key: str) -> bool:
        """Whether an announcement kind is switched on (missing rows count as on)."""
        try:
            value = await self._db.fetchval(
                "SELECT enabled FROM announcement_settings WHERE key = $1",
                setting_key,
            )
        except Exception as e:
            logger.warning(
                "Failed to read announcement setting %s, defaulting to enabled: %s",
                setting_key,
                e,
            )
            return True
        return True if value is None else bool(value)

    async def record_announcement(
        self,
        *,
        epoch_id: int | None,
        content: str,
        announcement_type: str,
        post_uri: str | None,
        posted_by: str,
    ) -> None:
        await self._db.execute(
            """
            INSERT INTO announcements
                (epoch_id, post_uri, content, announcement_type, posted_by)
            VALUES ($1, $2, $3, $4, $5)
            """,
            epoch_id,
            post_uri,
            content,
            announcement_type,
            posted_by,
        )


def _row_to_event(row: Any) -> OutboxEvent:
    """Convert an asyncpg Record to an OutboxEvent."""
    payload = row.get("payload")
    if isinstance(payload, str):
        payload = json.loads(payload)
    return OutboxEvent(
        id=row["id"],
        event_type=row["event_type"],
        epoch_id=row.get("epoch_id"),
        payload=payload or {},
        attempts=int(row.get("attempts") or 0),
        last_error=row.get("last_error"),
        available_at=row.get("available_at"),
        delivered_at=row.get("delivered_at"),
        created_at=row["created_at"],
    )


# ---------------------------------------------------------------------------
# Message rendering
# ---------------------------------------------------------------------------


def format_duration(hours: float) -> str:
    """Human readable voting window, e.g. ``3 days`` or ``36 hours``."""
    whole = int(round(hours))
    if whole % 24 == 0 and whole >= 24:
        days = whole // 24
        return f"{days} day" if days == 1 else f"{days} days"
    return f"{whole} hour" if whole == 1 else f"{whole} hours"


def format_weight_delta(label: str, old_value: float, new_value: float) -> str:
    old_pct = round(old_value * 100)
    new_pct = round(new_value * 100)
    delta = new_pct - old_pct
    if delta == 0:
        return f"- {label}: {old_pct}% (unchanged)"
    sign = "+" if delta > 0 else ""
    return f"- {label}: {old_pct}% -> {new_pct}% ({sign}{delta}%)"


def render_announcement(event: OutboxEvent, vote_url: str) -> str:
    """Render an outbox event to announcement text.

    Raises:
        ValueError: The event type has no message template.
    """
    payload = event.payload
    epoch_id = event.epoch_id

    if event.event_type == EVENT_VOTING_OPENED:
        duration = format_duration(float(payload.get("duration_hours", 72)))
        return (
            f"Voting is now open for Round #{epoch_id}.\n\n"
            "Help decide how this feed ranks posts.\n"
            f"Vote here: {vote_url}\n\n"
            f"Voting window: {duration}."
        )

    if event.event_type == EVENT_VOTING_REMINDER:
        return (
            f"Reminder: Voting for Round #{epoch_id} closes in about "
            f"{payload.get('hours_left', 24)} hours.\n\n"
            f"Cast or update your vote: {vote_url}"
        )

    if event.event_type == EVENT_VOTING_CLOSED:
        return (
            f"Voting for Round #{epoch_id} has closed.\n\n"
            f"{payload.get('vote_count', 0)} community member(s) participated.\n"
            "Results are pending admin review."
        )

    if event.event_type == EVENT_RESULTS_APPROVED:
        old_weights = Weights.from_mapping(payload.get("old_weights") or {})
        new_weights = Weights.from_mapping(payload.get("new_weights") or {})
        lines = [f"Round #{epoch_id} results are now live.", ""]
        for param in VOTABLE_WEIGHT_PARAMS:
            lines.append(
                format_weight_delta(
                    param.label,
                    getattr(old_weights, param.key),
                    getattr(new_weights, param.key),
                )
            )

        old_rules = payload.get("old_content_rules") or {}
        new_rules = payload.get("new_content_rules") or {}
        include_added = [
            k for k in new_rules.get("include_keywords", [])
            if k not in old_rules.get("include_keywords", [])
        ]
        exclude_added = [
            k for k in new_rules.get("exclude_keywords", [])
            if k not in old_rules.get("exclude_keywords", [])
        ]
        if include_added or exclude_added:
            lines.extend(["", "Keyword changes:"])
            if include_added:
                lines.append(f"- Added include: {', '.join(include_added)}")
            if exclude_added:
                lines.append(f"- Added exclude: {', '.join(exclude_added)}")
        return "\n".join(lines)

    if event.event_type == EVENT_VOTE_SCHEDULED:
        return (
            f"Next governance vote is scheduled for {payload.get('starts_at')}.\n\n"
            f"Planned duration: {payload.get('duration_hours')} hours.\n"
            "Round will open automatically on schedule."
        )

    raise ValueError(f"No announcement template for event type {event.event_type!r}")


# ---------------------------------------------------------------------------
# Publisher boundary
# ---------------------------------------------------------------------------


class AnnouncementPublisher(Protocol):
    """Posts announcement text to the outside world.

    Returns the published record's URI, or None if the publisher has none.
    Raising marks the delivery failed and schedules a retry.
    """

    async def publish(self, text: str, event: OutboxEvent) -> str | None: ...


class LoggingPublisher:
    """Default publisher: logs the announcement instead of posting it."""

    async def publish(self, text: str, event: OutboxEvent) -> str | None:
        worker_logger.info(
            "Announcement",
            event_type=event.event_type,
            epoch_id=event.epoch_id,
            text=text,
        )
        return None


# ---------------------------------------------------------------------------
# Worker
# ---------------------------------------------------------------------------


class OutboxWorker(PeriodicJob):
    """
    Drains ``governance_outbox`` and publishes announcements.

    Each event is delivered independently: one failing event is rescheduled
    with backoff and never blocks the rest of the batch. Events that exhaust
    ``max_attempts`` stay in the table with ``last_error`` for inspection.

    Usage:
        worker = OutboxWorker(repository, publisher=LoggingPublisher())
        await worker.start()
        ...
        await worker.stop()
    """

    name = "outbox-worker"

    def __init__(
        self,
        repository: OutboxRepository,
        publisher: AnnouncementPublisher | None = None,
        redis_client: redis.Redis | None = None,
        config: OutboxConfig | None = None,
    ) -> None:
        self._config = config or OutboxConfig()
        super().__init__(self._config.poll_interval_seconds)
        self._repo = repository
        self._publisher = publisher or LoggingPublisher()
        self._redis = redis_client
        self._backoff = ExponentialBackoff(
            base_delay=self._config.backoff_base_seconds,
            max_delay=self._config.backoff_max_seconds,
        )
        self._metrics = get_metrics()

        settings = get_settings()
        self._vote_url = f"https://{settings.feedgen_hostname}{self._config.vote_url_path}"
        self._posted_by = settings.feedgen_publisher_did

        self._stats = {"delivered": 0, "skipped": 0, "failed": 0}

    async def _run(self) -> dict[str, int]:
        return await self.drain_once()

    async def drain_once(self) -> dict[str, int]:
        """Deliver one batch of due events.

        Returns:
            Counts of delivered, skipped (disabled) and failed events.
        """
        events = await self._repo.fetch_pending(
            self._config.batch_size, self._config.max_attempts
        )
        counts = {"delivered": 0, "skipped": 0, "failed": 0}

        for event in events:
            if self.stopping.is_set():
                break
            outcome = await self._deliver(event)
            counts[outcome] += 1
            self._stats[outcome] += 1

        if events:
            worker_logger.info("Outbox batch drained", batch_size=len(events), **counts)
        return counts

    async def _deliver(self, event: OutboxEvent) -> str:
        if not await self._repo.is_enabled(event.event_type):
            await self._repo.mark_delivered(event.id)
            worker_logger.debug(
                "Announcement disabled, skipping",
                event_id=event.id,
                event_type=event.event_type,
            )
            return "skipped"

        try:
            text = render_announcement(event, self._vote_url)
            uri = await self._publisher.publish(text, event)
        except Exception as e:
            delay = self._backoff.delay_for_attempt(event.attempts)
            await self._repo.mark_failed(event.id, str(e), delay)
            self._metrics.record_outbox(event.event_type, delivered=False)
            worker_logger.warning(
                "Announcement delivery failed",
                event_id=event.id,
                event_type=event.event_type,
                attempt=event.attempts + 1,
                retry_in_seconds=round(delay, 1),
                error=str(e),
            )
            return "failed"

        await self._repo.mark_delivered(event.id)
        await self._repo.record_announcement(
            epoch_id=event.epoch_id,
            content=text,
            announcement_type=event.event_type,
            post_uri=uri,
            posted_by=self._posted_by,
        )
        if uri:
            await self._pin(uri)

        self._metrics.record_outbox(event.event_type, delivered=True)
        worker_logger.info(
            "Announcement delivered",
            event_id=event.id,
            event_type=event.event_type,
            uri=uri,
        )
        return "delivered"

    async def _pin(self, uri: str) -> None:
        if self._redis is None:
            return
        try:
            await self._redis.set(
                self._config.pin_key,
                json.dumps({
                    "uri": uri,
                    "posted_at": datetime.now(timezone.utc).isoformat(),
                }),
                ex=int(timedelta(days=7).total_seconds()),
            )
        except Exception as e:
            worker_logger.warning("Failed to pin announcement", uri=uri, error=str(e))

    async def health_check(self) -> dict[str, Any]:
        """Check outbox health: worker status plus pending backlog."""
        try:
            pending = await self._repo.count_pending()
        except Exception as e:
            pending = None
            worker_logger.warning("Outbox backlog unavailable", error=str(e))

        return {
            **self.status(),
            "pending": pending,
            "stats": dict(self._stats),
        }
