"""Tests for the announcement outbox."""

import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from src.governance.config import OutboxConfig
from src.governance.outbox import (
    OutboxRepository,
    OutboxWorker,
    _row_to_event,
    format_duration,
    format_weight_delta,
    render_announcement,
)
from src.governance.schemas import OutboxEvent

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def _event(event_type: str = "voting_opened", **overrides) -> OutboxEvent:
    values = {
        "id": 1,
        "event_type": event_type,
        "epoch_id": 3,
        "payload": {"duration_hours": 72},
    }
    values.update(overrides)
    return OutboxEvent(**values)


class TestRendering:
    """Tests for announcement text."""

    def test_format_duration(self):
        assert format_duration(72) == "3 days"
        assert format_duration(24) == "1 day"
        assert format_duration(36) == "36 hours"
        assert format_duration(1) == "1 hour"

    def test_format_weight_delta(self):
        assert format_weight_delta("Recency", 0.2, 0.2) == "- Recency: 20% (unchanged)"
        assert format_weight_delta("Recency", 0.2, 0.35) == "- Recency: 20% -> 35% (+15%)"
        assert format_weight_delta("Recency", 0.3, 0.1) == "- Recency: 30% -> 10% (-20%)"

    def test_voting_opened(self):
        text = render_announcement(_event(), "https://feed.example.com/vote")
        assert "Round #3" in text
        assert "https://feed.example.com/vote" in text
        assert "3 days" in text

    def test_results_approved_lists_changes(self):
        default = {k: 0.2 for k in ("recency", "engagement", "bridging", "source_diversity", "relevance")}
        event = _event(
            "results_approved",
            payload={
                "old_weights": default,
                "new_weights": {**default, "recency": 0.3, "relevance": 0.1},
                "old_content_rules": {"include_keywords": [], "exclude_keywords": []},
                "new_content_rules": {"include_keywords": ["rust"], "exclude_keywords": []},
            },
        )
        text = render_announcement(event, "https://x/vote")
        assert "- Recency: 20% -> 30% (+10%)" in text
        assert "- Bridging: 20% (unchanged)" in text
        assert "- Added include: rust" in text
        assert "Added exclude" not in text

    def test_every_event_type_renders(self):
        for event_type, payload in [
            ("voting_reminder_24h", {"hours_left": 5}),
            ("voting_closed", {"vote_count": 9}),
            ("vote_scheduled", {"starts_at": "2026-03-02T00:00:00+00:00", "duration_hours": 48}),
        ]:
            text = render_announcement(_event(event_type, payload=payload), "https://x/vote")
            assert text


class TestOutboxRepository:
    """Tests for OutboxRepository."""

    @pytest.mark.asyncio
    async def test_enqueue_inside_transaction(self, mock_conn):
        db = AsyncMock()
        mock_conn.fetchval.return_value = 42
        event = _event(id=None)

        event_id = await OutboxRepository(db).enqueue(event, conn=mock_conn)

        assert event_id == 42
        assert event.id == 42
        db.fetchval.assert_not_called()
        assert mock_conn.fetchval.call_args.args[1:] == ("voting_opened", 3, {"duration_hours": 72})

    @pytest.mark.asyncio
    async def test_is_enabled_defaults_on(self):
        db = AsyncMock()
        db.fetchval.return_value = None
        assert await OutboxRepository(db).is_enabled("voting_opened") is True

        db.fetchval.return_value = False
        assert await OutboxRepository(db).is_enabled("voting_opened") is False

        db.fetchval.side_effect = RuntimeError("missing table")
        assert await OutboxRepository(db).is_enabled("voting_opened") is True

    def test_row_to_event_text_payload(self):
        event = _row_to_event({
            "id": 7,
            "event_type": "voting_closed",
            "epoch_id": 2,
            "payload": json.dumps({"vote_count": 4}),
            "attempts": 2,
            "created_at": NOW,
        })
        assert event.payload == {"vote_count": 4}
        assert event.attempts == 2


class TestOutboxWorker:
    """Tests for OutboxWorker.drain_once."""

    @pytest.fixture
    def repo(self):
        repo = AsyncMock()
        repo.fetch_pending = AsyncMock(return_value=[])
        repo.is_enabled = AsyncMock(return_value=True)
        repo.count_pending = AsyncMock(return_value=0)
        return repo

    @pytest.fixture
    def publisher(self):
        pub = AsyncMock()
        pub.publish = AsyncMock(return_value="at://did:plc:bot/app.bsky.feed.post/1")
        return pub

    @pytest.fixture
    def config(self):
        return OutboxConfig(backoff_base_seconds=30.0, backoff_max_seconds=3600.0)

    @pytest.mark.asyncio
    async def test_delivers_and_pins(self, repo, publisher, config, mock_redis):
        repo.fetch_pending.return_value = [_event()]
        worker = OutboxWorker(repo, publisher=publisher, redis_client=mock_redis, config=config)

        counts = await worker.drain_once()

        assert counts == {"delivered": 1, "skipped": 0, "failed": 0}
        repo.mark_delivered.assert_awaited_once_with(1)
        repo.record_announcement.assert_awaited_once()
        assert repo.record_announcement.call_args.kwargs["post_uri"].startswith("at://")
        key, value = mock_redis.set.call_args.args
        assert key == "bot:latest_announcement"
        assert json.loads(value)["uri"].startswith("at://")

    @pytest.mark.asyncio
    async def test_disabled_announcement_skipped(self, repo, publisher, config):
        repo.fetch_pending.return_value = [_event()]
        repo.is_enabled.return_value = False
        worker = OutboxWorker(repo, publisher=publisher, config=config)

        counts = await worker.drain_once()

        assert counts["skipped"] == 1
        publisher.publish.assert_not_awaited()
        repo.mark_delivered.assert_awaited_once_with(1)

    @pytest.mark.asyncio
    async def test_failure_reschedules_without_blocking_batch(self, repo, publisher, config):
        repo.fetch_pending.return_value = [_event(id=1, attempts=2), _event(id=2)]
        publisher.publish.side_effect = [RuntimeError("network down"), None]
        worker = OutboxWorker(repo, publisher=publisher, config=config)

        counts = await worker.drain_once()

        assert counts == {"delivered": 1, "skipped": 0, "failed": 1}
        event_id, error, delay = repo.mark_failed.call_args.args
        assert event_id == 1
        assert error == "network down"
        # attempt 2 -> 30 * 2^2 = 120 seconds, +/-50% jitter
        assert 60.0 <= delay <= 180.0
        repo.mark_delivered.assert_awaited_once_with(2)

    @pytest.mark.asyncio
    async def test_publisher_without_uri_not_pinned(self, repo, publisher, config, mock_redis):
        repo.fetch_pending.return_value = [_event()]
        publisher.publish.return_value = None
        worker = OutboxWorker(repo, publisher=publisher, redis_client=mock_redis, config=config)

        await worker.drain_once()

        mock_redis.set.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_health_check(self, repo, config):
        repo.count_pending.return_value = 3
        worker = OutboxWorker(repo, config=config)
        health = await worker.health_check()
        assert health["pending"] == 3
        assert health["job"] == "outbox-worker"
        assert health["stats"] == {"delivered": 0, "skipped": 0, "failed": 0}
