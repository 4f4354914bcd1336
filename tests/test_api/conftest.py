"""Shared fixtures for API tests."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from src.api.app import create_app
from src.api.auth import verify_admin_key, verify_api_key
from src.api.dependencies import (
    get_database,
    get_epoch_manager,
    get_feed_service,
    get_redis_client,
    get_scoring_scheduler,
    get_transparency_service,
    get_vote_service,
)
from src.feed.service import FeedPage
from src.governance.schemas import Vote
from src.governance.votes import VoteReceipt
from src.governance.weights import Weights


def _make_vote(**overrides) -> Vote:
    """Helper to create a Vote with sensible defaults."""
    values = {
        "voter_did": "did:plc:voter",
        "epoch_id": 1,
        "weights": Weights(0.4, 0.2, 0.2, 0.1, 0.1),
        "include_keywords": ["rust"],
        "exclude_keywords": [],
        "voted_at": datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc),
    }
    values.update(overrides)
    return Vote(**values)


@pytest.fixture
def api_database(epoch_row_factory):
    """Mock Database for /health; the current epoch row is id 1."""
    db = AsyncMock()
    db.health_check = AsyncMock(return_value=True)
    db.fetchrow = AsyncMock(return_value=epoch_row_factory())
    return db


@pytest.fixture
def mock_feed_service():
    """Mock FeedService."""
    service = MagicMock()
    service.get_feed_skeleton = AsyncMock(return_value=FeedPage())
    service.track_subscriber = AsyncMock()
    service.describe = MagicMock(return_value={
        "did": "did:web:feed.example.com",
        "feeds": [{"uri": "at://did:plc:publisher/app.bsky.feed.generator/community-gov"}],
    })
    return service


@pytest.fixture
def mock_vote_service():
    """Mock VoteService."""
    service = AsyncMock()
    service.cast_vote = AsyncMock(return_value=VoteReceipt(vote=_make_vote(), is_new=True))
    service.get_vote = AsyncMock(return_value=None)
    return service


@pytest.fixture
def mock_epoch_manager(epoch_factory):
    """Mock EpochManager; every mutation returns the running epoch."""
    manager = MagicMock()
    epoch = epoch_factory()
    manager.get_current = AsyncMock(return_value=epoch)
    manager.list_scheduled = AsyncMock(return_value=[])
    manager.votes.count_for_epoch = AsyncMock(return_value=0)
    manager.aggregator.vote_statistics = AsyncMock(return_value=None)
    for name in (
        "start_voting",
        "end_voting",
        "approve_results",
        "reject_results",
        "extend_voting",
        "apply_results",
        "override_weights",
        "override_content_rules",
        "add_keyword",
        "remove_keyword",
    ):
        setattr(manager, name, AsyncMock(return_value=epoch))
    manager.schedule_vote = AsyncMock()
    manager.trigger_transition = AsyncMock()
    manager.force_transition = AsyncMock()
    return manager


@pytest.fixture
def mock_transparency_service():
    """Mock TransparencyService."""
    return AsyncMock()


@pytest.fixture
def mock_scoring_scheduler():
    """Mock ScoringScheduler."""
    scheduler = MagicMock()
    scheduler.run_once = AsyncMock(return_value=None)
    return scheduler


@pytest.fixture
def app(
    api_database,
    mock_redis,
    mock_feed_service,
    mock_vote_service,
    mock_epoch_manager,
    mock_transparency_service,
    mock_scoring_scheduler,
):
    """Application with every service dependency overridden."""
    app = create_app()

    app.dependency_overrides[verify_api_key] = lambda: "test-key"
    app.dependency_overrides[verify_admin_key] = lambda: "test-admin-key"
    app.dependency_overrides[get_database] = lambda: api_database
    app.dependency_overrides[get_redis_client] = lambda: mock_redis
    app.dependency_overrides[get_feed_service] = lambda: mock_feed_service
    app.dependency_overrides[get_vote_service] = lambda: mock_vote_service
    app.dependency_overrides[get_epoch_manager] = lambda: mock_epoch_manager
    app.dependency_overrides[get_transparency_service] = lambda: mock_transparency_service
    app.dependency_overrides[get_scoring_scheduler] = lambda: mock_scoring_scheduler

    yield app

    app.dependency_overrides.clear()


@pytest.fixture
def client(app):
    """FastAPI TestClient with dependency overrides."""
    with TestClient(app) as c:
        yield c


@pytest.fixture
def vote_factory():
    """Build Vote objects with sensible defaults."""
    return _make_vote
