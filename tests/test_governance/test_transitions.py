"""Tests for phase transition rules and governance schemas."""

from datetime import datetime, timezone

import pytest

from src.governance.errors import ConflictError
from src.governance.schemas import (
    ContentRules,
    Epoch,
    OutboxEvent,
    ScheduledVote,
)
from src.governance.transitions import PhaseTransition, require_phase
from src.governance.weights import Weights


class TestRequirePhase:
    """Tests for require_phase."""

    @pytest.mark.parametrize(
        "operation,current,expected",
        [
            ("start_voting", "running", "voting"),
            ("end_voting", "voting", "results"),
            ("approve_results", "results", "running"),
            ("reject_results", "results", "running"),
        ],
    )
    def test_legal_edges(self, operation, current, expected):
        assert require_phase(operation, current) == expected

    @pytest.mark.parametrize(
        "operation,current,code",
        [
            ("start_voting", "voting", "AlreadyVoting"),
            ("start_voting", "results", "ResultsPending"),
            ("end_voting", "running", "VotingNotOpen"),
            ("approve_results", "voting", "ResultsNotPending"),
            ("reject_results", "running", "ResultsNotPending"),
        ],
    )
    def test_illegal_edges(self, operation, current, code):
        with pytest.raises(ConflictError) as exc_info:
            require_phase(operation, current)
        assert exc_info.value.code == code
        assert exc_info.value.status_code == 409


class TestPhaseTransition:
    """Tests for PhaseTransition serialization."""

    def test_to_dict(self):
        occurred = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
        transition = PhaseTransition(
            epoch_id=3,
            from_phase="voting",
            to_phase="results",
            trigger="scheduled",
            occurred_at=occurred,
            metadata={"vote_count": 12},
        )
        data = transition.to_dict()
        assert data["occurred_at"] == "2026-03-01T12:00:00+00:00"
        assert data["actor_did"] is None
        assert data["metadata"] == {"vote_count": 12}


class TestEpoch:
    """Tests for Epoch validation."""

    def test_invalid_phase(self):
        with pytest.raises(ValueError):
            Epoch(id=1, phase="paused", status="active", weights=Weights.default())

    def test_invalid_status(self):
        with pytest.raises(ValueError):
            Epoch(id=1, phase="running", status="archived", weights=Weights.default())

    def test_legacy_voting_status_maps_to_phase(self):
        epoch = Epoch(id=1, phase="running", status="voting", weights=Weights.default())
        assert epoch.status == "active"
        assert epoch.phase == "voting"
        assert epoch.is_voting_open

    def test_closed_epoch_not_open_for_voting(self):
        epoch = Epoch(id=1, phase="voting", status="closed", weights=Weights.default())
        assert not epoch.is_voting_open

    def test_pending_results(self):
        epoch = Epoch(id=1, phase="results", status="active", weights=Weights.default())
        assert epoch.has_pending_results


class TestSchemas:
    """Tests for the remaining governance records."""

    def test_content_rules_from_camel_case(self):
        rules = ContentRules.from_dict({"includeKeywords": ["rust"], "excludeKeywords": None})
        assert rules.include_keywords == ("rust",)
        assert rules.exclude_keywords == ()
        assert ContentRules.from_dict(None).is_empty

    def test_scheduled_vote_duration_bounds(self):
        starts = datetime(2026, 3, 1, tzinfo=timezone.utc)
        ScheduledVote(starts_at=starts, duration_hours=168, created_by="did:plc:admin")
        with pytest.raises(ValueError):
            ScheduledVote(starts_at=starts, duration_hours=0, created_by="did:plc:admin")
        with pytest.raises(ValueError):
            ScheduledVote(starts_at=starts, duration_hours=169, created_by="did:plc:admin")

    def test_outbox_event_type_validated(self):
        OutboxEvent(event_type="voting_opened", epoch_id=1)
        with pytest.raises(ValueError):
            OutboxEvent(event_type="something_else")
