"""Tests for the governance administration endpoints."""

from datetime import datetime, timezone
from unittest.mock import patch

import pytest

from src.api.auth import verify_admin_key
from src.config.settings import Settings
from src.governance.epoch_manager import TransitionResult
from src.governance.errors import ConflictError, NotFoundError, ValidationError
from src.governance.schemas import ScheduledVote
from src.scoring.schemas import ScoringRunResult

ADMIN = {"X-ADMIN-KEY": "secret", "X-Admin-DID": "did:plc:admin"}


class TestAdminAuth:
    """Tests for X-ADMIN-KEY enforcement."""

    @pytest.fixture
    def auth_client(self, app):
        from fastapi.testclient import TestClient

        app.dependency_overrides.pop(verify_admin_key)
        with TestClient(app) as c:
            yield c

    def test_disabled_without_configured_keys(self, auth_client):
        with patch("src.api.auth.get_settings", return_value=Settings(admin_api_keys=None)):
            resp = auth_client.get("/admin/governance", headers=ADMIN)
        assert resp.status_code == 403

    def test_missing_key(self, auth_client):
        with patch("src.api.auth.get_settings", return_value=Settings(admin_api_keys="secret")):
            resp = auth_client.get("/admin/governance")
        assert resp.status_code == 401

    def test_wrong_key(self, auth_client):
        with patch("src.api.auth.get_settings", return_value=Settings(admin_api_keys="secret")):
            resp = auth_client.get("/admin/governance", headers={"X-ADMIN-KEY": "nope"})
        assert resp.status_code == 401

    def test_valid_key(self, auth_client):
        with patch(
            "src.api.auth.get_settings", return_value=Settings(admin_api_keys="other, secret")
        ):
            resp = auth_client.get("/admin/governance", headers=ADMIN)
        assert resp.status_code == 200


class TestGovernanceStatus:
    """Tests for GET /admin/governance."""

    def test_status(self, client, mock_epoch_manager):
        mock_epoch_manager.votes.count_for_epoch.return_value = 12

        resp = client.get("/admin/governance", headers=ADMIN)

        assert resp.status_code == 200
        data = resp.json()
        assert data["epoch"]["id"] == 1
        assert data["vote_count"] == 12
        assert data["vote_statistics"] is None
        assert data["scheduled_votes"] == []


class TestPhaseTransitions:
    """Tests for the phase-changing admin routes."""

    def test_start_voting(self, client, mock_epoch_manager):
        resp = client.post(
            "/admin/governance/start-voting",
            json={"duration_hours": 48, "announce": False},
            headers=ADMIN,
        )

        assert resp.status_code == 200
        mock_epoch_manager.start_voting.assert_awaited_once_with(
            "did:plc:admin", duration_hours=48, announce=False
        )

    def test_start_voting_wrong_phase(self, client, mock_epoch_manager):
        mock_epoch_manager.start_voting.side_effect = ConflictError(
            "Cannot start voting from voting", code="InvalidPhase"
        )

        resp = client.post("/admin/governance/start-voting", json={}, headers=ADMIN)

        assert resp.status_code == 409
        assert resp.json()["error_type"] == "InvalidPhase"

    def test_start_voting_duration_bounds(self, client):
        resp = client.post(
            "/admin/governance/start-voting", json={"duration_hours": 500}, headers=ADMIN
        )
        assert resp.status_code == 422

    def test_end_voting(self, client, mock_epoch_manager):
        resp = client.post("/admin/governance/end-voting", json={}, headers=ADMIN)
        assert resp.status_code == 200
        mock_epoch_manager.end_voting.assert_awaited_once_with("did:plc:admin", announce=True)

    def test_approve_results(self, client, mock_epoch_manager):
        resp = client.post("/admin/governance/approve-results", json={}, headers=ADMIN)
        assert resp.status_code == 200
        mock_epoch_manager.approve_results.assert_awaited_once_with(
            "did:plc:admin", announce=True
        )

    def test_reject_results(self, client, mock_epoch_manager):
        resp = client.post("/admin/governance/reject-results", headers=ADMIN)
        assert resp.status_code == 200
        mock_epoch_manager.reject_results.assert_awaited_once_with("did:plc:admin")

    def test_extend_voting(self, client, mock_epoch_manager):
        resp = client.post("/admin/governance/extend-voting", json={"hours": 24}, headers=ADMIN)
        assert resp.status_code == 200
        mock_epoch_manager.extend_voting.assert_awaited_once_with("did:plc:admin", 24)

    def test_apply_results(self, client, mock_epoch_manager):
        resp = client.post("/admin/governance/apply-results", headers=ADMIN)
        assert resp.status_code == 200
        mock_epoch_manager.apply_results.assert_awaited_once_with("did:plc:admin")

    def test_admin_did_optional(self, client, mock_epoch_manager):
        resp = client.post(
            "/admin/governance/reject-results", headers={"X-ADMIN-KEY": "secret"}
        )
        assert resp.status_code == 200
        mock_epoch_manager.reject_results.assert_awaited_once_with(None)

    @pytest.mark.parametrize("force,method", [(False, "trigger_transition"), (True, "force_transition")])
    def test_transition(self, client, mock_epoch_manager, epoch_factory, force, method):
        result = TransitionResult(
            closed_epoch_id=1, new_epoch=epoch_factory(id=2), vote_count=3, forced=force
        )
        getattr(mock_epoch_manager, method).return_value = result

        resp = client.post(
            "/admin/governance/transition",
            params={"force": str(force).lower()},
            headers=ADMIN,
        )

        assert resp.status_code == 200
        data = resp.json()
        assert data["closed_epoch_id"] == 1
        assert data["new_epoch"]["id"] == 2
        assert data["forced"] is force
        getattr(mock_epoch_manager, method).assert_awaited_once_with("did:plc:admin")


class TestOverrides:
    """Tests for weight and content-rule overrides."""

    def test_partial_weights(self, client, mock_epoch_manager):
        resp = client.patch(
            "/admin/governance/weights", json={"bridging": 0.5}, headers=ADMIN
        )
        assert resp.status_code == 200
        mock_epoch_manager.override_weights.assert_awaited_once_with(
            "did:plc:admin", {"bridging": 0.5}
        )

    def test_weight_out_of_range(self, client):
        resp = client.patch(
            "/admin/governance/weights", json={"bridging": 1.5}, headers=ADMIN
        )
        assert resp.status_code == 422

    def test_override_validation_error(self, client, mock_epoch_manager):
        mock_epoch_manager.override_weights.side_effect = ValidationError(
            "At least one weight is required", code="InvalidWeights"
        )
        resp = client.patch("/admin/governance/weights", json={}, headers=ADMIN)
        assert resp.status_code == 422
        assert resp.json()["error_type"] == "InvalidWeights"

    def test_content_rules(self, client, mock_epoch_manager):
        resp = client.patch(
            "/admin/governance/content-rules",
            json={"include_keywords": ["rust"], "exclude_keywords": ["spam"]},
            headers=ADMIN,
        )
        assert resp.status_code == 200
        mock_epoch_manager.override_content_rules.assert_awaited_once_with(
            "did:plc:admin", include_keywords=["rust"], exclude_keywords=["spam"]
        )

    def test_add_keyword(self, client, mock_epoch_manager):
        resp = client.post(
            "/admin/governance/content-rules/keyword",
            json={"type": "exclude", "keyword": "Spam"},
            headers=ADMIN,
        )
        assert resp.status_code == 200
        mock_epoch_manager.add_keyword.assert_awaited_once_with("did:plc:admin", "exclude", "Spam")

    def test_add_keyword_bad_type(self, client):
        resp = client.post(
            "/admin/governance/content-rules/keyword",
            json={"type": "maybe", "keyword": "x"},
            headers=ADMIN,
        )
        assert resp.status_code == 422

    def test_remove_missing_keyword(self, client, mock_epoch_manager):
        mock_epoch_manager.remove_keyword.side_effect = NotFoundError(
            "Keyword not found", code="KeywordNotFound"
        )

        resp = client.request(
            "DELETE",
            "/admin/governance/content-rules/keyword",
            json={"type": "include", "keyword": "rust", "confirm": True},
            headers=ADMIN,
        )

        assert resp.status_code == 404
        mock_epoch_manager.remove_keyword.assert_awaited_once_with(
            "did:plc:admin", "include", "rust", confirm=True
        )


class TestScheduling:
    """Tests for scheduled votes."""

    def test_schedule_vote(self, client, mock_epoch_manager):
        starts = datetime(2026, 4, 1, 12, 0, 0, tzinfo=timezone.utc)
        mock_epoch_manager.schedule_vote.return_value = ScheduledVote(
            id=9,
            starts_at=starts,
            duration_hours=72,
            created_by="did:plc:admin",
            announced=True,
            created_at=datetime(2026, 3, 2, tzinfo=timezone.utc),
        )

        resp = client.post(
            "/admin/governance/schedule-vote",
            json={"starts_at": starts.isoformat(), "duration_hours": 72},
            headers=ADMIN,
        )

        assert resp.status_code == 201
        assert resp.json()["scheduled_vote"]["id"] == 9
        args, kwargs = mock_epoch_manager.schedule_vote.call_args
        assert args == ("did:plc:admin", starts)
        assert kwargs == {"duration_hours": 72, "announce": True}

    def test_list_schedule(self, client):
        resp = client.get("/admin/governance/schedule", headers=ADMIN)
        assert resp.status_code == 200
        assert resp.json()["scheduled_votes"] == []


class TestScoringRun:
    """Tests for POST /admin/scoring/run."""

    def test_run(self, client, mock_scoring_scheduler):
        mock_scoring_scheduler.run_once.return_value = ScoringRunResult(
            run_id="abc", epoch_id=1, posts_scored=10, published=10
        )

        resp = client.post("/admin/scoring/run", headers=ADMIN)

        assert resp.status_code == 200
        assert resp.json()["run"]["posts_scored"] == 10

    def test_run_in_progress(self, client):
        resp = client.post("/admin/scoring/run", headers=ADMIN)
        assert resp.status_code == 200
        assert resp.json()["run"] is None
