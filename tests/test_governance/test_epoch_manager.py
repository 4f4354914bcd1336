"""Tests for the epoch lifecycle state machine."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.governance.epoch_manager import EpochManager
from src.governance.errors import (
    ConflictError,
    NoActiveEpochError,
    NotFoundError,
    ValidationError,
)
from src.governance.schemas import ContentRules, ScheduledVote
from src.governance.weights import Weights


@pytest.fixture
def epoch_repo(epoch_factory):
    repo = AsyncMock()
    repo.get_current = AsyncMock(return_value=epoch_factory())
    return repo


@pytest.fixture
def vote_repo():
    repo = AsyncMock()
    repo.count_for_epoch = AsyncMock(return_value=0)
    return repo


@pytest.fixture
def aggregator():
    agg = AsyncMock()
    agg.aggregate_votes = AsyncMock(return_value=None)
    agg.aggregate_content_votes = AsyncMock(return_value=ContentRules())
    agg.has_content_votes = AsyncMock(return_value=False)
    return agg


@pytest.fixture
def audit_repo():
    repo = AsyncMock()
    repo.exists = AsyncMock(return_value=False)
    return repo


@pytest.fixture
def outbox_repo():
    return AsyncMock()


@pytest.fixture
def scheduled_repo():
    repo = AsyncMock()
    repo.claim_due = AsyncMock(return_value=None)
    return repo


@pytest.fixture
def rules_cache():
    return AsyncMock()


@pytest.fixture
def on_results_applied():
    return MagicMock()


@pytest.fixture
def manager(
    mock_database,
    epoch_repo,
    vote_repo,
    audit_repo,
    scheduled_repo,
    outbox_repo,
    aggregator,
    rules_cache,
    on_results_applied,
):
    return EpochManager(
        mock_database,
        epoch_repo=epoch_repo,
        vote_repo=vote_repo,
        audit_repo=audit_repo,
        scheduled_repo=scheduled_repo,
        outbox_repo=outbox_repo,
        aggregator=aggregator,
        rules_cache=rules_cache,
        on_results_applied=on_results_applied,
    )


def _actions(audit_repo) -> list[str]:
    return [call.args[0] for call in audit_repo.append.call_args_list]


def _events(outbox_repo) -> list[str]:
    return [call.args[0].event_type for call in outbox_repo.enqueue.call_args_list]


class TestEnsureEpoch:
    """Tests for bootstrap."""

    @pytest.mark.asyncio
    async def test_existing_epoch_returned(self, manager, epoch_repo, audit_repo):
        epoch = await manager.ensure_epoch()
        assert epoch.id == 1
        epoch_repo.create.assert_not_awaited()
        audit_repo.append.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_creates_first_epoch(self, manager, epoch_repo, audit_repo, epoch_factory):
        epoch_repo.get_current.return_value = None
        epoch_repo.create.return_value = epoch_factory(id=1)

        epoch = await manager.ensure_epoch()

        assert epoch.id == 1
        create_args = epoch_repo.create.call_args.args
        assert create_args[1] == Weights.default()
        assert create_args[2].is_empty
        assert _actions(audit_repo) == ["epoch_created"]

    @pytest.mark.asyncio
    async def test_get_current_without_epoch(self, manager, epoch_repo):
        epoch_repo.get_current.return_value = None
        with pytest.raises(NoActiveEpochError):
            await manager.get_current()


class TestStartVoting:
    """Tests for running -> voting."""

    @pytest.mark.asyncio
    async def test_opens_window_and_announces(
        self, manager, epoch_repo, epoch_factory, audit_repo, outbox_repo, rules_cache
    ):
        epoch_repo.start_voting.return_value = epoch_factory(phase="voting")

        before = datetime.now(timezone.utc)
        epoch = await manager.start_voting("did:plc:admin", duration_hours=48)

        assert epoch.phase == "voting"
        ends_at = epoch_repo.start_voting.call_args.args[2]
        assert before + timedelta(hours=48) <= ends_at <= datetime.now(timezone.utc) + timedelta(hours=48)
        assert _actions(audit_repo) == ["admin_start_voting"]
        assert audit_repo.append.call_args.kwargs["actor_did"] == "did:plc:admin"
        assert _events(outbox_repo) == ["voting_opened"]
        rules_cache.invalidate.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_no_announcement(self, manager, epoch_repo, epoch_factory, outbox_repo):
        epoch_repo.start_voting.return_value = epoch_factory(phase="voting")
        await manager.start_voting("did:plc:admin", announce=False)
        outbox_repo.enqueue.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_already_voting(self, manager, epoch_repo, epoch_factory, audit_repo):
        epoch_repo.get_current.return_value = epoch_factory(phase="voting")
        with pytest.raises(ConflictError) as exc_info:
            await manager.start_voting("did:plc:admin")
        assert exc_info.value.code == "AlreadyVoting"
        audit_repo.append.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_results_pending(self, manager, epoch_repo, epoch_factory):
        epoch_repo.get_current.return_value = epoch_factory(phase="results")
        with pytest.raises(ConflictError) as exc_info:
            await manager.start_voting("did:plc:admin")
        assert exc_info.value.code == "ResultsPending"

    @pytest.mark.asyncio
    async def test_invalid_duration(self, manager):
        with pytest.raises(ValidationError) as exc_info:
            await manager.start_voting("did:plc:admin", duration_hours=200)
        assert exc_info.value.code == "InvalidDuration"


class TestEndVoting:
    """Tests for voting -> results."""

    @pytest.fixture
    def voting_epoch(self, epoch_repo, epoch_factory):
        epoch = epoch_factory(
            phase="voting",
            auto_transition=True,
            voting_ends_at=datetime.now(timezone.utc) - timedelta(minutes=5),
            content_rules=ContentRules(include_keywords=("rust",)),
        )
        epoch_repo.get_current.return_value = epoch
        epoch_repo.close_voting.return_value = epoch_factory(phase="results")
        return epoch

    @pytest.mark.asyncio
    async def test_stores_aggregate_as_proposal(
        self, manager, voting_epoch, epoch_repo, vote_repo, aggregator, audit_repo, outbox_repo
    ):
        proposed = Weights(0.4, 0.3, 0.1, 0.1, 0.1)
        vote_repo.count_for_epoch.return_value = 6
        aggregator.aggregate_votes.return_value = proposed

        epoch = await manager.end_voting("did:plc:admin")

        assert epoch.phase == "results"
        args = epoch_repo.close_voting.call_args.args
        assert args[2] == proposed
        # No keyword ballots: live rules carried into the proposal
        assert args[3] == voting_epoch.content_rules
        assert args[4] == 6
        assert epoch_repo.close_voting.call_args.kwargs["require_expired"] is False
        assert _actions(audit_repo) == ["admin_end_voting"]
        assert _events(outbox_repo) == ["voting_closed"]

    @pytest.mark.asyncio
    async def test_no_ballots_keeps_live_weights(self, manager, voting_epoch, epoch_repo):
        await manager.end_voting("did:plc:admin")
        assert epoch_repo.close_voting.call_args.args[2] == voting_epoch.weights

    @pytest.mark.asyncio
    async def test_keyword_ballots_replace_rules(self, manager, voting_epoch, epoch_repo, aggregator):
        aggregator.has_content_votes.return_value = True
        aggregator.aggregate_content_votes.return_value = ContentRules(exclude_keywords=("spam",))

        await manager.end_voting("did:plc:admin")

        assert epoch_repo.close_voting.call_args.args[3] == ContentRules(exclude_keywords=("spam",))

    @pytest.mark.asyncio
    async def test_scheduled_close_requires_expiry(self, manager, epoch_repo, epoch_factory):
        epoch_repo.get_current.return_value = epoch_factory(
            phase="voting",
            auto_transition=True,
            voting_ends_at=datetime.now(timezone.utc) + timedelta(hours=2),
        )
        with pytest.raises(ConflictError) as exc_info:
            await manager.end_voting(None, "scheduled")
        assert exc_info.value.code == "VotingNotExpired"
        epoch_repo.close_voting.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_scheduled_close(self, manager, voting_epoch, epoch_repo, audit_repo):
        await manager.end_voting(None, "scheduled", expected_epoch_id=voting_epoch.id)
        assert epoch_repo.close_voting.call_args.kwargs["require_expired"] is True
        assert _actions(audit_repo) == ["auto_end_voting"]

    @pytest.mark.asyncio
    async def test_lost_race(self, manager, voting_epoch, epoch_repo, audit_repo):
        epoch_repo.close_voting.return_value = None
        with pytest.raises(ConflictError) as exc_info:
            await manager.end_voting(None, "scheduled")
        assert exc_info.value.code == "VotingNotOpen"
        audit_repo.append.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_expected_epoch_mismatch(self, manager, voting_epoch):
        with pytest.raises(ConflictError):
            await manager.end_voting(None, "scheduled", expected_epoch_id=99)

    @pytest.mark.asyncio
    async def test_not_voting(self, manager):
        with pytest.raises(ConflictError) as exc_info:
            await manager.end_voting("did:plc:admin")
        assert exc_info.value.code == "VotingNotOpen"


class TestResults:
    """Tests for approving and rejecting results."""

    @pytest.fixture
    def results_epoch(self, epoch_repo, epoch_factory):
        epoch = epoch_factory(
            phase="results",
            proposed_weights=Weights(0.5, 0.5, 0.0, 0.0, 0.0),
            proposed_content_rules=ContentRules(include_keywords=("rust",)),
            vote_count=7,
        )
        epoch_repo.get_current.return_value = epoch
        epoch_repo.apply_results.return_value = epoch_factory(phase="running")
        epoch_repo.discard_results.return_value = epoch_factory(phase="running")
        return epoch

    @pytest.mark.asyncio
    async def test_approve_applies_proposal(
        self, manager, results_epoch, epoch_repo, audit_repo, outbox_repo, on_results_applied
    ):
        await manager.approve_results("did:plc:admin")

        args = epoch_repo.apply_results.call_args.args
        assert args[2] == Weights(0.5, 0.5, 0.0, 0.0, 0.0)
        assert args[3] == ContentRules(include_keywords=("rust",))
        assert epoch_repo.apply_results.call_args.kwargs["approved_by"] == "did:plc:admin"
        assert _actions(audit_repo) == ["admin_approve_results"]
        assert _events(outbox_repo) == ["results_approved"]
        on_results_applied.assert_called_once()

    @pytest.mark.asyncio
    async def test_rescore_failure_does_not_fail_approval(
        self, manager, results_epoch, on_results_applied
    ):
        on_results_applied.side_effect = RuntimeError("scheduler stopped")
        epoch = await manager.approve_results("did:plc:admin")
        assert epoch.phase == "running"

    @pytest.mark.asyncio
    async def test_reject_discards_proposal(
        self, manager, results_epoch, epoch_repo, audit_repo, on_results_applied
    ):
        await manager.reject_results("did:plc:admin")

        epoch_repo.discard_results.assert_awaited_once()
        epoch_repo.apply_results.assert_not_awaited()
        details = audit_repo.append.call_args.kwargs["details"]
        assert details["discarded_weights"]["recency"] == 0.5
        on_results_applied.assert_not_called()

    @pytest.mark.asyncio
    async def test_approve_without_pending_results(self, manager):
        with pytest.raises(ConflictError) as exc_info:
            await manager.approve_results("did:plc:admin")
        assert exc_info.value.code == "ResultsNotPending"


class TestExtendAndApply:
    """Tests for extend_voting and apply_results."""

    @pytest.mark.asyncio
    async def test_extend_from_current_end(self, manager, epoch_repo, epoch_factory, audit_repo):
        ends_at = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
        epoch_repo.get_current.return_value = epoch_factory(phase="voting", voting_ends_at=ends_at)
        epoch_repo.extend_voting.return_value = epoch_factory(phase="voting")

        await manager.extend_voting("did:plc:admin", 24)

        assert epoch_repo.extend_voting.call_args.args[2] == ends_at + timedelta(hours=24)
        assert _actions(audit_repo) == ["admin_extend_voting"]

    @pytest.mark.asyncio
    async def test_extend_requires_open_voting(self, manager):
        with pytest.raises(ConflictError):
            await manager.extend_voting("did:plc:admin", 24)

    @pytest.mark.asyncio
    async def test_apply_with_votes(
        self, manager, epoch_repo, epoch_factory, vote_repo, aggregator, on_results_applied
    ):
        vote_repo.count_for_epoch.return_value = 3
        aggregator.aggregate_votes.return_value = Weights(0.6, 0.1, 0.1, 0.1, 0.1)
        epoch_repo.apply_results.return_value = epoch_factory()

        await manager.apply_results("did:plc:admin")

        args = epoch_repo.apply_results.call_args
        assert args.args[2] == Weights(0.6, 0.1, 0.1, 0.1, 0.1)
        assert args.kwargs["vote_count"] == 3
        on_results_applied.assert_called_once()

    @pytest.mark.asyncio
    async def test_apply_without_votes_keeps_live_values(
        self, manager, epoch_repo, epoch_factory, aggregator
    ):
        epoch_repo.apply_results.return_value = epoch_factory()
        await manager.apply_results("did:plc:admin")
        aggregator.aggregate_votes.assert_not_awaited()
        assert epoch_repo.apply_results.call_args.args[2] == Weights.default()


class TestRollover:
    """Tests for forced and vote-triggered transitions."""

    @pytest.fixture(autouse=True)
    def new_epoch(self, epoch_repo, epoch_factory):
        epoch_repo.create.return_value = epoch_factory(id=2)

    @pytest.mark.asyncio
    async def test_insufficient_votes(self, manager, vote_repo, epoch_repo):
        vote_repo.count_for_epoch.return_value = 2
        with pytest.raises(ConflictError) as exc_info:
            await manager.trigger_transition("did:plc:admin")
        assert exc_info.value.code == "InsufficientVotes"
        epoch_repo.close.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_trigger_with_enough_votes(
        self, manager, vote_repo, epoch_repo, aggregator, audit_repo, on_results_applied
    ):
        vote_repo.count_for_epoch.return_value = 5
        aggregator.aggregate_votes.return_value = Weights(0.4, 0.2, 0.2, 0.1, 0.1)

        result = await manager.trigger_transition("did:plc:admin")

        assert result.closed_epoch_id == 1
        assert result.new_epoch.id == 2
        assert result.forced is False
        epoch_repo.close.assert_awaited_once()
        assert epoch_repo.create.call_args.args[1] == Weights(0.4, 0.2, 0.2, 0.1, 0.1)
        assert _actions(audit_repo) == ["epoch_closed", "epoch_created"]
        on_results_applied.assert_called_once()

    @pytest.mark.asyncio
    async def test_force_ignores_turnout(self, manager, epoch_repo):
        result = await manager.force_transition("did:plc:admin")
        assert result.forced is True
        assert result.vote_count == 0
        # No ballots: previous weights carried over
        assert epoch_repo.create.call_args.args[1] == Weights.default()
        assert result.to_dict()["new_epoch_id"] == 2


class TestOverrides:
    """Tests for admin weight and keyword overrides."""

    @pytest.mark.asyncio
    async def test_override_weights_merges_and_normalizes(
        self, manager, epoch_repo, epoch_factory, on_results_applied
    ):
        epoch_repo.update_weights.return_value = epoch_factory()
        await manager.override_weights("did:plc:admin", {"recency": 0.6})

        weights = epoch_repo.update_weights.call_args.args[2]
        assert abs(weights.total() - 1.0) < 1e-6
        assert weights.recency == pytest.approx(0.6 / 1.4, abs=0.001)
        on_results_applied.assert_called_once()

    @pytest.mark.asyncio
    async def test_override_weights_requires_values(self, manager):
        with pytest.raises(ValidationError):
            await manager.override_weights("did:plc:admin", {})

    @pytest.mark.asyncio
    async def test_override_content_rules_partial(self, manager, epoch_repo, epoch_factory):
        epoch_repo.get_current.return_value = epoch_factory(
            content_rules=ContentRules(include_keywords=("rust",), exclude_keywords=("spam",))
        )
        epoch_repo.update_content_rules.return_value = epoch_factory()

        await manager.override_content_rules("did:plc:admin", exclude_keywords=["Ads", "ads"])

        rules = epoch_repo.update_content_rules.call_args.args[2]
        assert rules.include_keywords == ("rust",)
        assert rules.exclude_keywords == ("ads",)

    @pytest.mark.asyncio
    async def test_override_content_rules_requires_a_list(self, manager):
        with pytest.raises(ValidationError):
            await manager.override_content_rules("did:plc:admin")

    @pytest.mark.asyncio
    async def test_add_keyword(self, manager, epoch_repo, epoch_factory, audit_repo, rules_cache):
        epoch_repo.update_content_rules.return_value = epoch_factory()
        await manager.add_keyword("did:plc:admin", "include", "  Rust ")

        rules = epoch_repo.update_content_rules.call_args.args[2]
        assert rules.include_keywords == ("rust",)
        assert audit_repo.append.call_args.kwargs["details"] == {"type": "include", "keyword": "rust"}
        rules_cache.invalidate.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_add_duplicate_keyword(self, manager, epoch_repo, epoch_factory):
        epoch_repo.get_current.return_value = epoch_factory(
            content_rules=ContentRules(include_keywords=("rust",))
        )
        with pytest.raises(ConflictError):
            await manager.add_keyword("did:plc:admin", "include", "RUST")

    @pytest.mark.asyncio
    async def test_add_keyword_bad_type(self, manager):
        with pytest.raises(ValidationError):
            await manager.add_keyword("did:plc:admin", "maybe", "rust")

    @pytest.mark.asyncio
    async def test_add_keyword_list_full(self, manager, epoch_repo, epoch_factory):
        epoch_repo.get_current.return_value = epoch_factory(
            content_rules=ContentRules(exclude_keywords=tuple(f"k{i}" for i in range(20)))
        )
        with pytest.raises(ValidationError):
            await manager.add_keyword("did:plc:admin", "exclude", "one-more")

    @pytest.mark.asyncio
    async def test_remove_missing_keyword(self, manager):
        with pytest.raises(NotFoundError):
            await manager.remove_keyword("did:plc:admin", "exclude", "spam")

    @pytest.mark.asyncio
    async def test_remove_last_include_needs_confirm(self, manager, epoch_repo, epoch_factory):
        epoch_repo.get_current.return_value = epoch_factory(
            content_rules=ContentRules(include_keywords=("rust",))
        )
        epoch_repo.update_content_rules.return_value = epoch_factory()

        with pytest.raises(ConflictError) as exc_info:
            await manager.remove_keyword("did:plc:admin", "include", "rust")
        assert exc_info.value.code == "ConfirmationRequired"

        await manager.remove_keyword("did:plc:admin", "include", "rust", confirm=True)
        assert epoch_repo.update_content_rules.call_args.args[2].include_keywords == ()


class TestScheduling:
    """Tests for scheduled votes and reminders."""

    @pytest.mark.asyncio
    async def test_schedule_vote_in_future(self, manager, scheduled_repo, outbox_repo):
        starts_at = datetime.now(timezone.utc) + timedelta(days=1)
        scheduled_repo.create.return_value = ScheduledVote(
            id=8, starts_at=starts_at, duration_hours=48, created_by="did:plc:admin"
        )

        scheduled = await manager.schedule_vote("did:plc:admin", starts_at, 48)

        assert scheduled.id == 8
        assert scheduled.announced is True
        assert _events(outbox_repo) == ["vote_scheduled"]
        scheduled_repo.mark_announced.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_schedule_vote_in_past(self, manager):
        with pytest.raises(ValidationError) as exc_info:
            await manager.schedule_vote(
                "did:plc:admin", datetime.now(timezone.utc) - timedelta(hours=1)
            )
        assert exc_info.value.code == "InvalidStartTime"

    @pytest.mark.asyncio
    async def test_naive_start_time_treated_as_utc(self, manager, scheduled_repo):
        starts_at = datetime.now(timezone.utc).replace(tzinfo=None) + timedelta(days=1)
        scheduled_repo.create.return_value = ScheduledVote(
            id=1, starts_at=starts_at, duration_hours=72, created_by="did:plc:admin"
        )
        await manager.schedule_vote("did:plc:admin", starts_at, announce=False)
        created = scheduled_repo.create.call_args.args[0]
        assert created.starts_at.tzinfo is timezone.utc

    @pytest.mark.asyncio
    async def test_start_scheduled_vote_nothing_due(self, manager, epoch_repo):
        assert await manager.start_scheduled_vote() is None
        epoch_repo.start_voting.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_start_scheduled_vote(self, manager, scheduled_repo, epoch_repo, epoch_factory):
        scheduled_repo.claim_due.return_value = ScheduledVote(
            id=5,
            starts_at=datetime.now(timezone.utc) - timedelta(minutes=1),
            duration_hours=24,
            created_by="did:plc:admin",
        )
        epoch_repo.start_voting.return_value = epoch_factory(phase="voting")

        epoch = await manager.start_scheduled_vote()

        assert epoch.phase == "voting"
        scheduled_repo.mark_started.assert_awaited_once()
        assert scheduled_repo.mark_started.call_args.args[1] == 5

    @pytest.mark.asyncio
    async def test_scheduled_vote_skipped_when_voting(
        self, manager, scheduled_repo, epoch_repo, epoch_factory, audit_repo
    ):
        scheduled_repo.claim_due.return_value = ScheduledVote(
            id=5,
            starts_at=datetime.now(timezone.utc),
            duration_hours=24,
            created_by="did:plc:admin",
        )
        epoch_repo.get_current.return_value = epoch_factory(phase="voting")

        assert await manager.start_scheduled_vote() is None
        scheduled_repo.mark_started.assert_awaited_once()
        assert _actions(audit_repo) == ["scheduled_vote_skipped"]

    @pytest.mark.asyncio
    async def test_reminder_inside_window(self, manager, epoch_repo, epoch_factory, outbox_repo):
        epoch_repo.get_current.return_value = epoch_factory(
            phase="voting", voting_ends_at=datetime.now(timezone.utc) + timedelta(hours=10)
        )
        assert await manager.send_reminder_if_due() is True
        assert _events(outbox_repo) == ["voting_reminder_24h"]
        assert outbox_repo.enqueue.call_args.args[0].payload == {"hours_left": 10}

    @pytest.mark.asyncio
    async def test_reminder_sent_once(self, manager, epoch_repo, epoch_factory, audit_repo, outbox_repo):
        epoch_repo.get_current.return_value = epoch_factory(
            phase="voting", voting_ends_at=datetime.now(timezone.utc) + timedelta(hours=10)
        )
        audit_repo.exists.return_value = True
        assert await manager.send_reminder_if_due() is False
        outbox_repo.enqueue.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_reminder_too_early(self, manager, epoch_repo, epoch_factory):
        epoch_repo.get_current.return_value = epoch_factory(
            phase="voting", voting_ends_at=datetime.now(timezone.utc) + timedelta(hours=48)
        )
        assert await manager.send_reminder_if_due() is False


class TestRowLocking:
    """Every phase change locks the current row on its own transaction."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("phase", "operation"),
        [
            ("running", lambda m: m.start_voting("did:plc:admin")),
            ("voting", lambda m: m.end_voting("did:plc:admin")),
            ("results", lambda m: m.approve_results("did:plc:admin")),
            ("results", lambda m: m.reject_results("did:plc:admin")),
        ],
    )
    async def test_locks_current_epoch_in_transaction(
        self, manager, epoch_repo, epoch_factory, mock_conn, phase, operation
    ):
        epoch_repo.get_current.return_value = epoch_factory(phase=phase)
        for method in ("start_voting", "close_voting", "apply_results", "discard_results"):
            getattr(epoch_repo, method).return_value = epoch_factory()

        await operation(manager)

        epoch_repo.get_current.assert_awaited_once_with(mock_conn, for_update=True)
