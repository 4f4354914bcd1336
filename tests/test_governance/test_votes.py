"""Tests for ballot validation and casting."""

from unittest.mock import AsyncMock

import pytest

from src.governance.errors import ConflictError, NoActiveEpochError, ValidationError
from src.governance.votes import NotSubscribedError, VoteService, parse_ballot_weights

VALID_WEIGHTS = {
    "recency": 0.3,
    "engagement": 0.2,
    "bridging": 0.2,
    "source_diversity": 0.2,
    "relevance": 0.1,
}


class TestParseBallotWeights:
    """Tests for parse_ballot_weights."""

    def test_absent_weights(self):
        assert parse_ballot_weights(None) is None
        assert parse_ballot_weights({}) is None

    def test_valid_weights(self):
        weights = parse_ballot_weights(VALID_WEIGHTS)
        assert weights.recency == 0.3

    def test_partial_weights_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            parse_ballot_weights({"recency": 1.0})
        assert "missing" in exc_info.value.message

    def test_out_of_range_rejected(self):
        with pytest.raises(ValidationError):
            parse_ballot_weights({**VALID_WEIGHTS, "recency": 1.5})
        with pytest.raises(ValidationError):
            parse_ballot_weights({**VALID_WEIGHTS, "recency": -0.1})

    def test_non_numeric_rejected(self):
        with pytest.raises(ValidationError):
            parse_ballot_weights({**VALID_WEIGHTS, "recency": "0.3"})
        with pytest.raises(ValidationError):
            parse_ballot_weights({**VALID_WEIGHTS, "recency": True})
        with pytest.raises(ValidationError):
            parse_ballot_weights({**VALID_WEIGHTS, "recency": float("nan")})

    def test_bad_sum_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            parse_ballot_weights({**VALID_WEIGHTS, "recency": 0.5})
        assert exc_info.value.code == "InvalidWeightSum"

    def test_sum_within_tolerance_accepted(self):
        assert parse_ballot_weights({**VALID_WEIGHTS, "relevance": 0.105}) is not None


class TestVoteService:
    """Tests for VoteService.cast_vote and get_vote."""

    @pytest.fixture
    def epoch_repo(self, epoch_factory):
        repo = AsyncMock()
        repo.get_current = AsyncMock(return_value=epoch_factory(id=3, phase="voting"))
        return repo

    @pytest.fixture
    def vote_repo(self):
        repo = AsyncMock()
        repo.is_active_subscriber = AsyncMock(return_value=True)
        repo.upsert = AsyncMock(return_value=True)
        repo.get = AsyncMock(return_value=None)
        return repo

    @pytest.fixture
    def audit_repo(self):
        return AsyncMock()

    @pytest.fixture
    def service(self, mock_database, epoch_repo, vote_repo, audit_repo):
        return VoteService(
            mock_database,
            epoch_repo=epoch_repo,
            vote_repo=vote_repo,
            audit_repo=audit_repo,
        )

    @pytest.mark.asyncio
    async def test_cast_new_vote(self, service, vote_repo, audit_repo, mock_conn):
        receipt = await service.cast_vote(
            "did:plc:alice", VALID_WEIGHTS, include_keywords=["  Rust", "rust"]
        )

        assert receipt.is_new is True
        assert receipt.vote.epoch_id == 3
        assert receipt.vote.include_keywords == ["rust"]
        assert abs(receipt.vote.weights.total() - 1.0) < 1e-6
        vote_repo.upsert.assert_awaited_once_with(receipt.vote, conn=mock_conn)

        audit_repo.append.assert_awaited_once()
        assert audit_repo.append.call_args.args == ("vote_cast",)
        assert audit_repo.append.call_args.kwargs["details"] == {
            "has_weights": True,
            "include_count": 1,
            "exclude_count": 0,
        }

    @pytest.mark.asyncio
    async def test_recast_is_update(self, service, vote_repo, audit_repo):
        vote_repo.upsert.return_value = False
        receipt = await service.cast_vote("did:plc:alice", VALID_WEIGHTS)
        assert receipt.is_new is False
        assert audit_repo.append.call_args.args == ("vote_updated",)

    @pytest.mark.asyncio
    async def test_keyword_only_ballot(self, service):
        receipt = await service.cast_vote("did:plc:alice", exclude_keywords=["Spam"])
        assert receipt.vote.weights is None
        assert receipt.vote.exclude_keywords == ["spam"]

    @pytest.mark.asyncio
    async def test_empty_ballot_rejected(self, service, vote_repo):
        with pytest.raises(ValidationError) as exc_info:
            await service.cast_vote("did:plc:alice", include_keywords=["   "])
        assert exc_info.value.code == "EmptyBallot"
        vote_repo.upsert.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_too_many_keywords_rejected(self, service):
        with pytest.raises(ValidationError):
            await service.cast_vote(
                "did:plc:alice", include_keywords=[f"k{i}" for i in range(21)]
            )

    @pytest.mark.asyncio
    async def test_non_subscriber_rejected(self, service, vote_repo):
        vote_repo.is_active_subscriber.return_value = False
        with pytest.raises(NotSubscribedError) as exc_info:
            await service.cast_vote("did:plc:mallory", VALID_WEIGHTS)
        assert exc_info.value.status_code == 403
        vote_repo.upsert.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_voting_closed(self, service, epoch_repo, epoch_factory, vote_repo):
        epoch_repo.get_current.return_value = epoch_factory(phase="running")
        with pytest.raises(ConflictError) as exc_info:
            await service.cast_vote("did:plc:alice", VALID_WEIGHTS)
        assert exc_info.value.code == "VotingClosed"
        vote_repo.upsert.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_epoch(self, service, epoch_repo):
        epoch_repo.get_current.return_value = None
        with pytest.raises(NoActiveEpochError):
            await service.cast_vote("did:plc:alice", VALID_WEIGHTS)

    @pytest.mark.asyncio
    async def test_get_vote_uses_current_epoch(self, service, vote_repo):
        await service.get_vote("did:plc:alice")
        vote_repo.get.assert_awaited_once_with("did:plc:alice", 3)

    @pytest.mark.asyncio
    async def test_overlong_keyword_rejects_whole_ballot(self, service, vote_repo, audit_repo):
        with pytest.raises(ValidationError) as exc_info:
            await service.cast_vote(
                "did:plc:alice", VALID_WEIGHTS, include_keywords=["rust", "x" * 60]
            )
        assert exc_info.value.code == "InvalidKeyword"
        vote_repo.upsert.assert_not_awaited()
        audit_repo.append.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_keyword_at_length_limit_accepted(self, service):
        receipt = await service.cast_vote("did:plc:alice", exclude_keywords=["y" * 50])
        assert receipt.vote.exclude_keywords == ["y" * 50]
