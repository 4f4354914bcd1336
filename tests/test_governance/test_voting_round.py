"""A full voting round through the real aggregator: end, then approve or reject."""

from dataclasses import replace
from unittest.mock import AsyncMock

import pytest

from src.governance.aggregation import VoteAggregator
from src.governance.epoch_manager import EpochManager
from src.governance.schemas import Vote
from src.governance.weights import WEIGHT_KEYS, Weights, normalize_weights

LIVE = Weights(0.2, 0.2, 0.2, 0.2, 0.2)

CLUSTERED = [
    (0.50, 0.20, 0.10, 0.10, 0.10),
    (0.52, 0.18, 0.10, 0.10, 0.10),
    (0.48, 0.22, 0.10, 0.10, 0.10),
    (0.50, 0.20, 0.12, 0.08, 0.10),
    (0.50, 0.20, 0.08, 0.12, 0.10),
    (0.46, 0.24, 0.10, 0.10, 0.10),
    (0.54, 0.16, 0.10, 0.10, 0.10),
    (0.50, 0.20, 0.10, 0.08, 0.12),
    (0.50, 0.20, 0.10, 0.12, 0.08),
    (0.50, 0.20, 0.10, 0.10, 0.10),
]
OUTLIERS = [
    (1.0, 0.0, 0.0, 0.0, 0.0),
    (0.0, 0.0, 0.0, 0.0, 1.0),
]


class InMemoryEpochs:
    """Holds one current epoch and applies the repository's state changes."""

    def __init__(self, epoch):
        self.current = epoch

    async def get_current(self, conn=None, *, for_update=False):
        return self.current

    async def close_voting(
        self, conn, epoch_id, proposed_weights, proposed_rules, vote_count, *, require_expired=False
    ):
        self.current = replace(
            self.current,
            phase="results",
            auto_transition=False,
            proposed_weights=proposed_weights,
            proposed_content_rules=proposed_rules,
            vote_count=vote_count,
        )
        return self.current

    async def apply_results(
        self, conn, epoch_id, weights, content_rules, *, approved_by, vote_count=None
    ):
        self.current = replace(
            self.current,
            phase="running",
            weights=weights,
            content_rules=content_rules,
            proposed_weights=None,
            proposed_content_rules=None,
            results_approved_by=approved_by,
        )
        return self.current

    async def discard_results(self, conn, epoch_id):
        self.current = replace(
            self.current,
            phase="running",
            proposed_weights=None,
            proposed_content_rules=None,
        )
        return self.current


class InMemoryVotes:
    """Serves a fixed list of ballots for every epoch."""

    def __init__(self, ballots):
        self.ballots = ballots

    async def list_for_epoch(self, epoch_id, conn=None):
        return list(self.ballots)

    async def count_for_epoch(self, epoch_id, conn=None):
        return len(self.ballots)


def _expected_proposal() -> Weights:
    # One value dropped from each end of every component (12 ballots)
    columns = list(zip(*(CLUSTERED + OUTLIERS)))
    means = [sum(sorted(col)[1:-1]) / (len(col) - 2) for col in columns]
    return normalize_weights(Weights.from_values(means))


@pytest.fixture
def epochs(epoch_factory):
    return InMemoryEpochs(epoch_factory(id=7, phase="voting", weights=LIVE))


@pytest.fixture
def votes():
    return InMemoryVotes([
        Vote(voter_did=f"did:plc:voter{i}", epoch_id=7, weights=Weights.from_values(values))
        for i, values in enumerate(CLUSTERED + OUTLIERS)
    ])


@pytest.fixture
def manager(mock_database, epochs, votes):
    audit = AsyncMock()
    audit.exists = AsyncMock(return_value=False)
    return EpochManager(
        mock_database,
        epoch_repo=epochs,
        vote_repo=votes,
        audit_repo=audit,
        scheduled_repo=AsyncMock(),
        outbox_repo=AsyncMock(),
        aggregator=VoteAggregator(votes),
        rules_cache=AsyncMock(),
    )


class TestVotingRound:
    """End voting on clustered ballots, then approve or reject the proposal."""

    @pytest.mark.asyncio
    async def test_proposal_is_trimmed_mean(self, manager):
        epoch = await manager.end_voting("did:plc:admin")

        assert epoch.phase == "results"
        assert epoch.vote_count == 12
        assert epoch.weights == LIVE
        proposal = epoch.proposed_weights
        assert proposal.as_tuple() == pytest.approx(_expected_proposal().as_tuple(), abs=1e-9)
        assert sum(proposal.as_tuple()) == pytest.approx(1.0, abs=1e-6)

    @pytest.mark.asyncio
    async def test_outliers_are_trimmed(self, manager):
        epoch = await manager.end_voting("did:plc:admin")

        ballots = CLUSTERED + OUTLIERS
        plain_means = {
            key: sum(b[i] for b in ballots) / len(ballots) for i, key in enumerate(WEIGHT_KEYS)
        }
        # The lone relevance=1.0 ballot would lift the plain mean to about 0.167
        assert plain_means["relevance"] > 0.16
        assert epoch.proposed_weights.relevance < 0.12
        assert epoch.proposed_weights.recency > 0.5

    @pytest.mark.asyncio
    async def test_approve_makes_proposal_live(self, manager, epochs):
        closed = await manager.end_voting("did:plc:admin")

        approved = await manager.approve_results("did:plc:admin")

        assert approved.phase == "running"
        assert approved.weights.as_tuple() == pytest.approx(
            closed.proposed_weights.as_tuple(), abs=1e-9
        )
        assert approved.proposed_weights is None
        assert approved.proposed_content_rules is None
        assert approved.results_approved_by == "did:plc:admin"
        assert epochs.current is approved

    @pytest.mark.asyncio
    async def test_reject_keeps_live_weights(self, manager):
        await manager.end_voting("did:plc:admin")

        rejected = await manager.reject_results("did:plc:admin")

        assert rejected.phase == "running"
        assert rejected.weights == LIVE
        assert rejected.proposed_weights is None
