"""Vote aggregation: consensus weights and consensus content rules.

Weights use an independent per-component trimmed mean, so a voter who is
extreme on one component is discarded only for that component. Keyword rules
use a vote threshold relative to the number of ballots that supplied any
keyword. The pure ``compute_*`` helpers do the arithmetic; ``VoteAggregator``
loads ballots and logs.
"""

import logging
import math
import statistics
from collections import Counter
from dataclasses import dataclass
from typing import Any

from src.governance.config import GovernanceConfig
from src.governance.repository import VoteRepository
from src.governance.schemas import ContentRules, Vote
from src.governance.weights import WEIGHT_KEYS, Weights, normalize_weights

logger = logging.getLogger(__name__)


def trim_count(n: int, trim_fraction: float = 0.1, min_votes: int = 10) -> int:
    """Values dropped from each end of a sample of size ``n``."""
    if n < min_votes:
        return 0
    return math.floor(n * trim_fraction)


def trimmed_mean(
    values: list[float],
    trim_fraction: float = 0.1,
    min_votes: int = 10,
) -> float:
    """Mean after discarding ``trim_count`` values from each sorted end."""
    if not values:
        raise ValueError("trimmed_mean of an empty sample")
    ordered = sorted(values)
    k = trim_count(len(ordered), trim_fraction, min_votes)
    kept = ordered[k:len(ordered) - k] if k else ordered
    return sum(kept) / len(kept)


def compute_consensus_weights(
    ballots: list[Weights],
    trim_fraction: float = 0.1,
    min_votes: int = 10,
) -> Weights | None:
    """Per-component trimmed mean of complete weight ballots, normalized.

    Returns:
        Normalized consensus Weights, or None when there are no ballots.
    """
    if not ballots:
        return None

    means = [
        trimmed_mean(
            [getattr(ballot, key) for ballot in ballots],
            trim_fraction,
            min_votes,
        )
        for key in WEIGHT_KEYS
    ]
    return normalize_weights(Weights.from_values(means))


def keyword_threshold(voter_count: int, threshold: float = 0.3) -> int:
    """Minimum occurrences for a keyword to be adopted (never below 1).

    The product is rounded before ceil so 10 * 0.3 counts as 3, not 4.
    """
    return max(1, math.ceil(round(voter_count * threshold, 9)))


def compute_consensus_rules(
    ballots: list[Vote],
    threshold: float = 0.3,
) -> ContentRules:
    """Adopt keywords named by at least ``keyword_threshold`` keyword voters.

    Only ballots that supplied at least one include or exclude keyword count
    toward the voter total. Results are sorted alphabetically.
    """
    keyword_ballots = [b for b in ballots if b.has_keywords]
    if not keyword_ballots:
        return ContentRules()

    required = keyword_threshold(len(keyword_ballots), threshold)
    include_counts: Counter[str] = Counter()
    exclude_counts: Counter[str] = Counter()
    for ballot in keyword_ballots:
        include_counts.update(set(ballot.include_keywords))
        exclude_counts.update(set(ballot.exclude_keywords))

    return ContentRules(
        include_keywords=tuple(sorted(k for k, c in include_counts.items() if c >= required)),
        exclude_keywords=tuple(sorted(k for k, c in exclude_counts.items() if c >= required)),
    )


@dataclass
class VoteStatistics:
    """Descriptive statistics over the complete weight ballots of an epoch."""

    count: int
    mean: dict[str, float]
    median: dict[str, float]
    stdev: dict[str, float]

    def to_dict(self) -> dict[str, Any]:
        return {
            "count": self.count,
            "mean": self.mean,
            "median": self.median,
            "stdev": self.stdev,
        }


def compute_vote_statistics(ballots: list[Weights]) -> VoteStatistics | None:
    if not ballots:
        return None

    columns = {key: [getattr(b, key) for b in ballots] for key in WEIGHT_KEYS}
    return VoteStatistics(
        count=len(ballots),
        mean={k: round(statistics.fmean(v), 4) for k, v in columns.items()},
        median={k: round(statistics.median(v), 4) for k, v in columns.items()},
        stdev={
            k: round(statistics.stdev(v), 4) if len(v) > 1 else 0.0
            for k, v in columns.items()
        },
    )


class VoteAggregator:
    """Loads an epoch's ballots and derives consensus values from them."""

    def __init__(
        self,
        vote_repo: VoteRepository,
        config: GovernanceConfig | None = None,
    ) -> None:
        self._votes = vote_repo
        self._config = config or GovernanceConfig()

    async def aggregate_votes(
        self, epoch_id: int, conn: Any | None = None
    ) -> Weights | None:
        """Consensus weights for an epoch, or None with no weight ballots.

        Callers keep the epoch's prior weights on None.
        """
        ballots = await self._votes.list_for_epoch(epoch_id, conn=conn)
        weight_ballots = [b.weights for b in ballots if b.weights is not None]

        if not weight_ballots:
            logger.warning("No weight ballots to aggregate for epoch %d", epoch_id)
            return None

        weights = compute_consensus_weights(
            weight_ballots,
            trim_fraction=self._config.trim_fraction,
            min_votes=self._config.trim_min_votes,
        )
        logger.info(
            "Aggregated %d weight ballots for epoch %d (trimmed %d per end): %s",
            len(weight_ballots),
            epoch_id,
            trim_count(
                len(weight_ballots),
                self._config.trim_fraction,
                self._config.trim_min_votes,
            ),
            weights.to_dict() if weights else None,
        )
        return weights

    async def aggregate_content_votes(
        self, epoch_id: int, conn: Any | None = None
    ) -> ContentRules:
        """Consensus keyword rules for an epoch (empty with no keyword ballots)."""
        ballots = await self._votes.list_for_epoch(epoch_id, conn=conn)
        rules = compute_consensus_rules(ballots, self._config.keyword_threshold)
        logger.info(
            "Aggregated content votes for epoch %d: %d include, %d exclude",
            epoch_id,
            len(rules.include_keywords),
            len(rules.exclude_keywords),
        )
        return rules

    async def has_content_votes(self, epoch_id: int, conn: Any | None = None) -> bool:
        ballots = await self._votes.list_for_epoch(epoch_id, conn=conn)
        return any(b.has_keywords for b in ballots)

    async def vote_statistics(self, epoch_id: int) -> VoteStatistics | None:
        ballots = await self._votes.list_for_epoch(epoch_id)
        return compute_vote_statistics(
            [b.weights for b in ballots if b.weights is not None]
        )
