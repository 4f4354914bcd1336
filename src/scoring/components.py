"""
Component scorers. Every scorer returns a value in [0, 1].

- recency: exponential decay with a half-life of a quarter of the window
- engagement: log-scaled weighted likes, reposts and replies
- bridging: how far apart the engagers' follow graphs are (Jaccard distance)
- source diversity: per-run penalty for repeated authors
- relevance: constant placeholder until topical relevance exists
"""

import logging
import math
from datetime import datetime, timezone
from itertools import combinations

from src.scoring.config import ScoringConfig
from src.scoring.repository import ScoringRepository
from src.scoring.schemas import Post

logger = logging.getLogger(__name__)


def score_recency(
    created_at: datetime,
    window_hours: float,
    now: datetime | None = None,
) -> float:
    """1.0 for future timestamps, 0.01 past the window, exponential in between."""
    now = now or datetime.now(timezone.utc)
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    age_hours = (now - created_at).total_seconds() / 3600

    if age_hours < 0:
        return 1.0
    if age_hours > window_hours:
        return 0.01

    half_life = window_hours / 4
    return math.exp(-math.log(2) / half_life * age_hours)


def score_engagement(
    likes: int,
    reposts: int,
    replies: int,
    config: ScoringConfig | None = None,
) -> float:
    """log10(likes + 2*reposts + 3*replies + 1) / log10(1001), capped at 1."""
    config = config or ScoringConfig()
    raw = (
        likes * config.like_weight
        + reposts * config.repost_weight
        + replies * config.reply_weight
    )
    if raw <= 0:
        return 0.0
    return min(1.0, math.log10(raw + 1) / math.log10(config.engagement_saturation))


def jaccard_distance(a: set[str], b: set[str]) -> float:
    """1 - |a & b| / |a | b|; two empty sets are identical (distance 0)."""
    union = len(a | b)
    if union == 0:
        return 0.0
    return 1.0 - len(a & b) / union


def average_pairwise_distance(follow_sets: list[set[str]]) -> float | None:
    """Mean Jaccard distance over all pairs, or None with fewer than two sets."""
    pairs = list(combinations(follow_sets, 2))
    if not pairs:
        return None
    return sum(jaccard_distance(a, b) for a, b in pairs) / len(pairs)


class BridgingScorer:
    """Scores a post by the diversity of the audiences that engaged with it.

    Posts liked or reposted by people who follow very different accounts
    bridge communities and score high; posts engaged with by one clique
    score low. Posts with too few engagers get the neutral default.
    """

    def __init__(self, repository: ScoringRepository, config: ScoringConfig | None = None) -> None:
        self._repo = repository
        self._config = config or ScoringConfig()

    async def score(self, post_uri: str) -> float:
        engagers = await self._repo.get_engagers(post_uri, self._config.bridging_max_engagers)
        if len(engagers) < self._config.bridging_min_engagers:
            return self._config.bridging_default_score

        compared = engagers[: self._config.bridging_max_pairwise]
        follow_sets = await self._repo.get_follow_sets(
            compared, self._config.bridging_max_follows
        )
        distance = average_pairwise_distance([follow_sets.get(did, set()) for did in compared])
        if distance is None:
            return self._config.bridging_default_score
        return min(1.0, distance)


class SourceDiversityTracker:
    """Streaming per-run author counter.

    The n-th post by an author in a run scores ``penalties[n-1]`` (the last
    penalty repeats). Results depend on the order posts are scored in.
    """

    def __init__(self, penalties: list[float] | None = None) -> None:
        self._penalties = penalties or ScoringConfig().source_diversity_penalties
        self._counts: dict[str, int] = {}

    def _penalty(self, count: int) -> float:
        return self._penalties[min(count, len(self._penalties) - 1)]

    def score(self, author_did: str) -> float:
        """Score the next post by ``author_did`` and count it."""
        count = self._counts.get(author_did, 0)
        self._counts[author_did] = count + 1
        return self._penalty(count)

    def peek(self, author_did: str) -> float:
        """Score the next post by ``author_did`` would get, without counting it."""
        return self._penalty(self._counts.get(author_did, 0))

    def reset(self) -> None:
        self._counts.clear()


def score_relevance(post: Post, config: ScoringConfig | None = None) -> float:
    return (config or ScoringConfig()).relevance_default
