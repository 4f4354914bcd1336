"""Data models for the scoring pipeline.

``Post`` is a corpus row as the pipeline reads it; ``PostScore`` maps to the
``post_scores`` table and carries the full decomposition (raw component
score, the weight in force, and their product) so every ranking is
explainable after the fact.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from src.governance.weights import WEIGHT_KEYS, Weights


@dataclass
class Post:
    """A post eligible for scoring, with engagement counts joined in."""

    uri: str
    author_did: str
    created_at: datetime
    text: str | None = None
    cid: str | None = None
    reply_root: str | None = None
    reply_parent: str | None = None
    langs: list[str] = field(default_factory=list)
    has_media: bool = False
    like_count: int = 0
    repost_count: int = 0
    reply_count: int = 0


@dataclass(frozen=True)
class ComponentScores:
    """Raw component scores, each in [0, 1]."""

    recency: float
    engagement: float
    bridging: float
    source_diversity: float
    relevance: float

    def as_tuple(self) -> tuple[float, ...]:
        return tuple(getattr(self, key) for key in WEIGHT_KEYS)

    def to_dict(self) -> dict[str, float]:
        return {key: getattr(self, key) for key in WEIGHT_KEYS}

    def weighted(self, weights: Weights) -> "ComponentScores":
        """Each raw score multiplied by its weight."""
        return ComponentScores(
            **{key: getattr(self, key) * getattr(weights, key) for key in WEIGHT_KEYS}
        )


@dataclass
class PostScore:
    """Decomposed score for one post under one epoch."""

    post_uri: str
    epoch_id: int
    raw: ComponentScores
    weights: Weights
    weighted: ComponentScores
    total: float
    author_did: str | None = None
    component_details: dict[str, Any] = field(default_factory=dict)
    scored_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @classmethod
    def compute(
        cls,
        post: Post,
        epoch_id: int,
        raw: ComponentScores,
        weights: Weights,
        run_id: str | None = None,
    ) -> "PostScore":
        weighted = raw.weighted(weights)
        return cls(
            post_uri=post.uri,
            author_did=post.author_did,
            epoch_id=epoch_id,
            raw=raw,
            weights=weights,
            weighted=weighted,
            total=sum(weighted.as_tuple()),
            component_details={"run_id": run_id} if run_id else {},
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dictionary."""
        return {
            "post_uri": self.post_uri,
            "epoch_id": self.epoch_id,
            "raw": self.raw.to_dict(),
            "weights": self.weights.to_dict(),
            "weighted": self.weighted.to_dict(),
            "total": self.total,
            "component_details": self.component_details,
            "scored_at": self.scored_at.isoformat(),
        }


@dataclass
class ScoringRunResult:
    """Summary of one pipeline run."""

    run_id: str
    epoch_id: int | None = None
    posts_loaded: int = 0
    posts_filtered: int = 0
    posts_scored: int = 0
    errors: int = 0
    published: int = 0
    elapsed_seconds: float = 0.0
    status: str = "completed"

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "epoch_id": self.epoch_id,
            "posts_loaded": self.posts_loaded,
            "posts_filtered": self.posts_filtered,
            "posts_scored": self.posts_scored,
            "errors": self.errors,
            "published": self.published,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "status": self.status,
        }
