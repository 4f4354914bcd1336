"""
Transparency reads over stored scores and the audit log.

Everything here is computed from what the pipeline already persisted:
a post explanation is the stored decomposition plus its rank, and a
counterfactual re-weights stored raw scores without rescoring anything.
Reads are scoped to the most recent scoring run of the current epoch when
``system_status`` records one, so a half-finished run never mixes with
the published ranking.

Ballot contents never leave this module verbatim: vote audit entries are
reduced to a summary and actor DIDs are hidden from non-admin readers.
"""

from typing import Any

import redis.asyncio as redis
import structlog

from src.governance.errors import NoActiveEpochError, NotFoundError, ValidationError
from src.governance.repository import AuditLogRepository, EpochRepository, VoteRepository
from src.governance.schemas import AuditLogEntry, Epoch
from src.governance.weights import WEIGHT_KEYS, Weights, parse_int, validate_weights_sum
from src.scoring.pipeline import STATUS_CURRENT_RUN, STATUS_LAST_RUN
from src.scoring.repository import ScoringRepository
from src.scoring.schemas import PostScore

logger = structlog.get_logger(__name__)

VOTE_ACTIONS = frozenset(["vote_cast", "vote_updated"])

COUNTERFACTUAL_MAX_LIMIT = 500
COUNTERFACTUAL_MAX_CANDIDATES = 1000
AUDIT_MAX_LIMIT = 100


def _keyword_count(details: dict[str, Any], count_key: str, list_key: str) -> int:
    keywords = details.get(list_key)
    if isinstance(keywords, list):
        return len(keywords)
    return parse_int(details.get(count_key))


def redact_details(action: str, details: dict[str, Any] | None, epoch_id: int | None) -> dict[str, Any]:
    """Summarize a ballot audit entry; other actions pass through unchanged."""
    details = details if isinstance(details, dict) else {}
    if action not in VOTE_ACTIONS:
        return details

    include_count = _keyword_count(details, "include_count", "include_keywords")
    exclude_count = _keyword_count(details, "exclude_count", "exclude_keywords")

    summary: dict[str, Any] = {
        "has_weights": bool(details.get("has_weights")) or isinstance(details.get("weights"), dict),
        "has_content_vote": include_count > 0 or exclude_count > 0,
        "include_keyword_count": include_count,
        "exclude_keyword_count": exclude_count,
    }
    if epoch_id is not None:
        summary["epoch_id"] = epoch_id
    return summary


def rank_by(scores: list[PostScore], weights: Weights) -> dict[str, tuple[float, int]]:
    """Re-combine stored raw scores under ``weights``.

    Returns:
        post_uri -> (counterfactual score, 1-based rank). Ties keep the
        input order.
    """
    rescored = [(s.post_uri, sum(s.raw.weighted(weights).as_tuple())) for s in scores]
    ordered = sorted(rescored, key=lambda item: item[1], reverse=True)
    return {uri: (score, rank) for rank, (uri, score) in enumerate(ordered, start=1)}


class TransparencyService:
    """
    Read-only explanations of the published ranking.

    Usage:
        service = TransparencyService(scoring_repo, epoch_repo, vote_repo, audit_repo)
        explanation = await service.explain_post(uri)
        what_if = await service.counterfactual(Weights.default(), limit=50)
    """

    def __init__(
        self,
        scoring_repo: ScoringRepository,
        epoch_repo: EpochRepository,
        vote_repo: VoteRepository,
        audit_repo: AuditLogRepository,
        redis_client: redis.Redis | None = None,
        feed_count_key: str = "feed:count",
    ) -> None:
        self._scores = scoring_repo
        self._epochs = epoch_repo
        self._votes = vote_repo
        self._audit = audit_repo
        self._redis = redis_client
        self._feed_count_key = feed_count_key

    async def _current_epoch(self) -> Epoch:
        epoch = await self._epochs.get_current()
        if epoch is None:
            raise NoActiveEpochError()
        return epoch

    async def _run_scope(self, epoch_id: int) -> str | None:
        """Run id of the latest scoring run if it belongs to ``epoch_id``."""
        try:
            value = await self._scores.get_status(STATUS_CURRENT_RUN)
        except Exception as e:
            logger.warning("Failed to read scoring run scope", error=str(e))
            return None
        if not isinstance(value, dict):
            return None
        run_id = value.get("run_id")
        if isinstance(run_id, str) and value.get("epoch_id") == epoch_id:
            return run_id
        return None

    async def explain_post(self, uri: str) -> dict[str, Any]:
        """Score decomposition, rank and pure-engagement rank for one post.

        Raises:
            NoActiveEpochError: Governance is not bootstrapped.
            NotFoundError: The post has no score under the current epoch.
        """
        epoch = await self._current_epoch()
        run_id = await self._run_scope(epoch.id)

        score = await self._scores.get_score(uri, epoch.id, run_id)
        if score is None and run_id is not None:
            # The post may predate the current run but still be in the epoch
            score = await self._scores.get_score(uri, epoch.id)
        if score is None:
            raise NotFoundError(
                "Score not found for this post. The post may not have been scored yet."
            )

        scoped = score.component_details.get("run_id")
        scoped = scoped if isinstance(scoped, str) else None
        above = await self._scores.count_ranked_above(
            epoch.id, "total_score", score.total, scoped
        )
        engagement_above = await self._scores.count_ranked_above(
            epoch.id, "engagement_score", score.raw.engagement, scoped
        )
        rank = above + 1
        engagement_rank = engagement_above + 1

        return {
            "post_uri": score.post_uri,
            "epoch_id": score.epoch_id,
            "epoch_description": epoch.description,
            "total_score": score.total,
            "rank": rank,
            "components": {
                key: {
                    "raw_score": getattr(score.raw, key),
                    "weight": getattr(score.weights, key),
                    "weighted": getattr(score.weighted, key),
                }
                for key in WEIGHT_KEYS
            },
            "governance_weights": score.weights.to_dict(),
            "counterfactual": {
                "pure_engagement_rank": engagement_rank,
                "community_governed_rank": rank,
                "difference": engagement_rank - rank,
            },
            "scored_at": score.scored_at.isoformat(),
            "component_details": score.component_details,
        }

    async def feed_stats(self) -> dict[str, Any]:
        """Aggregate statistics for the current epoch's scored corpus."""
        epoch = await self._current_epoch()
        summary = await self._scores.score_summary(epoch.id)
        votes = await self._votes.count_for_epoch(epoch.id)

        try:
            last_run = await self._scores.get_status(STATUS_LAST_RUN)
        except Exception as e:
            logger.warning("Failed to read last scoring run", error=str(e))
            last_run = None

        return {
            "epoch": {
                "id": epoch.id,
                "phase": epoch.phase,
                "status": epoch.status,
                "weights": epoch.weights.to_dict(),
                "content_rules": epoch.content_rules.to_dict(),
                "created_at": epoch.created_at.isoformat(),
            },
            "feed_stats": {
                "total_posts_scored": summary["post_count"],
                "unique_authors": summary["unique_authors"],
                "avg_total_score": summary["avg_total"],
                "avg_bridging_score": summary["averages"].get("bridging", 0.0),
                "avg_engagement_score": summary["averages"].get("engagement", 0.0),
                "median_bridging_score": summary["median_bridging"],
                "median_total_score": summary["median_total"],
                "component_averages": summary["averages"],
                "published_posts": await self._published_count(),
            },
            "governance": {"votes_this_epoch": votes},
            "last_scoring_run": last_run if isinstance(last_run, dict) else None,
        }

    async def _published_count(self) -> int | None:
        if self._redis is None:
            return None
        try:
            value = await self._redis.get(self._feed_count_key)
        except Exception as e:
            logger.warning("Failed to read published feed size", error=str(e))
            return None
        return parse_int(value) if value is not None else None

    async def counterfactual(self, weights: Weights, limit: int = 50) -> dict[str, Any]:
        """Rank the current epoch's stored scores under alternative weights.

        Args:
            weights: Alternative weights; must sum to 1.0 within 0.01.
            limit: Number of posts to compare, 1 to 500.

        Raises:
            ValidationError: Bad weights or limit.
            NoActiveEpochError: Governance is not bootstrapped.
        """
        if not 1 <= limit <= COUNTERFACTUAL_MAX_LIMIT:
            raise ValidationError(
                f"limit must be between 1 and {COUNTERFACTUAL_MAX_LIMIT}", code="InvalidLimit"
            )
        if any(not 0.0 <= value <= 1.0 for value in weights.as_tuple()):
            raise ValidationError("Each weight must be between 0 and 1", code="InvalidWeights")
        if not validate_weights_sum(weights):
            raise ValidationError(
                f"Weights must sum to 1.0 (got {weights.total():.3f})", code="InvalidWeightSum"
            )

        epoch = await self._current_epoch()
        run_id = await self._run_scope(epoch.id)
        candidates = await self._scores.list_scores(
            epoch.id, min(limit * 2, COUNTERFACTUAL_MAX_CANDIDATES), run_id
        )

        alternate = rank_by(candidates, weights)
        posts: list[dict[str, Any]] = []
        for original_rank, score in enumerate(candidates[:limit], start=1):
            cf_score, cf_rank = alternate[score.post_uri]
            posts.append({
                "post_uri": score.post_uri,
                "original_score": score.total,
                "original_rank": original_rank,
                "counterfactual_score": cf_score,
                "counterfactual_rank": cf_rank,
                "rank_delta": original_rank - cf_rank,
            })

        changes = [abs(p["rank_delta"]) for p in posts]
        return {
            "alternate_weights": weights.to_dict(),
            "current_weights": epoch.weights.to_dict(),
            "posts": posts,
            "summary": {
                "total_posts": len(posts),
                "posts_moved_up": sum(1 for p in posts if p["rank_delta"] > 0),
                "posts_moved_down": sum(1 for p in posts if p["rank_delta"] < 0),
                "posts_unchanged": sum(1 for p in posts if p["rank_delta"] == 0),
                "max_rank_change": max(changes, default=0),
                "avg_rank_change": sum(changes) / len(changes) if changes else 0.0,
            },
        }

    async def audit_log(
        self,
        *,
        action: str | None = None,
        epoch_id: int | None = None,
        limit: int = 20,
        offset: int = 0,
        include_actors: bool = False,
    ) -> dict[str, Any]:
        """Page through the audit log, newest first, with ballots redacted."""
        if not 1 <= limit <= AUDIT_MAX_LIMIT:
            raise ValidationError(
                f"limit must be between 1 and {AUDIT_MAX_LIMIT}", code="InvalidLimit"
            )
        if offset < 0:
            raise ValidationError("offset must be non-negative", code="InvalidOffset")

        entries, total = await self._audit.list_entries(
            action=action, epoch_id=epoch_id, limit=limit, offset=offset
        )
        return {
            "entries": [self._render_entry(e, include_actors) for e in entries],
            "pagination": {
                "total": total,
                "limit": limit,
                "offset": offset,
                "has_more": offset + len(entries) < total,
            },
        }

    @staticmethod
    def _render_entry(entry: AuditLogEntry, include_actors: bool) -> dict[str, Any]:
        # Voter identities never leave the service; admin actors only for admins
        show_actor = include_actors and entry.action not in VOTE_ACTIONS
        return {
            "id": entry.id,
            "action": entry.action,
            "actor_did": entry.actor_did if show_actor else None,
            "epoch_id": entry.epoch_id,
            "details": redact_details(entry.action, entry.details, entry.epoch_id),
            "created_at": entry.created_at.isoformat(),
        }
