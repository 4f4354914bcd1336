"""
Ballot casting.

A ballot carries a complete weight vector, keyword preferences, or both.
Weight vectors must already sum to 1.0 within the configured tolerance; they
are normalized before storage so aggregation only ever sees exact unit
vectors. A voter has one ballot per epoch and recasting replaces it.
"""

import math
from dataclasses import dataclass
from typing import Any

import structlog

from src.governance.config import GovernanceConfig
from src.governance.errors import ConflictError, GovernanceError, NoActiveEpochError, ValidationError
from src.governance.repository import AuditLogRepository, EpochRepository, VoteRepository
from src.governance.schemas import Vote
from src.governance.weights import (
    VOTABLE_WEIGHT_PARAMS,
    Weights,
    normalize_keywords,
    normalize_weights,
    validate_weights_sum,
)
from src.observability.metrics import get_metrics
from src.storage.database import Database

logger = structlog.get_logger(__name__)


class NotSubscribedError(GovernanceError):
    """Only active feed subscribers may vote."""

    status_code = 403

    def __init__(self) -> None:
        super().__init__("Only active feed subscribers can vote", code="NotSubscribed")


@dataclass
class VoteReceipt:
    """Result of casting a ballot."""

    vote: Vote
    is_new: bool


def parse_ballot_weights(
    raw: dict[str, Any] | None,
    tolerance: float = 0.01,
) -> Weights | None:
    """Validate a submitted weight mapping.

    The mapping must contain all five components or be absent; each value
    must be a finite number in [0, 1] and the total must be 1.0 within
    ``tolerance``.

    Raises:
        ValidationError: Any rule is violated.
    """
    if raw is None:
        return None

    present = {p.key for p in VOTABLE_WEIGHT_PARAMS if raw.get(p.key) is not None}
    if not present:
        return None
    if len(present) != len(VOTABLE_WEIGHT_PARAMS):
        missing = sorted({p.key for p in VOTABLE_WEIGHT_PARAMS} - present)
        raise ValidationError(
            f"All weights must be provided together (missing: {', '.join(missing)})"
        )

    values: dict[str, float] = {}
    for param in VOTABLE_WEIGHT_PARAMS:
        value = raw[param.key]
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValidationError(f"Weight {param.key!r} must be a number")
        value = float(value)
        if not math.isfinite(value) or not param.min_value <= value <= param.max_value:
            raise ValidationError(
                f"Weight {param.key!r} must be between {param.min_value} and {param.max_value}"
            )
        values[param.key] = value

    weights = Weights(**values)
    if not validate_weights_sum(weights, tolerance):
        raise ValidationError(
            f"Weights must sum to 1.0 (got {weights.total():.4f})",
            code="InvalidWeightSum",
        )
    return weights


class VoteService:
    """Validates and stores ballots for the current epoch."""

    def __init__(
        self,
        database: Database,
        *,
        epoch_repo: EpochRepository | None = None,
        vote_repo: VoteRepository | None = None,
        audit_repo: AuditLogRepository | None = None,
        config: GovernanceConfig | None = None,
    ) -> None:
        self._db = database
        self._config = config or GovernanceConfig()
        self._epochs = epoch_repo or EpochRepository(database)
        self._votes = vote_repo or VoteRepository(database)
        self._audit = audit_repo or AuditLogRepository(database)
        self._metrics = get_metrics()

    async def cast_vote(
        self,
        voter_did: str,
        weights: dict[str, Any] | None = None,
        include_keywords: list[str] | None = None,
        exclude_keywords: list[str] | None = None,
    ) -> VoteReceipt:
        """Cast or replace ``voter_did``'s ballot for the current epoch.

        Raises:
            ValidationError: Malformed ballot; nothing is stored.
            NotSubscribedError: Voter is not an active subscriber.
            NoActiveEpochError: Governance has not been bootstrapped.
            ConflictError: ``VotingClosed`` outside the voting phase.
        """
        ballot_weights = parse_ballot_weights(weights, self._config.weight_sum_tolerance)

        for label, keywords in (("include", include_keywords), ("exclude", exclude_keywords)):
            if keywords is None:
                continue
            if len(keywords) > self._config.max_keywords:
                raise ValidationError(
                    f"At most {self._config.max_keywords} {label} keywords are allowed"
                )
            for keyword in keywords:
                if len(keyword.strip()) > self._config.max_keyword_length:
                    raise ValidationError(
                        f"{label.capitalize()} keywords must be at most "
                        f"{self._config.max_keyword_length} characters",
                        code="InvalidKeyword",
                    )
        include = self._normalize(include_keywords)
        exclude = self._normalize(exclude_keywords)

        if ballot_weights is None and not include and not exclude:
            raise ValidationError(
                "A ballot needs weights, keywords, or both", code="EmptyBallot"
            )

        if not await self._votes.is_active_subscriber(voter_did):
            raise NotSubscribedError()

        async with self._db.transaction() as conn:
            epoch = await self._epochs.get_current(conn, for_update=True)
            if epoch is None:
                raise NoActiveEpochError()
            if not epoch.is_voting_open:
                raise ConflictError(
                    "Voting is not open for the current epoch", code="VotingClosed"
                )

            vote = Vote(
                voter_did=voter_did,
                epoch_id=epoch.id,
                weights=normalize_weights(ballot_weights) if ballot_weights else None,
                include_keywords=include,
                exclude_keywords=exclude,
            )
            is_new = await self._votes.upsert(vote, conn=conn)
            await self._audit.append(
                "vote_cast" if is_new else "vote_updated",
                actor_did=voter_did,
                epoch_id=epoch.id,
                details={
                    "has_weights": vote.weights is not None,
                    "include_count": len(include),
                    "exclude_count": len(exclude),
                },
                conn=conn,
            )

        self._metrics.record_vote(is_new)
        logger.info(
            "Vote recorded",
            voter_did=voter_did,
            epoch_id=epoch.id,
            is_new=is_new,
        )
        return VoteReceipt(vote=vote, is_new=is_new)

    async def get_vote(self, voter_did: str) -> Vote | None:
        """The caller's ballot for the current epoch, if any."""
        epoch = await self._epochs.get_current()
        if epoch is None:
            raise NoActiveEpochError()
        return await self._votes.get(voter_did, epoch.id)

    def _normalize(self, keywords: list[str] | None) -> list[str]:
        return normalize_keywords(
            keywords,
            max_keywords=self._config.max_keywords,
            max_length=self._config.max_keyword_length,
        )
