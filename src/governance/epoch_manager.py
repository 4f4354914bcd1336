"""
Epoch lifecycle state machine.

The current epoch moves running -> voting -> results -> running. Every
mutation follows the same shape:

1. open a transaction and row-lock the current epoch (``FOR UPDATE``)
2. re-validate the phase, raising ``ConflictError`` with a specific code
3. update the epoch, append exactly one audit entry per epoch touched and
   enqueue an outbox event where an announcement applies
4. after commit: invalidate the content-rules cache and record metrics

Forced and vote-triggered transitions close the current row and create a
new one carrying the aggregated weights and rules.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog

from src.governance.aggregation import VoteAggregator
from src.governance.config import GovernanceConfig
from src.governance.content_filter import ContentRulesCache
from src.governance.errors import (
    ConflictError,
    NoActiveEpochError,
    NotFoundError,
    ValidationError,
)
from src.governance.outbox import OutboxRepository
from src.governance.repository import (
    AuditLogRepository,
    EpochRepository,
    ScheduledVoteRepository,
    VoteRepository,
)
from src.governance.schemas import (
    EVENT_RESULTS_APPROVED,
    EVENT_VOTE_SCHEDULED,
    EVENT_VOTING_CLOSED,
    EVENT_VOTING_OPENED,
    EVENT_VOTING_REMINDER,
    ContentRules,
    Epoch,
    OutboxEvent,
    ScheduledVote,
)
from src.governance.transitions import PhaseTransition, require_phase
from src.governance.weights import Weights, normalize_keywords, normalize_weights
from src.observability.metrics import get_metrics
from src.storage.database import Database

logger = structlog.get_logger(__name__)

TRIGGER_MANUAL = "manual"
TRIGGER_SCHEDULED = "scheduled"
TRIGGER_FORCED = "forced"

KEYWORD_TYPES = ("include", "exclude")


@dataclass
class TransitionResult:
    """Outcome of closing the current epoch and opening the next one."""

    closed_epoch_id: int
    new_epoch: Epoch
    vote_count: int
    forced: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "closed_epoch_id": self.closed_epoch_id,
            "new_epoch_id": self.new_epoch.id,
            "vote_count": self.vote_count,
            "forced": self.forced,
            "weights": self.new_epoch.weights.to_dict(),
            "content_rules": self.new_epoch.content_rules.to_dict(),
        }


class EpochManager:
    """
    Owns every mutation of governance epochs.

    Each mutation runs in one read-committed transaction that first takes
    ``SELECT ... FOR UPDATE`` on the current epoch row. That row lock is what
    serializes admin actions against scheduler ticks: a second mutation
    blocks until the first commits, then re-reads the committed phase and
    fails its phase check instead of acting on stale state.

    Usage:
        manager = EpochManager(db, rules_cache=cache)
        await manager.ensure_epoch()
        epoch = await manager.start_voting("did:plc:admin", duration_hours=48)
    """

    def __init__(
        self,
        database: Database,
        *,
        epoch_repo: EpochRepository | None = None,
        vote_repo: VoteRepository | None = None,
        audit_repo: AuditLogRepository | None = None,
        scheduled_repo: ScheduledVoteRepository | None = None,
        outbox_repo: OutboxRepository | None = None,
        aggregator: VoteAggregator | None = None,
        rules_cache: ContentRulesCache | None = None,
        config: GovernanceConfig | None = None,
        on_results_applied: Callable[[], Any] | None = None,
    ) -> None:
        self._db = database
        self._config = config or GovernanceConfig()
        self.epochs = epoch_repo or EpochRepository(database)
        self.votes = vote_repo or VoteRepository(database)
        self.audit = audit_repo or AuditLogRepository(database)
        self.scheduled = scheduled_repo or ScheduledVoteRepository(database)
        self.outbox = outbox_repo or OutboxRepository(database)
        self.aggregator = aggregator or VoteAggregator(self.votes, self._config)
        self._rules_cache = rules_cache
        self._on_results_applied = on_results_applied
        self._metrics = get_metrics()

    @property
    def config(self) -> GovernanceConfig:
        return self._config

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_current(self) -> Epoch:
        """The current epoch.

        Raises:
            NoActiveEpochError: Governance has not been bootstrapped.
        """
        epoch = await self.epochs.get_current()
        if epoch is None:
            raise NoActiveEpochError()
        return epoch

    async def list_scheduled(self) -> list[ScheduledVote]:
        return await self.scheduled.list_upcoming()

    # ------------------------------------------------------------------
    # Bootstrap
    # ------------------------------------------------------------------

    async def ensure_epoch(self) -> Epoch:
        """Return the current epoch, creating the first one with default weights."""
        async with self._db.transaction() as conn:
            epoch = await self.epochs.get_current(conn, for_update=True)
            if epoch is not None:
                return epoch

            epoch = await self.epochs.create(
                conn,
                Weights.default(),
                ContentRules(),
                description="Initial epoch with default weights.",
            )
            await self.audit.append(
                "epoch_created",
                epoch_id=epoch.id,
                details={
                    "weights": epoch.weights.to_dict(),
                    "content_rules": epoch.content_rules.to_dict(),
                    "bootstrap": True,
                },
                conn=conn,
            )

        logger.info("Bootstrapped first epoch", epoch_id=epoch.id)
        return epoch

    async def _lock_current(self, conn: Any) -> Epoch:
        epoch = await self.epochs.get_current(conn, for_update=True)
        if epoch is None:
            raise NoActiveEpochError()
        return epoch

    # ------------------------------------------------------------------
    # Phase transitions
    # ------------------------------------------------------------------

    def _validate_duration(self, duration_hours: int) -> int:
        low, high = self._config.min_voting_hours, self._config.max_voting_hours
        if not low <= duration_hours <= high:
            raise ValidationError(
                f"duration_hours must be between {low} and {high}",
                code="InvalidDuration",
            )
        return duration_hours

    async def _open_voting(
        self,
        conn: Any,
        epoch: Epoch,
        *,
        actor_did: str | None,
        duration_hours: int,
        announce: bool,
        details: dict[str, Any] | None = None,
    ) -> Epoch:
        """Open voting on a locked epoch inside the caller's transaction."""
        require_phase("start_voting", epoch.phase)
        ends_at = datetime.now(timezone.utc) + timedelta(hours=duration_hours)
        updated = await self.epochs.start_voting(conn, epoch.id, ends_at)

        await self.audit.append(
            "admin_start_voting",
            actor_did=actor_did,
            epoch_id=epoch.id,
            details={
                "duration_hours": duration_hours,
                "voting_ends_at": ends_at.isoformat(),
                "announce": announce,
                **(details or {}),
            },
            conn=conn,
        )
        if announce:
            await self.outbox.enqueue(
                OutboxEvent(
                    event_type=EVENT_VOTING_OPENED,
                    epoch_id=epoch.id,
                    payload={
                        "duration_hours": duration_hours,
                        "voting_ends_at": ends_at.isoformat(),
                    },
                ),
                conn=conn,
            )
        return updated

    async def start_voting(
        self,
        actor_did: str | None,
        duration_hours: int | None = None,
        *,
        announce: bool = True,
    ) -> Epoch:
        """running -> voting.

        Raises:
            ConflictError: ``AlreadyVoting`` or ``ResultsPending``.
            ValidationError: Duration outside the allowed window.
        """
        hours = self._validate_duration(
            duration_hours if duration_hours is not None else self._config.default_voting_hours
        )
        async with self._db.transaction() as conn:
            epoch = await self._lock_current(conn)
            updated = await self._open_voting(
                conn,
                epoch,
                actor_did=actor_did,
                duration_hours=hours,
                announce=announce,
            )

        await self._after_commit(
            PhaseTransition(epoch.id, epoch.phase, updated.phase, actor_did, TRIGGER_MANUAL,
                            metadata={"duration_hours": hours})
        )
        return updated

    async def start_scheduled_vote(self) -> Epoch | None:
        """Open voting for the earliest due scheduled vote, if any.

        The scheduled row is claimed with SKIP LOCKED and marked started in
        the same transaction. A due row that cannot start because voting is
        already open or results are pending is marked started and skipped.
        """
        async with self._db.transaction() as conn:
            scheduled = await self.scheduled.claim_due(conn)
            if scheduled is None:
                return None

            epoch = await self._lock_current(conn)
            await self.scheduled.mark_started(conn, scheduled.id)

            try:
                require_phase("start_voting", epoch.phase)
            except ConflictError as e:
                logger.warning(
                    "Scheduled vote skipped",
                    scheduled_vote_id=scheduled.id,
                    epoch_id=epoch.id,
                    reason=e.code,
                )
                await self.audit.append(
                    "scheduled_vote_skipped",
                    actor_did=scheduled.created_by,
                    epoch_id=epoch.id,
                    details={"scheduled_vote_id": scheduled.id, "reason": e.code},
                    conn=conn,
                )
                return None

            updated = await self._open_voting(
                conn,
                epoch,
                actor_did=scheduled.created_by,
                duration_hours=scheduled.duration_hours,
                announce=True,
                details={"scheduled_vote_id": scheduled.id, "trigger": TRIGGER_SCHEDULED},
            )

        await self._after_commit(
            PhaseTransition(epoch.id, epoch.phase, updated.phase, scheduled.created_by,
                            TRIGGER_SCHEDULED,
                            metadata={"scheduled_vote_id": scheduled.id})
        )
        return updated

    async def end_voting(
        self,
        actor_did: str | None,
        trigger: str = TRIGGER_MANUAL,
        *,
        announce: bool = True,
        expected_epoch_id: int | None = None,
    ) -> Epoch:
        """voting -> results, storing the aggregated proposal.

        Args:
            actor_did: Admin closing the window; None for the scheduler.
            trigger: ``manual`` or ``scheduled``. Scheduled closes also
                require the window to have expired and auto_transition on.
            announce: Enqueue the voting-closed announcement.
            expected_epoch_id: Only close this epoch (scheduler safety).

        Raises:
            ConflictError: ``VotingNotOpen`` (also when another tick won),
                or ``VotingNotExpired`` for a scheduled close.
        """
        scheduled = trigger == TRIGGER_SCHEDULED
        async with self._db.transaction() as conn:
            epoch = await self._lock_current(conn)
            require_phase("end_voting", epoch.phase)

            if expected_epoch_id is not None and epoch.id != expected_epoch_id:
                raise ConflictError("Voting is not currently open", code="VotingNotOpen")
            if scheduled and not self._window_expired(epoch):
                raise ConflictError(
                    "Voting window has not expired", code="VotingNotExpired"
                )

            vote_count = await self.votes.count_for_epoch(epoch.id, conn=conn)
            proposed_weights = (
                await self.aggregator.aggregate_votes(epoch.id, conn=conn) or epoch.weights
            )
            if await self.aggregator.has_content_votes(epoch.id, conn=conn):
                proposed_rules = await self.aggregator.aggregate_content_votes(
                    epoch.id, conn=conn
                )
            else:
                proposed_rules = epoch.content_rules

            updated = await self.epochs.close_voting(
                conn,
                epoch.id,
                proposed_weights,
                proposed_rules,
                vote_count,
                require_expired=scheduled,
            )
            if updated is None:
                raise ConflictError("Voting is not currently open", code="VotingNotOpen")

            await self.audit.append(
                "auto_end_voting" if scheduled else "admin_end_voting",
                actor_did=actor_did,
                epoch_id=epoch.id,
                details={
                    "trigger": trigger,
                    "vote_count": vote_count,
                    "proposed_weights": proposed_weights.to_dict(),
                    "proposed_content_rules": proposed_rules.to_dict(),
                },
                conn=conn,
            )
            if announce:
                await self.outbox.enqueue(
                    OutboxEvent(
                        event_type=EVENT_VOTING_CLOSED,
                        epoch_id=epoch.id,
                        payload={"vote_count": vote_count},
                    ),
                    conn=conn,
                )

        await self._after_commit(
            PhaseTransition(epoch.id, epoch.phase, updated.phase, actor_did, trigger,
                            metadata={"vote_count": vote_count})
        )
        return updated

    @staticmethod
    def _window_expired(epoch: Epoch) -> bool:
        return (
            epoch.auto_transition
            and epoch.voting_ends_at is not None
            and epoch.voting_ends_at <= datetime.now(timezone.utc)
        )

    async def approve_results(self, actor_did: str | None, *, announce: bool = True) -> Epoch:
        """results -> running, making the proposal live.

        Raises:
            ConflictError: ``ResultsNotPending``.
        """
        async with self._db.transaction() as conn:
            epoch = await self._lock_current(conn)
            require_phase("approve_results", epoch.phase)

            new_weights = normalize_weights(epoch.proposed_weights or epoch.weights)
            new_rules = epoch.proposed_content_rules or epoch.content_rules
            updated = await self.epochs.apply_results(
                conn, epoch.id, new_weights, new_rules, approved_by=actor_did
            )

            change = {
                "old_weights": epoch.weights.to_dict(),
                "new_weights": new_weights.to_dict(),
                "old_content_rules": epoch.content_rules.to_dict(),
                "new_content_rules": new_rules.to_dict(),
            }
            await self.audit.append(
                "admin_approve_results",
                actor_did=actor_did,
                epoch_id=epoch.id,
                details={**change, "vote_count": epoch.vote_count},
                conn=conn,
            )
            if announce:
                await self.outbox.enqueue(
                    OutboxEvent(
                        event_type=EVENT_RESULTS_APPROVED,
                        epoch_id=epoch.id,
                        payload=change,
                    ),
                    conn=conn,
                )

        await self._after_commit(
            PhaseTransition(epoch.id, epoch.phase, updated.phase, actor_did, TRIGGER_MANUAL),
            rescore=True,
        )
        return updated

    async def reject_results(self, actor_did: str | None) -> Epoch:
        """results -> running, discarding the proposal; live values untouched.

        Raises:
            ConflictError: ``ResultsNotPending``.
        """
        async with self._db.transaction() as conn:
            epoch = await self._lock_current(conn)
            require_phase("reject_results", epoch.phase)

            updated = await self.epochs.discard_results(conn, epoch.id)
            await self.audit.append(
                "admin_reject_results",
                actor_did=actor_did,
                epoch_id=epoch.id,
                details={
                    "discarded_weights": (
                        epoch.proposed_weights.to_dict() if epoch.proposed_weights else None
                    ),
                    "discarded_content_rules": (
                        epoch.proposed_content_rules.to_dict()
                        if epoch.proposed_content_rules
                        else None
                    ),
                },
                conn=conn,
            )

        await self._after_commit(
            PhaseTransition(epoch.id, epoch.phase, updated.phase, actor_did, TRIGGER_MANUAL)
        )
        return updated

    async def extend_voting(self, actor_did: str | None, hours: int) -> Epoch:
        """Push the open voting window back by ``hours``.

        Raises:
            ConflictError: ``VotingNotOpen``.
            ValidationError: Hours outside the allowed window.
        """
        self._validate_duration(hours)
        async with self._db.transaction() as conn:
            epoch = await self._lock_current(conn)
            require_phase("end_voting", epoch.phase)

            base = epoch.voting_ends_at or datetime.now(timezone.utc)
            ends_at = base + timedelta(hours=hours)
            updated = await self.epochs.extend_voting(conn, epoch.id, ends_at)
            await self.audit.append(
                "admin_extend_voting",
                actor_did=actor_did,
                epoch_id=epoch.id,
                details={
                    "hours": hours,
                    "previous_ends_at": base.isoformat(),
                    "voting_ends_at": ends_at.isoformat(),
                },
                conn=conn,
            )

        await self._invalidate_rules()
        logger.info("Voting extended", epoch_id=epoch.id, hours=hours, actor_did=actor_did)
        return updated

    async def apply_results(self, actor_did: str | None) -> Epoch:
        """Aggregate the current ballots and make them live immediately.

        Works from any phase and skips the review step. With no ballots the
        live values are kept.
        """
        async with self._db.transaction() as conn:
            epoch = await self._lock_current(conn)
            vote_count = await self.votes.count_for_epoch(epoch.id, conn=conn)

            new_weights = epoch.weights
            new_rules = epoch.content_rules
            if vote_count > 0:
                new_weights = (
                    await self.aggregator.aggregate_votes(epoch.id, conn=conn) or epoch.weights
                )
                new_rules = await self.aggregator.aggregate_content_votes(epoch.id, conn=conn)

            updated = await self.epochs.apply_results(
                conn,
                epoch.id,
                new_weights,
                new_rules,
                approved_by=actor_did,
                vote_count=vote_count,
            )
            await self.audit.append(
                "admin_apply_results",
                actor_did=actor_did,
                epoch_id=epoch.id,
                details={
                    "vote_count": vote_count,
                    "old_weights": epoch.weights.to_dict(),
                    "new_weights": new_weights.to_dict(),
                    "old_content_rules": epoch.content_rules.to_dict(),
                    "new_content_rules": new_rules.to_dict(),
                },
                conn=conn,
            )

        await self._after_commit(
            PhaseTransition(epoch.id, epoch.phase, updated.phase, actor_did, TRIGGER_MANUAL,
                            metadata={"vote_count": vote_count}),
            rescore=True,
        )
        return updated

    # ------------------------------------------------------------------
    # Epoch rollover
    # ------------------------------------------------------------------

    async def force_transition(self, actor_did: str | None = None) -> TransitionResult:
        """Close the current epoch and create the next one regardless of turnout."""
        return await self._rollover(actor_did, forced=True)

    async def trigger_transition(self, actor_did: str | None = None) -> TransitionResult:
        """Close and roll over only with enough ballots.

        Raises:
            ConflictError: ``InsufficientVotes``.
        """
        return await self._rollover(actor_did, forced=False)

    async def _rollover(self, actor_did: str | None, *, forced: bool) -> TransitionResult:
        async with self._db.transaction() as conn:
            current = await self._lock_current(conn)
            vote_count = await self.votes.count_for_epoch(current.id, conn=conn)

            required = self._config.min_votes_for_transition
            if not forced and vote_count < required:
                raise ConflictError(
                    f"Need at least {required} votes to transition, have {vote_count}",
                    code="InsufficientVotes",
                )

            new_weights = (
                await self.aggregator.aggregate_votes(current.id, conn=conn) or current.weights
            )
            new_rules = await self.aggregator.aggregate_content_votes(current.id, conn=conn)

            await self.epochs.close(conn, current.id)
            new_epoch = await self.epochs.create(
                conn,
                new_weights,
                new_rules,
                vote_count=vote_count,
                description=(
                    f"Weights updated from epoch {current.id} "
                    f"based on {vote_count} community votes."
                ),
            )

            await self.audit.append(
                "epoch_closed",
                actor_did=actor_did,
                epoch_id=current.id,
                details={
                    "old_weights": current.weights.to_dict(),
                    "new_weights": new_weights.to_dict(),
                    "vote_count": vote_count,
                    "new_epoch_id": new_epoch.id,
                    "forced": forced,
                },
                conn=conn,
            )
            await self.audit.append(
                "epoch_created",
                actor_did=actor_did,
                epoch_id=new_epoch.id,
                details={
                    "weights": new_weights.to_dict(),
                    "content_rules": new_rules.to_dict(),
                    "derived_from_epoch": current.id,
                    "vote_count": vote_count,
                    "forced": forced,
                },
                conn=conn,
            )

        await self._after_commit(
            PhaseTransition(current.id, current.phase, new_epoch.phase, actor_did,
                            TRIGGER_FORCED if forced else TRIGGER_MANUAL,
                            metadata={"new_epoch_id": new_epoch.id, "vote_count": vote_count}),
            rescore=True,
        )
        return TransitionResult(
            closed_epoch_id=current.id,
            new_epoch=new_epoch,
            vote_count=vote_count,
            forced=forced,
        )

    # ------------------------------------------------------------------
    # Admin overrides
    # ------------------------------------------------------------------

    async def override_weights(
        self, actor_did: str | None, updates: dict[str, float]
    ) -> Epoch:
        """Merge partial weight updates into the live vector and renormalize."""
        if not updates:
            raise ValidationError("At least one weight must be provided")

        async with self._db.transaction() as conn:
            epoch = await self._lock_current(conn)
            merged = {**epoch.weights.to_dict(), **updates}
            try:
                new_weights = normalize_weights(Weights.from_mapping(merged))
            except (KeyError, TypeError, ValueError) as e:
                raise ValidationError(f"Invalid weights: {e}") from e

            updated = await self.epochs.update_weights(conn, epoch.id, new_weights)
            await self.audit.append(
                "admin_weights_override",
                actor_did=actor_did,
                epoch_id=epoch.id,
                details={
                    "requested": updates,
                    "old_weights": epoch.weights.to_dict(),
                    "new_weights": new_weights.to_dict(),
                },
                conn=conn,
            )

        await self._invalidate_rules()
        self._trigger_rescore()
        logger.info("Weights overridden", epoch_id=epoch.id, actor_did=actor_did)
        return updated

    async def override_content_rules(
        self,
        actor_did: str | None,
        include_keywords: list[str] | None = None,
        exclude_keywords: list[str] | None = None,
    ) -> Epoch:
        """Replace one or both keyword lists of the live content rules."""
        if include_keywords is None and exclude_keywords is None:
            raise ValidationError("include_keywords or exclude_keywords is required")

        async with self._db.transaction() as conn:
            epoch = await self._lock_current(conn)
            previous = epoch.content_rules
            new_rules = ContentRules(
                include_keywords=(
                    tuple(self._normalize_keywords(include_keywords))
                    if include_keywords is not None
                    else previous.include_keywords
                ),
                exclude_keywords=(
                    tuple(self._normalize_keywords(exclude_keywords))
                    if exclude_keywords is not None
                    else previous.exclude_keywords
                ),
            )
            updated = await self.epochs.update_content_rules(conn, epoch.id, new_rules)
            await self.audit.append(
                "admin_content_rules_override",
                actor_did=actor_did,
                epoch_id=epoch.id,
                details={
                    "old_content_rules": previous.to_dict(),
                    "new_content_rules": new_rules.to_dict(),
                },
                conn=conn,
            )

        await self._invalidate_rules()
        self._trigger_rescore()
        return updated

    def _normalize_keywords(self, keywords: list[str]) -> list[str]:
        return normalize_keywords(
            keywords,
            max_keywords=self._config.max_keywords,
            max_length=self._config.max_keyword_length,
        )

    def _normalize_keyword(self, keyword_type: str, keyword: str) -> str:
        if keyword_type not in KEYWORD_TYPES:
            raise ValidationError(f"type must be one of {list(KEYWORD_TYPES)}")
        normalized = keyword.lower().strip()
        if not normalized or len(normalized) > self._config.max_keyword_length:
            raise ValidationError(
                f"Keyword must be 1-{self._config.max_keyword_length} characters"
            )
        return normalized

    async def add_keyword(self, actor_did: str | None, keyword_type: str, keyword: str) -> Epoch:
        """Add one keyword to the include or exclude list.

        Raises:
            ConflictError: The keyword is already present.
            ValidationError: The list is full or the keyword is malformed.
        """
        normalized = self._normalize_keyword(keyword_type, keyword)

        async with self._db.transaction() as conn:
            epoch = await self._lock_current(conn)
            previous = epoch.content_rules
            target = list(getattr(previous, f"{keyword_type}_keywords"))

            if normalized in target:
                raise ConflictError("Keyword already exists in this rule set", code="Conflict")
            if len(target) >= self._config.max_keywords:
                raise ValidationError(
                    f"Maximum {self._config.max_keywords} keywords allowed per rule set"
                )

            target.append(normalized)
            new_rules = _replace_keywords(previous, keyword_type, target)
            updated = await self.epochs.update_content_rules(conn, epoch.id, new_rules)
            await self.audit.append(
                "admin_keyword_added",
                actor_did=actor_did,
                epoch_id=epoch.id,
                details={"type": keyword_type, "keyword": normalized},
                conn=conn,
            )

        await self._invalidate_rules()
        self._trigger_rescore()
        return updated

    async def remove_keyword(
        self,
        actor_did: str | None,
        keyword_type: str,
        keyword: str,
        *,
        confirm: bool = False,
    ) -> Epoch:
        """Remove one keyword from the include or exclude list.

        Removing the last include keyword turns include filtering off for the
        whole feed, so it requires ``confirm``.

        Raises:
            NotFoundError: The keyword is not in the list.
            ConflictError: ``ConfirmationRequired``.
        """
        normalized = self._normalize_keyword(keyword_type, keyword)

        async with self._db.transaction() as conn:
            epoch = await self._lock_current(conn)
            previous = epoch.content_rules
            target = list(getattr(previous, f"{keyword_type}_keywords"))

            if normalized not in target:
                raise NotFoundError("Keyword not found in this rule set")
            if keyword_type == "include" and len(target) == 1 and not confirm:
                raise ConflictError(
                    "Removing the last include keyword requires confirm=true",
                    code="ConfirmationRequired",
                )

            target.remove(normalized)
            new_rules = _replace_keywords(previous, keyword_type, target)
            updated = await self.epochs.update_content_rules(conn, epoch.id, new_rules)
            await self.audit.append(
                "admin_keyword_removed",
                actor_did=actor_did,
                epoch_id=epoch.id,
                details={"type": keyword_type, "keyword": normalized},
                conn=conn,
            )

        await self._invalidate_rules()
        self._trigger_rescore()
        return updated

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def schedule_vote(
        self,
        actor_did: str,
        starts_at: datetime,
        duration_hours: int | None = None,
        *,
        announce: bool = True,
    ) -> ScheduledVote:
        """Queue a voting window to open automatically at ``starts_at``."""
        hours = self._validate_duration(
            duration_hours if duration_hours is not None else self._config.default_voting_hours
        )
        if starts_at.tzinfo is None:
            starts_at = starts_at.replace(tzinfo=timezone.utc)
        if starts_at <= datetime.now(timezone.utc):
            raise ValidationError("starts_at must be in the future", code="InvalidStartTime")

        async with self._db.transaction() as conn:
            scheduled = await self.scheduled.create(
                ScheduledVote(starts_at=starts_at, duration_hours=hours, created_by=actor_did),
                conn=conn,
            )
            await self.audit.append(
                "admin_schedule_vote",
                actor_did=actor_did,
                details={
                    "scheduled_vote_id": scheduled.id,
                    "starts_at": starts_at.isoformat(),
                    "duration_hours": hours,
                },
                conn=conn,
            )
            if announce:
                await self.outbox.enqueue(
                    OutboxEvent(
                        event_type=EVENT_VOTE_SCHEDULED,
                        payload={
                            "scheduled_vote_id": scheduled.id,
                            "starts_at": starts_at.isoformat(),
                            "duration_hours": hours,
                        },
                    ),
                    conn=conn,
                )
                await self.scheduled.mark_announced(scheduled.id, conn=conn)
                scheduled.announced = True

        logger.info(
            "Vote scheduled",
            scheduled_vote_id=scheduled.id,
            starts_at=starts_at.isoformat(),
            duration_hours=hours,
        )
        return scheduled

    async def send_reminder_if_due(self) -> bool:
        """Enqueue the one closing reminder for the open voting window.

        The ``voting_reminder_sent`` audit entry, checked and written under
        the epoch row lock, makes this idempotent per epoch.

        Returns:
            True if a reminder was enqueued.
        """
        async with self._db.transaction() as conn:
            epoch = await self.epochs.get_current(conn, for_update=True)
            if epoch is None or not epoch.is_voting_open or epoch.voting_ends_at is None:
                return False

            remaining = epoch.voting_ends_at - datetime.now(timezone.utc)
            window = timedelta(hours=self._config.reminder_hours_before_close)
            if remaining <= timedelta(0) or remaining > window:
                return False
            if await self.audit.exists("voting_reminder_sent", epoch.id, conn=conn):
                return False

            hours_left = max(1, round(remaining.total_seconds() / 3600))
            await self.audit.append(
                "voting_reminder_sent",
                epoch_id=epoch.id,
                details={
                    "hours_left": hours_left,
                    "voting_ends_at": epoch.voting_ends_at.isoformat(),
                },
                conn=conn,
            )
            await self.outbox.enqueue(
                OutboxEvent(
                    event_type=EVENT_VOTING_REMINDER,
                    epoch_id=epoch.id,
                    payload={"hours_left": hours_left},
                ),
                conn=conn,
            )

        logger.info("Voting reminder enqueued", epoch_id=epoch.id, hours_left=hours_left)
        return True

    # ------------------------------------------------------------------
    # Post-commit hooks
    # ------------------------------------------------------------------

    async def _invalidate_rules(self) -> None:
        if self._rules_cache is not None:
            await self._rules_cache.invalidate()

    def _trigger_rescore(self) -> None:
        if self._on_results_applied is None:
            return
        try:
            self._on_results_applied()
        except Exception as e:
            logger.warning("Failed to trigger rescoring", error=str(e))

    async def _after_commit(self, transition: PhaseTransition, *, rescore: bool = False) -> None:
        await self._invalidate_rules()
        self._metrics.record_transition(transition.from_phase, transition.to_phase)
        logger.info("Epoch transition", **transition.to_dict())
        if rescore:
            self._trigger_rescore()


def _replace_keywords(rules: ContentRules, keyword_type: str, keywords: list[str]) -> ContentRules:
    if keyword_type == "include":
        return ContentRules(include_keywords=tuple(keywords), exclude_keywords=rules.exclude_keywords)
    return ContentRules(include_keywords=rules.include_keywords, exclude_keywords=tuple(keywords))
