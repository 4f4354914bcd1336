"""Schema definitions for governance records.

Maps to the ``governance_epochs``, ``governance_votes``,
``governance_audit_log``, ``scheduled_votes`` and ``governance_outbox``
tables. Rows are converted to these dataclasses at the repository boundary;
nothing above the repository touches raw asyncpg records.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from src.governance.weights import Weights

# Lifecycle phase is the single authoritative state of an epoch.
PHASE_RUNNING = "running"
PHASE_VOTING = "voting"
PHASE_RESULTS = "results"

VALID_PHASES: frozenset[str] = frozenset({
    PHASE_RUNNING,
    PHASE_VOTING,
    PHASE_RESULTS,
})

# Status only separates the current row from history. "voting" is a
# legacy value from before phases existed and is read as phase=voting.
STATUS_ACTIVE = "active"
STATUS_LEGACY_VOTING = "voting"
STATUS_CLOSED = "closed"

VALID_STATUSES: frozenset[str] = frozenset({
    STATUS_ACTIVE,
    STATUS_LEGACY_VOTING,
    STATUS_CLOSED,
})


@dataclass(frozen=True)
class ContentRules:
    """Include/exclude keyword lists applied before scoring.

    Excludes always win; if any include keyword is configured a post must
    match at least one of them.
    """

    include_keywords: tuple[str, ...] = ()
    exclude_keywords: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ContentRules":
        if not data:
            return cls()
        include = data.get("include_keywords", data.get("includeKeywords")) or []
        exclude = data.get("exclude_keywords", data.get("excludeKeywords")) or []
        return cls(
            include_keywords=tuple(str(k) for k in include),
            exclude_keywords=tuple(str(k) for k in exclude),
        )

    def to_dict(self) -> dict[str, list[str]]:
        return {
            "include_keywords": list(self.include_keywords),
            "exclude_keywords": list(self.exclude_keywords),
        }

    @property
    def is_empty(self) -> bool:
        return not self.include_keywords and not self.exclude_keywords


@dataclass
class Epoch:
    """A governance round with a live weight vector and content rules.

    Attributes:
        id: Serial epoch identifier.
        phase: running, voting or results.
        status: active (current) or closed (history).
        weights: Live normalized weights used by scoring.
        content_rules: Live content rules used by scoring.
        vote_count: Ballots counted when the current values were set.
        proposed_weights: Pending weights, only while phase is results.
        proposed_content_rules: Pending rules, only while phase is results.
    """

    id: int
    phase: str
    status: str
    weights: Weights
    content_rules: ContentRules = field(default_factory=ContentRules)
    vote_count: int = 0
    voting_started_at: datetime | None = None
    voting_ends_at: datetime | None = None
    voting_closed_at: datetime | None = None
    auto_transition: bool = False
    proposed_weights: Weights | None = None
    proposed_content_rules: ContentRules | None = None
    results_approved_at: datetime | None = None
    results_approved_by: str | None = None
    description: str | None = None
    created_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    closed_at: datetime | None = None

    def __post_init__(self) -> None:
        if self.status not in VALID_STATUSES:
            raise ValueError(
                f"Invalid status {self.status!r}. "
                f"Must be one of: {sorted(VALID_STATUSES)}"
            )
        if self.status == STATUS_LEGACY_VOTING:
            self.status = STATUS_ACTIVE
            if self.phase == PHASE_RUNNING:
                self.phase = PHASE_VOTING
        if self.phase not in VALID_PHASES:
            raise ValueError(
                f"Invalid phase {self.phase!r}. "
                f"Must be one of: {sorted(VALID_PHASES)}"
            )

    @property
    def is_voting_open(self) -> bool:
        return self.status == STATUS_ACTIVE and self.phase == PHASE_VOTING

    @property
    def has_pending_results(self) -> bool:
        return self.phase == PHASE_RESULTS


@dataclass
class Vote:
    """One voter's ballot for one epoch.

    ``weights`` is None for a keyword-only ballot. Keywords are stored
    normalized (lower-cased, deduplicated, capped).
    """

    voter_did: str
    epoch_id: int
    weights: Weights | None = None
    include_keywords: list[str] = field(default_factory=list)
    exclude_keywords: list[str] = field(default_factory=list)
    voted_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    id: str | None = None

    @property
    def has_keywords(self) -> bool:
        return bool(self.include_keywords or self.exclude_keywords)


@dataclass
class AuditLogEntry:
    """An append-only audit record."""

    action: str
    actor_did: str | None = None
    epoch_id: int | None = None
    details: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    id: int | None = None


@dataclass
class ScheduledVote:
    """A future voting window queued by an admin."""

    starts_at: datetime
    duration_hours: int
    created_by: str
    id: int | None = None
    announced: bool = False
    started_at: datetime | None = None
    created_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    def __post_init__(self) -> None:
        if not (1 <= self.duration_hours <= 168):
            raise ValueError(
                f"Invalid duration_hours {self.duration_hours}. Must be between 1 and 168."
            )


# Outbox event types, one per announcement kind. The value doubles as the
# announcement_settings key that can switch the announcement off.
EVENT_VOTING_OPENED = "voting_opened"
EVENT_VOTING_REMINDER = "voting_reminder_24h"
EVENT_VOTING_CLOSED = "voting_closed"
EVENT_RESULTS_APPROVED = "results_approved"
EVENT_VOTE_SCHEDULED = "vote_scheduled"

VALID_EVENT_TYPES: frozenset[str] = frozenset({
    EVENT_VOTING_OPENED,
    EVENT_VOTING_REMINDER,
    EVENT_VOTING_CLOSED,
    EVENT_RESULTS_APPROVED,
    EVENT_VOTE_SCHEDULED,
})


@dataclass
class OutboxEvent:
    """A governance domain event committed with its transaction."""

    event_type: str
    epoch_id: int | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    id: int | None = None
    attempts: int = 0
    last_error: str | None = None
    available_at: datetime | None = None
    delivered_at: datetime | None = None
    created_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    def __post_init__(self) -> None:
        if self.event_type not in VALID_EVENT_TYPES:
            raise ValueError(
                f"Invalid event_type {self.event_type!r}. "
                f"Must be one of: {sorted(VALID_EVENT_TYPES)}"
            )
