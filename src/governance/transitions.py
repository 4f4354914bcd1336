"""Epoch phase transition records.

A PhaseTransition captures the moment the current epoch moves between
lifecycle phases (e.g. voting -> results). The legal edges are listed in
``VALID_PHASE_TRANSITIONS``; the epoch manager refuses anything else with a
conflict whose code says what went wrong.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from src.governance.errors import ConflictError
from src.governance.schemas import PHASE_RESULTS, PHASE_RUNNING, PHASE_VOTING

# Legal phase edges keyed by operation, with the audit action written for each.
VALID_PHASE_TRANSITIONS: dict[str, tuple[str, str]] = {
    "start_voting": (PHASE_RUNNING, PHASE_VOTING),
    "end_voting": (PHASE_VOTING, PHASE_RESULTS),
    "approve_results": (PHASE_RESULTS, PHASE_RUNNING),
    "reject_results": (PHASE_RESULTS, PHASE_RUNNING),
}

# Conflict codes for an operation attempted from the wrong phase.
_CONFLICT_CODES: dict[tuple[str, str], tuple[str, str]] = {
    ("start_voting", PHASE_VOTING): ("AlreadyVoting", "Voting is already open"),
    ("start_voting", PHASE_RESULTS): (
        "ResultsPending",
        "Results from the last vote are awaiting review",
    ),
    ("end_voting", PHASE_RUNNING): ("VotingNotOpen", "Voting is not currently open"),
    ("end_voting", PHASE_RESULTS): ("VotingNotOpen", "Voting is not currently open"),
    ("approve_results", PHASE_RUNNING): ("ResultsNotPending", "No results are pending review"),
    ("approve_results", PHASE_VOTING): ("ResultsNotPending", "No results are pending review"),
    ("reject_results", PHASE_RUNNING): ("ResultsNotPending", "No results are pending review"),
    ("reject_results", PHASE_VOTING): ("ResultsNotPending", "No results are pending review"),
}


def require_phase(operation: str, current_phase: str) -> str:
    """Validate ``operation`` from ``current_phase``.

    Returns:
        The phase the operation moves to.

    Raises:
        ConflictError: The epoch is in the wrong phase for the operation.
    """
    from_phase, to_phase = VALID_PHASE_TRANSITIONS[operation]
    if current_phase != from_phase:
        code, message = _CONFLICT_CODES.get(
            (operation, current_phase),
            ("InvalidPhase", f"Cannot {operation} while phase is {current_phase}"),
        )
        raise ConflictError(message, code=code)
    return to_phase


@dataclass
class PhaseTransition:
    """A completed phase change of one epoch.

    Attributes:
        epoch_id: The epoch that transitioned.
        from_phase: Phase before the transition.
        to_phase: Phase after the transition.
        actor_did: Admin who triggered it, None for the scheduler.
        trigger: manual, scheduled, or forced.
        occurred_at: When the transition committed.
        metadata: Additional context (vote count, window end, ...).
    """

    epoch_id: int
    from_phase: str
    to_phase: str
    actor_did: str | None = None
    trigger: str = "manual"
    occurred_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dictionary."""
        return {
            "epoch_id": self.epoch_id,
            "from_phase": self.from_phase,
            "to_phase": self.to_phase,
            "actor_did": self.actor_did,
            "trigger": self.trigger,
            "occurred_at": self.occurred_at.isoformat(),
            "metadata": self.metadata,
        }
