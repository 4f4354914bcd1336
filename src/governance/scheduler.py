"""
Governance automation tick.

Every ``scheduler_interval_seconds`` the ``EpochScheduler``:

1. opens voting for due scheduled votes
2. closes expired voting windows that have auto_transition on
3. enqueues the single pre-close reminder for the open window

Steps are isolated: a failure in one is logged and the next still runs.
Concurrent ticks (several worker processes) are safe because every step
re-validates under the epoch row lock and closes with a conditional update.
"""

from dataclasses import dataclass, field
from typing import Any

import structlog

from src.governance.epoch_manager import TRIGGER_SCHEDULED, EpochManager
from src.governance.errors import ConflictError, NoActiveEpochError
from src.services.periodic import PeriodicJob

logger = structlog.get_logger(__name__)

# Upper bound on scheduled votes opened per tick
MAX_SCHEDULED_PER_TICK = 5


@dataclass
class TickResult:
    """What one automation tick did."""

    voting_started: list[int] = field(default_factory=list)
    voting_closed: list[int] = field(default_factory=list)
    already_advanced: list[int] = field(default_factory=list)
    reminder_sent: bool = False
    failed_steps: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "voting_started": self.voting_started,
            "voting_closed": self.voting_closed,
            "already_advanced": self.already_advanced,
            "reminder_sent": self.reminder_sent,
            "failed_steps": self.failed_steps,
        }


class EpochScheduler(PeriodicJob):
    """
    Periodic driver for the time-based parts of the epoch lifecycle.

    Usage:
        scheduler = EpochScheduler(manager)
        await scheduler.start()
        ...
        await scheduler.stop()
    """

    name = "epoch-scheduler"

    def __init__(self, manager: EpochManager, interval_seconds: float | None = None) -> None:
        super().__init__(
            interval_seconds
            if interval_seconds is not None
            else manager.config.scheduler_interval_seconds
        )
        self._manager = manager

    async def _run(self) -> TickResult:
        return await self.tick()

    async def tick(self) -> TickResult:
        """Run the three automation steps once."""
        result = TickResult()

        try:
            await self._start_scheduled_votes(result)
        except Exception as e:
            result.failed_steps.append("scheduled_votes")
            logger.error("Scheduled vote step failed", error=str(e), exc_info=True)

        try:
            await self._close_expired_windows(result)
        except Exception as e:
            result.failed_steps.append("auto_close")
            logger.error("Auto-close step failed", error=str(e), exc_info=True)

        try:
            result.reminder_sent = await self._manager.send_reminder_if_due()
        except Exception as e:
            result.failed_steps.append("reminder")
            logger.error("Reminder step failed", error=str(e), exc_info=True)

        logger.info("Governance tick complete", **result.to_dict())
        return result

    async def _start_scheduled_votes(self, result: TickResult) -> None:
        for _ in range(MAX_SCHEDULED_PER_TICK):
            if self.stopping.is_set():
                return
            try:
                epoch = await self._manager.start_scheduled_vote()
            except NoActiveEpochError:
                logger.warning("Scheduled vote due but no active epoch")
                return
            if epoch is None:
                return
            result.voting_started.append(epoch.id)

    async def _close_expired_windows(self, result: TickResult) -> None:
        expired = await self._manager.epochs.find_expired_voting()
        for epoch_id in expired:
            if self.stopping.is_set():
                return
            try:
                await self._manager.end_voting(
                    None,
                    TRIGGER_SCHEDULED,
                    expected_epoch_id=epoch_id,
                )
            except ConflictError as e:
                # Another tick or an admin advanced or extended it first
                result.already_advanced.append(epoch_id)
                logger.info(
                    "Voting window already advanced",
                    epoch_id=epoch_id,
                    reason=e.code,
                )
                continue
            result.voting_closed.append(epoch_id)
