"""
Owned periodic job runner.

Every background loop (scoring, governance automation, outbox drain,
maintenance) is a ``PeriodicJob`` instance that owns its own state:

- ``start()`` runs once immediately, then every ``interval_seconds``
- ``trigger()`` schedules an out-of-band run without waiting for it
- ``run_once()`` awaits a single guarded run
- ``stop()`` sets the cancellation token, stops the loop and waits for the
  in-flight run to finish

Runs never overlap: a tick that fires while a run is in progress is skipped,
not queued. A failing run is logged and the next tick proceeds normally.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from typing import Any

import structlog

logger = structlog.get_logger(__name__)


class PeriodicJob(ABC):
    """
    Base class for single-flight periodic jobs.

    Subclasses implement ``_run`` and may return a result object that
    ``run_once`` hands back to the caller.

    Usage:
        job = MyJob(interval_seconds=300)
        await job.start()
        ...
        await job.stop()
    """

    name: str = "periodic-job"

    def __init__(self, interval_seconds: float) -> None:
        self._interval = interval_seconds
        self._stopping = asyncio.Event()
        self._loop_task: asyncio.Task | None = None
        self._current: asyncio.Task | None = None
        self._last_started_at: float | None = None
        self._last_error: str | None = None
        self._runs = 0

    @abstractmethod
    async def _run(self) -> Any:
        """Do one unit of work."""

    @property
    def is_running(self) -> bool:
        """Whether the interval loop is active."""
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def is_busy(self) -> bool:
        """Whether a run is in progress right now."""
        return self._current is not None and not self._current.done()

    @property
    def stopping(self) -> asyncio.Event:
        """Cancellation token; set once ``stop()`` is called."""
        return self._stopping

    async def start(self) -> None:
        """Start the interval loop (first run happens immediately)."""
        if self.is_running:
            logger.warning("Job already running", job=self.name)
            return

        self._stopping.clear()
        self._loop_task = asyncio.create_task(self._loop(), name=f"{self.name}-loop")
        logger.info("Job started", job=self.name, interval_seconds=self._interval)

    async def stop(self) -> None:
        """Stop the loop and wait for any in-flight run to complete."""
        self._stopping.set()

        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        if self.is_busy:
            logger.info("Waiting for in-flight run", job=self.name)
            await asyncio.wait({self._current})

        logger.info("Job stopped", job=self.name)

    def trigger(self) -> bool:
        """Schedule a run now without awaiting it.

        Returns:
            False if a run is already in progress or the job is stopping.
        """
        if self._stopping.is_set():
            logger.warning("Trigger rejected, job is stopping", job=self.name)
            return False
        if self.is_busy:
            logger.info("Trigger skipped, run already in progress", job=self.name)
            return False

        self._current = asyncio.create_task(self._guarded_run(), name=f"{self.name}-run")
        return True

    async def run_once(self) -> Any:
        """Run once and return the result (None if skipped or failed)."""
        if self.is_busy:
            logger.warning("Skipping run, previous run still in progress", job=self.name)
            return None

        self._current = asyncio.create_task(self._guarded_run(), name=f"{self.name}-run")
        return await asyncio.shield(self._current)

    async def _guarded_run(self) -> Any:
        self._last_started_at = time.time()
        try:
            with structlog.contextvars.bound_contextvars(job=self.name):
                result = await self._run()
            self._last_error = None
            return result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._last_error = str(e)
            logger.error("Job run failed", job=self.name, error=str(e), exc_info=True)
            return None
        finally:
            self._runs += 1

    async def _loop(self) -> None:
        while not self._stopping.is_set():
            if self.is_busy:
                logger.warning("Skipping tick, previous run still in progress", job=self.name)
            else:
                self._current = asyncio.create_task(
                    self._guarded_run(), name=f"{self.name}-run"
                )
                # Shielded so cancelling the loop never cancels a run mid-way
                await asyncio.shield(self._current)

            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                continue

    def status(self) -> dict[str, Any]:
        """Snapshot for health endpoints and the CLI."""
        return {
            "job": self.name,
            "running": self.is_running,
            "busy": self.is_busy,
            "interval_seconds": self._interval,
            "runs": self._runs,
            "last_started_at": self._last_started_at,
            "last_error": self._last_error,
        }
