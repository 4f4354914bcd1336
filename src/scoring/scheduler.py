"""
Periodic scoring runs.

``ScoringScheduler`` runs the pipeline immediately on start and then every
``interval_seconds``. Overlapping ticks are skipped, and ``trigger()`` lets
governance request an out-of-band rescoring after new weights go live.
"""

import structlog

from src.scoring.pipeline import ScoringPipeline
from src.scoring.schemas import ScoringRunResult
from src.services.periodic import PeriodicJob

logger = structlog.get_logger(__name__)


class ScoringScheduler(PeriodicJob):
    """
    Owns the scoring loop for one worker process.

    Usage:
        scheduler = ScoringScheduler(pipeline)
        await scheduler.start()
        scheduler.trigger()  # e.g. after results are approved
        await scheduler.stop()
    """

    name = "scoring-scheduler"

    def __init__(self, pipeline: ScoringPipeline, interval_seconds: float | None = None) -> None:
        super().__init__(
            interval_seconds
            if interval_seconds is not None
            else pipeline.config.interval_seconds
        )
        self._pipeline = pipeline
        self._last_result: ScoringRunResult | None = None

    @property
    def last_result(self) -> ScoringRunResult | None:
        return self._last_result

    async def _run(self) -> ScoringRunResult:
        result = await self._pipeline.run()
        self._last_result = result
        return result
