"""
Prometheus metrics for the ranking and governance workers.

Defines and exposes metrics for:
- Scoring runs (outcome, latency, posts scored/filtered/failed)
- Published feed size
- Governance phase transitions and ballots
- Announcement outbox delivery
- Maintenance cleanup

Metrics are exposed via HTTP endpoint for Prometheus scraping.
"""

import logging

from prometheus_client import (
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    start_http_server,
)

from src.config.settings import get_settings

logger = logging.getLogger(__name__)

# Scoring runs take seconds to minutes, not milliseconds
RUN_LATENCY_BUCKETS = (0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0)


class MetricsCollector:
    """
    Prometheus metrics collector for community-feed.

    Usage:
        metrics = get_metrics()
        metrics.start_server()

        metrics.record_scoring_run("success", latency=4.2, scored=812, filtered=31)
        metrics.record_transition("voting", "results")
    """

    def __init__(self):
        """Initialize Prometheus metrics."""

        # Scoring pipeline
        self.scoring_runs = Counter(
            "community_feed_scoring_runs_total",
            "Total scoring pipeline runs",
            ["status"],  # completed, skipped, no_epoch, timeout, failed
        )

        self.posts_scored = Counter(
            "community_feed_posts_scored_total",
            "Total posts scored and persisted",
        )

        self.posts_filtered = Counter(
            "community_feed_posts_filtered_total",
            "Total posts removed by content rules",
        )

        self.post_scoring_errors = Counter(
            "community_feed_post_scoring_errors_total",
            "Posts skipped because scoring raised",
        )

        self.scoring_latency = Histogram(
            "community_feed_scoring_latency_seconds",
            "Wall-clock duration of a scoring run",
            buckets=RUN_LATENCY_BUCKETS,
        )

        self.feed_size = Gauge(
            "community_feed_published_posts",
            "Number of posts in the published ranked set",
        )

        # Governance
        self.governance_transitions = Counter(
            "community_feed_governance_transitions_total",
            "Epoch phase transitions",
            ["from_phase", "to_phase"],
        )

        self.votes_cast = Counter(
            "community_feed_votes_total",
            "Ballots recorded",
            ["kind"],  # kind: new, updated
        )

        # Announcement outbox
        self.outbox_delivered = Counter(
            "community_feed_outbox_delivered_total",
            "Outbox events delivered or skipped by settings",
            ["event_type"],
        )

        self.outbox_failures = Counter(
            "community_feed_outbox_failures_total",
            "Outbox delivery attempts that raised",
            ["event_type"],
        )

        # Maintenance
        self.cleanup_deleted = Counter(
            "community_feed_cleanup_deleted_total",
            "Rows deleted by the maintenance job",
            ["table"],
        )

        logger.info("Prometheus metrics initialized")

    def start_server(self, port: int | None = None) -> None:
        """
        Start Prometheus metrics HTTP server.

        Args:
            port: Port to expose metrics on (default from settings)
        """
        settings = get_settings()
        port = port or settings.metrics_port

        start_http_server(port, registry=REGISTRY)
        logger.info("Prometheus metrics server started on port %d", port)

    # Convenience methods

    def record_scoring_run(
        self,
        status: str,
        latency: float | None = None,
        scored: int = 0,
        filtered: int = 0,
        errors: int = 0,
    ) -> None:
        """
        Record the outcome of one scoring run.

        Args:
            status: completed, skipped, no_epoch, timeout or failed
            latency: Run duration in seconds
            scored: Posts persisted
            filtered: Posts removed by content rules
            errors: Posts whose scoring raised
        """
        self.scoring_runs.labels(status=status).inc()
        if latency is not None:
            self.scoring_latency.observe(latency)
        if scored:
            self.posts_scored.inc(scored)
        if filtered:
            self.posts_filtered.inc(filtered)
        if errors:
            self.post_scoring_errors.inc(errors)

    def set_feed_size(self, size: int) -> None:
        """Set the number of posts currently published."""
        self.feed_size.set(size)

    def record_transition(self, from_phase: str, to_phase: str) -> None:
        """Record an epoch phase transition."""
        self.governance_transitions.labels(
            from_phase=from_phase, to_phase=to_phase
        ).inc()

    def record_vote(self, is_new: bool) -> None:
        """Record a ballot insert or update."""
        self.votes_cast.labels(kind="new" if is_new else "updated").inc()

    def record_outbox(self, event_type: str, delivered: bool) -> None:
        """Record an outbox delivery attempt."""
        if delivered:
            self.outbox_delivered.labels(event_type=event_type).inc()
        else:
            self.outbox_failures.labels(event_type=event_type).inc()

    def record_cleanup(self, table: str, count: int) -> None:
        """Record rows removed by the maintenance job."""
        if count > 0:
            self.cleanup_deleted.labels(table=table).inc(count)


# Global metrics instance
_metrics: MetricsCollector | None = None


def get_metrics() -> MetricsCollector:
    """Get global metrics collector instance."""
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics
