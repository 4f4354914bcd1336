"""
Command-line interface for community-feed.

Provides commands to run the API and background workers, initialize the
database, and run one-off governance and maintenance operations.

Usage:
    community-feed serve            # Run the API server
    community-feed worker           # Run scoring, governance, outbox and cleanup loops
    community-feed init-db          # Create tables and the first epoch
    community-feed score            # Run one scoring pass
    community-feed scheduler-tick   # Run one governance automation tick
    community-feed transition       # Roll over to a new epoch
    community-feed cleanup          # Enforce corpus retention
    community-feed health           # Check service health
"""

import asyncio
import json
import signal
import sys
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import click

from src.config.settings import get_settings
from src.observability.logging import setup_logging
from src.observability.metrics import get_metrics


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
def main(debug: bool) -> None:
    """Community Feed - governance-driven feed ranking."""
    setup_logging("DEBUG" if debug else None)


@asynccontextmanager
async def _runtime() -> AsyncIterator[dict[str, Any]]:
    """Connect to PostgreSQL and Redis and wire the shared services."""
    from src.governance.config import GovernanceConfig
    from src.governance.content_filter import ContentRulesCache
    from src.governance.epoch_manager import EpochManager
    from src.governance.repository import EpochRepository
    from src.scoring.config import ScoringConfig
    from src.scoring.pipeline import ScoringPipeline
    from src.scoring.repository import ScoringRepository
    from src.scoring.scheduler import ScoringScheduler
    from src.storage.database import Database
    from src.storage.redis_client import create_redis_client

    db = Database()
    await db.connect()
    redis_client = create_redis_client()

    try:
        governance_config = GovernanceConfig()
        epoch_repo = EpochRepository(db)
        rules_cache = ContentRulesCache(redis_client, epoch_repo, governance_config)
        pipeline = ScoringPipeline(
            ScoringRepository(db),
            redis_client,
            epoch_repo,
            rules_cache=rules_cache,
            config=ScoringConfig(),
        )
        scoring = ScoringScheduler(pipeline)
        manager = EpochManager(
            db,
            epoch_repo=epoch_repo,
            rules_cache=rules_cache,
            config=governance_config,
            on_results_applied=scoring.trigger,
        )
        yield {
            "db": db,
            "redis": redis_client,
            "manager": manager,
            "pipeline": pipeline,
            "scoring": scoring,
        }
        # Let a rescoring run triggered by a transition finish
        await scoring.stop()
    finally:
        await redis_client.aclose()
        await db.close()


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


@main.command("init-db")
@click.option("--bootstrap/--no-bootstrap", default=True, help="Create the first epoch")
def init_db(bootstrap: bool) -> None:
    """Initialize the database schema."""
    from src.storage.schema import create_tables

    async def run():
        async with _runtime() as rt:
            await create_tables(rt["db"])
            click.echo("Database initialized successfully")

            if bootstrap:
                epoch = await rt["manager"].ensure_epoch()
                click.echo(f"Current epoch: {epoch.id} ({epoch.phase})")

    asyncio.run(run())


@main.command()
@click.option("--host", default=None, help="API server host")
@click.option("--port", default=None, type=int, help="API server port")
@click.option("--reload", is_flag=True, help="Enable auto-reload (dev only)")
@click.option("--metrics-port", default=None, type=int, help="Metrics server port")
def serve(host: str | None, port: int | None, reload: bool, metrics_port: int | None) -> None:
    """Start the API server."""
    import uvicorn

    settings = get_settings()
    host = host or settings.api_host
    port = port or settings.api_port
    metrics_port = metrics_port or settings.metrics_port

    # Start metrics server on separate port
    get_metrics().start_server(port=metrics_port)

    click.echo(f"Starting API server on {host}:{port}")
    click.echo(f"Metrics available on http://localhost:{metrics_port}/metrics")
    click.echo(f"API docs available on http://localhost:{port}/docs")

    uvicorn.run(
        "src.api.app:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload,
        log_level="info",
    )


@main.command()
@click.option("--metrics-port", default=None, type=int, help="Metrics server port")
@click.option("--no-cleanup", is_flag=True, help="Do not run the hourly cleanup job")
def worker(metrics_port: int | None, no_cleanup: bool) -> None:
    """Run the scoring, governance, outbox and cleanup loops."""
    import structlog

    from src.governance.outbox import OutboxRepository, OutboxWorker
    from src.governance.scheduler import EpochScheduler
    from src.maintenance.cleanup import CleanupJob

    logger = structlog.get_logger()

    async def run():
        get_metrics().start_server(port=metrics_port)

        async with _runtime() as rt:
            await rt["manager"].ensure_epoch()

            jobs = [
                rt["scoring"],
                EpochScheduler(rt["manager"]),
                OutboxWorker(OutboxRepository(rt["db"]), redis_client=rt["redis"]),
            ]
            if not no_cleanup:
                jobs.append(CleanupJob(rt["db"], rt["redis"]))

            # Handle shutdown signals
            stop = asyncio.Event()
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, stop.set)

            for job in jobs:
                await job.start()
            logger.info("Worker running", jobs=[job.name for job in jobs])

            await stop.wait()

            logger.info("Worker shutting down")
            # Stop in reverse so governance never triggers a stopped scorer
            for job in reversed(jobs):
                await job.stop()

    asyncio.run(run())


@main.command()
def score() -> None:
    """Run one scoring pass and print the summary."""

    async def run():
        async with _runtime() as rt:
            result = await rt["pipeline"].run()
            _echo_json(result.to_dict())
            if result.status not in ("completed", "skipped"):
                sys.exit(1)

    asyncio.run(run())


@main.command("scheduler-tick")
def scheduler_tick() -> None:
    """Run one governance automation tick (scheduled votes, auto-close, reminders)."""
    from src.governance.scheduler import EpochScheduler

    async def run():
        async with _runtime() as rt:
            result = await EpochScheduler(rt["manager"]).tick()
            _echo_json(result.to_dict())
            if result.failed_steps:
                sys.exit(1)

    asyncio.run(run())


@main.command()
@click.option("--force", is_flag=True, help="Skip the minimum vote check")
@click.option("--actor", default=None, help="Admin DID recorded in the audit log")
def transition(force: bool, actor: str | None) -> None:
    """Close the current epoch and open the next one."""
    from src.governance.errors import GovernanceError

    async def run():
        async with _runtime() as rt:
            manager = rt["manager"]
            try:
                if force:
                    result = await manager.force_transition(actor)
                else:
                    result = await manager.trigger_transition(actor)
            except GovernanceError as e:
                click.echo(click.style(f"Error: {e.code}: {e.message}", fg="red"))
                sys.exit(1)

            click.echo(click.style(
                f"Epoch {result.closed_epoch_id} closed, epoch {result.new_epoch.id} active",
                fg="green",
            ))
            _echo_json(result.to_dict())

    asyncio.run(run())


@main.command()
@click.option("--dry-run", is_flag=True, help="Show counts without deleting")
def cleanup(dry_run: bool) -> None:
    """Remove corpus rows past retention.

    Example:
        community-feed cleanup --dry-run   # Preview without deleting
    """
    from src.maintenance.cleanup import CleanupJob

    async def run():
        async with _runtime() as rt:
            job = CleanupJob(rt["db"], rt["redis"])
            result = await job.cleanup(dry_run=dry_run)

            verb = "Would delete" if dry_run else "Deleted"
            for table, count in result.deleted.items():
                click.echo(f"  {verb} {count} rows from {table}")
            click.echo(f"\nTotal: {result.total}")
            if dry_run:
                click.echo("\nRun without --dry-run to actually delete.")

    asyncio.run(run())


@main.command()
def health() -> None:
    """Check health of all dependencies."""
    import structlog
    logger = structlog.get_logger()

    async def check():
        results: dict[str, bool] = {}

        # Check Redis
        try:
            from src.storage.redis_client import create_redis_client
            redis_client = create_redis_client()
            results["redis"] = bool(await redis_client.ping())
            await redis_client.aclose()
        except Exception as e:
            results["redis"] = False
            logger.error("Redis health check failed", error=str(e))

        # Check PostgreSQL and governance bootstrap
        try:
            from src.governance.repository import EpochRepository
            from src.storage.database import Database
            db = Database()
            await db.connect()
            results["postgres"] = await db.health_check()
            results["epoch"] = await EpochRepository(db).get_current() is not None
            await db.close()
        except Exception as e:
            results["postgres"] = False
            results["epoch"] = False
            logger.error("Postgres health check failed", error=str(e))

        settings = get_settings()
        results["admin_configured"] = bool(settings.admin_api_keys)

        # Print results
        click.echo("\nHealth Check Results:")
        click.echo("-" * 40)

        all_healthy = True
        for name, status in results.items():
            icon = "✓" if status else "✗"
            color = "green" if status else "red"
            click.echo(click.style(f"  {icon} {name}: {status}", fg=color))
            if name in ("redis", "postgres") and not status:
                all_healthy = False

        click.echo("-" * 40)

        if all_healthy:
            click.echo(click.style("All core services healthy!", fg="green"))
            sys.exit(0)
        else:
            click.echo(click.style("Some services unhealthy!", fg="red"))
            sys.exit(1)

    asyncio.run(check())


if __name__ == "__main__":
    main()
