"""
APScheduler jobs for background sync.

An incremental sync runs every few minutes to pick up recent changes; a
nightly full sync catches anything the incremental probe missed (deleted
filters, projects that appeared since the last run).

Both jobs share the app's orchestrator, so the full-sync lock and the
per-project locks apply across scheduled and on-demand runs.
"""
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from ticketsync.config import get_settings
from ticketsync.sync.lock import LockHeldError

logger = logging.getLogger(__name__)


def build_scheduler(orchestrator) -> AsyncIOScheduler:
    """
    Create and configure the APScheduler.

    Args:
        orchestrator: SyncOrchestrator the jobs drive.

    Returns:
        Configured AsyncIOScheduler (not yet started).
    """
    settings = get_settings()
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        _incremental_sync,
        trigger="interval",
        minutes=settings.incremental_sync_minutes,
        id="incremental_sync",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        kwargs={"orchestrator": orchestrator},
    )
    scheduler.add_job(
        _full_sync,
        trigger="cron",
        hour=settings.full_sync_hour,
        minute=0,
        id="full_sync",
        replace_existing=True,
        max_instances=1,
        kwargs={"orchestrator": orchestrator},
    )

    return scheduler


async def _incremental_sync(orchestrator) -> None:
    """Scheduled incremental sync. Never raises."""
    try:
        result = await orchestrator.start_incremental_sync()
        logger.info(
            "Scheduled incremental sync %s finished: %s", result["id"], result["outcome"]
        )
    except Exception as exc:
        logger.error("Scheduled incremental sync failed: %s", exc)


async def _full_sync(orchestrator) -> None:
    """Nightly full sync. A run already in progress is left alone."""
    try:
        result = await orchestrator.start_full_sync()
        logger.info("Nightly full sync %s finished: %s", result["id"], result["outcome"])
    except LockHeldError as exc:
        logger.info("Skipping nightly full sync: %s", exc)
    except Exception as exc:
        logger.error("Nightly full sync failed: %s", exc)
