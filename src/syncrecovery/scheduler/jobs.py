"""
APScheduler jobs for stuck-sync recovery and retry processing.

Every tick is a stateless, self-contained invocation: all durable state lives
in the database, so a missed or overlapping tick is harmless. Overlaps are
prevented anyway (max_instances=1).
"""
import logging
from datetime import datetime

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from syncrecovery.config import get_settings

logger = logging.getLogger(__name__)


def build_scheduler(engine) -> AsyncIOScheduler:
    """
    Create and configure the APScheduler.

    Args:
        engine: SQLAlchemy engine passed to every job.

    Returns:
        Configured AsyncIOScheduler (not yet started).
    """
    settings = get_settings()
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        _recovery_tick,
        trigger="interval",
        minutes=settings.recovery_interval_minutes,
        id="sync_recovery",
        replace_existing=True,
        max_instances=1,
        kwargs={"engine": engine},
    )
    scheduler.add_job(
        _retry_queue_tick,
        trigger="interval",
        minutes=settings.retry_interval_minutes,
        id="retry_queue",
        replace_existing=True,
        max_instances=1,
        kwargs={"engine": engine},
    )

    return scheduler


async def _recovery_tick(engine) -> None:
    """Auto-recover every stuck sync."""
    from syncrecovery.recovery.orchestrator import RecoveryOrchestrator
    from syncrecovery.recovery.worker_client import WorkerClient

    logger.info("Recovery tick at %s", datetime.utcnow().isoformat())
    try:
        orchestrator = RecoveryOrchestrator(engine, WorkerClient())
        report = await orchestrator.run("auto")
        for result in report.results:
            logger.info(
                "%s %s: %s (%s)",
                result.action,
                result.platform,
                result.message,
                "ok" if result.success else "failed",
            )
    except Exception as exc:
        logger.error("Recovery tick failed: %s", exc)


async def _retry_queue_tick(engine) -> None:
    """Re-run the failed units that are due."""
    from syncrecovery.recovery.worker_client import WorkerClient
    from syncrecovery.sync.retry_queue import RetryQueue

    try:
        results = await RetryQueue(engine).process_due(WorkerClient())
        if results["processed"]:
            logger.info("Retry queue processed: %s", results)
    except Exception as exc:
        logger.error("Retry queue tick failed: %s", exc)
