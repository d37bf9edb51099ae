"""
Main entrypoint: runs the recovery scheduler in one process.

FastAPI runs separately under uvicorn (for manual triggers and the dashboard).

Usage:
    python -m syncrecovery                    # starts the scheduler
    python -m syncrecovery recover [...]      # one recovery pass, prints JSON
    uvicorn syncrecovery.api.main:app --host 0.0.0.0 --port 8000  # starts API
"""
import asyncio
import logging
import sys

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)


async def _run_scheduler() -> None:
    from syncrecovery.config import get_settings
    from syncrecovery.db.engine import get_engine
    from syncrecovery.scheduler.jobs import build_scheduler

    settings = get_settings()
    scheduler = build_scheduler(get_engine())
    scheduler.start()
    logger.info(
        "Scheduler started (recovery every %d min, retries every %d min)",
        settings.recovery_interval_minutes,
        settings.retry_interval_minutes,
    )

    try:
        await asyncio.Event().wait()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Shutting down...")
    finally:
        scheduler.shutdown()
        logger.info("Goodbye.")


if __name__ == "__main__":
    # Dispatch on first argument: `python -m syncrecovery recover ...` or just `python -m syncrecovery`
    if len(sys.argv) > 1 and sys.argv[1] == "recover":
        from syncrecovery.scripts.recover import main as recover_main
        recover_main(sys.argv[2:])
    else:
        asyncio.run(_run_scheduler())
