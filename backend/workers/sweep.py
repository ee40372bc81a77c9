"""
Sweep Worker — Celery entry point for the scheduler sweep.

Builds a fresh engine, store and notification sink per invocation, runs one
``Scheduler.run_sweep()`` and disposes everything again. Per-job failures are
part of the returned summary; only a failure of the sweep as a whole (cannot
open the database, cannot build the sink) is retried.

Schedule: crontab(minute="*/5") — every 5 minutes
Queue: sweep
"""

import asyncio

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from workers.celery_app import celery_app

logger = structlog.get_logger()


@celery_app.task(
    name="workers.sweep.run_sweep",
    bind=True,
    max_retries=2,
    default_retry_delay=60,
    acks_late=True,
)
def run_sweep(self):
    """Periodic job: one scheduler sweep against the configured database."""
    run_id = self.request.id or "manual"
    logger.info("sweep_task.started", run_id=run_id)

    async def _sweep():
        from core.config import get_settings
        from notifications import build_sink
        from scheduling.sweep import Scheduler
        from store.record_store import RecordStore

        settings = get_settings()
        engine = create_async_engine(settings.database_url)
        try:
            async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
            async with async_session() as db:
                store = RecordStore(db)
                sink = build_sink(settings, store)
                try:
                    result = await Scheduler(store, sink).run_sweep()
                finally:
                    await sink.close()
        finally:
            await engine.dispose()

        summary = {
            "status": "success" if result.ok else "partial",
            "run_id": run_id,
            **result.to_dict(),
        }
        logger.info("sweep_task.completed", run_id=run_id, status=summary["status"], errors=len(result.errors))
        return summary

    try:
        return asyncio.run(_sweep())
    except Exception as exc:
        logger.error("sweep_task.failed", run_id=run_id, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)
