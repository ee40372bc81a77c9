"""
Celery Application Configuration
"""

from celery import Celery
from celery.schedules import crontab

from core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "printrun",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    worker_prefetch_multiplier=1,
    task_routes={
        "workers.sweep.*": {"queue": "sweep"},
    },
    # ── Celery Beat Schedule ─────────────────────────────────────────
    beat_schedule={
        # ── Scheduler sweep (auto-confirm, liveness, metrics, notifications, retention)
        "run-sweep-5m": {
            "task": "workers.sweep.run_sweep",
            "schedule": crontab(minute=f"*/{settings.sweep_interval_minutes}"),
            "options": {"queue": "sweep", "expires": settings.sweep_interval_minutes * 60},
        },
    },
)

# Auto-discover tasks
celery_app.autodiscover_tasks(["workers"])
