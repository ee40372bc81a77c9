"""
Scheduler — one sweep runs every job in a fixed order.

    scheduler = Scheduler(store, sink)
    result = await scheduler.run_sweep()

Order: auto-confirm, device liveness, metrics rollup, notifications, audit
retention. Retention runs last so nothing earlier in the same sweep reads
history it is about to delete. A job that fails outright is recorded as one
JobError without a record id and the sweep moves on to the next job.

The sweep does not care what triggered it (Celery beat, the HTTP endpoint,
a test) and holds no lock; every job is idempotent, so overlapping sweeps
only duplicate reads.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog

from core.errors import PrintRunError
from notifications.base import NotificationSink
from scheduling.jobs import (
    JobError,
    JobReport,
    auto_confirm_orders,
    deliver_notification_batches,
    expire_stale_devices,
    purge_audit_events,
    rollup_staff_metrics,
)
from store.record_store import RecordStore

logger = structlog.get_logger()

JOB_ORDER = ("auto_confirm", "device_liveness", "staff_metrics", "notifications", "audit_retention")


@dataclass
class SweepResult:
    started_at: datetime
    completed_at: datetime | None = None
    jobs_run: list[str] = field(default_factory=list)
    errors: list[JobError] = field(default_factory=list)
    reports: dict[str, JobReport] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "jobs_run": list(self.jobs_run),
            "errors": [e.to_dict() for e in self.errors],
            "reports": {name: report.to_dict() for name, report in self.reports.items()},
        }


class Scheduler:
    def __init__(
        self,
        store: RecordStore,
        sink: NotificationSink,
        *,
        clock: Callable[[], datetime] | None = None,
    ):
        self.store = store
        self.sink = sink
        self.clock = clock or datetime.utcnow

    def _jobs(self, now: datetime) -> list[tuple[str, Callable[[], Awaitable[JobReport]]]]:
        jobs = {
            "auto_confirm": lambda: auto_confirm_orders(self.store, now=now),
            "device_liveness": lambda: expire_stale_devices(self.store, now=now),
            "staff_metrics": lambda: rollup_staff_metrics(self.store, now=now),
            "notifications": lambda: deliver_notification_batches(self.store, self.sink, now=now),
            "audit_retention": lambda: purge_audit_events(self.store, now=now),
        }
        return [(name, jobs[name]) for name in JOB_ORDER]

    async def run_sweep(self) -> SweepResult:
        now = self.clock()
        result = SweepResult(started_at=now)
        logger.info("sweep.started", started_at=now.isoformat())

        for name, job in self._jobs(now):
            try:
                report = await job()
            except PrintRunError as exc:
                logger.error("sweep.job_failed", job=name, error=str(exc))
                await self.store.rollback()
                result.errors.append(JobError(job=name, message=str(exc), error_type=type(exc).__name__))
                continue
            except Exception as exc:
                logger.error("sweep.job_crashed", job=name, error=str(exc), exc_info=True)
                await self.store.rollback()
                result.errors.append(JobError(job=name, message=str(exc), error_type=type(exc).__name__))
                continue
            result.jobs_run.append(name)
            result.reports[name] = report
            result.errors.extend(report.errors)

        result.completed_at = self.clock()
        logger.info(
            "sweep.completed",
            jobs_run=result.jobs_run,
            errors=len(result.errors),
            duration_seconds=(result.completed_at - result.started_at).total_seconds(),
        )
        return result
