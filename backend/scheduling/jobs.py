"""
Sweep Jobs — the time-triggered housekeeping run by every scheduler sweep.

Each job is an ``async def job(store, *, now, ...) -> JobReport`` and is safe
to run again over the same data:
  - auto_confirm_orders           status=SUBMITTED + auto_confirmed_at IS NULL
  - expire_stale_devices          is_online=true filter on the bulk update
  - rollup_staff_metrics          existence check + unique (staff, period)
  - deliver_notification_batches  delivered_at IS NULL
  - purge_audit_events            age cutoff; reports only once COMPLETED

Per-record failures are logged, recorded as JobError and skipped. A failure
of the job's own fetch propagates to the Scheduler, which records it as a
single JobError for the job.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

import structlog

from core.errors import InvalidTransition, NotFound, StoreFailure
from db.models import (
    AuditEvent,
    AuditReport,
    AuditReportStatus,
    Machine,
    Notification,
    Order,
    StaffMetric,
    StaffProfile,
    StaffRole,
    StaffTask,
    StudentAudit,
)
from notifications.base import NotificationMessage, NotificationSink
from store.record_store import RecordStore
from workflow.states import OrderStatus
from workflow.transitions import SYSTEM_ACTOR, transition_order

logger = structlog.get_logger()

AUTO_CONFIRM_AFTER = timedelta(hours=24)
DEVICE_OFFLINE_AFTER = timedelta(minutes=5)
AUDIT_RETENTION = timedelta(days=90)
AUDIT_REPORT_RETENTION = timedelta(days=90)
NOTIFICATION_BATCH_LIMIT = 100
METRIC_ROLES = (StaffRole.ADMIN, StaffRole.OPERATOR, StaffRole.SUPERVISOR)


@dataclass
class JobError:
    job: str
    message: str
    record_id: str | None = None
    error_type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "job": self.job,
            "message": self.message,
            "record_id": self.record_id,
            "error_type": self.error_type,
        }


@dataclass
class JobReport:
    job: str
    processed: int = 0
    affected_ids: list[str] = field(default_factory=list)
    errors: list[JobError] = field(default_factory=list)

    def fail(self, message: str, record_id: Any = None, exc: BaseException | None = None) -> JobError:
        error = JobError(
            job=self.job,
            message=message,
            record_id=str(record_id) if record_id is not None else None,
            error_type=type(exc).__name__ if exc is not None else None,
        )
        self.errors.append(error)
        return error

    def to_dict(self) -> dict[str, Any]:
        return {
            "job": self.job,
            "processed": self.processed,
            "affected_ids": list(self.affected_ids),
            "errors": [e.to_dict() for e in self.errors],
        }


def _round_half_up(value: float, places: str) -> Decimal:
    return Decimal(str(value)).quantize(Decimal(places), rounding=ROUND_HALF_UP)


# ─── 1. Auto-confirm ─────────────────────────────────────────────────────


async def auto_confirm_orders(store: RecordStore, *, now: datetime) -> JobReport:
    """Queue orders that sat in SUBMITTED longer than AUTO_CONFIRM_AFTER."""
    report = JobReport(job="auto_confirm")
    cutoff = now - AUTO_CONFIRM_AFTER

    candidates = await store.list_where(
        Order,
        Order.status == OrderStatus.SUBMITTED,
        Order.submission_time.is_not(None),
        Order.submission_time < cutoff,
        Order.auto_confirmed_at.is_(None),
        order_by=(Order.submission_time, Order.id),
    )
    order_ids = [order.id for order in candidates]

    for order_id in order_ids:
        try:
            await transition_order(
                store,
                order_id,
                OrderStatus.QUEUED,
                SYSTEM_ACTOR,
                action="ORDER_AUTO_CONFIRMED",
                details={"reason": "no_response_within_24h"},
                extra_stamps=("auto_confirmed_at",),
                now=now,
            )
        except (InvalidTransition, StoreFailure, NotFound) as exc:
            logger.warning("auto_confirm.order_failed", order_id=str(order_id), error=str(exc))
            report.fail(str(exc), record_id=order_id, exc=exc)
            continue
        report.processed += 1
        report.affected_ids.append(str(order_id))

    logger.info("auto_confirm.completed", confirmed=report.processed, failed=len(report.errors))
    return report


# ─── 2. Device liveness ──────────────────────────────────────────────────


async def expire_stale_devices(store: RecordStore, *, now: datetime) -> JobReport:
    """Mark devices offline when their last heartbeat is older than DEVICE_OFFLINE_AFTER."""
    report = JobReport(job="device_liveness")
    cutoff = now - DEVICE_OFFLINE_AFTER
    stale = (
        Machine.is_online.is_(True),
        Machine.last_seen_at.is_not(None),
        Machine.last_seen_at < cutoff,
    )

    async with store.atomic("device_liveness"):
        expiring = await store.list_where(Machine, *stale, order_by=(Machine.device_id,))
        device_ids = [machine.device_id for machine in expiring]
        # Re-applies the same predicate, so a heartbeat landing in between keeps its device online.
        updated = await store.update_where(
            Machine,
            {
                "is_online": False,
                "is_printing": False,
                "active_session_id": None,
                "active_print_job": None,
                "updated_at": now,
            },
            *stale,
        )

    report.processed = updated
    report.affected_ids = device_ids
    if device_ids:
        logger.info("device_liveness.expired", count=updated, device_ids=device_ids)
    return report


# ─── 3. Staff metrics rollup ─────────────────────────────────────────────


def previous_day_window(now: datetime) -> tuple[datetime, datetime]:
    """The full UTC day before ``now``: [00:00:00, 23:59:59.999999]."""
    today = now.replace(hour=0, minute=0, second=0, microsecond=0)
    start = today - timedelta(days=1)
    end = today - timedelta(microseconds=1)
    return start, end


def summarize_tasks(tasks: list[StaffTask]) -> dict[str, Any]:
    assigned = len(tasks)
    completed = sum(1 for t in tasks if t.status == "COMPLETED")

    durations = [
        (t.completed_at - t.assigned_at).total_seconds()
        for t in tasks
        if t.completed_at is not None and t.assigned_at is not None
    ]
    avg_seconds = None
    if durations:
        avg_seconds = int(_round_half_up(sum(durations) / len(durations), "1"))

    efficiency = None
    if assigned:
        efficiency = float(_round_half_up(completed / assigned, "0.01"))

    return {
        "tasks_assigned": assigned,
        "tasks_completed": completed,
        "efficiency_score": efficiency,
        "avg_completion_seconds": avg_seconds,
    }


async def rollup_staff_metrics(store: RecordStore, *, now: datetime) -> JobReport:
    """Write one StaffMetric per eligible staff member for the previous UTC day."""
    report = JobReport(job="staff_metrics")
    period_start, period_end = previous_day_window(now)

    staff = await store.list_where(
        StaffProfile,
        StaffProfile.role.in_(METRIC_ROLES),
        order_by=(StaffProfile.id,),
    )
    staff_ids = [member.id for member in staff]

    for staff_id in staff_ids:
        try:
            async with store.atomic("staff_metrics:rollup"):
                existing = await store.first_where(
                    StaffMetric,
                    StaffMetric.staff_id == staff_id,
                    StaffMetric.period_start == period_start,
                    StaffMetric.period_end == period_end,
                )
                if existing is not None:
                    continue
                tasks = await store.list_where(
                    StaffTask,
                    StaffTask.staff_id == staff_id,
                    StaffTask.assigned_at >= period_start,
                    StaffTask.assigned_at <= period_end,
                )
                store.add(
                    StaffMetric(
                        id=uuid.uuid4(),
                        staff_id=staff_id,
                        period_start=period_start,
                        period_end=period_end,
                        created_at=now,
                        **summarize_tasks(tasks),
                    )
                )
        except StoreFailure as exc:
            # An overlapping sweep may have inserted the same period first.
            logger.warning("staff_metrics.staff_failed", staff_id=str(staff_id), error=str(exc))
            report.fail(str(exc), record_id=staff_id, exc=exc)
            continue
        else:
            if existing is None:
                report.processed += 1
                report.affected_ids.append(str(staff_id))

    logger.info(
        "staff_metrics.completed",
        period_start=period_start.isoformat(),
        written=report.processed,
        failed=len(report.errors),
    )
    return report


# ─── 4. Notification batching ────────────────────────────────────────────


def _group_by_recipient(rows: list[Notification]) -> dict[uuid.UUID, list[tuple[uuid.UUID, NotificationMessage]]]:
    batches: dict[uuid.UUID, list[tuple[uuid.UUID, NotificationMessage]]] = {}
    for row in rows:
        batches.setdefault(row.target_id, []).append((row.id, NotificationMessage.from_row(row)))
    return batches


async def deliver_notification_batches(
    store: RecordStore,
    sink: NotificationSink,
    *,
    now: datetime,
    limit: int = NOTIFICATION_BATCH_LIMIT,
) -> JobReport:
    """Hand undelivered notifications to the sink, one batch per recipient."""
    report = JobReport(job="notifications")

    pending = await store.list_where(
        Notification,
        Notification.target_id.is_not(None),
        Notification.is_read.is_(False),
        Notification.delivered_at.is_(None),
        order_by=(Notification.created_at, Notification.id),
        limit=limit,
    )

    for recipient_id, rows in _group_by_recipient(pending).items():
        notification_ids = [row_id for row_id, _ in rows]
        batch = [message for _, message in rows]
        try:
            delivered = await sink.deliver(recipient_id, batch)
        except Exception as exc:
            logger.error("notifications.sink_failed", recipient_id=str(recipient_id), error=str(exc), exc_info=True)
            report.fail(f"sink raised: {exc}", record_id=recipient_id, exc=exc)
            continue
        if not delivered:
            logger.warning("notifications.sink_rejected", recipient_id=str(recipient_id), count=len(batch))
            report.fail("sink reported failure", record_id=recipient_id)
            continue

        try:
            async with store.atomic("notifications:mark_delivered"):
                await store.update_where(
                    Notification,
                    {"delivered_at": now},
                    Notification.id.in_(notification_ids),
                    Notification.delivered_at.is_(None),
                )
        except StoreFailure as exc:
            logger.error("notifications.mark_failed", recipient_id=str(recipient_id), error=str(exc))
            report.fail(str(exc), record_id=recipient_id, exc=exc)
            continue

        report.processed += len(batch)
        report.affected_ids.extend(str(i) for i in notification_ids)

    logger.info("notifications.completed", delivered=report.processed, failed=len(report.errors))
    return report


# ─── 5. Audit retention ──────────────────────────────────────────────────


async def purge_audit_events(store: RecordStore, *, now: datetime) -> JobReport:
    """
    Delete audit events older than AUDIT_RETENTION, and audit reports (with
    their StudentAudits) completed more than AUDIT_REPORT_RETENTION ago.

    Reports still IN_PROGRESS are kept however old they are. ``affected_ids``
    lists the purged report ids.
    """
    report = JobReport(job="audit_retention")
    cutoff = now - AUDIT_RETENTION
    report_cutoff = now - AUDIT_REPORT_RETENTION

    async with store.atomic("audit_retention"):
        deleted_events = await store.delete_where(AuditEvent, AuditEvent.created_at < cutoff)
        expired = await store.list_where(
            AuditReport,
            AuditReport.status == AuditReportStatus.COMPLETED,
            AuditReport.completed_at.is_not(None),
            AuditReport.completed_at < report_cutoff,
            order_by=(AuditReport.completed_at, AuditReport.id),
        )
        report_ids = [r.id for r in expired]
        deleted_audits = 0
        if report_ids:
            deleted_audits = await store.delete_where(StudentAudit, StudentAudit.audit_report_id.in_(report_ids))
            await store.delete_where(AuditReport, AuditReport.id.in_(report_ids))

    report.processed = deleted_events + len(report_ids)
    report.affected_ids = [str(i) for i in report_ids]
    logger.info(
        "audit_retention.purged",
        deleted_events=deleted_events,
        deleted_reports=len(report_ids),
        deleted_student_audits=deleted_audits,
        cutoff=cutoff.isoformat(),
        report_cutoff=report_cutoff.isoformat(),
    )
    return report
