"""
Audit Publishing — reconciliation of submitted vs collected figures.

Called when an auditor publishes the collected counts for one student.
Writes happen in a fixed order, each committed on its own:
  1. student        — collected counts become the student's current counts
  2. student_audit  — StudentAudit upserted on (student_id, audit_report_id)
  3. audit_report   — report aggregates fully recomputed from its StudentAudits

The student correction is the most valuable side effect, so it lands first
and is never rolled back by a later failure. A failure at stage 2 or 3 raises
AuditPublishError naming the stage; publishing the same student again
repairs the missing artifacts because every later stage is an upsert or a
full recompute.

Session and class corrections follow the same pattern in two stages: the
order (or class) first, then the report's audit trail. Each changed field
appends one UPDATE entry carrying its old and new value.
"""

import uuid
from datetime import datetime
from typing import Any

import structlog

from audits.discrepancy import GarmentCounts, classify, compose_notes, validate_counts
from audits.report import SESSION_FIELDS
from core.errors import AuditPublishError, StoreFailure, ValidationError
from db.models import (
    ActorType,
    AuditEvent,
    AuditReport,
    AuditReportStatus,
    Order,
    SchoolClass,
    Student,
    StudentAudit,
)
from store.record_store import RecordStore

logger = structlog.get_logger()

STAGE_STUDENT = "student"
STAGE_STUDENT_AUDIT = "student_audit"
STAGE_AUDIT_REPORT = "audit_report"
STAGE_ORDER = "order"
STAGE_CLASS = "class"


def _first_present(*values: Any) -> int:
    for value in values:
        if value is not None:
            return int(value)
    return 0


def snapshot_submitted_data(order: Order, classes: list[SchoolClass], students: list[Student]) -> dict:
    """Freeze what the school submitted, before any auditor correction lands."""
    return {
        "session": {
            "total_students": _first_present(order.submitted_total_students, order.total_students),
            "total_garments": _first_present(order.submitted_total_garments, order.total_garments),
            "total_dark_garments": _first_present(order.submitted_total_dark_garments, order.total_dark_garments),
            "total_light_garments": _first_present(order.submitted_total_light_garments, order.total_light_garments),
            "total_classes": _first_present(order.submitted_total_classes, order.total_classes),
        },
        "classes": [
            {
                "id": str(cls.id),
                "name": cls.name,
                "submitted_students_count": _first_present(cls.submitted_students_count, cls.students_to_serve),
            }
            for cls in sorted(classes, key=lambda c: (c.name, str(c.id)))
        ],
        "students": [
            {
                "id": str(student.id),
                "full_name": student.full_name,
                "class_id": str(student.class_id),
                "submitted_dark_garment_count": student.submitted_dark_garments,
                "submitted_light_garment_count": student.submitted_light_garments,
            }
            for student in sorted(students, key=lambda s: (s.full_name, str(s.id)))
        ],
    }


async def _snapshot_order(store: RecordStore, order: Order) -> dict:
    classes = await store.list_where(SchoolClass, SchoolClass.order_id == order.id)
    students = await store.list_where(Student, Student.order_id == order.id)
    return snapshot_submitted_data(order, classes, students)


async def _find_report(store: RecordStore, order_id: uuid.UUID, auditor_id: str) -> AuditReport | None:
    return await store.first_where(
        AuditReport,
        AuditReport.order_id == order_id,
        AuditReport.auditor_id == auditor_id,
    )


async def _reject_completed_report(store: RecordStore, order_id: uuid.UUID, auditor_id: str) -> AuditReport | None:
    report = await _find_report(store, order_id, auditor_id)
    if report is not None and report.status == AuditReportStatus.COMPLETED:
        raise ValidationError(
            f"Audit report {report.id} is already completed",
            details={"report_id": str(report.id)},
        )
    return report


def _require_auditor(auditor_id: str) -> None:
    if not auditor_id or not str(auditor_id).strip():
        raise ValidationError("auditor_id is required")


def _require_count(field: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError(f"{field} must be a non-negative integer", details={"field": field, "value": value})
    return value


def _append_trail(
    report: AuditReport,
    entries: list[dict],
    key: str | None = None,
    corrections: dict | None = None,
    notes: str | None = None,
):
    details = dict(report.report_details or {})
    details["audit_trail"] = list(details.get("audit_trail", [])) + entries
    if key is not None:
        merged = dict(details.get(key, {}))
        merged.update(corrections or {})
        details[key] = merged
    if notes:
        details["auditor_notes"] = notes
    report.report_details = details


async def _open_report(
    store: RecordStore,
    order: Order,
    auditor_id: str,
    now: datetime,
    snapshot: dict | None = None,
) -> AuditReport:
    if snapshot is None:
        snapshot = await _snapshot_order(store, order)
    report = AuditReport(
        id=uuid.uuid4(),
        order_id=order.id,
        auditor_id=auditor_id,
        status=AuditReportStatus.IN_PROGRESS,
        total_students_audited=0,
        students_with_discrepancies=0,
        discrepancies_found=False,
        report_details={"external_ref": order.external_ref, "audit_trail": []},
        submitted_data=snapshot,
        created_at=now,
        updated_at=now,
    )
    store.add(report)
    logger.info("audit.report_opened", order_id=str(order.id), auditor_id=auditor_id, report_id=str(report.id))
    return report


async def publish_student_audit(
    store: RecordStore,
    student_id: uuid.UUID | str,
    collected_dark: int,
    collected_light: int,
    notes: str | None = None,
    *,
    auditor_id: str,
    now: datetime | None = None,
) -> StudentAudit:
    """
    Publish one student's collected garment counts.

    Returns the upserted StudentAudit. Raises ValidationError/NotFound before
    any write, AuditPublishError after a partial write.
    """
    collected = validate_counts(collected_dark, collected_light)
    _require_auditor(auditor_id)
    now = now or datetime.utcnow()

    student = await store.require(Student, student_id, entity="Student")
    school_class = await store.require(SchoolClass, student.class_id, entity="Class")
    if school_class.order_id != student.order_id:
        raise ValidationError(
            f"Student {student.id} belongs to a class outside its order",
            details={"class_id": str(school_class.id), "order_id": str(student.order_id)},
        )
    order = await store.require(Order, student.order_id, entity="Order")

    await _reject_completed_report(store, order.id, auditor_id)

    submitted = GarmentCounts(dark=student.submitted_dark_garments, light=student.submitted_light_garments)
    result = classify(submitted, collected)
    previous = GarmentCounts(dark=student.dark_garments, light=student.light_garments)
    student_name = student.full_name
    completed: list[str] = []

    # 1. Student: corrected ground truth
    try:
        async with store.atomic("audit:student"):
            student.dark_garments = collected.dark
            student.light_garments = collected.light
            student.is_audited = True
            student.updated_at = now
    except StoreFailure as exc:
        logger.error("audit.publish_failed", stage=STAGE_STUDENT, student_id=str(student_id), error=str(exc))
        raise AuditPublishError(STAGE_STUDENT, student_id, completed, exc) from exc
    completed.append(STAGE_STUDENT)

    # 2. StudentAudit: upsert keyed by (student_id, audit_report_id)
    try:
        async with store.atomic("audit:student_audit"):
            report = await _find_report(store, order.id, auditor_id)
            if report is None:
                report = await _open_report(store, order, auditor_id, now)
            audit = await store.first_where(
                StudentAudit,
                StudentAudit.student_id == student.id,
                StudentAudit.audit_report_id == report.id,
            )
            if audit is None:
                audit = StudentAudit(id=uuid.uuid4(), audit_report_id=report.id, student_id=student.id)
                store.add(audit)
            audit.student_name = student_name
            audit.class_name = school_class.name
            audit.submitted_dark_garments = submitted.dark
            audit.submitted_light_garments = submitted.light
            audit.collected_dark_garments = collected.dark
            audit.collected_light_garments = collected.light
            audit.dark_garments_discrepancy = result.dark_delta
            audit.light_garments_discrepancy = result.light_delta
            audit.has_discrepancy = result.has_discrepancy
            audit.discrepancy_message = result.explanation
            audit.auditor_notes = compose_notes(result.explanation, notes)
            audit.audited_at = now
    except StoreFailure as exc:
        logger.error("audit.publish_failed", stage=STAGE_STUDENT_AUDIT, student_id=str(student_id), error=str(exc))
        raise AuditPublishError(STAGE_STUDENT_AUDIT, student_id, completed, exc) from exc
    completed.append(STAGE_STUDENT_AUDIT)

    # 3. AuditReport: full recompute
    try:
        async with store.atomic("audit:audit_report"):
            audited = await store.count_where(StudentAudit, StudentAudit.audit_report_id == report.id)
            with_discrepancies = await store.count_where(
                StudentAudit,
                StudentAudit.audit_report_id == report.id,
                StudentAudit.has_discrepancy.is_(True),
            )
            report.total_students_audited = audited
            report.students_with_discrepancies = with_discrepancies
            report.discrepancies_found = with_discrepancies > 0
            _append_trail(
                report,
                [
                    {
                        "timestamp": now.isoformat(),
                        "auditor_id": auditor_id,
                        "action": "STUDENT_AUDITED",
                        "entity_type": "student",
                        "entity_id": str(student.id),
                        "entity_name": student_name,
                        "old_value": {"dark": previous.dark, "light": previous.light},
                        "new_value": {"dark": collected.dark, "light": collected.light},
                        "has_discrepancy": result.has_discrepancy,
                    }
                ],
            )
            report.updated_at = now
            store.add(
                AuditEvent(
                    actor_type=ActorType.USER,
                    actor_id=auditor_id,
                    action="STUDENT_AUDIT_PUBLISHED",
                    target_type="STUDENT",
                    target_id=student.id,
                    details={
                        "audit_report_id": str(report.id),
                        "dark_delta": result.dark_delta,
                        "light_delta": result.light_delta,
                        "has_discrepancy": result.has_discrepancy,
                    },
                    created_at=now,
                )
            )
    except StoreFailure as exc:
        logger.error("audit.publish_failed", stage=STAGE_AUDIT_REPORT, student_id=str(student_id), error=str(exc))
        raise AuditPublishError(STAGE_AUDIT_REPORT, student_id, completed, exc) from exc

    logger.info(
        "audit.student_published",
        student_id=str(student.id),
        report_id=str(report.id),
        has_discrepancy=result.has_discrepancy,
        dark_delta=result.dark_delta,
        light_delta=result.light_delta,
    )
    return audit


def _update_entry(now: datetime, auditor_id: str, field: str, old, new, entity_type: str, entity_id, name: str) -> dict:
    return {
        "timestamp": now.isoformat(),
        "auditor_id": auditor_id,
        "action": "UPDATE",
        "field": field,
        "entity_type": entity_type,
        "entity_id": str(entity_id),
        "entity_name": name,
        "old_value": old,
        "new_value": new,
    }


async def publish_session_audit(
    store: RecordStore,
    order_id: uuid.UUID | str,
    corrections: dict[str, int],
    notes: str | None = None,
    *,
    auditor_id: str,
    now: datetime | None = None,
) -> AuditReport:
    """
    Correct an order's session totals after a count on site.

    ``corrections`` maps any of the session fields (total_students,
    total_garments, total_dark_garments, total_light_garments,
    total_classes) to the audited figure. Stages:
      1. order         — the order's total_* columns take the audited figures
      2. audit_report  — one trail entry per changed field, corrections kept
                         under report_details["session_corrections"]

    Returns the audit report.
    """
    if not corrections:
        raise ValidationError("At least one session field must be corrected")
    unknown = sorted(set(corrections) - set(SESSION_FIELDS))
    if unknown:
        raise ValidationError(f"Unknown session fields: {', '.join(unknown)}", details={"fields": unknown})
    audited = {field: _require_count(field, value) for field, value in corrections.items()}
    _require_auditor(auditor_id)
    now = now or datetime.utcnow()

    order = await store.require(Order, order_id, entity="Order")
    report = await _reject_completed_report(store, order.id, auditor_id)
    snapshot = await _snapshot_order(store, order) if report is None else None
    changes = {
        field: (getattr(order, field), value)
        for field, value in sorted(audited.items())
        if getattr(order, field) != value
    }
    completed: list[str] = []

    # 1. Order: audited session totals
    try:
        async with store.atomic("audit:order"):
            for field, (_, value) in changes.items():
                setattr(order, field, value)
            order.updated_at = now
    except StoreFailure as exc:
        logger.error("audit.publish_failed", stage=STAGE_ORDER, order_id=str(order_id), error=str(exc))
        raise AuditPublishError(STAGE_ORDER, order_id, completed, exc, target="order") from exc
    completed.append(STAGE_ORDER)

    # 2. AuditReport: trail and recorded corrections
    try:
        async with store.atomic("audit:audit_report"):
            report = await _find_report(store, order.id, auditor_id)
            if report is None:
                report = await _open_report(store, order, auditor_id, now, snapshot)
            entries = [
                _update_entry(now, auditor_id, field, old, new, "order", order.id, order.external_ref)
                for field, (old, new) in changes.items()
            ]
            _append_trail(report, entries, "session_corrections", audited, notes)
            report.updated_at = now
            store.add(
                AuditEvent(
                    actor_type=ActorType.USER,
                    actor_id=auditor_id,
                    action="SESSION_AUDIT_PUBLISHED",
                    target_type="ORDER",
                    target_id=order.id,
                    details={
                        "audit_report_id": str(report.id),
                        "changed_fields": list(changes),
                    },
                    created_at=now,
                )
            )
    except StoreFailure as exc:
        logger.error("audit.publish_failed", stage=STAGE_AUDIT_REPORT, order_id=str(order_id), error=str(exc))
        raise AuditPublishError(STAGE_AUDIT_REPORT, order_id, completed, exc, target="order") from exc

    logger.info(
        "audit.session_published",
        order_id=str(order.id),
        report_id=str(report.id),
        changed_fields=list(changes),
    )
    return report


async def publish_class_audit(
    store: RecordStore,
    class_id: uuid.UUID | str,
    students_to_serve: int,
    notes: str | None = None,
    *,
    auditor_id: str,
    now: datetime | None = None,
) -> AuditReport:
    """
    Correct how many students a class actually has to serve.

    Same staging as a session audit, with stage 1 named ``class``.
    Returns the audit report.
    """
    audited = _require_count("students_to_serve", students_to_serve)
    _require_auditor(auditor_id)
    now = now or datetime.utcnow()

    school_class = await store.require(SchoolClass, class_id, entity="Class")
    order = await store.require(Order, school_class.order_id, entity="Order")
    report = await _reject_completed_report(store, order.id, auditor_id)
    snapshot = await _snapshot_order(store, order) if report is None else None
    previous = school_class.students_to_serve
    completed: list[str] = []

    # 1. Class: audited head count
    try:
        async with store.atomic("audit:class"):
            school_class.students_to_serve = audited
            school_class.updated_at = now
    except StoreFailure as exc:
        logger.error("audit.publish_failed", stage=STAGE_CLASS, class_id=str(class_id), error=str(exc))
        raise AuditPublishError(STAGE_CLASS, class_id, completed, exc, target="class") from exc
    completed.append(STAGE_CLASS)

    # 2. AuditReport: trail and recorded correction
    try:
        async with store.atomic("audit:audit_report"):
            report = await _find_report(store, order.id, auditor_id)
            if report is None:
                report = await _open_report(store, order, auditor_id, now, snapshot)
            entries = []
            if previous != audited:
                entries.append(
                    _update_entry(
                        now, auditor_id, "students_to_serve", previous, audited, "class", school_class.id, school_class.name
                    )
                )
            _append_trail(report, entries, "class_corrections", {str(school_class.id): audited}, notes)
            report.updated_at = now
            store.add(
                AuditEvent(
                    actor_type=ActorType.USER,
                    actor_id=auditor_id,
                    action="CLASS_AUDIT_PUBLISHED",
                    target_type="CLASS",
                    target_id=school_class.id,
                    details={
                        "audit_report_id": str(report.id),
                        "order_id": str(order.id),
                        "old_value": previous,
                        "new_value": audited,
                    },
                    created_at=now,
                )
            )
    except StoreFailure as exc:
        logger.error("audit.publish_failed", stage=STAGE_AUDIT_REPORT, class_id=str(class_id), error=str(exc))
        raise AuditPublishError(STAGE_AUDIT_REPORT, class_id, completed, exc, target="class") from exc

    logger.info(
        "audit.class_published",
        class_id=str(school_class.id),
        report_id=str(report.id),
        old_value=previous,
        new_value=audited,
    )
    return report


async def complete_audit(store: RecordStore, report_id: uuid.UUID | str, *, now: datetime | None = None) -> AuditReport:
    """Close an audit report. Further publishes against it are rejected."""
    now = now or datetime.utcnow()
    async with store.atomic("audit:complete"):
        report = await store.require(AuditReport, report_id, entity="AuditReport")
        if report.status == AuditReportStatus.COMPLETED:
            raise ValidationError(f"Audit report {report.id} is already completed")
        report.status = AuditReportStatus.COMPLETED
        report.completed_at = now
        report.updated_at = now
        store.add(
            AuditEvent(
                actor_type=ActorType.USER,
                actor_id=report.auditor_id,
                action="AUDIT_REPORT_COMPLETED",
                target_type="AUDIT_REPORT",
                target_id=report.id,
                details={
                    "order_id": str(report.order_id),
                    "total_students_audited": report.total_students_audited,
                    "students_with_discrepancies": report.students_with_discrepancies,
                },
                created_at=now,
            )
        )
    logger.info("audit.report_completed", report_id=str(report.id))
    return report
