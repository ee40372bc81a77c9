"""
Audit Report Builder — read-only view of one audit report.

Sections:
  - session: submitted vs current vs delta for students, garments (total,
    dark, light) and classes. Submitted figures come from the snapshot
    frozen when the report was opened; current figures are recomputed from
    the students and classes as they stand now, except where an auditor
    published a session correction, which replaces the recount.
  - classes: per class, submitted student count vs audited students and how
    many of those carry a discrepancy, plus the live students_to_serve.
  - discrepancies: one row per StudentAudit with has_discrepancy.
  - corrections and audit_trail: what session and class audits changed.

Output is a plain JSON-compatible dict, sorted by class name, student name
and id, with no wall-clock reads. Building the same report twice against
unchanged data yields identical output, including the fingerprint.
"""

import hashlib
import json
import uuid
from typing import Any

import structlog

from db.models import AuditReport, Order, SchoolClass, Student, StudentAudit
from store.record_store import RecordStore

logger = structlog.get_logger()

SESSION_FIELDS = ("total_students", "total_garments", "total_dark_garments", "total_light_garments", "total_classes")


def _iso(value) -> str | None:
    return value.isoformat() if value is not None else None


def _submitted_session(report: AuditReport, order: Order) -> dict[str, int]:
    snapshot = (report.submitted_data or {}).get("session")
    if snapshot:
        return {field: int(snapshot.get(field) or 0) for field in SESSION_FIELDS}
    # Report opened before snapshots existed: fall back to the order's submitted columns.
    fallback = {
        "total_students": order.submitted_total_students,
        "total_garments": order.submitted_total_garments,
        "total_dark_garments": order.submitted_total_dark_garments,
        "total_light_garments": order.submitted_total_light_garments,
        "total_classes": order.submitted_total_classes,
    }
    return {field: int(getattr(order, field) if value is None else value) for field, value in fallback.items()}


def _current_session(
    classes: list[SchoolClass],
    students: list[Student],
    corrections: dict[str, int] | None = None,
) -> dict[str, int]:
    dark = sum(s.dark_garments for s in students)
    light = sum(s.light_garments for s in students)
    current = {
        "total_students": len(students),
        "total_garments": dark + light,
        "total_dark_garments": dark,
        "total_light_garments": light,
        "total_classes": len(classes),
    }
    # Audited session totals win over the recount.
    for field, value in (corrections or {}).items():
        if field in current:
            current[field] = int(value)
    return current


def _class_summary(
    report: AuditReport,
    classes: list[SchoolClass],
    students: list[Student],
    audits: list[StudentAudit],
) -> list[dict[str, Any]]:
    snapshot_counts = {
        row["id"]: row.get("submitted_students_count")
        for row in (report.submitted_data or {}).get("classes", [])
    }
    class_of_student = {s.id: s.class_id for s in students}
    corrected = (report.report_details or {}).get("class_corrections", {})

    rows = []
    for cls in sorted(classes, key=lambda c: (c.name, str(c.id))):
        class_audits = [a for a in audits if class_of_student.get(a.student_id) == cls.id]
        submitted = snapshot_counts.get(str(cls.id))
        if submitted is None:
            submitted = cls.submitted_students_count if cls.submitted_students_count is not None else cls.students_to_serve
        rows.append(
            {
                "class_id": str(cls.id),
                "class_name": cls.name,
                "submitted_students": int(submitted or 0),
                "current_students": sum(1 for s in students if s.class_id == cls.id),
                "students_to_serve": cls.students_to_serve,
                "students_served": cls.students_served or 0,
                "corrected": str(cls.id) in corrected,
                "audited_students": len(class_audits),
                "students_with_discrepancies": sum(1 for a in class_audits if a.has_discrepancy),
            }
        )
    return rows


def _discrepancy_rows(audits: list[StudentAudit]) -> list[dict[str, Any]]:
    rows = []
    for audit in sorted(audits, key=lambda a: (a.class_name, a.student_name, str(a.student_id))):
        if not audit.has_discrepancy:
            continue
        rows.append(
            {
                "student_id": str(audit.student_id),
                "student_name": audit.student_name,
                "class_name": audit.class_name,
                "submitted": {"dark": audit.submitted_dark_garments, "light": audit.submitted_light_garments},
                "collected": {"dark": audit.collected_dark_garments, "light": audit.collected_light_garments},
                "dark_delta": audit.dark_garments_discrepancy,
                "light_delta": audit.light_garments_discrepancy,
                "message": audit.discrepancy_message,
                "auditor_notes": audit.auditor_notes,
                "audited_at": _iso(audit.audited_at),
            }
        )
    return rows


def fingerprint(payload: dict[str, Any]) -> str:
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


async def build_audit_report(store: RecordStore, report_id: uuid.UUID | str) -> dict[str, Any]:
    """Assemble the report view. Raises NotFound for an unknown report."""
    report = await store.require(AuditReport, report_id, entity="AuditReport")
    order = await store.require(Order, report.order_id, entity="Order")
    classes = await store.list_where(SchoolClass, SchoolClass.order_id == order.id)
    students = await store.list_where(Student, Student.order_id == order.id)
    audits = await store.list_where(StudentAudit, StudentAudit.audit_report_id == report.id)

    details = report.report_details or {}
    submitted = _submitted_session(report, order)
    current = _current_session(classes, students, details.get("session_corrections"))
    session = {
        field: {
            "submitted": submitted[field],
            "current": current[field],
            "delta": current[field] - submitted[field],
        }
        for field in SESSION_FIELDS
    }

    view: dict[str, Any] = {
        "report_id": str(report.id),
        "order_id": str(order.id),
        "external_ref": order.external_ref,
        "school_name": order.school_name,
        "auditor_id": report.auditor_id,
        "status": report.status.value,
        "completed_at": _iso(report.completed_at),
        "summary": {
            "total_students_audited": report.total_students_audited,
            "students_with_discrepancies": report.students_with_discrepancies,
            "discrepancies_found": report.discrepancies_found,
        },
        "session": session,
        "classes": _class_summary(report, classes, students, audits),
        "discrepancies": _discrepancy_rows(audits),
        "corrections": {
            "session": dict(sorted(details.get("session_corrections", {}).items())),
            "classes": dict(sorted(details.get("class_corrections", {}).items())),
        },
        "audit_trail": list(details.get("audit_trail", [])),
    }
    view["fingerprint"] = fingerprint(view)

    logger.info(
        "audit.report_built",
        report_id=str(report.id),
        audited=report.total_students_audited,
        discrepancies=len(view["discrepancies"]),
    )
    return view
