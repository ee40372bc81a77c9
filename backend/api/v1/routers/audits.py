"""
Audit Router — garment audits and their reports.

  POST /api/v1/audits/students/{student_id}   publish collected counts
  POST /api/v1/audits/sessions/{order_id}     correct session totals
  POST /api/v1/audits/classes/{class_id}      correct a class head count
  GET  /api/v1/audits/{report_id}/report      read-only report view
  POST /api/v1/audits/{report_id}/complete    close the report

A publish that fails part-way answers 502 and names the stage that failed;
publishing again repairs it.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from api.deps import get_current_user, get_store
from audits.publisher import complete_audit, publish_class_audit, publish_session_audit, publish_student_audit
from audits.report import build_audit_report
from store.record_store import RecordStore

router = APIRouter(prefix="/api/v1/audits", tags=["audits"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class StudentAuditRequest(BaseModel):
    collected_dark: int = Field(..., ge=0)
    collected_light: int = Field(..., ge=0)
    notes: str | None = Field(None, max_length=2000)


class SessionAuditRequest(BaseModel):
    total_students: int | None = Field(None, ge=0)
    total_garments: int | None = Field(None, ge=0)
    total_dark_garments: int | None = Field(None, ge=0)
    total_light_garments: int | None = Field(None, ge=0)
    total_classes: int | None = Field(None, ge=0)
    notes: str | None = Field(None, max_length=2000)


class ClassAuditRequest(BaseModel):
    students_to_serve: int = Field(..., ge=0)
    notes: str | None = Field(None, max_length=2000)


class StudentAuditResponse(BaseModel):
    id: UUID
    audit_report_id: UUID
    student_id: UUID
    student_name: str
    class_name: str
    submitted_dark_garments: int
    submitted_light_garments: int
    collected_dark_garments: int
    collected_light_garments: int
    dark_garments_discrepancy: int
    light_garments_discrepancy: int
    has_discrepancy: bool
    discrepancy_message: str | None
    auditor_notes: str | None
    audited_at: datetime

    model_config = {"from_attributes": True}


class AuditReportResponse(BaseModel):
    id: UUID
    order_id: UUID
    auditor_id: str
    status: str
    total_students_audited: int
    students_with_discrepancies: int
    discrepancies_found: bool
    completed_at: datetime | None

    model_config = {"from_attributes": True}


def _report_response(report) -> AuditReportResponse:
    return AuditReportResponse(
        id=report.id,
        order_id=report.order_id,
        auditor_id=report.auditor_id,
        status=report.status.value,
        total_students_audited=report.total_students_audited,
        students_with_discrepancies=report.students_with_discrepancies,
        discrepancies_found=report.discrepancies_found,
        completed_at=report.completed_at,
    )


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.post("/students/{student_id}", response_model=StudentAuditResponse)
async def publish_audit(
    student_id: UUID,
    body: StudentAuditRequest,
    store: RecordStore = Depends(get_store),
    user: dict = Depends(get_current_user),
):
    """Publish one student's collected garment counts."""
    return await publish_student_audit(
        store,
        student_id,
        body.collected_dark,
        body.collected_light,
        body.notes,
        auditor_id=str(user["sub"]),
    )


@router.post("/sessions/{order_id}", response_model=AuditReportResponse)
async def publish_session(
    order_id: UUID,
    body: SessionAuditRequest,
    store: RecordStore = Depends(get_store),
    user: dict = Depends(get_current_user),
):
    """Correct an order's session totals."""
    corrections = body.model_dump(exclude={"notes"}, exclude_none=True)
    report = await publish_session_audit(store, order_id, corrections, body.notes, auditor_id=str(user["sub"]))
    return _report_response(report)


@router.post("/classes/{class_id}", response_model=AuditReportResponse)
async def publish_class(
    class_id: UUID,
    body: ClassAuditRequest,
    store: RecordStore = Depends(get_store),
    user: dict = Depends(get_current_user),
):
    """Correct how many students a class has to serve."""
    report = await publish_class_audit(store, class_id, body.students_to_serve, body.notes, auditor_id=str(user["sub"]))
    return _report_response(report)


@router.get("/{report_id}/report")
async def get_report(
    report_id: UUID,
    store: RecordStore = Depends(get_store),
    user: dict = Depends(get_current_user),
) -> dict[str, Any]:
    """Session, class and per-student comparison for an audit report."""
    return await build_audit_report(store, report_id)


@router.post("/{report_id}/complete", response_model=AuditReportResponse)
async def complete(
    report_id: UUID,
    store: RecordStore = Depends(get_store),
    user: dict = Depends(get_current_user),
):
    """Close an audit report."""
    report = await complete_audit(store, report_id)
    return _report_response(report)
