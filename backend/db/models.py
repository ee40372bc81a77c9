"""
PrintRun Database Models

Tables for the uniform print-order lifecycle.

Tables:
  Orders & Production (1-4):
  1. orders            - One print session per school, tracked through OrderStatus
  2. classes           - Classes within an order
  3. students          - Students within a class (submitted vs current garment counts)
  4. machines          - Physical print devices (liveness via heartbeat)

  Audit (5-7):
  5. audit_events      - Immutable action log (purged after 90 days)
  6. audit_reports     - One per (order, auditor) reconciliation pass (purged 90 days after completion)
  7. student_audits    - Per-student submitted vs collected counts

  Staff & Messaging (8-11):
  8. staff_profiles    - Staff identities and roles
  9. staff_tasks       - Work items assigned to staff
  10. staff_metrics    - Daily throughput rollup per staff member
  11. notifications    - Outbound messages awaiting batched delivery

  Production Floor (12):
  12. print_events     - Machine print-job events, deduplicated by idempotency key
"""

import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    types,
)
from sqlalchemy import Enum as SAEnum
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import relationship

from db.session import Base
from workflow.states import OrderStatus


class GUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL UUID when available, stores as CHAR(36) on SQLite.
    """

    impl = types.String(36)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(types.String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == "postgresql":
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        return str(value) if isinstance(value, uuid.UUID) else str(uuid.UUID(str(value)))

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(str(value))


def _enum_column(enum_cls, **kwargs):
    return Column(SAEnum(enum_cls, native_enum=False, length=20, validate_strings=True), **kwargs)


class ActorType(str, Enum):
    USER = "USER"
    DEVICE = "DEVICE"
    SYSTEM = "SYSTEM"


class StaffRole(str, Enum):
    ADMIN = "ADMIN"
    OPERATOR = "OPERATOR"
    AUDITOR = "AUDITOR"
    SUPERVISOR = "SUPERVISOR"
    AGENT = "AGENT"


class AuditReportStatus(str, Enum):
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"


class NotificationLevel(str, Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


class NotificationChannel(str, Enum):
    IN_APP = "IN_APP"
    EMAIL = "EMAIL"
    SMS = "SMS"
    PUSH = "PUSH"


# ─── 1. Orders ──────────────────────────────────────────────────────────────


class Order(Base):
    __tablename__ = "orders"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    school_id = Column(GUID(), nullable=False)
    school_name = Column(String(255))
    external_ref = Column(String(50), unique=True)
    status = _enum_column(OrderStatus, nullable=False, default=OrderStatus.UNSUBMITTED)

    # Current counts (may be corrected by auditors)
    total_students = Column(Integer, nullable=False, default=0)
    total_classes = Column(Integer, nullable=False, default=0)
    total_garments = Column(Integer, nullable=False, default=0)
    total_dark_garments = Column(Integer, nullable=False, default=0)
    total_light_garments = Column(Integer, nullable=False, default=0)

    # Snapshot taken at submission
    submitted_total_students = Column(Integer)
    submitted_total_classes = Column(Integer)
    submitted_total_garments = Column(Integer)
    submitted_total_dark_garments = Column(Integer)
    submitted_total_light_garments = Column(Integer)

    total_amount = Column(Float)

    # Per-status timestamps, stamped by the state machine
    submission_time = Column(DateTime)
    confirmed_at = Column(DateTime)
    auto_confirmed_at = Column(DateTime)
    queued_at = Column(DateTime)
    pickup_at = Column(DateTime)
    ongoing_at = Column(DateTime)
    done_at = Column(DateTime)
    packaging_at = Column(DateTime)
    delivery_at = Column(DateTime)
    completed_at = Column(DateTime)
    aborted_at = Column(DateTime)

    # Optimistic lock: a concurrent status write makes the loser's flush fail
    row_version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_orders_status_submission", "status", "submission_time"),
        Index("ix_orders_school", "school_id"),
    )
    __mapper_args__ = {"version_id_col": row_version}

    classes = relationship("SchoolClass", back_populates="order")
    students = relationship("Student", back_populates="order")


# ─── 2. Classes ─────────────────────────────────────────────────────────────


class SchoolClass(Base):
    __tablename__ = "classes"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    order_id = Column(GUID(), ForeignKey("orders.id"), nullable=False)
    name = Column(String(100), nullable=False)
    submitted_students_count = Column(Integer)
    students_to_serve = Column(Integer, nullable=False, default=0)
    students_served = Column(Integer, nullable=False, default=0)
    is_attended = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (Index("ix_classes_order", "order_id"),)

    order = relationship("Order", back_populates="classes")
    students = relationship("Student", back_populates="school_class")


# ─── 3. Students ────────────────────────────────────────────────────────────


class Student(Base):
    __tablename__ = "students"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    order_id = Column(GUID(), ForeignKey("orders.id"), nullable=False)
    class_id = Column(GUID(), ForeignKey("classes.id"), nullable=False)
    full_name = Column(String(255), nullable=False)
    is_served = Column(Boolean, nullable=False, default=False)
    served_at = Column(DateTime)
    is_audited = Column(Boolean, nullable=False, default=False)

    # What the school submitted
    submitted_dark_garments = Column(Integer, nullable=False, default=0)
    submitted_light_garments = Column(Integer, nullable=False, default=0)
    # Current counts; an audit publish overwrites these with collected counts
    dark_garments = Column(Integer, nullable=False, default=0)
    light_garments = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_students_order", "order_id"),
        Index("ix_students_class", "class_id"),
        CheckConstraint("dark_garments >= 0 AND light_garments >= 0", name="ck_student_garments_non_negative"),
    )

    order = relationship("Order", back_populates="students")
    school_class = relationship("SchoolClass", back_populates="students")


# ─── 4. Machines ────────────────────────────────────────────────────────────


class Machine(Base):
    __tablename__ = "machines"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    device_id = Column(String(100), nullable=False, unique=True)
    secret_key = Column(String(255), nullable=False)
    is_online = Column(Boolean, nullable=False, default=False)
    is_printing = Column(Boolean, nullable=False, default=False)
    active_session_id = Column(GUID(), ForeignKey("orders.id"), nullable=True)
    active_print_job = Column(String(100))
    last_seen_at = Column(DateTime)
    firmware_version = Column(String(50))
    model = Column(String(100))
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (Index("ix_machines_online_seen", "is_online", "last_seen_at"),)


# ═══════════════════════════════════════════════════════════════════════════
# Audit Models (5-7)
# ═══════════════════════════════════════════════════════════════════════════


# ─── 5. Audit Events ────────────────────────────────────────────────────────


class AuditEvent(Base):
    """Append-only action log. Rows are never updated, only purged by age."""

    __tablename__ = "audit_events"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    actor_type = _enum_column(ActorType, nullable=False)
    actor_id = Column(String(255))
    action = Column(String(100), nullable=False)
    target_type = Column(String(50))
    target_id = Column(GUID())
    details = Column(JSON, default=dict)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_audit_events_created", "created_at"),
        Index("ix_audit_events_target", "target_type", "target_id"),
    )


# ─── 6. Audit Reports ───────────────────────────────────────────────────────


class AuditReport(Base):
    __tablename__ = "audit_reports"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    order_id = Column(GUID(), ForeignKey("orders.id"), nullable=False)
    auditor_id = Column(String(255), nullable=False)
    status = _enum_column(AuditReportStatus, nullable=False, default=AuditReportStatus.IN_PROGRESS)
    total_students_audited = Column(Integer, nullable=False, default=0)
    students_with_discrepancies = Column(Integer, nullable=False, default=0)
    discrepancies_found = Column(Boolean, nullable=False, default=False)
    report_details = Column(JSON, nullable=False, default=dict)  # {audit_trail: [...]}
    submitted_data = Column(JSON)  # snapshot of submitted counts when the audit opened
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    completed_at = Column(DateTime)

    __table_args__ = (
        UniqueConstraint("order_id", "auditor_id", name="uq_audit_report_order_auditor"),
        Index("ix_audit_reports_created", "created_at"),
    )

    student_audits = relationship("StudentAudit", back_populates="audit_report")


# ─── 7. Student Audits ──────────────────────────────────────────────────────


class StudentAudit(Base):
    __tablename__ = "student_audits"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    audit_report_id = Column(GUID(), ForeignKey("audit_reports.id"), nullable=False)
    student_id = Column(GUID(), ForeignKey("students.id"), nullable=False)
    student_name = Column(String(255), nullable=False)
    class_name = Column(String(100), nullable=False)
    submitted_dark_garments = Column(Integer, nullable=False, default=0)
    submitted_light_garments = Column(Integer, nullable=False, default=0)
    collected_dark_garments = Column(Integer, nullable=False, default=0)
    collected_light_garments = Column(Integer, nullable=False, default=0)
    dark_garments_discrepancy = Column(Integer, nullable=False, default=0)  # collected - submitted
    light_garments_discrepancy = Column(Integer, nullable=False, default=0)
    has_discrepancy = Column(Boolean, nullable=False, default=False)
    discrepancy_message = Column(Text)
    auditor_notes = Column(Text)
    audited_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("student_id", "audit_report_id", name="uq_student_audit_per_report"),
        Index("ix_student_audits_report", "audit_report_id"),
    )

    audit_report = relationship("AuditReport", back_populates="student_audits")


# ═══════════════════════════════════════════════════════════════════════════
# Staff & Messaging (8-11)
# ═══════════════════════════════════════════════════════════════════════════


# ─── 8. Staff Profiles ──────────────────────────────────────────────────────


class StaffProfile(Base):
    __tablename__ = "staff_profiles"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    full_name = Column(String(255), nullable=False)
    email = Column(String(255), unique=True)
    role = _enum_column(StaffRole, nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


# ─── 9. Staff Tasks ─────────────────────────────────────────────────────────


class StaffTask(Base):
    __tablename__ = "staff_tasks"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    staff_id = Column(GUID(), ForeignKey("staff_profiles.id"), nullable=False)
    task_type = Column(String(50), nullable=False)
    status = Column(String(20), nullable=False, default="PENDING")
    target_id = Column(GUID())
    assigned_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    completed_at = Column(DateTime)

    __table_args__ = (
        Index("ix_staff_tasks_staff_assigned", "staff_id", "assigned_at"),
        CheckConstraint(
            "status IN ('PENDING', 'IN_PROGRESS', 'COMPLETED', 'CANCELLED')", name="ck_staff_task_status"
        ),
    )


# ─── 10. Staff Metrics ──────────────────────────────────────────────────────


class StaffMetric(Base):
    """Daily throughput rollup. At most one row per (staff, period)."""

    __tablename__ = "staff_metrics"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    staff_id = Column(GUID(), ForeignKey("staff_profiles.id"), nullable=False)
    period_start = Column(DateTime, nullable=False)
    period_end = Column(DateTime, nullable=False)
    tasks_assigned = Column(Integer, nullable=False, default=0)
    tasks_completed = Column(Integer, nullable=False, default=0)
    efficiency_score = Column(Float)  # None when nothing was assigned
    avg_completion_seconds = Column(Integer)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (UniqueConstraint("staff_id", "period_start", "period_end", name="uq_staff_metric_period"),)


# ─── 11. Notifications ──────────────────────────────────────────────────────


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    target_id = Column(GUID())  # recipient
    level = _enum_column(NotificationLevel, nullable=False, default=NotificationLevel.INFO)
    channel = _enum_column(NotificationChannel, nullable=False, default=NotificationChannel.IN_APP)
    title = Column(String(255), nullable=False)
    body = Column(Text, nullable=False)
    meta = Column(JSON)
    is_read = Column(Boolean, nullable=False, default=False)
    delivered_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (Index("ix_notifications_pending", "delivered_at", "is_read", "created_at"),)


# ═══════════════════════════════════════════════════════════════════════════
# Production Floor (12)
# ═══════════════════════════════════════════════════════════════════════════


class PrintEventType(str, Enum):
    START = "START"
    PROGRESS = "PROGRESS"
    COMPLETE = "COMPLETE"
    ERROR = "ERROR"
    CANCEL = "CANCEL"


# ─── 12. Print Events ───────────────────────────────────────────────────────


class PrintEvent(Base):
    """Job lifecycle events reported by machines. One row per idempotency key."""

    __tablename__ = "print_events"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    machine_id = Column(GUID(), ForeignKey("machines.id"), nullable=False)
    print_job_id = Column(String(100), nullable=False)
    event_type = _enum_column(PrintEventType, nullable=False)
    payload = Column(JSON, nullable=False, default=dict)
    idempotency_key = Column(String(255), nullable=False, unique=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (Index("ix_print_events_machine_job", "machine_id", "print_job_id"),)
