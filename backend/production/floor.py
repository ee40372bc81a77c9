"""
Production Floor — serving students and attending classes while an order prints.

Operators mark a student served once the student's garments are printed and
handed over, and mark a class attended once the print crew has visited it.
Both are toggles (an accidental tap can be undone) and both are only
accepted while the order is on the floor (SERVING_STATUSES).

Each change writes the record, keeps the class's ``students_served`` count in
step with its students, and appends an AuditEvent, all in one transaction.
Requesting the state a record is already in changes nothing and writes no
event.
"""

import uuid
from datetime import datetime

import structlog

from core.errors import ValidationError
from db.models import AuditEvent, Order, SchoolClass, Student
from store.record_store import RecordStore
from workflow.states import OrderStatus
from workflow.transitions import ActorContext, coerce_status

logger = structlog.get_logger()

SERVING_STATUSES = frozenset({OrderStatus.ONGOING, OrderStatus.DONE})


def _require_on_floor(order: Order) -> None:
    current = coerce_status(order.status)
    if current not in SERVING_STATUSES:
        raise ValidationError(
            f"Order {order.id} is not on the production floor (status {current.value})",
            details={
                "order_id": str(order.id),
                "current_status": current.value,
                "allowed": sorted(s.value for s in SERVING_STATUSES),
            },
        )


async def _recount_served(store: RecordStore, school_class: SchoolClass) -> int:
    served = await store.count_where(
        Student,
        Student.class_id == school_class.id,
        Student.is_served.is_(True),
    )
    school_class.students_served = served
    return served


async def serve_student(
    store: RecordStore,
    student_id: uuid.UUID | str,
    *,
    actor: ActorContext,
    served: bool = True,
    now: datetime | None = None,
) -> Student:
    """Mark a student served (or not served) and update the class tally."""
    now = now or datetime.utcnow()

    async with store.atomic("production:serve_student"):
        student = await store.require(Student, student_id, entity="Student")
        order = await store.require(Order, student.order_id, entity="Order")
        _require_on_floor(order)
        if student.is_served == served:
            logger.info("production.student_unchanged", student_id=str(student.id), is_served=served)
            return student

        school_class = await store.require(SchoolClass, student.class_id, entity="Class")
        student.is_served = served
        student.served_at = now if served else None
        student.updated_at = now
        # The count query autoflushes the change above.
        served_in_class = await _recount_served(store, school_class)
        school_class.updated_at = now

        store.add(
            AuditEvent(
                actor_type=actor.actor_type,
                actor_id=actor.actor_id,
                action="STUDENT_SERVED" if served else "STUDENT_UNSERVED",
                target_type="STUDENT",
                target_id=student.id,
                details={
                    "order_id": str(order.id),
                    "class_id": str(school_class.id),
                    "students_served": served_in_class,
                    "students_to_serve": school_class.students_to_serve,
                },
                created_at=now,
            )
        )

    logger.info(
        "production.student_served" if served else "production.student_unserved",
        student_id=str(student.id),
        class_id=str(school_class.id),
        students_served=served_in_class,
    )
    return student


async def attend_class(
    store: RecordStore,
    class_id: uuid.UUID | str,
    *,
    actor: ActorContext,
    attended: bool = True,
    now: datetime | None = None,
) -> SchoolClass:
    """Mark a class attended (or not) by the print crew."""
    now = now or datetime.utcnow()

    async with store.atomic("production:attend_class"):
        school_class = await store.require(SchoolClass, class_id, entity="Class")
        order = await store.require(Order, school_class.order_id, entity="Order")
        _require_on_floor(order)
        if school_class.is_attended == attended:
            logger.info("production.class_unchanged", class_id=str(school_class.id), is_attended=attended)
            return school_class

        school_class.is_attended = attended
        await _recount_served(store, school_class)
        school_class.updated_at = now
        store.add(
            AuditEvent(
                actor_type=actor.actor_type,
                actor_id=actor.actor_id,
                action="CLASS_ATTENDED" if attended else "CLASS_UNATTENDED",
                target_type="CLASS",
                target_id=school_class.id,
                details={
                    "order_id": str(order.id),
                    "class_name": school_class.name,
                    "students_served": school_class.students_served,
                    "students_to_serve": school_class.students_to_serve,
                },
                created_at=now,
            )
        )

    logger.info("production.class_attended", class_id=str(school_class.id), is_attended=attended)
    return school_class
