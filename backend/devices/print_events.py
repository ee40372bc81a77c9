"""
Print Event Ingestion — job lifecycle events posted by print machines.

    START                    machine is printing ``print_job_id``
    PROGRESS                 stored only
    COMPLETE / ERROR / CANCEL machine is idle again

Every event carries an idempotency key (device supplied, or derived from
device, job, type and the payload timestamp). A key seen before is answered
with the stored event and changes nothing, so devices may retry freely.

A finishing event only clears the machine when it belongs to the job the
machine is running; a late COMPLETE for an earlier job is stored but leaves
the current job in place.
"""

import uuid
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy.exc import IntegrityError

from core.errors import StoreFailure, ValidationError
from db.models import Machine, Order, PrintEvent, PrintEventType
from devices.heartbeat import find_machine
from store.record_store import RecordStore

logger = structlog.get_logger()

FINISHING_EVENTS = frozenset({PrintEventType.COMPLETE, PrintEventType.ERROR, PrintEventType.CANCEL})


def coerce_event_type(value: PrintEventType | str) -> PrintEventType:
    if isinstance(value, PrintEventType):
        return value
    try:
        return PrintEventType(str(value).strip().upper())
    except ValueError:
        raise ValidationError(
            f"Unknown print event type '{value}'",
            details={"allowed": [t.value for t in PrintEventType]},
        ) from None


def derive_idempotency_key(
    device_id: str,
    print_job_id: str,
    event_type: PrintEventType,
    payload: dict[str, Any],
) -> str:
    return ":".join([device_id, print_job_id, event_type.value, str(payload.get("timestamp") or "")])


def _session_id(payload: dict[str, Any], device_id: str) -> uuid.UUID | None:
    raw = payload.get("order_id")
    if raw is None:
        return None
    try:
        return uuid.UUID(str(raw))
    except ValueError:
        raise ValidationError(
            f"order_id '{raw}' is not a valid id",
            details={"device_id": device_id},
        ) from None


def _apply_to_machine(machine: Machine, event_type: PrintEventType, print_job_id: str, session_id, now) -> bool:
    """Update printing state for the event. Returns whether anything changed."""
    if event_type == PrintEventType.START:
        machine.is_printing = True
        machine.active_print_job = print_job_id
        machine.active_session_id = session_id
    elif event_type in FINISHING_EVENTS:
        if machine.active_print_job not in (None, print_job_id):
            return False
        machine.is_printing = False
        machine.active_print_job = None
        machine.active_session_id = None
    else:
        return False
    machine.updated_at = now
    return True


async def _find_event(store: RecordStore, idempotency_key: str) -> PrintEvent | None:
    return await store.first_where(PrintEvent, PrintEvent.idempotency_key == idempotency_key)


async def ingest_print_event(
    store: RecordStore,
    device_id: str,
    *,
    print_job_id: str,
    event_type: PrintEventType | str,
    payload: dict[str, Any] | None = None,
    idempotency_key: str | None = None,
    now: datetime | None = None,
) -> tuple[PrintEvent, bool]:
    """
    Store one print event and update the machine's printing state.

    Returns ``(event, duplicate)``. Raises NotFound for an unknown device or
    referenced order, ValidationError for malformed input.
    """
    if not print_job_id or not str(print_job_id).strip():
        raise ValidationError("print_job_id is required", details={"device_id": device_id})
    event_type = coerce_event_type(event_type)
    payload = dict(payload or {})
    session_id = _session_id(payload, device_id)
    key = idempotency_key or derive_idempotency_key(device_id, print_job_id, event_type, payload)
    now = now or datetime.utcnow()

    try:
        async with store.atomic("print_event"):
            machine = await find_machine(store, device_id)
            existing = await _find_event(store, key)
            if existing is not None:
                logger.info("print_event.duplicate", device_id=device_id, idempotency_key=key)
                return existing, True

            if session_id is not None and event_type == PrintEventType.START:
                await store.require(Order, session_id, entity="Order")
            event = PrintEvent(
                id=uuid.uuid4(),
                machine_id=machine.id,
                print_job_id=print_job_id,
                event_type=event_type,
                payload=payload,
                idempotency_key=key,
                created_at=now,
            )
            store.add(event)
            changed = _apply_to_machine(machine, event_type, print_job_id, session_id, now)
    except StoreFailure as exc:
        if not isinstance(exc.cause, IntegrityError):
            raise
        # The same key was stored by a concurrent request.
        existing = await _find_event(store, key)
        if existing is None:
            raise
        logger.info("print_event.duplicate", device_id=device_id, idempotency_key=key)
        return existing, True

    if event_type in FINISHING_EVENTS and not changed:
        logger.warning(
            "print_event.stale_job",
            device_id=device_id,
            print_job_id=print_job_id,
            active_print_job=machine.active_print_job,
        )
    logger.info(
        "print_event.recorded",
        device_id=device_id,
        print_job_id=print_job_id,
        event_type=event_type.value,
        is_printing=machine.is_printing,
    )
    return event, False
