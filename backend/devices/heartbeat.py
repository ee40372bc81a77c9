"""
Heartbeat Ingestion — the only input that brings a print machine online.

A device posts a heartbeat every few seconds. Each one marks it online and
stamps ``last_seen_at``; the scheduler's liveness job takes it offline again
once heartbeats stop for longer than DEVICE_OFFLINE_AFTER.

Bodies may be signed with the device's ``secret_key`` (hex HMAC-SHA256 over
the raw request body).
"""

import uuid
from datetime import datetime

import structlog

from core.errors import NotFound, ValidationError
from core.security import verify_device_signature
from db.models import Machine, Order
from store.record_store import RecordStore

logger = structlog.get_logger()


async def find_machine(store: RecordStore, device_id: str) -> Machine:
    machine = await store.first_where(Machine, Machine.device_id == device_id)
    if machine is None:
        raise NotFound("Machine", device_id)
    return machine


def verify_signature(body: bytes, signature: str | None, secret: str) -> bool:
    return verify_device_signature(body, signature or "", secret)


async def record_heartbeat(
    store: RecordStore,
    device_id: str,
    *,
    is_printing: bool = False,
    active_session_id: uuid.UUID | str | None = None,
    firmware_version: str | None = None,
    model: str | None = None,
    now: datetime | None = None,
) -> Machine:
    """Mark the device online and record what it reported."""
    now = now or datetime.utcnow()

    session_id = None
    if active_session_id is not None:
        try:
            session_id = uuid.UUID(str(active_session_id))
        except ValueError:
            raise ValidationError(
                f"active_session_id '{active_session_id}' is not a valid id",
                details={"device_id": device_id},
            ) from None

    async with store.atomic("heartbeat"):
        machine = await find_machine(store, device_id)
        if session_id is not None:
            await store.require(Order, session_id, entity="Order")
        was_online = machine.is_online
        machine.is_online = True
        machine.is_printing = bool(is_printing)
        machine.active_session_id = session_id
        machine.last_seen_at = now
        machine.updated_at = now
        if firmware_version is not None:
            machine.firmware_version = firmware_version
        if model is not None:
            machine.model = model

    if not was_online:
        logger.info("device.online", device_id=device_id, firmware_version=machine.firmware_version)
    return machine
