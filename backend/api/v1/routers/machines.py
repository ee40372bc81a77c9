"""
Machine Router — heartbeats and print-job events from print machines.

  POST /api/v1/machines/{device_id}/heartbeat      liveness
  POST /api/v1/machines/{device_id}/print-events   START/PROGRESS/COMPLETE/ERROR/CANCEL

Devices authenticate with an HMAC-SHA256 of the raw body keyed by their
``secret_key``, sent in ``X-Device-Signature``. Signature checking can be
switched off for local development with REQUIRE_DEVICE_SIGNATURE=false.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from pydantic import BaseModel, Field

from api.deps import get_store
from core.config import Settings, get_settings
from core.errors import ValidationError
from db.models import PrintEventType
from devices.heartbeat import find_machine, record_heartbeat, verify_signature
from devices.print_events import ingest_print_event
from store.record_store import RecordStore

router = APIRouter(prefix="/api/v1/machines", tags=["machines"])


class HeartbeatRequest(BaseModel):
    is_printing: bool = False
    active_session_id: UUID | None = None
    firmware_version: str | None = None
    model: str | None = None


class PrintEventRequest(BaseModel):
    print_job_id: str = Field(..., min_length=1, max_length=100)
    type: PrintEventType
    payload: dict[str, Any] = {}
    idempotency_key: str | None = Field(None, max_length=255)


class MachineResponse(BaseModel):
    device_id: str
    is_online: bool
    is_printing: bool
    active_session_id: UUID | None
    active_print_job: str | None = None
    last_seen_at: datetime | None
    firmware_version: str | None
    model: str | None

    model_config = {"from_attributes": True}


class PrintEventResponse(BaseModel):
    event_id: UUID
    print_job_id: str
    type: str
    duplicate: bool
    machine: MachineResponse


async def _read_signed_body(
    request: Request,
    device_id: str,
    signature: str | None,
    store: RecordStore,
    app_settings: Settings,
) -> bytes:
    raw = await request.body()
    if app_settings.require_device_signature:
        machine = await find_machine(store, device_id)
        if not verify_signature(raw, signature, machine.secret_key):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid device signature",
            )
    return raw


@router.post("/{device_id}/heartbeat", response_model=MachineResponse)
async def heartbeat(
    device_id: str,
    request: Request,
    x_device_signature: str | None = Header(None),
    store: RecordStore = Depends(get_store),
    app_settings: Settings = Depends(get_settings),
):
    """Record a heartbeat; the device is online until heartbeats stop."""
    raw = await _read_signed_body(request, device_id, x_device_signature, store, app_settings)

    try:
        body = HeartbeatRequest.model_validate_json(raw or b"{}")
    except ValueError as exc:
        raise ValidationError("Malformed heartbeat body", details={"errors": str(exc)}) from exc

    return await record_heartbeat(
        store,
        device_id,
        is_printing=body.is_printing,
        active_session_id=body.active_session_id,
        firmware_version=body.firmware_version,
        model=body.model,
    )


@router.post("/{device_id}/print-events", response_model=PrintEventResponse)
async def print_event(
    device_id: str,
    request: Request,
    x_device_signature: str | None = Header(None),
    store: RecordStore = Depends(get_store),
    app_settings: Settings = Depends(get_settings),
):
    """Record a print-job event. Replaying an idempotency key returns the stored event."""
    raw = await _read_signed_body(request, device_id, x_device_signature, store, app_settings)

    try:
        body = PrintEventRequest.model_validate_json(raw or b"{}")
    except ValueError as exc:
        raise ValidationError("Malformed print event body", details={"errors": str(exc)}) from exc

    event, duplicate = await ingest_print_event(
        store,
        device_id,
        print_job_id=body.print_job_id,
        event_type=body.type,
        payload=body.payload,
        idempotency_key=body.idempotency_key,
    )
    machine = await find_machine(store, device_id)
    return PrintEventResponse(
        event_id=event.id,
        print_job_id=event.print_job_id,
        type=event.event_type.value,
        duplicate=duplicate,
        machine=MachineResponse.model_validate(machine),
    )
