"""
Order Router — status transitions requested by people.

Machines and the scheduler move orders through the same state machine;
this router is the human entry point. An edge the table does not allow
comes back as 409 with the order's current status.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from api.deps import get_current_user, get_store
from db.models import Order
from store.record_store import RecordStore
from workflow.states import allowed_targets
from workflow.transitions import ActorContext, coerce_status, transition_order

router = APIRouter(prefix="/api/v1/orders", tags=["orders"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class OrderResponse(BaseModel):
    id: UUID
    school_id: UUID
    school_name: str | None
    external_ref: str | None
    status: str
    total_students: int
    total_classes: int
    total_garments: int
    total_dark_garments: int
    total_light_garments: int
    submission_time: datetime | None
    confirmed_at: datetime | None
    auto_confirmed_at: datetime | None
    queued_at: datetime | None
    pickup_at: datetime | None
    ongoing_at: datetime | None
    done_at: datetime | None
    packaging_at: datetime | None
    delivery_at: datetime | None
    completed_at: datetime | None
    aborted_at: datetime | None
    updated_at: datetime
    allowed_transitions: list[str] = []

    model_config = {"from_attributes": True}


class TransitionRequest(BaseModel):
    target_status: str = Field(..., examples=["CONFIRMED", "QUEUED", "ABORTED"])
    reason: str | None = None


def _to_response(order: Order) -> OrderResponse:
    response = OrderResponse.model_validate(order)
    current = coerce_status(order.status)
    response.status = current.value
    response.allowed_transitions = [s.value for s in allowed_targets(current)]
    return response


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: UUID,
    store: RecordStore = Depends(get_store),
    user: dict = Depends(get_current_user),
):
    """Get an order and the statuses it may move to next."""
    order = await store.require(Order, order_id, entity="Order")
    return _to_response(order)


@router.post("/{order_id}/transition", response_model=OrderResponse)
async def transition(
    order_id: UUID,
    body: TransitionRequest,
    store: RecordStore = Depends(get_store),
    user: dict = Depends(get_current_user),
):
    """Move an order to ``target_status``."""
    details: dict[str, Any] = {}
    if body.reason:
        details["reason"] = body.reason
    order = await transition_order(
        store,
        order_id,
        body.target_status,
        ActorContext.user(str(user["sub"])),
        details=details,
    )
    return _to_response(order)
