"""
Order State Machine — validated status transitions with an audit trail.

Every status change goes through ``transition_order``:
  1. Load the order (NotFound if absent)
  2. Check the edge against the static table in workflow.states
  3. Set the status and stamp the matching ``*_at`` column
  4. Append an AuditEvent
  5. Commit 3 + 4 in one store transaction

Human callers and the scheduler share this path. When both race on the same
order, whichever commits second finds the status already moved and fails
with InvalidTransition instead of applying twice.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy.orm.exc import StaleDataError

from core.errors import InvalidTransition, StoreFailure, ValidationError
from db.models import ActorType, AuditEvent, Order
from store.record_store import RecordStore
from workflow.states import STATUS_TIMESTAMP_FIELDS, OrderStatus, can_transition

logger = structlog.get_logger()


@dataclass(frozen=True)
class ActorContext:
    """Who requested a transition. ``method`` becomes the suffix of the audit action."""

    actor_type: ActorType
    actor_id: str | None = None
    method: str = "MANUAL"

    @classmethod
    def user(cls, user_id: str) -> "ActorContext":
        return cls(actor_type=ActorType.USER, actor_id=user_id, method="MANUAL")

    @classmethod
    def device(cls, device_id: str) -> "ActorContext":
        return cls(actor_type=ActorType.DEVICE, actor_id=device_id, method="DEVICE")


SYSTEM_ACTOR = ActorContext(actor_type=ActorType.SYSTEM, actor_id="scheduler", method="SYSTEM")


def coerce_status(value: OrderStatus | str) -> OrderStatus:
    if isinstance(value, OrderStatus):
        return value
    try:
        return OrderStatus(str(value).strip().upper())
    except ValueError:
        raise ValidationError(
            f"Unknown order status '{value}'",
            details={"allowed": [s.value for s in OrderStatus]},
        ) from None


def validate_transition(order: Order, target: OrderStatus) -> OrderStatus:
    """Return the order's current status, or raise InvalidTransition."""
    current = coerce_status(order.status)
    if not can_transition(current, target):
        raise InvalidTransition(order.id, current.value, target.value)
    return current


def _next_stamp(order: Order, now: datetime) -> datetime:
    # Keep status timestamps non-decreasing even if the clock steps back.
    stamps = [getattr(order, field) for field in STATUS_TIMESTAMP_FIELDS.values()]
    latest = max((s for s in stamps if s is not None), default=None)
    if latest is not None and latest > now:
        return latest
    return now


def apply_transition(
    order: Order,
    target: OrderStatus,
    actor: ActorContext,
    *,
    now: datetime,
    action: str | None = None,
    details: dict[str, Any] | None = None,
    extra_stamps: tuple[str, ...] = (),
) -> AuditEvent:
    """Mutate ``order`` in memory and build its audit event. Does not persist."""
    current = validate_transition(order, target)
    stamp = _next_stamp(order, now)

    order.status = target
    setattr(order, STATUS_TIMESTAMP_FIELDS[target], stamp)
    for field in extra_stamps:
        setattr(order, field, stamp)
    order.updated_at = stamp

    return AuditEvent(
        id=uuid.uuid4(),
        actor_type=actor.actor_type,
        actor_id=actor.actor_id,
        action=action or f"ORDER_{target.value}_{actor.method}",
        target_type="ORDER",
        target_id=order.id,
        details={
            "order_id": str(order.id),
            "from_status": current.value,
            "to_status": target.value,
            "at": stamp.isoformat(),
            **(details or {}),
        },
        created_at=stamp,
    )


async def transition_order(
    store: RecordStore,
    order_id: uuid.UUID | str,
    target_status: OrderStatus | str,
    actor: ActorContext,
    *,
    action: str | None = None,
    details: dict[str, Any] | None = None,
    extra_stamps: tuple[str, ...] = (),
    now: datetime | None = None,
) -> Order:
    """Validate and commit a status change plus its audit event atomically."""
    target = coerce_status(target_status)
    now = now or datetime.utcnow()

    try:
        async with store.atomic(f"transition:{target.value}"):
            order = await store.require(Order, order_id, entity="Order")
            # Refresh so a concurrent writer's status is seen, not a cached copy.
            await store.refresh(order)
            event = apply_transition(
                order,
                target,
                actor,
                now=now,
                action=action,
                details=details,
                extra_stamps=extra_stamps,
            )
            store.add(event)
    except StoreFailure as exc:
        if not isinstance(exc.cause, StaleDataError):
            raise
        # Another writer moved the order between our read and our commit.
        latest = await store.require(Order, order_id, entity="Order")
        await store.refresh(latest)
        raise InvalidTransition(order_id, coerce_status(latest.status).value, target.value) from exc

    logger.info(
        "order.transitioned",
        order_id=str(order.id),
        from_status=event.details["from_status"],
        to_status=target.value,
        action=event.action,
        actor_type=actor.actor_type.value,
        actor_id=actor.actor_id,
    )
    return order
