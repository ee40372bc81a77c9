"""Order status enum and the static transition table."""

from __future__ import annotations

from enum import Enum


class OrderStatus(str, Enum):
    """Order lifecycle, in nominal order of progress."""

    UNSUBMITTED = "UNSUBMITTED"
    SUBMITTED = "SUBMITTED"
    CONFIRMED = "CONFIRMED"
    AUTO_CONFIRMED = "AUTO_CONFIRMED"
    QUEUED = "QUEUED"
    PICKUP = "PICKUP"
    ONGOING = "ONGOING"
    DONE = "DONE"
    PACKAGING = "PACKAGING"
    DELIVERY = "DELIVERY"
    COMPLETED = "COMPLETED"
    ABORTED = "ABORTED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({OrderStatus.COMPLETED, OrderStatus.ABORTED})

# Forward edges only. ABORTED is reachable from every non-terminal status and
# is added by can_transition() rather than listed per row.
TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.UNSUBMITTED: frozenset({OrderStatus.SUBMITTED}),
    OrderStatus.SUBMITTED: frozenset({OrderStatus.CONFIRMED, OrderStatus.AUTO_CONFIRMED, OrderStatus.QUEUED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.QUEUED}),
    OrderStatus.AUTO_CONFIRMED: frozenset({OrderStatus.QUEUED}),
    OrderStatus.QUEUED: frozenset({OrderStatus.PICKUP}),
    OrderStatus.PICKUP: frozenset({OrderStatus.ONGOING}),
    OrderStatus.ONGOING: frozenset({OrderStatus.DONE}),
    OrderStatus.DONE: frozenset({OrderStatus.PACKAGING}),
    OrderStatus.PACKAGING: frozenset({OrderStatus.DELIVERY}),
    OrderStatus.DELIVERY: frozenset({OrderStatus.COMPLETED}),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.ABORTED: frozenset(),
}

# Column stamped on the order when it enters each status.
STATUS_TIMESTAMP_FIELDS: dict[OrderStatus, str] = {
    OrderStatus.SUBMITTED: "submission_time",
    OrderStatus.CONFIRMED: "confirmed_at",
    OrderStatus.AUTO_CONFIRMED: "auto_confirmed_at",
    OrderStatus.QUEUED: "queued_at",
    OrderStatus.PICKUP: "pickup_at",
    OrderStatus.ONGOING: "ongoing_at",
    OrderStatus.DONE: "done_at",
    OrderStatus.PACKAGING: "packaging_at",
    OrderStatus.DELIVERY: "delivery_at",
    OrderStatus.COMPLETED: "completed_at",
    OrderStatus.ABORTED: "aborted_at",
}


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    if current in TERMINAL_STATUSES:
        return False
    if target == OrderStatus.ABORTED:
        return True
    return target in TRANSITIONS[current]


def allowed_targets(current: OrderStatus) -> list[OrderStatus]:
    """Targets reachable from ``current``, in enum order."""
    return [status for status in OrderStatus if can_transition(current, status)]
