"""
PrintRun error taxonomy.

    PrintRunError (base)
    ├── InvalidTransition  - current order status disallows the target (logic/race bug)
    ├── NotFound           - referenced entity absent (caller error)
    ├── StoreFailure       - record store I/O failed (transient)
    ├── ValidationError    - malformed input
    └── AuditPublishError  - an audit publish stopped part-way
"""

from typing import Any


class PrintRunError(Exception):
    """Base class for all PrintRun errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class InvalidTransition(PrintRunError):
    """Raised when an order cannot move from its current status to the target.

    Not retryable: the caller either has a logic bug or lost a race against
    another actor that already moved the order on.
    """

    def __init__(self, order_id: Any, current_status: str, attempted_status: str):
        super().__init__(
            f"Order {order_id} cannot transition from {current_status} to {attempted_status}",
            details={
                "order_id": str(order_id),
                "current_status": current_status,
                "attempted_status": attempted_status,
            },
        )
        self.order_id = order_id
        self.current_status = current_status
        self.attempted_status = attempted_status


class NotFound(PrintRunError):
    def __init__(self, entity: str, key: Any):
        super().__init__(f"{entity} {key} not found", details={"entity": entity, "key": str(key)})
        self.entity = entity
        self.key = key


class StoreFailure(PrintRunError):
    """Record store I/O error. Safe to retry only for idempotent operations."""

    def __init__(self, operation: str, cause: BaseException | None = None):
        message = f"Store operation '{operation}' failed"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message, details={"operation": operation})
        self.operation = operation
        self.cause = cause


class ValidationError(PrintRunError):
    pass


class AuditPublishError(PrintRunError):
    """A publish failed at ``stage``; ``completed_stages`` were already committed."""

    def __init__(
        self,
        stage: str,
        target_id: Any,
        completed_stages: list[str],
        cause: BaseException | None = None,
        *,
        target: str = "student",
    ):
        super().__init__(
            f"Audit publish for {target} {target_id} failed writing {stage}",
            details={
                "stage": stage,
                "target": target,
                f"{target}_id": str(target_id),
                "completed_stages": list(completed_stages),
                "error": str(cause) if cause is not None else None,
            },
        )
        self.stage = stage
        self.target = target
        self.target_id = target_id
        self.completed_stages = list(completed_stages)
        self.cause = cause
