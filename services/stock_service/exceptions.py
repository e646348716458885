"""Errors raised by the stock ledger and reservation engine.

Every error carries a stable ``code`` so the HTTP layer and event
consumers can react without parsing messages.
"""
from typing import Any, Dict, Optional


class StockError(Exception):
    """Base class for all stock ledger errors."""

    code = "stock_error"
    retryable = False

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "detail": self.message}


class NotFoundError(StockError):
    """A referenced inventory record or reservation does not exist."""

    code = "not_found"

    def __init__(self, entity: str, entity_id: Any):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class ValidationError(StockError):
    """Non-positive quantity, malformed identifier or missing actor."""

    code = "validation_error"


class InsufficientStockError(StockError):
    """Not enough unreserved stock to satisfy a request."""

    code = "insufficient_stock"

    def __init__(self, inventory_record_id: Any, requested: int, available: int):
        self.inventory_record_id = inventory_record_id
        self.requested = requested
        self.available = available
        self.shortfall = requested - available
        super().__init__(
            f"Not enough stock to reserve on record {inventory_record_id} "
            f"(requested {requested}, available {available}, short {self.shortfall})"
        )

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update(
            requested=self.requested,
            available=self.available,
            shortfall=self.shortfall,
        )
        return data


class InvalidStateTransitionError(StockError):
    """A reservation is not in a state that allows the requested transition."""

    code = "invalid_state_transition"

    def __init__(self, reservation_id: Any, current: str, target: str):
        self.reservation_id = reservation_id
        self.current = current
        self.target = target
        super().__init__(
            f"Reservation {reservation_id} is {current}; cannot move to {target} "
            "(this hold was already released or fulfilled)"
        )

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update(current_status=self.current, target_status=self.target)
        return data


class ConcurrentModificationError(StockError):
    """The row stayed locked past the lock timeout; nothing was applied."""

    code = "concurrent_modification"
    retryable = True

    def __init__(self, message: str, retry_after_seconds: Optional[int] = 1):
        self.retry_after_seconds = retry_after_seconds
        super().__init__(message)
