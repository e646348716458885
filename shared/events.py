"""Event definitions for stock reservation and the fulfillment workflow."""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from .clock import utcnow


class EventType(str, Enum):
    """Event types exchanged with the fulfillment workflow."""

    # Stock events (published by this service)
    STOCK_RESERVED = "stock.reserved"
    STOCK_RESERVE_FAILED = "stock.reserve.failed"
    RESERVATION_CANCELLED = "stock.reservation.cancelled"
    RESERVATION_FULFILLED = "stock.reservation.fulfilled"
    RESERVATION_EXPIRED = "stock.reservation.expired"
    STOCK_ADJUSTED = "stock.adjusted"

    # Fulfillment events (consumed by this service)
    PICK_TASK_CREATED = "fulfillment.pick.created"
    PICK_CONFIRMED = "fulfillment.pick.confirmed"
    HOLD_RELEASED = "fulfillment.hold.released"


class BaseEvent(BaseModel):
    """Base event model with common fields."""

    event_id: UUID = Field(default_factory=uuid4)
    event_type: EventType
    aggregate_id: UUID  # inventory record for stock and pick-task events
    timestamp: datetime = Field(default_factory=utcnow)
    version: int = Field(default=1)
    correlation_id: UUID = Field(default_factory=uuid4)  # For tracing across services
    causation_id: Optional[UUID] = None  # ID of event that caused this one
    metadata: Dict[str, Any] = Field(default_factory=dict)


# Stock Events
class StockReservedEvent(BaseEvent):
    """Event emitted when units are put on hold."""
    event_type: EventType = EventType.STOCK_RESERVED
    reservation_id: UUID
    quantity: int
    fulfillment_ref: Optional[str] = None
    reservation_type: str = "fulfillment"
    reserved_by: Optional[str] = None
    expires_at: Optional[datetime] = None


class StockReserveFailedEvent(BaseEvent):
    """Event emitted when a requested hold could not be placed."""
    event_type: EventType = EventType.STOCK_RESERVE_FAILED
    fulfillment_ref: Optional[str] = None
    reason: str
    requested: int
    available: Optional[int] = None


class ReservationCancelledEvent(BaseEvent):
    """Event emitted when a hold is released."""
    event_type: EventType = EventType.RESERVATION_CANCELLED
    reservation_id: UUID
    quantity: int
    cancelled_by: Optional[str] = None
    reason: Optional[str] = None


class ReservationFulfilledEvent(BaseEvent):
    """Event emitted when a hold is converted into a stock deduction."""
    event_type: EventType = EventType.RESERVATION_FULFILLED
    reservation_id: UUID
    movement_id: UUID
    quantity: int
    fulfilled_by: Optional[str] = None


class ReservationExpiredEvent(BaseEvent):
    """Event emitted when a hold outlives its TTL."""
    event_type: EventType = EventType.RESERVATION_EXPIRED
    reservation_id: UUID
    quantity: int


class StockAdjustedEvent(BaseEvent):
    """Event emitted when stock is received or adjusted outside a reservation."""
    event_type: EventType = EventType.STOCK_ADJUSTED
    movement_id: UUID
    quantity_change: int
    reason: str
    total_after: int


# Fulfillment Events
class PickTaskCreatedEvent(BaseEvent):
    """Fulfillment created a pick task and needs stock held for it."""
    event_type: EventType = EventType.PICK_TASK_CREATED
    quantity: int
    fulfillment_ref: str
    requested_by: Optional[str] = None
    notes: Optional[str] = None


class PickConfirmedEvent(BaseEvent):
    """Fulfillment confirmed the physical pick."""
    event_type: EventType = EventType.PICK_CONFIRMED
    reservation_id: UUID
    confirmed_by: Optional[str] = None


class HoldReleasedEvent(BaseEvent):
    """A user or workflow released a hold without picking."""
    event_type: EventType = EventType.HOLD_RELEASED
    reservation_id: UUID
    released_by: Optional[str] = None
    reason: Optional[str] = None


# Event Registry for deserialization
EVENT_REGISTRY: Dict[EventType, type[BaseEvent]] = {
    EventType.STOCK_RESERVED: StockReservedEvent,
    EventType.STOCK_RESERVE_FAILED: StockReserveFailedEvent,
    EventType.RESERVATION_CANCELLED: ReservationCancelledEvent,
    EventType.RESERVATION_FULFILLED: ReservationFulfilledEvent,
    EventType.RESERVATION_EXPIRED: ReservationExpiredEvent,
    EventType.STOCK_ADJUSTED: StockAdjustedEvent,

    EventType.PICK_TASK_CREATED: PickTaskCreatedEvent,
    EventType.PICK_CONFIRMED: PickConfirmedEvent,
    EventType.HOLD_RELEASED: HoldReleasedEvent,
}


def deserialize_event(event_data: Dict[str, Any]) -> BaseEvent:
    """Deserialize event from dictionary."""
    event_type = EventType(event_data["event_type"])
    event_class = EVENT_REGISTRY.get(event_type, BaseEvent)
    return event_class(**event_data)
