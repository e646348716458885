"""Database models for the Stock Service."""
from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import uuid4

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)

from shared.clock import utcnow
from shared.database import Base

from .exceptions import InvalidStateTransitionError


class ReservationStatus(str, Enum):
    """Reservation lifecycle status."""
    ACTIVE = "active"
    FULFILLED = "fulfilled"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self is not ReservationStatus.ACTIVE

    def can_transition_to(self, target: "ReservationStatus") -> bool:
        return target in RESERVATION_TRANSITIONS[self]


RESERVATION_TRANSITIONS = {
    ReservationStatus.ACTIVE: frozenset(
        {ReservationStatus.FULFILLED, ReservationStatus.CANCELLED, ReservationStatus.EXPIRED}
    ),
    ReservationStatus.FULFILLED: frozenset(),
    ReservationStatus.CANCELLED: frozenset(),
    ReservationStatus.EXPIRED: frozenset(),
}


class ReservationType(str, Enum):
    """What the held stock is for."""
    FULFILLMENT = "fulfillment"
    TRANSFER = "transfer"
    ADJUSTMENT = "adjustment"


class MovementReason(str, Enum):
    """Why stock left or entered the ledger."""
    RESERVATION_FULFILLED = "reservation_fulfilled"
    RECEIPT = "receipt"
    ADJUSTMENT = "adjustment"


class InventoryRecord(Base):
    """Quantity of record for one SKU at one location."""

    __tablename__ = "inventory_records"

    id = Column(Uuid, primary_key=True, default=uuid4)
    sku = Column(String(100), nullable=False)
    location = Column(String(100), nullable=False)
    warehouse_id = Column(String(100), nullable=False)

    total_quantity = Column(Integer, nullable=False, default=0)
    reserved_quantity = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("sku", "location", "warehouse_id", name="uq_inventory_records_sku_location"),
        CheckConstraint("total_quantity >= 0", name="ck_inventory_records_total_non_negative"),
        CheckConstraint("reserved_quantity >= 0", name="ck_inventory_records_reserved_non_negative"),
        CheckConstraint(
            "reserved_quantity <= total_quantity", name="ck_inventory_records_reserved_within_total"
        ),
        Index("ix_inventory_records_warehouse_sku", "warehouse_id", "sku"),
    )

    @property
    def available_quantity(self) -> int:
        return self.total_quantity - self.reserved_quantity


class Reservation(Base):
    """A hold of stock against one inventory record."""

    __tablename__ = "stock_reservations"

    id = Column(Uuid, primary_key=True, default=uuid4)
    inventory_record_id = Column(
        Uuid,
        ForeignKey("inventory_records.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    fulfillment_ref = Column(String(255), nullable=True, index=True)
    reservation_type = Column(String(20), default=ReservationType.FULFILLMENT.value, nullable=False)

    requested_quantity = Column(Integer, nullable=False)
    status = Column(String(20), default=ReservationStatus.ACTIVE.value, nullable=False)

    reserved_by = Column(String(255), nullable=True)
    reserved_at = Column(DateTime, default=utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=True)
    cancelled_by = Column(String(255), nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    fulfilled_by = Column(String(255), nullable=True)
    fulfilled_at = Column(DateTime, nullable=True)
    expired_at = Column(DateTime, nullable=True)
    notes = Column(Text, nullable=True)

    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("requested_quantity > 0", name="ck_stock_reservations_quantity_positive"),
        Index("ix_stock_reservations_record_status", "inventory_record_id", "status"),
        Index("ix_stock_reservations_status_expires", "status", "expires_at"),
    )

    @property
    def is_active(self) -> bool:
        return self.status == ReservationStatus.ACTIVE.value

    def transition_to(self, target: ReservationStatus, actor: Optional[str], at: datetime):
        """
        Move to a terminal status, stamping who and when.

        Raises:
            InvalidStateTransitionError: the current status does not allow ``target``
        """
        current = ReservationStatus(self.status)
        if not current.can_transition_to(target):
            raise InvalidStateTransitionError(self.id, current.value, target.value)

        self.status = target.value
        self.updated_at = at

        if target is ReservationStatus.FULFILLED:
            self.fulfilled_by = actor
            self.fulfilled_at = at
        elif target is ReservationStatus.CANCELLED:
            self.cancelled_by = actor
            self.cancelled_at = at
        elif target is ReservationStatus.EXPIRED:
            self.expired_at = at


class StockMovement(Base):
    """Append-only audit entry for a committed stock change."""

    __tablename__ = "stock_movements"

    id = Column(Uuid, primary_key=True, default=uuid4)
    inventory_record_id = Column(
        Uuid,
        ForeignKey("inventory_records.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    reservation_id = Column(
        Uuid,
        ForeignKey("stock_reservations.id", ondelete="RESTRICT"),
        nullable=True,
    )

    reason = Column(String(30), nullable=False)
    quantity_change = Column(Integer, nullable=False)
    total_before = Column(Integer, nullable=False)
    total_after = Column(Integer, nullable=False)
    reserved_before = Column(Integer, nullable=False)
    reserved_after = Column(Integer, nullable=False)

    performed_by = Column(String(255), nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        # One fulfillment movement per reservation
        UniqueConstraint("reservation_id", name="uq_stock_movements_reservation"),
        Index("ix_stock_movements_record_created", "inventory_record_id", "created_at"),
    )
