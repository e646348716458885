"""Availability projection: read-only total / reserved / available view.

Always read from the ledger row at call time, never cached. Callers that
must decide atomically with a change should use ``read`` with the session
of their own transaction.
"""
import logging
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .exceptions import NotFoundError
from .models import InventoryRecord, Reservation, ReservationStatus
from .transactions import parse_id, require_positive_quantity

logger = logging.getLogger(__name__)


class Availability(BaseModel):
    """Stock figures for one inventory record."""
    inventory_record_id: UUID
    total: int
    reserved: int
    available: int
    active_reservations: int


class ReservationCheck(BaseModel):
    """Advisory answer to "could this quantity be reserved right now?"."""
    inventory_record_id: UUID
    requested: int
    available: int
    can_reserve: bool
    shortage: Optional[int] = None


class AvailabilityAudit(BaseModel):
    """Ledger reserved quantity versus the sum of active reservations."""
    inventory_record_id: UUID
    reserved_quantity: int
    active_reservation_total: int
    consistent: bool


class AvailabilityProjection:
    """Derives availability from the inventory ledger."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def get(self, inventory_record_id: Any) -> Availability:
        """Availability as of a fresh read of the ledger row."""
        record_id = parse_id(inventory_record_id, "inventory_record_id")
        async with self.session_factory() as session:
            return await self.read(session, record_id)

    async def read(self, session: AsyncSession, record_id: UUID) -> Availability:
        """Availability read inside the caller's transaction."""
        # One statement so the count and the quantities share a snapshot
        active_count = (
            select(func.count())
            .select_from(Reservation)
            .where(
                Reservation.inventory_record_id == InventoryRecord.id,
                Reservation.status == ReservationStatus.ACTIVE.value,
            )
            .correlate(InventoryRecord)
            .scalar_subquery()
        )
        result = await session.execute(
            select(InventoryRecord.total_quantity, InventoryRecord.reserved_quantity, active_count)
            .where(InventoryRecord.id == record_id)
        )
        row = result.one_or_none()
        if row is None:
            raise NotFoundError("Inventory record", record_id)

        total, reserved, active = row

        return Availability(
            inventory_record_id=record_id,
            total=total,
            reserved=reserved,
            available=total - reserved,
            active_reservations=active or 0,
        )

    async def check(self, inventory_record_id: Any, quantity: int) -> ReservationCheck:
        """
        Whether ``quantity`` is available at this instant.

        Only a hint for display; ``ReservationEngine.reserve`` makes the
        binding decision under the row lock.
        """
        quantity = require_positive_quantity(quantity)
        availability = await self.get(inventory_record_id)
        can_reserve = availability.available >= quantity

        return ReservationCheck(
            inventory_record_id=availability.inventory_record_id,
            requested=quantity,
            available=availability.available,
            can_reserve=can_reserve,
            shortage=None if can_reserve else quantity - availability.available,
        )

    async def audit(self, inventory_record_id: Any) -> AvailabilityAudit:
        """Compare the ledger's reserved quantity with its active reservations."""
        record_id = parse_id(inventory_record_id, "inventory_record_id")
        active_sum = (
            select(func.coalesce(func.sum(Reservation.requested_quantity), 0))
            .where(
                Reservation.inventory_record_id == InventoryRecord.id,
                Reservation.status == ReservationStatus.ACTIVE.value,
            )
            .correlate(InventoryRecord)
            .scalar_subquery()
        )
        async with self.session_factory() as session:
            result = await session.execute(
                select(InventoryRecord.reserved_quantity, active_sum)
                .where(InventoryRecord.id == record_id)
            )
            row = result.one_or_none()
        if row is None:
            raise NotFoundError("Inventory record", record_id)

        reserved, active_total = row

        audit = AvailabilityAudit(
            inventory_record_id=record_id,
            reserved_quantity=reserved,
            active_reservation_total=active_total,
            consistent=reserved == active_total,
        )
        if not audit.consistent:
            logger.error(
                f"Reserved quantity drift on record {record_id}: "
                f"ledger {reserved}, active reservations {active_total}"
            )
        return audit
