"""Movement log: append-only record of committed stock changes."""
import logging
from typing import List, Optional
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.clock import utcnow

from .models import InventoryRecord, MovementReason, StockMovement
from .transactions import page_limit

logger = logging.getLogger(__name__)


def record_movement(
    session: AsyncSession,
    record: InventoryRecord,
    reason: MovementReason,
    quantity_change: int,
    total_before: int,
    reserved_before: int,
    reservation_id: Optional[UUID] = None,
    performed_by: Optional[str] = None,
    notes: Optional[str] = None,
) -> StockMovement:
    """
    Append a movement for a ledger change already applied to ``record``.

    Called inside the same transaction as the change, after it, so the
    "after" quantities are read straight off the record.
    """
    movement = StockMovement(
        id=uuid4(),
        inventory_record_id=record.id,
        reservation_id=reservation_id,
        reason=reason.value,
        quantity_change=quantity_change,
        total_before=total_before,
        total_after=record.total_quantity,
        reserved_before=reserved_before,
        reserved_after=record.reserved_quantity,
        performed_by=performed_by,
        notes=notes,
        created_at=utcnow(),
    )
    session.add(movement)

    logger.debug(
        f"Movement {movement.id} on record {record.id}: {reason.value} {quantity_change:+d}"
    )
    return movement


class MovementLog:
    """Read access to the movement log for fulfillment and reporting."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def list_movements(
        self,
        inventory_record_id: Optional[UUID] = None,
        reservation_id: Optional[UUID] = None,
        limit: int = 100,
    ) -> List[StockMovement]:
        """Newest first."""
        query = select(StockMovement).order_by(StockMovement.created_at.desc()).limit(page_limit(limit))
        if inventory_record_id is not None:
            query = query.where(StockMovement.inventory_record_id == inventory_record_id)
        if reservation_id is not None:
            query = query.where(StockMovement.reservation_id == reservation_id)

        async with self.session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())
