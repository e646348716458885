"""Inventory ledger: record creation, receiving and stock adjustments."""
import logging
from typing import Any, List, Optional
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from shared.clock import utcnow
from shared.events import StockAdjustedEvent
from shared.outbox import save_event_to_outbox

from .exceptions import InsufficientStockError, NotFoundError, ValidationError
from .models import InventoryRecord, MovementReason
from .movements import record_movement
from .transactions import atomic, check_actor, lock_record, page_limit, parse_id

logger = logging.getLogger(__name__)


class InventoryLedger:
    """Owns the quantity of record outside of reservations."""

    def __init__(self, session_factory, lock_timeout_ms: int = 2000, require_actor: bool = False):
        self.session_factory = session_factory
        self.lock_timeout_ms = lock_timeout_ms
        self.require_actor = require_actor

    async def create_record(
        self,
        sku: str,
        location: str,
        warehouse_id: str,
        total_quantity: int = 0,
        created_by: Optional[str] = None,
    ) -> InventoryRecord:
        """
        Create the ledger row for a SKU at a location.

        A positive opening quantity is logged as a receipt movement.

        Raises:
            ValidationError: negative quantity, blank identity, or the row already exists
        """
        sku = _require_text(sku, "sku")
        location = _require_text(location, "location")
        warehouse_id = _require_text(warehouse_id, "warehouse_id")
        if isinstance(total_quantity, bool) or not isinstance(total_quantity, int) or total_quantity < 0:
            raise ValidationError(f"total_quantity must be a non-negative integer, got {total_quantity!r}")
        created_by = check_actor(created_by, self.require_actor, "created_by")

        try:
            async with atomic(self.session_factory, self.lock_timeout_ms) as session:
                now = utcnow()
                record = InventoryRecord(
                    id=uuid4(),
                    sku=sku,
                    location=location,
                    warehouse_id=warehouse_id,
                    total_quantity=total_quantity,
                    reserved_quantity=0,
                    version=0,
                    created_at=now,
                    updated_at=now,
                )
                session.add(record)
                await session.flush()

                if total_quantity > 0:
                    movement = record_movement(
                        session,
                        record,
                        MovementReason.RECEIPT,
                        quantity_change=total_quantity,
                        total_before=0,
                        reserved_before=0,
                        performed_by=created_by,
                        notes="Opening stock",
                    )
                    await save_event_to_outbox(
                        session,
                        StockAdjustedEvent(
                            aggregate_id=record.id,
                            movement_id=movement.id,
                            quantity_change=total_quantity,
                            reason=MovementReason.RECEIPT.value,
                            total_after=total_quantity,
                        ),
                    )
        except IntegrityError as e:
            raise ValidationError(
                f"Inventory record for {sku} at {warehouse_id}/{location} already exists"
            ) from e

        logger.info(f"Created inventory record {record.id}: {sku} at {warehouse_id}/{location} ({total_quantity})")
        return record

    async def get_record(self, inventory_record_id: Any) -> InventoryRecord:
        record_id = parse_id(inventory_record_id, "inventory_record_id")
        async with self.session_factory() as session:
            record = await session.get(InventoryRecord, record_id)
        if record is None:
            raise NotFoundError("Inventory record", record_id)
        return record

    async def list_records(
        self,
        warehouse_id: Optional[str] = None,
        sku: Optional[str] = None,
        limit: int = 100,
    ) -> List[InventoryRecord]:
        query = (
            select(InventoryRecord)
            .order_by(InventoryRecord.sku, InventoryRecord.location)
            .limit(page_limit(limit))
        )
        if warehouse_id is not None:
            query = query.where(InventoryRecord.warehouse_id == warehouse_id)
        if sku is not None:
            query = query.where(InventoryRecord.sku == sku)

        async with self.session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def adjust_stock(
        self,
        inventory_record_id: Any,
        quantity_change: int,
        reason: MovementReason = MovementReason.ADJUSTMENT,
        performed_by: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> UUID:
        """
        Receive (+) or write off (-) physical stock outside a reservation.

        The record is locked exactly as ``reserve`` locks it, so a write-off
        can never take units that are already promised.

        Returns:
            The id of the movement log entry

        Raises:
            InsufficientStockError: the change would drop total below reserved
            ValidationError: zero change, or a reservation-only reason
        """
        record_id = parse_id(inventory_record_id, "inventory_record_id")
        if isinstance(quantity_change, bool) or not isinstance(quantity_change, int) or quantity_change == 0:
            raise ValidationError(f"quantity_change must be a non-zero integer, got {quantity_change!r}")
        try:
            reason = MovementReason(reason)
        except ValueError:
            raise ValidationError(f"Unknown movement reason: {reason!r}")
        if reason is MovementReason.RESERVATION_FULFILLED:
            raise ValidationError("Fulfillment deductions go through the reservation engine")
        performed_by = check_actor(performed_by, self.require_actor, "performed_by")

        async with atomic(self.session_factory, self.lock_timeout_ms) as session:
            record = await lock_record(session, record_id)
            total_before = record.total_quantity
            reserved_before = record.reserved_quantity

            new_total = total_before + quantity_change
            if new_total < reserved_before:
                raise InsufficientStockError(record_id, -quantity_change, record.available_quantity)

            record.total_quantity = new_total
            record.version += 1

            movement = record_movement(
                session,
                record,
                reason,
                quantity_change=quantity_change,
                total_before=total_before,
                reserved_before=reserved_before,
                performed_by=performed_by,
                notes=notes,
            )
            await save_event_to_outbox(
                session,
                StockAdjustedEvent(
                    aggregate_id=record_id,
                    movement_id=movement.id,
                    quantity_change=quantity_change,
                    reason=reason.value,
                    total_after=new_total,
                ),
            )

        logger.info(f"Adjusted record {record_id} by {quantity_change:+d} ({reason.value}): total {total_before} -> {new_total}")
        return movement.id


def _require_text(value: Optional[str], name: str) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(f"{name} is required")
    return str(value).strip()
