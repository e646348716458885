"""Reservation engine: atomic reserve / cancel / fulfill against the ledger.

Each operation is one transaction that locks the inventory record row,
re-reads it, decides, and writes the ledger, the reservation, the
movement log and the outbox event together. Nothing here retries; callers
own the retry policy and may only retry ``ConcurrentModificationError``.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field
from sqlalchemy import select

from shared.clock import as_naive_utc, utcnow
from shared.events import (
    ReservationCancelledEvent,
    ReservationExpiredEvent,
    ReservationFulfilledEvent,
    StockReservedEvent,
)
from shared.outbox import save_event_to_outbox

from .exceptions import InsufficientStockError, NotFoundError, StockError, ValidationError
from .models import InventoryRecord, MovementReason, Reservation, ReservationStatus, ReservationType
from .movements import record_movement
from .transactions import (
    atomic,
    check_actor,
    lock_record,
    lock_reservation,
    page_limit,
    parse_id,
    require_positive_quantity,
)

logger = logging.getLogger(__name__)


class ReservationLine(BaseModel):
    """One line of a bulk reservation request."""
    inventory_record_id: UUID
    quantity: int


class BulkReservationResult(BaseModel):
    """Outcome of ``reserve_many``; each line commits or fails on its own."""
    reservation_ids: List[UUID] = Field(default_factory=list)
    failures: List[Dict[str, Any]] = Field(default_factory=list)
    total_reserved: int = 0

    @property
    def success(self) -> bool:
        return not self.failures


class BulkFulfillmentResult(BaseModel):
    """Outcome of ``fulfill_many``."""
    fulfilled: List[UUID] = Field(default_factory=list)
    failures: List[Dict[str, Any]] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failures


class ReservationEngine:
    """Transactional reserve / cancel / fulfill / expire operations."""

    def __init__(
        self,
        session_factory,
        lock_timeout_ms: int = 2000,
        default_ttl_seconds: Optional[int] = None,
        require_actor: bool = False,
    ):
        """
        Initialize the engine.

        Args:
            session_factory: Async session factory for database access
            lock_timeout_ms: Upper bound on waiting for a row lock
            default_ttl_seconds: TTL applied when ``reserve`` is not given one; None means no expiry
            require_actor: Reject operations that do not name who performed them
        """
        self.session_factory = session_factory
        self.lock_timeout_ms = lock_timeout_ms
        self.default_ttl_seconds = default_ttl_seconds
        self.require_actor = require_actor

    async def reserve(
        self,
        inventory_record_id: Any,
        requested_quantity: int,
        fulfillment_ref: Optional[str] = None,
        reserved_by: Optional[str] = None,
        notes: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
        reservation_type: ReservationType = ReservationType.FULFILLMENT,
        dedupe_on_fulfillment_ref: bool = False,
    ) -> UUID:
        """
        Hold stock on one inventory record.

        Args:
            inventory_record_id: Record to reserve against
            requested_quantity: Units to hold, > 0
            fulfillment_ref: Opaque link to the fulfillment/order line
            reserved_by: Actor placing the hold
            notes: Free text
            ttl_seconds: Hold lifetime; overrides the engine default
            reservation_type: fulfillment, transfer or adjustment hold
            dedupe_on_fulfillment_ref: Return the existing reservation for this
                record and ``fulfillment_ref`` instead of placing a second hold

        Returns:
            The new reservation id, or the existing one when deduplicated

        Raises:
            NotFoundError: the record does not exist
            InsufficientStockError: fewer than ``requested_quantity`` units are available
            ValidationError: bad quantity, identifier, TTL or missing actor
            ConcurrentModificationError: the record stayed locked past the lock timeout
        """
        record_id = parse_id(inventory_record_id, "inventory_record_id")
        quantity = require_positive_quantity(requested_quantity, "requested_quantity")
        reserved_by = check_actor(reserved_by, self.require_actor, "reserved_by")
        reservation_type = _parse_type(reservation_type)

        ttl = ttl_seconds if ttl_seconds is not None else self.default_ttl_seconds
        if ttl is not None:
            require_positive_quantity(ttl, "ttl_seconds")

        now = utcnow()
        expires_at = now + timedelta(seconds=ttl) if ttl is not None else None

        async with atomic(self.session_factory, self.lock_timeout_ms) as session:
            record = await lock_record(session, record_id)

            if dedupe_on_fulfillment_ref and fulfillment_ref is not None:
                # The record lock serializes this lookup with concurrent reserves
                existing = await session.scalar(
                    select(Reservation.id)
                    .where(
                        Reservation.inventory_record_id == record_id,
                        Reservation.fulfillment_ref == fulfillment_ref,
                    )
                    .order_by(Reservation.reserved_at.desc())
                    .limit(1)
                )
                if existing is not None:
                    logger.info(
                        f"Reservation {existing} already exists for {fulfillment_ref} "
                        f"on record {record_id}, not reserving again"
                    )
                    return existing

            available = record.available_quantity
            if quantity > available:
                raise InsufficientStockError(record_id, quantity, available)

            record.reserved_quantity += quantity
            record.version += 1

            reservation = Reservation(
                id=uuid4(),
                inventory_record_id=record_id,
                fulfillment_ref=fulfillment_ref,
                reservation_type=reservation_type.value,
                requested_quantity=quantity,
                status=ReservationStatus.ACTIVE.value,
                reserved_by=reserved_by,
                reserved_at=now,
                expires_at=expires_at,
                notes=notes,
                updated_at=now,
            )
            session.add(reservation)

            await save_event_to_outbox(
                session,
                StockReservedEvent(
                    aggregate_id=record_id,
                    correlation_id=reservation.id,
                    reservation_id=reservation.id,
                    quantity=quantity,
                    fulfillment_ref=fulfillment_ref,
                    reservation_type=reservation_type.value,
                    reserved_by=reserved_by,
                    expires_at=expires_at,
                ),
            )

        logger.info(
            f"Reserved {quantity} on record {record_id} "
            f"(reservation {reservation.id}, available now {available - quantity})"
        )
        return reservation.id

    async def cancel(
        self,
        reservation_id: Any,
        cancelled_by: Optional[str] = None,
        reason: Optional[str] = None,
    ):
        """
        Release an active hold back to the available pool.

        Not idempotent: cancelling a reservation that is no longer active
        raises ``InvalidStateTransitionError`` and changes nothing.
        """
        rid = parse_id(reservation_id, "reservation_id")
        cancelled_by = check_actor(cancelled_by, self.require_actor, "cancelled_by")

        reservation = await self._release(rid, ReservationStatus.CANCELLED, cancelled_by, reason)

        logger.info(
            f"Cancelled reservation {rid} "
            f"({reservation.requested_quantity} returned to record {reservation.inventory_record_id})"
        )

    async def expire(self, reservation_id: Any):
        """Expire an active hold; same guard and ledger effect as ``cancel``."""
        rid = parse_id(reservation_id, "reservation_id")

        reservation = await self._release(rid, ReservationStatus.EXPIRED, None, None)

        logger.info(
            f"Expired reservation {rid} "
            f"({reservation.requested_quantity} returned to record {reservation.inventory_record_id})"
        )

    async def fulfill(
        self,
        reservation_id: Any,
        fulfilled_by: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> UUID:
        """
        Convert an active hold into a physical stock deduction.

        Decrements both ``total_quantity`` and ``reserved_quantity`` and
        appends one movement log entry.

        Returns:
            The id of the movement log entry
        """
        rid = parse_id(reservation_id, "reservation_id")
        fulfilled_by = check_actor(fulfilled_by, self.require_actor, "fulfilled_by")
        now = utcnow()

        async with atomic(self.session_factory, self.lock_timeout_ms) as session:
            reservation = await lock_reservation(session, rid)
            reservation.transition_to(ReservationStatus.FULFILLED, fulfilled_by, now)
            if notes:
                reservation.notes = _append_note(reservation.notes, notes)

            record = await lock_record(session, reservation.inventory_record_id)
            quantity = reservation.requested_quantity
            total_before = record.total_quantity
            reserved_before = record.reserved_quantity

            record.total_quantity -= quantity
            record.reserved_quantity -= quantity
            record.version += 1

            movement = record_movement(
                session,
                record,
                MovementReason.RESERVATION_FULFILLED,
                quantity_change=-quantity,
                total_before=total_before,
                reserved_before=reserved_before,
                reservation_id=rid,
                performed_by=fulfilled_by,
                notes=notes,
            )

            await save_event_to_outbox(
                session,
                ReservationFulfilledEvent(
                    aggregate_id=record.id,
                    correlation_id=rid,
                    reservation_id=rid,
                    movement_id=movement.id,
                    quantity=quantity,
                    fulfilled_by=fulfilled_by,
                ),
            )

        logger.info(
            f"Fulfilled reservation {rid}: record {record.id} "
            f"total {total_before} -> {record.total_quantity}"
        )
        return movement.id

    async def _release(
        self,
        reservation_id: UUID,
        target: ReservationStatus,
        actor: Optional[str],
        reason: Optional[str],
    ) -> Reservation:
        """Shared path for cancel and expire: terminal stamp plus reserved decrement."""
        now = utcnow()

        async with atomic(self.session_factory, self.lock_timeout_ms) as session:
            reservation = await lock_reservation(session, reservation_id)
            reservation.transition_to(target, actor, now)
            if reason:
                reservation.notes = _append_note(reservation.notes, reason)

            record = await lock_record(session, reservation.inventory_record_id)
            record.reserved_quantity -= reservation.requested_quantity
            record.version += 1

            if target is ReservationStatus.EXPIRED:
                event = ReservationExpiredEvent(
                    aggregate_id=record.id,
                    correlation_id=reservation_id,
                    reservation_id=reservation_id,
                    quantity=reservation.requested_quantity,
                )
            else:
                event = ReservationCancelledEvent(
                    aggregate_id=record.id,
                    correlation_id=reservation_id,
                    reservation_id=reservation_id,
                    quantity=reservation.requested_quantity,
                    cancelled_by=actor,
                    reason=reason,
                )
            await save_event_to_outbox(session, event)

        return reservation

    async def reserve_many(
        self,
        lines: Iterable[ReservationLine],
        fulfillment_ref: Optional[str] = None,
        reserved_by: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> BulkReservationResult:
        """Reserve several lines, each in its own transaction."""
        result = BulkReservationResult()
        for line in lines:
            try:
                reservation_id = await self.reserve(
                    line.inventory_record_id,
                    line.quantity,
                    fulfillment_ref=fulfillment_ref,
                    reserved_by=reserved_by,
                    notes=notes,
                )
            except StockError as e:
                result.failures.append(
                    {"inventory_record_id": str(line.inventory_record_id), **e.to_dict()}
                )
                continue

            result.reservation_ids.append(reservation_id)
            result.total_reserved += line.quantity

        return result

    async def fulfill_many(
        self,
        reservation_ids: Iterable[Any],
        fulfilled_by: Optional[str] = None,
    ) -> BulkFulfillmentResult:
        """Fulfill several reservations, each in its own transaction."""
        result = BulkFulfillmentResult()
        for reservation_id in reservation_ids:
            try:
                await self.fulfill(reservation_id, fulfilled_by=fulfilled_by)
            except StockError as e:
                result.failures.append({"reservation_id": str(reservation_id), **e.to_dict()})
                continue
            result.fulfilled.append(parse_id(reservation_id, "reservation_id"))

        return result

    async def get_reservation(self, reservation_id: Any) -> Reservation:
        rid = parse_id(reservation_id, "reservation_id")
        async with self.session_factory() as session:
            reservation = await session.get(Reservation, rid)
        if reservation is None:
            raise NotFoundError("Reservation", rid)
        return reservation

    async def list_reservations(
        self,
        inventory_record_id: Optional[Any] = None,
        status: Optional[ReservationStatus] = None,
        fulfillment_ref: Optional[str] = None,
        reservation_type: Optional[ReservationType] = None,
        warehouse_id: Optional[str] = None,
        location: Optional[str] = None,
        reserved_by: Optional[str] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[Reservation]:
        """
        Newest first.

        ``warehouse_id`` and ``location`` filter on the owning inventory
        record; ``date_from`` / ``date_to`` bound ``reserved_at`` inclusively.
        """
        query = select(Reservation).order_by(Reservation.reserved_at.desc()).limit(page_limit(limit))
        if inventory_record_id is not None:
            query = query.where(
                Reservation.inventory_record_id == parse_id(inventory_record_id, "inventory_record_id")
            )
        if status is not None:
            query = query.where(Reservation.status == ReservationStatus(status).value)
        if fulfillment_ref is not None:
            query = query.where(Reservation.fulfillment_ref == fulfillment_ref)
        if reservation_type is not None:
            query = query.where(Reservation.reservation_type == _parse_type(reservation_type).value)
        if warehouse_id is not None or location is not None:
            query = query.join(InventoryRecord, InventoryRecord.id == Reservation.inventory_record_id)
            if warehouse_id is not None:
                query = query.where(InventoryRecord.warehouse_id == warehouse_id)
            if location is not None:
                query = query.where(InventoryRecord.location == location)
        if reserved_by is not None:
            query = query.where(Reservation.reserved_by == reserved_by)
        if date_from is not None:
            query = query.where(Reservation.reserved_at >= as_naive_utc(date_from))
        if date_to is not None:
            query = query.where(Reservation.reserved_at <= as_naive_utc(date_to))

        async with self.session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def find_by_fulfillment_ref(
        self, inventory_record_id: Any, fulfillment_ref: str
    ) -> Optional[Reservation]:
        """Most recent reservation for a fulfillment line on a record, in any status."""
        reservations = await self.list_reservations(
            inventory_record_id=inventory_record_id,
            fulfillment_ref=fulfillment_ref,
            limit=1,
        )
        return reservations[0] if reservations else None

    async def due_for_expiry(self, now: datetime, limit: int = 100) -> List[UUID]:
        """Ids of active reservations whose TTL has passed, oldest deadline first."""
        query = (
            select(Reservation.id)
            .where(
                Reservation.status == ReservationStatus.ACTIVE.value,
                Reservation.expires_at.is_not(None),
                Reservation.expires_at <= now,
            )
            .order_by(Reservation.expires_at)
            .limit(limit)
        )
        async with self.session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())


def _append_note(existing: Optional[str], note: str) -> str:
    return f"{existing}\n{note}" if existing else note


def _parse_type(value: Any) -> ReservationType:
    try:
        return ReservationType(value)
    except ValueError:
        raise ValidationError(f"Unknown reservation type: {value!r}")
