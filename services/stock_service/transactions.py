"""Atomic unit of work for ledger and reservation changes.

Every mutating operation runs inside ``atomic``: one transaction, row locks
taken on the inventory record, and either a full commit or a full rollback.
"""
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from shared.database import is_lock_contention, set_lock_timeout

from .exceptions import ConcurrentModificationError, NotFoundError, ValidationError
from .models import InventoryRecord, Reservation

logger = logging.getLogger(__name__)


@asynccontextmanager
async def atomic(session_factory, lock_timeout_ms: int) -> AsyncIterator[AsyncSession]:
    """
    Run a block in a single transaction with bounded lock waits.

    Domain errors raised inside the block roll the transaction back and
    propagate unchanged. Lock timeouts, deadlocks and serialization
    failures become ``ConcurrentModificationError``.
    """
    async with session_factory() as session:
        try:
            async with session.begin():
                await set_lock_timeout(session, lock_timeout_ms)
                yield session
        except DBAPIError as e:
            if is_lock_contention(e):
                logger.warning(f"Lock contention, transaction rolled back: {e.orig}")
                raise ConcurrentModificationError(
                    "Inventory record is busy; nothing was applied, retry shortly"
                ) from e
            raise


async def lock_record(session: AsyncSession, record_id: UUID) -> InventoryRecord:
    """Load an inventory record with a row lock held until commit."""
    result = await session.execute(
        select(InventoryRecord)
        .where(InventoryRecord.id == record_id)
        .with_for_update()
    )
    record = result.scalar_one_or_none()
    if record is None:
        raise NotFoundError("Inventory record", record_id)
    return record


async def lock_reservation(session: AsyncSession, reservation_id: UUID) -> Reservation:
    """Load a reservation with a row lock held until commit."""
    result = await session.execute(
        select(Reservation)
        .where(Reservation.id == reservation_id)
        .with_for_update()
    )
    reservation = result.scalar_one_or_none()
    if reservation is None:
        raise NotFoundError("Reservation", reservation_id)
    return reservation


def parse_id(value: Any, name: str) -> UUID:
    """Coerce an identifier to UUID or raise ``ValidationError``."""
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except (TypeError, ValueError):
        raise ValidationError(f"Malformed {name}: {value!r}")


def require_positive_quantity(value: Any, name: str = "quantity") -> int:
    # bool is an int subclass; True is not a quantity
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer, got {value!r}")
    if value <= 0:
        raise ValidationError(f"{name} must be positive, got {value}")
    return value


def check_actor(actor: Optional[str], require_actor: bool, role: str) -> Optional[str]:
    """Normalize an actor reference; blank counts as missing."""
    if actor is not None:
        actor = actor.strip() or None
    if actor is None and require_actor:
        raise ValidationError(f"{role} is required")
    return actor


MAX_PAGE_SIZE = 1000


def page_limit(limit: Any) -> int:
    """Validate a list ``limit``: 1 to ``MAX_PAGE_SIZE`` rows."""
    limit = require_positive_quantity(limit, "limit")
    if limit > MAX_PAGE_SIZE:
        raise ValidationError(f"limit must be at most {MAX_PAGE_SIZE}, got {limit}")
    return limit
