"""
Pytest configuration and fixtures.

Each test gets its own SQLite file database; the broker, rate limiter and
expiration sweep are switched off before the app module is imported.
"""
import itertools
import os

os.environ.setdefault("BROKER_ENABLED", "false")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("EXPIRATION_SWEEP_ENABLED", "false")

import pytest
import pytest_asyncio
from sqlalchemy import func, select

from shared.database import Database
import shared.outbox  # noqa: F401  registers the outbox table
from services.stock_service.availability import AvailabilityProjection
from services.stock_service.ledger import InventoryLedger
from services.stock_service.models import InventoryRecord, Reservation, ReservationStatus
from services.stock_service.movements import MovementLog
from services.stock_service.reservation_engine import ReservationEngine

# Generous so that heavily contended tests queue instead of timing out
TEST_LOCK_TIMEOUT_MS = 30000


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'stock.db'}"


@pytest_asyncio.fixture
async def database(database_url):
    db = Database(database_url, lock_timeout_ms=TEST_LOCK_TIMEOUT_MS)
    await db.create_tables()
    yield db
    await db.drop_tables()
    await db.close()


@pytest.fixture
def reservation_engine(database):
    return ReservationEngine(database.session_factory, lock_timeout_ms=TEST_LOCK_TIMEOUT_MS)


@pytest.fixture
def ledger(database):
    return InventoryLedger(database.session_factory, lock_timeout_ms=TEST_LOCK_TIMEOUT_MS)


@pytest.fixture
def projection(database):
    return AvailabilityProjection(database.session_factory)


@pytest.fixture
def movement_log(database):
    return MovementLog(database.session_factory)


@pytest.fixture
def make_record(ledger, reservation_engine):
    """Create a record with ``total`` units, ``reserved`` of them held by one reservation."""
    counter = itertools.count(1)

    async def _make(total: int = 100, reserved: int = 0):
        record = await ledger.create_record(
            sku=f"SKU-{next(counter):04d}",
            location="A-01-01",
            warehouse_id="WH-1",
            total_quantity=total,
        )
        if reserved:
            await reservation_engine.reserve(record.id, reserved, reserved_by="seed")
        return record.id

    return _make


@pytest.fixture
def ledger_state(database):
    """Read (total, reserved, sum of active reservations) straight from the tables."""

    async def _state(record_id):
        async with database.session_factory() as session:
            record = await session.get(InventoryRecord, record_id)
            active_total = await session.scalar(
                select(func.coalesce(func.sum(Reservation.requested_quantity), 0)).where(
                    Reservation.inventory_record_id == record_id,
                    Reservation.status == ReservationStatus.ACTIVE.value,
                )
            )
        return record.total_quantity, record.reserved_quantity, active_total

    return _state


@pytest.fixture
def assert_invariants(ledger_state):
    async def _check(record_id):
        total, reserved, active_total = await ledger_state(record_id)
        assert 0 <= reserved <= total
        assert reserved == active_total
        return total, reserved

    return _check
