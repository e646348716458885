"""Stock Service FastAPI application."""
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional
from uuid import UUID

from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from shared.config import Settings
from shared.database import Database
from shared.message_broker import MessageBroker
from shared.outbox import OutboxPublisher
from shared.rate_limit import setup_rate_limiter

from .availability import Availability, AvailabilityAudit, AvailabilityProjection, ReservationCheck
from .consumers import FulfillmentEventHandlers
from .exceptions import (
    ConcurrentModificationError,
    InsufficientStockError,
    InvalidStateTransitionError,
    NotFoundError,
    StockError,
    ValidationError,
)
from .expiration import ExpirationSweeper
from .ledger import InventoryLedger
from .models import MovementReason, ReservationStatus, ReservationType
from .movements import MovementLog
from .reservation_engine import (
    BulkFulfillmentResult,
    BulkReservationResult,
    ReservationEngine,
    ReservationLine,
)
from .transactions import MAX_PAGE_SIZE

# Settings
settings = Settings(
    service_name="stock-service",
    service_port=8002,
    postgres_db="stock_db",
)

# Configure logging
logging.basicConfig(
    level=settings.log_level.upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Database, message broker and domain services
database = Database(
    settings.database_url,
    echo=settings.database_echo,
    lock_timeout_ms=settings.lock_timeout_ms,
)
message_broker = MessageBroker(settings.rabbitmq_url)

reservation_engine = ReservationEngine(
    database.session_factory,
    lock_timeout_ms=settings.lock_timeout_ms,
    default_ttl_seconds=settings.reservation_default_ttl_seconds,
    require_actor=settings.require_actor,
)
inventory_ledger = InventoryLedger(
    database.session_factory,
    lock_timeout_ms=settings.lock_timeout_ms,
    require_actor=settings.require_actor,
)
availability_projection = AvailabilityProjection(database.session_factory)
movement_log = MovementLog(database.session_factory)

outbox_publisher: Optional[OutboxPublisher] = None
expiration_sweeper: Optional[ExpirationSweeper] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for the application."""
    global outbox_publisher, expiration_sweeper

    # Startup
    logger.info("Starting Stock Service...")

    await database.create_tables()

    if settings.broker_enabled:
        await message_broker.connect()

        outbox_publisher = OutboxPublisher(
            session_factory=database.session_factory,
            message_broker=message_broker,
            poll_interval=settings.outbox_poll_interval_seconds,
        )
        await outbox_publisher.start()

        handlers = FulfillmentEventHandlers(
            reservation_engine,
            database.session_factory,
            retry_attempts=settings.contention_retry_attempts,
        )
        await handlers.register(message_broker)

    if settings.expiration_sweep_enabled:
        expiration_sweeper = ExpirationSweeper(
            reservation_engine,
            poll_interval=settings.expiration_sweep_interval_seconds,
            batch_size=settings.expiration_batch_size,
        )
        await expiration_sweeper.start()

    logger.info("Stock Service started successfully")

    yield

    # Shutdown
    logger.info("Shutting down Stock Service...")
    if expiration_sweeper:
        await expiration_sweeper.stop()
    if outbox_publisher:
        await outbox_publisher.stop()
    if settings.broker_enabled:
        await message_broker.disconnect()
    await database.close()


app = FastAPI(title="Stock Service", lifespan=lifespan)
limiter = setup_rate_limiter(app, settings)


def get_engine() -> ReservationEngine:
    return reservation_engine


def get_ledger() -> InventoryLedger:
    return inventory_ledger


def get_projection() -> AvailabilityProjection:
    return availability_projection


def get_movement_log() -> MovementLog:
    return movement_log


ERROR_STATUS_CODES = {
    NotFoundError: 404,
    ValidationError: 422,
    InsufficientStockError: 409,
    InvalidStateTransitionError: 409,
    ConcurrentModificationError: 503,
}


@app.exception_handler(StockError)
async def stock_error_handler(request: Request, exc: StockError):
    """Map ledger errors to HTTP responses."""
    status_code = next(
        (code for error_class, code in ERROR_STATUS_CODES.items() if isinstance(exc, error_class)),
        400,
    )
    headers = None
    if isinstance(exc, ConcurrentModificationError) and exc.retry_after_seconds:
        headers = {"Retry-After": str(exc.retry_after_seconds)}

    logger.warning(f"{request.method} {request.url.path} rejected ({exc.code}): {exc.message}")

    return JSONResponse(status_code=status_code, content=exc.to_dict(), headers=headers)


# Request/Response models
class InventoryRecordRequest(BaseModel):
    """Request to create an inventory record (receiving)."""
    sku: str
    location: str
    warehouse_id: str
    total_quantity: int = 0
    created_by: Optional[str] = None


class InventoryRecordResponse(BaseModel):
    """Inventory record response."""
    id: UUID
    sku: str
    location: str
    warehouse_id: str
    total_quantity: int
    reserved_quantity: int
    available_quantity: int
    version: int

    class Config:
        from_attributes = True


class StockAdjustmentRequest(BaseModel):
    """Request to receive or write off stock outside a reservation."""
    quantity_change: int
    reason: MovementReason = MovementReason.ADJUSTMENT
    performed_by: Optional[str] = None
    notes: Optional[str] = None


class ReserveRequest(BaseModel):
    """Request to hold stock."""
    inventory_record_id: UUID
    requested_quantity: int
    fulfillment_ref: Optional[str] = None
    reserved_by: Optional[str] = None
    notes: Optional[str] = None
    ttl_seconds: Optional[int] = None
    reservation_type: ReservationType = ReservationType.FULFILLMENT


class CancelRequest(BaseModel):
    """Request to release a hold."""
    cancelled_by: Optional[str] = None
    reason: Optional[str] = None


class FulfillRequest(BaseModel):
    """Request to convert a hold into a deduction."""
    fulfilled_by: Optional[str] = None
    notes: Optional[str] = None


class BulkReserveRequest(BaseModel):
    """Request to hold stock on several records for one fulfillment line."""
    lines: List[ReservationLine] = Field(min_length=1)
    fulfillment_ref: Optional[str] = None
    reserved_by: Optional[str] = None
    notes: Optional[str] = None


class BulkFulfillRequest(BaseModel):
    """Request to fulfill several holds."""
    reservation_ids: List[UUID] = Field(min_length=1)
    fulfilled_by: Optional[str] = None


class ReservationResponse(BaseModel):
    """Reservation response."""
    id: UUID
    inventory_record_id: UUID
    fulfillment_ref: Optional[str]
    reservation_type: ReservationType
    requested_quantity: int
    status: ReservationStatus
    reserved_by: Optional[str]
    reserved_at: datetime
    expires_at: Optional[datetime]
    cancelled_by: Optional[str]
    cancelled_at: Optional[datetime]
    fulfilled_by: Optional[str]
    fulfilled_at: Optional[datetime]
    expired_at: Optional[datetime]
    notes: Optional[str]

    class Config:
        from_attributes = True


class MovementResponse(BaseModel):
    """Movement log entry response."""
    id: UUID
    inventory_record_id: UUID
    reservation_id: Optional[UUID]
    reason: MovementReason
    quantity_change: int
    total_before: int
    total_after: int
    reserved_before: int
    reserved_after: int
    performed_by: Optional[str]
    notes: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


# Inventory records
@app.post("/inventory-records", response_model=InventoryRecordResponse, status_code=201)
async def create_inventory_record(
    request: InventoryRecordRequest,
    ledger: InventoryLedger = Depends(get_ledger),
):
    """Create the ledger row for a SKU at a location."""
    return await ledger.create_record(
        sku=request.sku,
        location=request.location,
        warehouse_id=request.warehouse_id,
        total_quantity=request.total_quantity,
        created_by=request.created_by,
    )


@app.get("/inventory-records", response_model=List[InventoryRecordResponse])
async def list_inventory_records(
    warehouse_id: Optional[str] = None,
    sku: Optional[str] = None,
    limit: int = Query(100, ge=1, le=MAX_PAGE_SIZE),
    ledger: InventoryLedger = Depends(get_ledger),
):
    """List inventory records."""
    return await ledger.list_records(warehouse_id=warehouse_id, sku=sku, limit=limit)


@app.get("/inventory-records/{record_id}", response_model=InventoryRecordResponse)
async def get_inventory_record(record_id: UUID, ledger: InventoryLedger = Depends(get_ledger)):
    """Get inventory record by ID."""
    return await ledger.get_record(record_id)


@app.post("/inventory-records/{record_id}/adjustments", response_model=InventoryRecordResponse)
async def adjust_inventory_record(
    record_id: UUID,
    request: StockAdjustmentRequest,
    ledger: InventoryLedger = Depends(get_ledger),
):
    """Receive or write off stock; never below what is reserved."""
    await ledger.adjust_stock(
        record_id,
        request.quantity_change,
        reason=request.reason,
        performed_by=request.performed_by,
        notes=request.notes,
    )
    return await ledger.get_record(record_id)


@app.get("/inventory-records/{record_id}/availability", response_model=Availability)
async def get_availability(
    record_id: UUID,
    projection: AvailabilityProjection = Depends(get_projection),
):
    """Total, reserved and available stock for a record."""
    return await projection.get(record_id)


@app.get("/inventory-records/{record_id}/availability/check", response_model=ReservationCheck)
async def check_availability(
    record_id: UUID,
    quantity: int,
    projection: AvailabilityProjection = Depends(get_projection),
):
    """Advisory check whether a quantity could be reserved now."""
    return await projection.check(record_id, quantity)


@app.get("/inventory-records/{record_id}/audit", response_model=AvailabilityAudit)
async def audit_inventory_record(
    record_id: UUID,
    projection: AvailabilityProjection = Depends(get_projection),
):
    """Compare the reserved quantity with the record's active reservations."""
    return await projection.audit(record_id)


# Reservations
@app.post("/reservations", response_model=ReservationResponse, status_code=201)
async def reserve_stock(
    request: ReserveRequest,
    engine: ReservationEngine = Depends(get_engine),
):
    """Hold stock on an inventory record."""
    reservation_id = await engine.reserve(
        request.inventory_record_id,
        request.requested_quantity,
        fulfillment_ref=request.fulfillment_ref,
        reserved_by=request.reserved_by,
        notes=request.notes,
        ttl_seconds=request.ttl_seconds,
        reservation_type=request.reservation_type,
    )
    return await engine.get_reservation(reservation_id)


@app.post("/reservations/bulk", response_model=BulkReservationResult)
async def reserve_stock_bulk(
    request: BulkReserveRequest,
    engine: ReservationEngine = Depends(get_engine),
):
    """Hold stock on several records; each line succeeds or fails on its own."""
    return await engine.reserve_many(
        request.lines,
        fulfillment_ref=request.fulfillment_ref,
        reserved_by=request.reserved_by,
        notes=request.notes,
    )


@app.post("/reservations/bulk-fulfill", response_model=BulkFulfillmentResult)
async def fulfill_reservations_bulk(
    request: BulkFulfillRequest,
    engine: ReservationEngine = Depends(get_engine),
):
    """Fulfill several holds; each succeeds or fails on its own."""
    return await engine.fulfill_many(request.reservation_ids, fulfilled_by=request.fulfilled_by)


@app.get("/reservations", response_model=List[ReservationResponse])
async def list_reservations(
    inventory_record_id: Optional[UUID] = None,
    status: Optional[ReservationStatus] = None,
    fulfillment_ref: Optional[str] = None,
    reservation_type: Optional[ReservationType] = None,
    warehouse_id: Optional[str] = None,
    location: Optional[str] = None,
    reserved_by: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    limit: int = Query(100, ge=1, le=MAX_PAGE_SIZE),
    engine: ReservationEngine = Depends(get_engine),
):
    """List reservations, newest first; warehouse and location filter on the owning record."""
    return await engine.list_reservations(
        inventory_record_id=inventory_record_id,
        status=status,
        fulfillment_ref=fulfillment_ref,
        reservation_type=reservation_type,
        warehouse_id=warehouse_id,
        location=location,
        reserved_by=reserved_by,
        date_from=date_from,
        date_to=date_to,
        limit=limit,
    )


@app.get("/reservations/{reservation_id}", response_model=ReservationResponse)
async def get_reservation(reservation_id: UUID, engine: ReservationEngine = Depends(get_engine)):
    """Get reservation by ID."""
    return await engine.get_reservation(reservation_id)


@app.post("/reservations/{reservation_id}/cancel", response_model=ReservationResponse)
async def cancel_reservation(
    reservation_id: UUID,
    request: Optional[CancelRequest] = None,
    engine: ReservationEngine = Depends(get_engine),
):
    """Release a hold back to the available pool."""
    request = request or CancelRequest()
    await engine.cancel(reservation_id, cancelled_by=request.cancelled_by, reason=request.reason)
    return await engine.get_reservation(reservation_id)


@app.post("/reservations/{reservation_id}/fulfill", response_model=ReservationResponse)
async def fulfill_reservation(
    reservation_id: UUID,
    request: Optional[FulfillRequest] = None,
    engine: ReservationEngine = Depends(get_engine),
):
    """Convert a hold into a stock deduction."""
    request = request or FulfillRequest()
    await engine.fulfill(reservation_id, fulfilled_by=request.fulfilled_by, notes=request.notes)
    return await engine.get_reservation(reservation_id)


# Movement log
@app.get("/movements", response_model=List[MovementResponse])
async def list_movements(
    inventory_record_id: Optional[UUID] = None,
    reservation_id: Optional[UUID] = None,
    limit: int = Query(100, ge=1, le=MAX_PAGE_SIZE),
    log: MovementLog = Depends(get_movement_log),
):
    """List committed stock movements, newest first."""
    return await log.list_movements(
        inventory_record_id=inventory_record_id,
        reservation_id=reservation_id,
        limit=limit,
    )


@app.get("/health")
@limiter.exempt
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": settings.service_name}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.service_port)
