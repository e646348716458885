"""Handlers for fulfillment workflow events.

The fulfillment workflow is a caller of the reservation engine like any
other, so the retry policy lives here: only ``ConcurrentModificationError``
is retried, with exponential backoff. Business rejections are answered
with a ``stock.reserve.failed`` event or logged and dropped.
"""
import logging

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from shared.events import (
    EventType,
    HoldReleasedEvent,
    PickConfirmedEvent,
    PickTaskCreatedEvent,
    StockReserveFailedEvent,
)
from shared.message_broker import MessageBroker
from shared.outbox import save_event_to_outbox

from .exceptions import (
    ConcurrentModificationError,
    InsufficientStockError,
    InvalidStateTransitionError,
    NotFoundError,
    StockError,
    ValidationError,
)
from .reservation_engine import ReservationEngine

logger = logging.getLogger(__name__)


class FulfillmentEventHandlers:
    """Translates pick-task events into reservation engine calls."""

    def __init__(self, engine: ReservationEngine, session_factory, retry_attempts: int = 5):
        self.engine = engine
        self.session_factory = session_factory
        self.retry_attempts = retry_attempts

    async def _with_retry(self, operation, *args, **kwargs):
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(ConcurrentModificationError),
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=0.1, max=2),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await operation(*args, **kwargs)

    async def handle_pick_task_created(self, event: PickTaskCreatedEvent):
        """Reserve stock for a new pick task, once per fulfillment line.

        Redelivered or duplicated events resolve to the reservation already
        placed for the same record and ``fulfillment_ref``.
        """
        try:
            reservation_id = await self._with_retry(
                self.engine.reserve,
                event.aggregate_id,
                event.quantity,
                fulfillment_ref=event.fulfillment_ref,
                reserved_by=event.requested_by,
                notes=event.notes,
                dedupe_on_fulfillment_ref=True,
            )
        except (InsufficientStockError, NotFoundError, ValidationError) as e:
            logger.warning(f"Could not reserve for {event.fulfillment_ref}: {e}")
            await self._publish_reserve_failed(event, e)
            return

        logger.info(f"Stock held for pick task {event.fulfillment_ref} (reservation {reservation_id})")

    async def handle_pick_confirmed(self, event: PickConfirmedEvent):
        """Convert the hold into a stock deduction once the pick is physical."""
        try:
            await self._with_retry(
                self.engine.fulfill,
                event.reservation_id,
                fulfilled_by=event.confirmed_by,
            )
        except (InvalidStateTransitionError, NotFoundError) as e:
            logger.warning(f"Ignoring pick confirmation for {event.reservation_id}: {e}")

    async def handle_hold_released(self, event: HoldReleasedEvent):
        """Return a released hold to the available pool."""
        try:
            await self._with_retry(
                self.engine.cancel,
                event.reservation_id,
                cancelled_by=event.released_by,
                reason=event.reason,
            )
        except (InvalidStateTransitionError, NotFoundError) as e:
            logger.warning(f"Ignoring hold release for {event.reservation_id}: {e}")

    async def _publish_reserve_failed(self, event: PickTaskCreatedEvent, error: StockError):
        failure_event = StockReserveFailedEvent(
            aggregate_id=event.aggregate_id,
            correlation_id=event.correlation_id,
            causation_id=event.event_id,
            fulfillment_ref=event.fulfillment_ref,
            reason=error.code,
            requested=event.quantity,
            available=getattr(error, "available", None),
        )
        async with self.session_factory() as session:
            await save_event_to_outbox(session, failure_event)
            await session.commit()

    async def register(self, message_broker: MessageBroker):
        """Subscribe the handlers to their fulfillment events."""
        await message_broker.subscribe_to_event(
            EventType.PICK_TASK_CREATED,
            "stock_service_pick_created",
            self.handle_pick_task_created,
        )
        await message_broker.subscribe_to_event(
            EventType.PICK_CONFIRMED,
            "stock_service_pick_confirmed",
            self.handle_pick_confirmed,
        )
        await message_broker.subscribe_to_event(
            EventType.HOLD_RELEASED,
            "stock_service_hold_released",
            self.handle_hold_released,
        )

        logger.info("Subscribed to fulfillment events")
