"""Background sweep that expires reservations past their TTL."""
import asyncio
import logging
from typing import Optional

from shared.clock import utcnow

from .exceptions import ConcurrentModificationError, InvalidStateTransitionError, NotFoundError
from .reservation_engine import ReservationEngine

logger = logging.getLogger(__name__)


class ExpirationSweeper:
    """Periodically moves overdue active reservations to ``expired``."""

    def __init__(
        self,
        engine: ReservationEngine,
        poll_interval: int = 60,
        batch_size: int = 100,
    ):
        """
        Initialize the sweeper.

        Args:
            engine: Reservation engine that performs each expiry
            poll_interval: Seconds to wait between sweeps
            batch_size: Maximum reservations expired per sweep
        """
        self.engine = engine
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self):
        """Start sweeping in the background."""
        if self._running:
            logger.warning("Expiration sweeper already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._poll_and_sweep())
        logger.info("Expiration sweeper started")

    async def stop(self):
        """Stop the background sweep."""
        if not self._running:
            return

        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

        logger.info("Expiration sweeper stopped")

    async def _poll_and_sweep(self):
        while self._running:
            try:
                await self.sweep_once()
            except Exception as e:
                logger.error(f"Error in expiration sweeper: {str(e)}", exc_info=True)

            await asyncio.sleep(self.poll_interval)

    async def sweep_once(self) -> int:
        """
        Expire one batch of overdue reservations.

        Each expiry is its own transaction guarded on ``status = active``,
        so a reservation fulfilled or cancelled after it was selected is
        simply skipped.

        Returns:
            Number of reservations expired
        """
        candidates = await self.engine.due_for_expiry(utcnow(), limit=self.batch_size)
        if not candidates:
            return 0

        expired = 0
        for reservation_id in candidates:
            try:
                await self.engine.expire(reservation_id)
            except (InvalidStateTransitionError, NotFoundError) as e:
                logger.debug(f"Skipped expiring reservation {reservation_id}: {e}")
                continue
            except ConcurrentModificationError:
                # Picked up again on the next sweep
                logger.info(f"Reservation {reservation_id} busy, deferring expiry")
                continue
            expired += 1

        logger.info(f"Expired {expired} of {len(candidates)} overdue reservations")
        return expired
