from typing import Optional
import asyncio

from stockledger.application.checkout import CheckoutCoordinator
from stockledger.core.logging_config import get_logger

logger = get_logger(__name__)


class ReservationSweeper:
    """Periodically expires stale checkouts through CheckoutCoordinator.expire_stale."""

    def __init__(self, coordinator: CheckoutCoordinator, interval_seconds: float = 60):
        self.coordinator = coordinator
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="reservation-sweeper")
        logger.info(
            "Reservation sweeper started",
            extra={'extra_fields': {'interval_seconds': self.interval_seconds}}
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Reservation sweeper stopped")

    async def sweep_once(self) -> int:
        # expire_stale blocks on the database, keep it off the event loop
        return await asyncio.to_thread(self.coordinator.expire_stale)

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.sweep_once()
            except Exception:
                logger.error("Reservation sweep failed", exc_info=True)
