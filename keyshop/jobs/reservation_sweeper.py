"""
Reservation Expiry Sweeper

Background job that releases reservations whose hold deadline has passed and
returns their units to available stock. Run every
RESERVATION_SWEEP_INTERVAL_MINUTES by the cron service (run_cron.py).
"""
import asyncio
import logging
from typing import List, Optional

from keyshop.core.config import settings
from keyshop.services.inventory_reservation import InventoryReservationService

logger = logging.getLogger(__name__)

# Lazily built so importing this module does not need a database
_default_service: Optional[InventoryReservationService] = None


def _get_service() -> InventoryReservationService:
    global _default_service
    if _default_service is None:
        _default_service = InventoryReservationService()
    return _default_service


async def run_reservation_sweep_job(
    service: Optional[InventoryReservationService] = None,
) -> dict:
    """
    Release all expired reservations once.

    Returns:
        dict with reservations_released, stock_restored, stock_items_restored
    """
    service = service or _get_service()
    summary = await service.release_expired_reservations()
    stats = summary.to_dict()

    if stats["reservations_released"] > 0:
        logger.info(
            f"[SWEEPER] Released {stats['reservations_released']} expired reservations, "
            f"restored {stats['stock_restored']} units across {stats['stock_items_restored']} stock items"
        )
    return stats


class ReservationSweeper:
    """
    Runs the expiry sweep on a fixed interval.

    Call start() to begin background scheduling and stop() on shutdown.
    """

    def __init__(
        self,
        service: Optional[InventoryReservationService] = None,
        interval_seconds: Optional[float] = None,
        initial_delay_seconds: float = 5,
    ):
        self._service = service
        self.interval_seconds = (
            settings.RESERVATION_SWEEP_INTERVAL_MINUTES * 60
            if interval_seconds is None else interval_seconds
        )
        self.initial_delay_seconds = initial_delay_seconds
        self._tasks: List[asyncio.Task] = []
        self._running = False
        self.runs = 0
        self.failures = 0

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        """Start the sweep loop."""
        if self._running:
            logger.info("[SWEEPER] Reservation sweeper already running")
            return

        if not settings.RESERVATION_SWEEP_ENABLED:
            logger.info("[SWEEPER] Reservation sweeper disabled (RESERVATION_SWEEP_ENABLED=false)")
            return

        self._running = True
        self._tasks = [
            asyncio.create_task(self._run_job_loop("reservation_sweep", self._sweep_once)),
        ]
        logger.info(
            f"[SWEEPER] Reservation sweeper started: every {self.interval_seconds:g}s "
            f"after {self.initial_delay_seconds:g}s delay"
        )

    async def stop(self):
        """Stop the sweep loop."""
        self._running = False
        for task in self._tasks:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        logger.info("[SWEEPER] Reservation sweeper stopped")

    async def run_now(self) -> dict:
        """Manually trigger one sweep."""
        return await self._sweep_once()

    async def _sweep_once(self) -> dict:
        return await run_reservation_sweep_job(self._service)

    async def _run_job_loop(self, name: str, job_func):
        """
        Run a job on a schedule.

        A failed run is logged and counted; the loop keeps going so one bad
        sweep (e.g. lock contention) does not stop expiry handling.
        """
        await asyncio.sleep(self.initial_delay_seconds)

        while self._running:
            try:
                logger.debug(f"[SWEEPER] Running {name}...")
                await job_func()
                self.runs += 1
            except Exception as e:
                self.failures += 1
                logger.error(f"[SWEEPER] Job {name} failed: {e}", exc_info=True)

            await asyncio.sleep(self.interval_seconds)


reservation_sweeper = ReservationSweeper()
