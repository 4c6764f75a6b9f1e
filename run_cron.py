#!/usr/bin/env python3
"""
Keyshop - Standalone Cron Runner

Runs the reservation expiry sweeper as a standalone service.

Jobs managed:
1. reservation_sweep - Release expired inventory reservations
   (every RESERVATION_SWEEP_INTERVAL_MINUTES, default 1 min)

Uses the same database config as the checkout backend.
Requires DATABASE_URL env var.
"""
import asyncio
import logging
import os
import signal
import sys
from datetime import datetime, timezone

# Setup logging first
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S"
)
logger = logging.getLogger(__name__)

# Validate required environment variables
REQUIRED_VARS = ["DATABASE_URL"]
missing = [var for var in REQUIRED_VARS if not os.getenv(var)]
if missing:
    logger.error(f"Missing required environment variables: {missing}")
    sys.exit(1)

# Import after env validation
from keyshop.core.database import engine, get_db_session
from keyshop.jobs.reservation_sweeper import reservation_sweeper
from keyshop.services import InventoryReservationService

# Graceful shutdown flag
_shutdown = False


def handle_shutdown(signum, frame):
    """Handle shutdown signals gracefully."""
    global _shutdown
    logger.info(f"Received signal {signum}, initiating graceful shutdown...")
    _shutdown = True


async def log_reservation_stats(service: InventoryReservationService = None) -> dict:
    """Log the ledger state the sweeper starts from."""
    service = service or InventoryReservationService()
    async with get_db_session() as db:
        stats = await service.get_reservation_stats(db=db)
    logger.info(
        f"Reservations: {stats['active_reservations']} active, "
        f"{stats['expired_reservations']} awaiting sweep, "
        f"{stats['reserved_units']} unit(s) held"
    )
    return stats


async def main():
    """Main entry point for cron service."""
    global _shutdown

    logger.info("=" * 60)
    logger.info("Keyshop Reservation Cron Service")
    logger.info("=" * 60)
    logger.info(f"Started at: {datetime.now(timezone.utc).isoformat()}")

    signal.signal(signal.SIGTERM, handle_shutdown)
    signal.signal(signal.SIGINT, handle_shutdown)

    try:
        await log_reservation_stats()
        await reservation_sweeper.start()

        logger.info("Cron service running. Press Ctrl+C to stop.")
        while not _shutdown:
            await asyncio.sleep(1)

    except Exception as e:
        logger.error(f"Cron service error: {e}")
        raise
    finally:
        logger.info("Stopping reservation sweeper...")
        await reservation_sweeper.stop()
        await engine.dispose()
        logger.info("Cron service stopped.")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        sys.exit(1)
