"""
Jobs Package

Background jobs run by the cron service.
"""
from keyshop.jobs.reservation_sweeper import (
    reservation_sweeper,
    ReservationSweeper,
    run_reservation_sweep_job,
)

__all__ = [
    "reservation_sweeper",
    "ReservationSweeper",
    "run_reservation_sweep_job",
]
