# Services layer for reservation logic
from keyshop.services.inventory_reservation import (
    InventoryReservationService,
    ReservationLine,
    ReleaseSummary,
    normalize_lines,
)

__all__ = [
    "InventoryReservationService",
    "ReservationLine",
    "ReleaseSummary",
    "normalize_lines",
]
