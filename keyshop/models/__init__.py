from keyshop.models.product import Product
from keyshop.models.stock_item import StockItem, StockStatus
from keyshop.models.reservation import (
    ReservationRecord,
    ReservationStatus,
    VALID_RESERVATION_TRANSITIONS,
    can_transition,
)
