"""
Keyshop Exception Hierarchy

Structured exception classes for the inventory reservation subsystem.
All exceptions include code, message, and details for audit trail and debugging.

Exception Hierarchy:
    KeyshopError
    └── InventoryError
        ├── InsufficientStockError
        ├── NoActiveReservationError
        ├── InvalidReservationTransitionError
        └── ReservationConflictError
"""
import logging
from typing import Optional, Dict, Any

logger = logging.getLogger(__name__)


class KeyshopError(Exception):
    """
    Base exception for all Keyshop custom errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code for programmatic handling
        details: Additional context for debugging/audit
        severity: P0-P3 severity level
        retryable: Whether the caller may retry the same operation
    """

    default_code: str = "KEYSHOP_ERROR"
    default_severity: str = "P2"
    retryable: bool = False

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        severity: Optional[str] = None,
    ):
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        self.severity = severity or self.default_severity
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "severity": self.severity,
            "retryable": self.retryable,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"


# =============================================================================
# INVENTORY ERRORS
# =============================================================================

class InventoryError(KeyshopError):
    """Base exception for inventory-related errors."""
    default_code = "INVENTORY_ERROR"
    default_severity = "P1"


class InsufficientStockError(InventoryError):
    """Available quantity is below the requested (or incremental) amount."""
    default_code = "INSUFFICIENT_STOCK"
    default_severity = "P3"  # Expected during checkout, shown to the buyer

    def __init__(
        self,
        message: str,
        stock_item_id: Optional[int] = None,
        requested_qty: Optional[int] = None,
        available_qty: Optional[int] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details.update({
            "stock_item_id": stock_item_id,
            "requested_qty": requested_qty,
            "available_qty": available_qty,
        })
        self.stock_item_id = stock_item_id
        self.requested_qty = requested_qty
        self.available_qty = available_qty
        super().__init__(message, details=details, **kwargs)


class NoActiveReservationError(InventoryError):
    """Extend was called for an order with nothing in Reserved state."""
    default_code = "NO_ACTIVE_RESERVATION"
    default_severity = "P2"

    def __init__(self, message: str, order_id: Optional[int] = None, **kwargs):
        details = kwargs.pop("details", {})
        details["order_id"] = order_id
        self.order_id = order_id
        super().__init__(message, details=details, **kwargs)


class InvalidReservationTransitionError(InventoryError):
    """A ledger row was asked to move to a status its current status does not allow."""
    default_code = "INVALID_RESERVATION_TRANSITION"
    default_severity = "P2"

    def __init__(
        self,
        message: str,
        order_id: Optional[int] = None,
        stock_item_id: Optional[int] = None,
        current_status: Optional[str] = None,
        target_status: Optional[str] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details.update({
            "order_id": order_id,
            "stock_item_id": stock_item_id,
            "current_status": current_status,
            "target_status": target_status,
        })
        self.order_id = order_id
        self.stock_item_id = stock_item_id
        self.current_status = current_status
        self.target_status = target_status
        super().__init__(message, details=details, **kwargs)


class ReservationConflictError(InventoryError):
    """
    Transient contention in the persistence layer.

    Raised for serialization failures, deadlocks, lock timeouts and duplicate
    concurrent inserts of the same (order, stock item) pair. Safe to retry.
    """
    default_code = "RESERVATION_CONFLICT"
    default_severity = "P2"
    retryable = True

    def __init__(self, message: str, sqlstate: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        details["sqlstate"] = sqlstate
        self.sqlstate = sqlstate
        super().__init__(message, details=details, **kwargs)


EXCEPTION_CATALOG = {
    "INSUFFICIENT_STOCK": {"class": InsufficientStockError, "severity": "P3"},
    "NO_ACTIVE_RESERVATION": {"class": NoActiveReservationError, "severity": "P2"},
    "INVALID_RESERVATION_TRANSITION": {"class": InvalidReservationTransitionError, "severity": "P2"},
    "RESERVATION_CONFLICT": {"class": ReservationConflictError, "severity": "P2"},
}
