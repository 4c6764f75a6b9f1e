"""
Order inventory reservation ledger

One row per (order, stock item) pair that is or was held for an order. Rows are
never deleted: releasing or finalizing a hold changes its status, and
re-reserving a released pair reuses the same row.

Conservation rule: for every stock item, with FINALIZED units counted as sold,
    available_quantity + sum(quantity of RESERVED and FINALIZED rows) == total capacity
"""
from datetime import datetime, timezone
from enum import Enum as PyEnum
from typing import Optional

from sqlalchemy import (
    Column, Integer, DateTime, ForeignKey, CheckConstraint,
    Enum, Index, UniqueConstraint
)
from sqlalchemy.orm import relationship

from keyshop.core.database import Base


# =============================================================================
# STATE MACHINE
# =============================================================================

class ReservationStatus(str, PyEnum):
    """
    Reservation state machine.

    1. Order created -> RESERVED (stock decremented)
    2. Cancelled, abandoned or expired -> RELEASED (stock credited back)
    3. Released pair reserved again -> RESERVED
    4. Payment confirmed -> FINALIZED (terminal, stock stays decremented)
    """
    RESERVED = "Reserved"
    RELEASED = "Released"
    FINALIZED = "Finalized"


VALID_RESERVATION_TRANSITIONS = {
    None: [
        ReservationStatus.RESERVED,
    ],
    ReservationStatus.RESERVED: [
        ReservationStatus.RESERVED,  # quantity change / deadline refresh
        ReservationStatus.RELEASED,
        ReservationStatus.FINALIZED,
    ],
    ReservationStatus.RELEASED: [
        ReservationStatus.RESERVED,
    ],
    ReservationStatus.FINALIZED: [],
}


def can_transition(
    current: Optional[ReservationStatus],
    target: ReservationStatus,
) -> bool:
    """Check whether a ledger row may move from current to target (None = no row yet)."""
    return target in VALID_RESERVATION_TRANSITIONS.get(current, [])


# =============================================================================
# LEDGER ROW
# =============================================================================

class ReservationRecord(Base):
    """Units of one stock item held against one order."""
    __tablename__ = "order_inventory_reservations"

    id = Column(Integer, primary_key=True, index=True)

    # Orders live in the checkout workflow; only the id is kept here
    order_id = Column(Integer, nullable=False, index=True)
    stock_item_id = Column(
        Integer,
        ForeignKey("stock_items.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    quantity = Column(Integer, nullable=False, default=0)
    status = Column(
        Enum(
            ReservationStatus,
            name="reservation_status",
            native_enum=False,
            length=20,
            values_callable=lambda statuses: [s.value for s in statuses],
        ),
        nullable=False,
        default=ReservationStatus.RESERVED,
    )
    reserved_until = Column(DateTime(timezone=True), nullable=False)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    # Relationships
    stock_item = relationship("StockItem", back_populates="reservations")

    __table_args__ = (
        UniqueConstraint("order_id", "stock_item_id", name="uq_reservation_order_stock_item"),
        CheckConstraint("quantity >= 0", name="ck_reservation_quantity_non_negative"),
        Index("ix_reservation_status_reserved_until", "status", "reserved_until"),
    )

    @property
    def effective_quantity(self) -> int:
        """Units this row currently holds out of available stock."""
        if self.status == ReservationStatus.RESERVED:
            return self.quantity or 0
        return 0

    def __repr__(self):
        status = self.status.value if isinstance(self.status, ReservationStatus) else self.status
        return (
            f"<ReservationRecord order={self.order_id} stock_item={self.stock_item_id} "
            f"qty={self.quantity} {status}>"
        )
