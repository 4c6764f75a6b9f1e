"""
Stock item (variant) model

One purchasable unit type, e.g. "Office 365 - 1 year key" or "Netflix slot -
Premium". available_quantity is only ever changed through the stock counter
service, never assigned directly, and the CHECK constraint backs the
non-negative guarantee at the database level.
"""
from datetime import datetime, timezone
from enum import Enum as PyEnum
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, CheckConstraint
from sqlalchemy.orm import relationship

from keyshop.core.database import Base


class StockStatus(str, PyEnum):
    """Storefront availability status of a stock item or product."""
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    OUT_OF_STOCK = "OUT_OF_STOCK"


class StockItem(Base):
    __tablename__ = "stock_items"
    __table_args__ = (
        CheckConstraint("available_quantity >= 0", name="ck_stock_items_available_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(
        Integer,
        ForeignKey("products.id", ondelete="CASCADE"),
        nullable=True,
        index=True
    )
    sku = Column(String(100), unique=True, index=True, nullable=False)
    name = Column(String(255), nullable=False)

    # Inventory
    available_quantity = Column(Integer, nullable=False, default=0)
    status = Column(String(20), nullable=False, default=StockStatus.ACTIVE.value)

    # Timestamps
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    # Relationships
    product = relationship("Product", back_populates="stock_items")
    reservations = relationship("ReservationRecord", back_populates="stock_item")

    def __repr__(self):
        return f"<StockItem {self.id}: {self.sku} available={self.available_quantity}>"
