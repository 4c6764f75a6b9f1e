"""
Product model

A product groups purchasable variants (stock items). Its stock_qty is a cache of
the sum of its variants' available quantities, kept in step by the stock status
sync that runs after every reservation change.
"""
from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, DateTime, CheckConstraint
from sqlalchemy.orm import relationship

from keyshop.core.database import Base


class Product(Base):
    __tablename__ = "products"
    __table_args__ = (
        CheckConstraint("stock_qty >= 0", name="ck_products_stock_qty_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False, index=True)

    # Inventory (derived from variants)
    stock_qty = Column(Integer, nullable=False, default=0)
    status = Column(String(20), nullable=False, default="ACTIVE")  # ACTIVE, INACTIVE, OUT_OF_STOCK

    # Timestamps
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    # Relationships
    stock_items = relationship("StockItem", back_populates="product")

    def __repr__(self):
        return f"<Product {self.id}: {self.name} stock={self.stock_qty}>"
