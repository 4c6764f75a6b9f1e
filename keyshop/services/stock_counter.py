"""
Stock Counter Service

Atomic changes to StockItem.available_quantity.

Every change is a single UPDATE statement. Decrements carry their sufficiency
check in the WHERE clause, so check-and-decrement cannot be split by a
concurrent writer and the counter never goes below zero. Increments are never
blocked.
"""
import logging
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from keyshop.models import StockItem

logger = logging.getLogger(__name__)


async def try_decrement(
    db: AsyncSession,
    stock_item_id: int,
    quantity: int,
    now: datetime,
) -> bool:
    """
    Take quantity units out of available stock if, and only if, enough remain.

    Returns:
        True if the counter was decremented, False if stock was insufficient
        or the stock item does not exist.
    """
    if quantity <= 0:
        return True

    result = await db.execute(
        update(StockItem)
        .where(StockItem.id == stock_item_id)
        .where(StockItem.available_quantity >= quantity)
        .values(
            available_quantity=StockItem.available_quantity - quantity,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    decremented = result.rowcount == 1
    if decremented:
        logger.debug(f"Stock item {stock_item_id}: -{quantity}")
    return decremented


async def increment(
    db: AsyncSession,
    stock_item_id: int,
    quantity: int,
    now: datetime,
) -> None:
    """Return quantity units to available stock."""
    if quantity <= 0:
        return

    await db.execute(
        update(StockItem)
        .where(StockItem.id == stock_item_id)
        .values(
            available_quantity=StockItem.available_quantity + quantity,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    logger.debug(f"Stock item {stock_item_id}: +{quantity}")


async def credit_many(
    db: AsyncSession,
    quantities: Dict[int, int],
    now: datetime,
) -> int:
    """
    Return stock to several items at once.

    Args:
        quantities: stock_item_id -> units to credit

    Returns:
        Total units credited
    """
    total = 0
    # Ascending id order so concurrent bulk credits take row locks in the same order
    for stock_item_id in sorted(quantities):
        quantity = quantities[stock_item_id]
        if quantity <= 0:
            continue
        await increment(db, stock_item_id, quantity, now)
        total += quantity
    return total


async def get_available_quantity(db: AsyncSession, stock_item_id: int) -> Optional[int]:
    """Current counter value, or None if the stock item does not exist."""
    result = await db.execute(
        select(StockItem.available_quantity).where(StockItem.id == stock_item_id)
    )
    return result.scalar_one_or_none()
