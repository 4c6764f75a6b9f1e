"""
Stock status sync

After reservations move stock, storefront status follows the counters:
- available <= 0           -> OUT_OF_STOCK
- available > 0, INACTIVE  -> stays INACTIVE (hidden by an admin)
- available > 0, otherwise -> ACTIVE
Products carry the sum of their variants' available quantities and follow the
same rule. Runs inside the caller's transaction.
"""
import logging
from datetime import datetime
from typing import Iterable

from sqlalchemy import select, update, func, case
from sqlalchemy.ext.asyncio import AsyncSession

from keyshop.models import Product, StockItem, StockStatus

logger = logging.getLogger(__name__)


async def sync_stock_statuses(
    db: AsyncSession,
    stock_item_ids: Iterable[int],
    now: datetime,
) -> None:
    """Recompute status for the given stock items and their products."""
    ids = sorted({i for i in stock_item_ids if i is not None})
    if not ids:
        return

    await db.execute(
        update(StockItem)
        .where(StockItem.id.in_(ids))
        .values(
            status=case(
                (StockItem.available_quantity <= 0, StockStatus.OUT_OF_STOCK.value),
                (StockItem.status == StockStatus.INACTIVE.value, StockStatus.INACTIVE.value),
                else_=StockStatus.ACTIVE.value,
            ),
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )

    result = await db.execute(
        select(StockItem.product_id)
        .where(StockItem.id.in_(ids))
        .where(StockItem.product_id.is_not(None))
        .distinct()
    )
    product_ids = sorted(result.scalars().all())
    if not product_ids:
        return

    result = await db.execute(
        select(StockItem.product_id, func.coalesce(func.sum(StockItem.available_quantity), 0))
        .where(StockItem.product_id.in_(product_ids))
        .group_by(StockItem.product_id)
    )
    totals = {product_id: int(total) for product_id, total in result.all()}

    for product_id in product_ids:
        total = max(0, totals.get(product_id, 0))
        if total <= 0:
            status = StockStatus.OUT_OF_STOCK.value
        else:
            status = case(
                (Product.status == StockStatus.INACTIVE.value, StockStatus.INACTIVE.value),
                else_=StockStatus.ACTIVE.value,
            )
        await db.execute(
            update(Product)
            .where(Product.id == product_id)
            .values(stock_qty=total, status=status, updated_at=now)
            .execution_options(synchronize_session=False)
        )

    logger.debug(f"Synced status for {len(ids)} stock item(s), {len(product_ids)} product(s)")
