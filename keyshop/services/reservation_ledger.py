"""
Reservation Ledger

Row access for order_inventory_reservations. Reads that precede a write take a
row lock (SELECT ... FOR UPDATE) so a second caller touching the same rows waits
for the first to commit instead of acting on a stale quantity. Multi-row locks
are always taken in ascending id order.
"""
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence

from sqlalchemy import select, update, func, case
from sqlalchemy.ext.asyncio import AsyncSession

from keyshop.models import ReservationRecord, ReservationStatus, can_transition

logger = logging.getLogger(__name__)

# Reservations ending within this window count as "expiring soon" in stats
EXPIRING_SOON_WINDOW = timedelta(minutes=5)


async def lock_reservation(
    db: AsyncSession,
    order_id: int,
    stock_item_id: int,
) -> Optional[ReservationRecord]:
    """Fetch and lock the ledger row for one (order, stock item) pair."""
    result = await db.execute(
        select(ReservationRecord)
        .where(ReservationRecord.order_id == order_id)
        .where(ReservationRecord.stock_item_id == stock_item_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def add_reservation(
    db: AsyncSession,
    order_id: int,
    stock_item_id: int,
    quantity: int,
    reserved_until: datetime,
    now: datetime,
) -> ReservationRecord:
    """Insert a new RESERVED row. Stock must already have been decremented."""
    record = ReservationRecord(
        order_id=order_id,
        stock_item_id=stock_item_id,
        quantity=quantity,
        status=ReservationStatus.RESERVED,
        reserved_until=reserved_until,
        created_at=now,
        updated_at=now,
    )
    db.add(record)
    # Flush now so a concurrent duplicate insert fails inside this call
    await db.flush()
    return record


async def lock_order_reservations(
    db: AsyncSession,
    order_id: int,
    status: ReservationStatus = ReservationStatus.RESERVED,
) -> List[ReservationRecord]:
    """Lock every row of an order in the given status."""
    result = await db.execute(
        select(ReservationRecord)
        .where(ReservationRecord.order_id == order_id)
        .where(ReservationRecord.status == status)
        .order_by(ReservationRecord.id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def lock_expired_reservations(
    db: AsyncSession,
    now: datetime,
    skip_locked: bool = False,
) -> List[ReservationRecord]:
    """
    Lock RESERVED rows whose deadline has passed, across all orders.

    With skip_locked, rows currently held by another transaction (e.g. a
    checkout extending its hold) are left for the next sweep.
    """
    result = await db.execute(
        select(ReservationRecord)
        .where(ReservationRecord.status == ReservationStatus.RESERVED)
        .where(ReservationRecord.reserved_until < now)
        .order_by(ReservationRecord.id)
        .with_for_update(skip_locked=skip_locked)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def mark_status(
    db: AsyncSession,
    records: Sequence[ReservationRecord],
    target: ReservationStatus,
    now: datetime,
) -> int:
    """
    Move locked rows to target status.

    Rows already in target, or whose status does not allow the move, are left
    alone, so repeating a release is a no-op. Returns the number of rows changed.
    """
    changed = 0
    for record in records:
        if record.status == target or not can_transition(record.status, target):
            continue
        record.status = target
        record.updated_at = now
        changed += 1
    if changed:
        await db.flush()
    return changed


async def extend_order_reservations(
    db: AsyncSession,
    order_id: int,
    reserved_until: datetime,
    now: datetime,
) -> int:
    """Push back the deadline of an order's RESERVED rows. Returns rows matched."""
    result = await db.execute(
        update(ReservationRecord)
        .where(ReservationRecord.order_id == order_id)
        .where(ReservationRecord.status == ReservationStatus.RESERVED)
        .values(reserved_until=reserved_until, updated_at=now)
        .execution_options(synchronize_session="evaluate")
    )
    return result.rowcount


async def finalize_order_reservations(
    db: AsyncSession,
    order_id: int,
    now: datetime,
) -> int:
    """Mark an order's RESERVED rows FINALIZED. Returns rows changed."""
    result = await db.execute(
        update(ReservationRecord)
        .where(ReservationRecord.order_id == order_id)
        .where(ReservationRecord.status == ReservationStatus.RESERVED)
        .values(status=ReservationStatus.FINALIZED, updated_at=now)
        .execution_options(synchronize_session="evaluate")
    )
    return result.rowcount


async def get_order_reservations(db: AsyncSession, order_id: int) -> List[ReservationRecord]:
    """All ledger rows of an order, any status."""
    result = await db.execute(
        select(ReservationRecord)
        .where(ReservationRecord.order_id == order_id)
        .order_by(ReservationRecord.stock_item_id)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


def quantities_by_stock_item(records: Sequence[ReservationRecord]) -> Dict[int, int]:
    """Sum held quantities per stock item, ignoring empty rows."""
    quantities: Dict[int, int] = {}
    for record in records:
        if not record.quantity or record.quantity <= 0:
            continue
        quantities[record.stock_item_id] = quantities.get(record.stock_item_id, 0) + record.quantity
    return quantities


async def reservation_stats(db: AsyncSession, now: datetime) -> dict:
    """Counts by status for monitoring the ledger and the sweeper."""
    reserved = ReservationRecord.status == ReservationStatus.RESERVED
    result = await db.execute(
        select(
            func.count(case((reserved & (ReservationRecord.reserved_until >= now), 1))),
            func.count(case((reserved & (ReservationRecord.reserved_until < now), 1))),
            func.count(case((
                reserved
                & (ReservationRecord.reserved_until >= now)
                & (ReservationRecord.reserved_until < now + EXPIRING_SOON_WINDOW),
                1,
            ))),
            func.count(case((ReservationRecord.status == ReservationStatus.RELEASED, 1))),
            func.count(case((ReservationRecord.status == ReservationStatus.FINALIZED, 1))),
            func.coalesce(func.sum(case((reserved, ReservationRecord.quantity), else_=0)), 0),
        )
    )
    active, expired, expiring_soon, released, finalized, reserved_units = result.one()
    return {
        "active_reservations": active,
        "expired_reservations": expired,
        "expiring_within_5min": expiring_soon,
        "released_reservations": released,
        "finalized_reservations": finalized,
        "reserved_units": int(reserved_units or 0),
    }
