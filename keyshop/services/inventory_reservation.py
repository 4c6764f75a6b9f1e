"""
Inventory Reservation Service

Holds stock units against orders while the buyer pays.

Flow:
1. Checkout creates the order -> reserve_for_order (stock decremented, rows RESERVED)
2. Buyer still paying near the deadline -> extend_reservation
3. Payment confirmed -> finalize_reservation (rows FINALIZED, stock untouched)
4. Cancelled / abandoned -> release_reservation (stock credited, rows RELEASED)
5. Deadline passed -> release_expired_reservations from the sweeper job

Every mutating call runs in one transaction (see keyshop.core.transactions).
Pass db= to run inside a transaction the caller already has open. Sessions
passed as db= must be built with expire_on_commit=False (as AsyncSessionLocal
is): when the session is idle the call commits on it, and returned records
would otherwise be expired and unreadable under asyncio.
"""
import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import Any, Iterable, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from keyshop.core.clock import Clock, utc_now
from keyshop.core.config import settings
from keyshop.core.database import AsyncSessionLocal
from keyshop.core.exceptions import (
    InsufficientStockError,
    InvalidReservationTransitionError,
    NoActiveReservationError,
)
from keyshop.core.transactions import run_in_transaction
from keyshop.models import ReservationRecord, ReservationStatus, can_transition
from keyshop.services import reservation_ledger as ledger
from keyshop.services import stock_counter
from keyshop.services.stock_status import sync_stock_statuses

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReservationLine:
    """One requested (stock item, quantity) pair."""
    stock_item_id: int
    quantity: int


@dataclass
class ReleaseSummary:
    """Outcome of a release or an expiry sweep."""
    reservations_released: int = 0
    stock_restored: int = 0
    stock_items_restored: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


def normalize_lines(lines: Optional[Iterable[Any]]) -> List[ReservationLine]:
    """
    Accept (stock_item_id, quantity) pairs or objects with those attributes.

    Lines with a quantity of zero or less are dropped.
    """
    normalized = []
    for line in lines or []:
        if hasattr(line, "stock_item_id") and hasattr(line, "quantity"):
            stock_item_id, quantity = line.stock_item_id, line.quantity
        else:
            stock_item_id, quantity = line
        quantity = int(quantity or 0)
        if quantity <= 0:
            continue
        normalized.append(ReservationLine(stock_item_id=stock_item_id, quantity=quantity))
    return normalized


class InventoryReservationService:
    """
    Reservation ledger operations.

    Args:
        session_factory: Opens sessions for calls that do not pass db=
        clock: Source of "now" when a call does not pass it
        isolation_level: Isolation for owned transactions ("" = driver default)
        lock_timeout_ms: PostgreSQL lock_timeout for owned transactions
        max_attempts: Attempts for transient conflicts on owned transactions
        retry_backoff_seconds: Base delay between attempts
        sync_statuses: Resync stock item/product status after stock moves
        sweep_skip_locked: Let the expiry sweep skip rows locked by checkouts
        ttl_minutes: Default hold length when reserve is not given a deadline
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        clock: Clock = utc_now,
        isolation_level: Optional[str] = None,
        lock_timeout_ms: Optional[int] = None,
        max_attempts: Optional[int] = None,
        retry_backoff_seconds: Optional[float] = None,
        sync_statuses: Optional[bool] = None,
        sweep_skip_locked: Optional[bool] = None,
        ttl_minutes: Optional[int] = None,
    ):
        self.session_factory = session_factory or AsyncSessionLocal
        self.clock = clock
        self.isolation_level = (
            settings.RESERVATION_ISOLATION_LEVEL if isolation_level is None else isolation_level
        )
        self.lock_timeout_ms = (
            settings.RESERVATION_LOCK_TIMEOUT_MS if lock_timeout_ms is None else lock_timeout_ms
        )
        self.max_attempts = settings.RESERVATION_MAX_ATTEMPTS if max_attempts is None else max_attempts
        self.retry_backoff_seconds = (
            settings.RESERVATION_RETRY_BACKOFF_SECONDS
            if retry_backoff_seconds is None else retry_backoff_seconds
        )
        self.sync_statuses = settings.RESERVATION_SYNC_STATUSES if sync_statuses is None else sync_statuses
        self.sweep_skip_locked = (
            settings.RESERVATION_SWEEP_SKIP_LOCKED if sweep_skip_locked is None else sweep_skip_locked
        )
        self.ttl_minutes = settings.RESERVATION_TTL_MINUTES if ttl_minutes is None else ttl_minutes

    async def _run(self, operation: str, work, db: Optional[AsyncSession]):
        return await run_in_transaction(
            work,
            db,
            session_factory=self.session_factory,
            isolation_level=self.isolation_level or None,
            lock_timeout_ms=self.lock_timeout_ms,
            max_attempts=self.max_attempts,
            retry_backoff_seconds=self.retry_backoff_seconds,
            operation=operation,
        )

    # =========================================================================
    # RESERVE
    # =========================================================================

    async def reserve_for_order(
        self,
        order_id: int,
        lines: Iterable[Any],
        now: Optional[datetime] = None,
        reserved_until: Optional[datetime] = None,
        db: Optional[AsyncSession] = None,
    ) -> List[ReservationRecord]:
        """
        Hold stock for each line of an order.

        A line whose pair is already RESERVED only moves the difference between
        the new and held quantity; a RELEASED pair is reserved again from zero.
        Lines are applied in ascending stock item id order and the returned
        records follow that order.

        Raises:
            InsufficientStockError: a line (or its increase) cannot be covered.
                In an owned transaction nothing from this call is kept.
            InvalidReservationTransitionError: the pair is already FINALIZED.
        """
        now = now or self.clock()
        if reserved_until is None:
            reserved_until = now + timedelta(minutes=self.ttl_minutes)

        # Ascending stock item id so concurrent checkouts lock rows in the same order.
        # sorted() is stable, so duplicate lines still end at the last quantity.
        wanted = sorted(normalize_lines(lines), key=lambda line: line.stock_item_id)
        if not wanted:
            logger.debug(f"Order {order_id}: nothing to reserve")
            return []

        async def _reserve(session: AsyncSession) -> List[ReservationRecord]:
            records = []
            for line in wanted:
                records.append(
                    await self._reserve_line(session, order_id, line, now, reserved_until)
                )
            if self.sync_statuses:
                await sync_stock_statuses(session, [line.stock_item_id for line in wanted], now)
            return records

        records = await self._run("reserve_for_order", _reserve, db)
        logger.info(
            f"Order {order_id}: reserved {sum(line.quantity for line in wanted)} unit(s) "
            f"across {len(wanted)} line(s) until {reserved_until.isoformat()}"
        )
        return records

    async def _reserve_line(
        self,
        session: AsyncSession,
        order_id: int,
        line: ReservationLine,
        now: datetime,
        reserved_until: datetime,
    ) -> ReservationRecord:
        record = await ledger.lock_reservation(session, order_id, line.stock_item_id)

        if record is None:
            if not await stock_counter.try_decrement(session, line.stock_item_id, line.quantity, now):
                await self._raise_insufficient(session, order_id, line.stock_item_id, line.quantity)
            return await ledger.add_reservation(
                session, order_id, line.stock_item_id, line.quantity, reserved_until, now
            )

        if not can_transition(record.status, ReservationStatus.RESERVED):
            raise InvalidReservationTransitionError(
                f"Reservation for order {order_id}, stock item {line.stock_item_id} "
                f"is {record.status.value} and cannot be reserved again",
                order_id=order_id,
                stock_item_id=line.stock_item_id,
                current_status=record.status.value,
                target_status=ReservationStatus.RESERVED.value,
            )

        # Released rows hold nothing, so re-reserving starts from zero
        diff = line.quantity - record.effective_quantity
        if diff > 0:
            if not await stock_counter.try_decrement(session, line.stock_item_id, diff, now):
                await self._raise_insufficient(session, order_id, line.stock_item_id, diff)
        elif diff < 0:
            await stock_counter.increment(session, line.stock_item_id, -diff, now)

        record.quantity = line.quantity
        record.status = ReservationStatus.RESERVED
        record.reserved_until = reserved_until
        record.updated_at = now
        await session.flush()

        logger.debug(
            f"Order {order_id}: stock item {line.stock_item_id} re-reserved "
            f"qty={line.quantity} (diff {diff:+d})"
        )
        return record

    async def _raise_insufficient(
        self,
        session: AsyncSession,
        order_id: int,
        stock_item_id: int,
        requested: int,
    ):
        available = await stock_counter.get_available_quantity(session, stock_item_id)
        logger.warning(
            f"Order {order_id}: insufficient stock for stock item {stock_item_id} "
            f"(requested: {requested}, available: {available})"
        )
        raise InsufficientStockError(
            f"Insufficient stock for stock item {stock_item_id} "
            f"(requested: {requested}, available: {available})",
            stock_item_id=stock_item_id,
            requested_qty=requested,
            available_qty=available,
        )

    # =========================================================================
    # EXTEND
    # =========================================================================

    async def extend_reservation(
        self,
        order_id: int,
        new_reserved_until: datetime,
        now: Optional[datetime] = None,
        db: Optional[AsyncSession] = None,
    ) -> int:
        """
        Move the deadline of every RESERVED row of an order.

        Returns:
            Number of rows extended

        Raises:
            NoActiveReservationError: the order has nothing RESERVED (already
                released, swept or finalized)
        """
        now = now or self.clock()

        async def _extend(session: AsyncSession) -> int:
            rows = await ledger.extend_order_reservations(session, order_id, new_reserved_until, now)
            if rows == 0:
                raise NoActiveReservationError(
                    f"No active reservation to extend for order {order_id}",
                    order_id=order_id,
                )
            return rows

        rows = await self._run("extend_reservation", _extend, db)
        logger.info(f"Order {order_id}: extended {rows} reservation(s) until {new_reserved_until.isoformat()}")
        return rows

    # =========================================================================
    # RELEASE
    # =========================================================================

    async def release_reservation(
        self,
        order_id: int,
        now: Optional[datetime] = None,
        db: Optional[AsyncSession] = None,
    ) -> ReleaseSummary:
        """
        Give an order's held stock back and mark its rows RELEASED.

        Idempotent: a second call finds nothing RESERVED and changes nothing.
        """
        now = now or self.clock()

        async def _release(session: AsyncSession) -> ReleaseSummary:
            records = await ledger.lock_order_reservations(session, order_id)
            return await self._release_records(session, records, now)

        summary = await self._run("release_reservation", _release, db)
        if summary.reservations_released:
            logger.info(
                f"Order {order_id}: released {summary.reservations_released} reservation(s), "
                f"restored {summary.stock_restored} unit(s)"
            )
        return summary

    async def release_expired_reservations(
        self,
        now: Optional[datetime] = None,
        db: Optional[AsyncSession] = None,
    ) -> ReleaseSummary:
        """
        Release every RESERVED row whose deadline is before now, across all orders.

        Meant to be called periodically by the sweeper job. Running it again
        right away is a no-op.
        """
        now = now or self.clock()

        async def _sweep(session: AsyncSession) -> ReleaseSummary:
            records = await ledger.lock_expired_reservations(
                session, now, skip_locked=self.sweep_skip_locked
            )
            return await self._release_records(session, records, now)

        summary = await self._run("release_expired_reservations", _sweep, db)
        if summary.reservations_released:
            logger.info(
                f"Released {summary.reservations_released} expired reservation(s), "
                f"restored {summary.stock_restored} unit(s) across "
                f"{summary.stock_items_restored} stock item(s)"
            )
        else:
            logger.debug("No expired reservations to release")
        return summary

    async def _release_records(
        self,
        session: AsyncSession,
        records: List[ReservationRecord],
        now: datetime,
    ) -> ReleaseSummary:
        if not records:
            return ReleaseSummary()

        # Credit and status flip share the transaction, so neither is seen alone
        quantities = ledger.quantities_by_stock_item(records)
        restored = await stock_counter.credit_many(session, quantities, now)
        released = await ledger.mark_status(session, records, ReservationStatus.RELEASED, now)

        if self.sync_statuses and quantities:
            await sync_stock_statuses(session, quantities.keys(), now)

        return ReleaseSummary(
            reservations_released=released,
            stock_restored=restored,
            stock_items_restored=len(quantities),
        )

    # =========================================================================
    # FINALIZE
    # =========================================================================

    async def finalize_reservation(
        self,
        order_id: int,
        now: Optional[datetime] = None,
        db: Optional[AsyncSession] = None,
    ) -> int:
        """
        Convert an order's holds into a sale after payment.

        Stock was taken at reservation time and is not touched here. An order
        with nothing RESERVED is a successful no-op.

        Returns:
            Number of rows finalized
        """
        now = now or self.clock()

        async def _finalize(session: AsyncSession) -> int:
            return await ledger.finalize_order_reservations(session, order_id, now)

        rows = await self._run("finalize_reservation", _finalize, db)
        logger.info(f"Order {order_id}: finalized {rows} reservation(s)")
        return rows

    # =========================================================================
    # READS
    # =========================================================================

    async def get_order_reservations(
        self,
        order_id: int,
        db: Optional[AsyncSession] = None,
    ) -> List[ReservationRecord]:
        """All ledger rows of an order, any status."""
        if db is not None:
            return await ledger.get_order_reservations(db, order_id)
        async with self.session_factory() as session:
            return await ledger.get_order_reservations(session, order_id)

    async def get_reservation_stats(
        self,
        now: Optional[datetime] = None,
        db: Optional[AsyncSession] = None,
    ) -> dict:
        """Ledger counts for monitoring (active, awaiting sweep, expiring soon...)."""
        now = now or self.clock()
        if db is not None:
            return await ledger.reservation_stats(db, now)
        async with self.session_factory() as session:
            return await ledger.reservation_stats(session, now)
