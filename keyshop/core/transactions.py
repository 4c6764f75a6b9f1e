"""
Reservation transaction coordination

Every mutating reservation call runs inside one transaction. The caller may hand
in an AsyncSession that already has a transaction open (checkout wraps the
reservation and the order insert together); in that case the call participates
and leaves commit/rollback to the caller. Otherwise the transaction is owned
here: isolation level and lock timeout are applied up front, the transaction is
committed on success and rolled back on any error.

Contention errors from the database are translated to ReservationConflictError
so callers can tell "try again" apart from "out of stock".
"""
import asyncio
import logging
import random
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Optional, TypeVar

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from keyshop.core.exceptions import ReservationConflictError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# PostgreSQL SQLSTATEs that mean "lost a race", not "bad request"
TRANSIENT_SQLSTATES = {
    "40001": "serialization_failure",
    "40P01": "deadlock_detected",
    "55P03": "lock_not_available",
    "57014": "query_canceled",
    "23505": "unique_violation",
}

# SQLite reports contention through the message only
TRANSIENT_SQLITE_MESSAGES = (
    "database is locked",
    "database table is locked",
    "unique constraint failed",
)


def _sqlstate(exc: DBAPIError) -> Optional[str]:
    orig = getattr(exc, "orig", None)
    for candidate in (orig, getattr(orig, "__cause__", None)):
        if candidate is None:
            continue
        for attr in ("sqlstate", "pgcode"):
            code = getattr(candidate, attr, None)
            if code:
                return str(code)
    return None


def is_transient_db_error(exc: DBAPIError) -> bool:
    """Check whether a driver error is lock contention or a lost race."""
    code = _sqlstate(exc)
    if code in TRANSIENT_SQLSTATES:
        return True
    message = str(getattr(exc, "orig", exc)).lower()
    return any(pattern in message for pattern in TRANSIENT_SQLITE_MESSAGES)


def translate_db_error(exc: DBAPIError) -> Exception:
    """Map a contention error to ReservationConflictError, leave others alone."""
    if not is_transient_db_error(exc):
        return exc
    code = _sqlstate(exc)
    reason = TRANSIENT_SQLSTATES.get(code, "database_contention")
    return ReservationConflictError(
        f"Reservation conflict ({reason}); retry the operation",
        sqlstate=code,
        details={"reason": reason},
    )


async def _prepare_owned_transaction(
    session: AsyncSession,
    isolation_level: Optional[str],
    lock_timeout_ms: Optional[int],
) -> None:
    if isolation_level:
        conn = await session.connection(execution_options={"isolation_level": isolation_level})
    else:
        conn = await session.connection()

    if lock_timeout_ms and conn.dialect.name == "postgresql":
        # SET does not take bind parameters; value is an int from settings
        await session.execute(text(f"SET LOCAL lock_timeout = '{int(lock_timeout_ms)}ms'"))


@asynccontextmanager
async def reservation_transaction(
    db: Optional[AsyncSession] = None,
    *,
    session_factory: Optional[async_sessionmaker] = None,
    isolation_level: Optional[str] = None,
    lock_timeout_ms: Optional[int] = None,
):
    """
    Yield a session inside a transaction, owning it only when the caller has not.

    Args:
        db: Caller's session. If it is already in a transaction the block
            participates; if idle, the transaction is owned here but the session
            stays open for the caller.
        session_factory: Used to open a session when db is None.
        isolation_level: Applied only to owned transactions.
        lock_timeout_ms: PostgreSQL lock_timeout for owned transactions.
    """
    if db is not None and db.in_transaction():
        try:
            yield db
        except DBAPIError as e:
            translated = translate_db_error(e)
            if translated is e:
                raise
            raise translated from e
        return

    if db is None and session_factory is None:
        raise ValueError("reservation_transaction needs either a session or a session_factory")

    owns_session = db is None
    session = db if db is not None else session_factory()
    try:
        await _prepare_owned_transaction(session, isolation_level, lock_timeout_ms)
        yield session
        await session.commit()
    except DBAPIError as e:
        await session.rollback()
        translated = translate_db_error(e)
        if translated is e:
            raise
        raise translated from e
    except Exception:
        await session.rollback()
        raise
    finally:
        if owns_session:
            await session.close()


def _backoff_delay(base_seconds: float, attempt: int) -> float:
    delay = base_seconds * (2 ** (attempt - 1))
    # Jitter keeps competing checkouts from retrying in lockstep
    return delay + delay * 0.5 * random.random()


async def run_in_transaction(
    work: Callable[[AsyncSession], Awaitable[T]],
    db: Optional[AsyncSession] = None,
    *,
    session_factory: Optional[async_sessionmaker] = None,
    isolation_level: Optional[str] = None,
    lock_timeout_ms: Optional[int] = None,
    max_attempts: int = 1,
    retry_backoff_seconds: float = 0.05,
    operation: str = "reservation",
) -> T:
    """
    Run work(session) in a reservation transaction, retrying transient conflicts.

    Retries only happen when the transaction is owned here. A call that
    participates in the caller's transaction gets exactly one attempt, since its
    earlier work would be lost along with the caller's.
    """
    participating = db is not None and db.in_transaction()
    attempts = 1 if participating else max(1, max_attempts)

    attempt = 0
    while True:
        attempt += 1
        try:
            async with reservation_transaction(
                db,
                session_factory=session_factory,
                isolation_level=isolation_level,
                lock_timeout_ms=lock_timeout_ms,
            ) as session:
                return await work(session)
        except ReservationConflictError as e:
            if attempt >= attempts:
                logger.warning(
                    f"[RESERVATION] {operation} conflict not resolved after {attempt} attempt(s): {e.details}"
                )
                raise
            delay = _backoff_delay(retry_backoff_seconds, attempt)
            logger.warning(
                f"[RESERVATION] {operation} conflict ({e.details.get('reason')}), "
                f"retrying in {delay:.3f}s (attempt {attempt}/{attempts})"
            )
            await asyncio.sleep(delay)


__all__ = [
    "TRANSIENT_SQLSTATES",
    "is_transient_db_error",
    "translate_db_error",
    "reservation_transaction",
    "run_in_transaction",
]
