# database.py
import asyncio
import logging
import sqlite3
import uuid
from typing import Awaitable, Callable, TypeVar

import sqlalchemy
from databases import Database
from sqlalchemy import create_engine, MetaData

from slot_swap.config import DATABASE_URL, SWAP_TX_MAX_ATTEMPTS, SWAP_TX_RETRY_DELAY
from slot_swap.errors import ConflictError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Create the core database objects
database = Database(DATABASE_URL)
metadata = MetaData()
engine = create_engine(DATABASE_URL)

# Raised by the driver when another transaction holds the write lock
CONTENTION_ERRORS = (sqlite3.OperationalError,)
CONTENTION_MESSAGES = ("database is locked", "database is busy")


def is_contention(exc: Exception) -> bool:
    """Only lock contention is worth retrying; other driver errors are real faults."""
    return isinstance(exc, CONTENTION_ERRORS) and any(m in str(exc).lower() for m in CONTENTION_MESSAGES)


async def run_in_transaction(
    db: Database,
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int = SWAP_TX_MAX_ATTEMPTS,
    retry_delay: float = SWAP_TX_RETRY_DELAY,
    label: str = "transaction",
) -> T:
    """
    Runs `operation` inside a single transaction on `db`.

    Any exception rolls the transaction back. Lock contention is retried up to
    `attempts` times with a linear backoff and then reported as a ConflictError,
    so callers never observe a half-applied write set.
    """
    for attempt in range(1, attempts + 1):
        try:
            async with db.transaction():
                return await operation()
        except CONTENTION_ERRORS as exc:
            if not is_contention(exc):
                raise
            if attempt >= attempts:
                logger.warning("%s gave up after %d attempts: %s", label, attempt, exc)
                raise ConflictError("The slots are busy with another swap. Please try again.") from exc
            logger.warning("%s hit contention (attempt %d/%d): %s", label, attempt, attempts, exc)
            await asyncio.sleep(retry_delay * attempt)
    raise ConflictError("The slots are busy with another swap. Please try again.")


async def guarded_update(db: Database, table: sqlalchemy.Table, record_id: str, expected_revision: str, **values) -> bool:
    """
    Conditional write keyed on the row's revision token.

    The row is only touched when its revision still equals `expected_revision`;
    the fresh token written alongside `values` is read back to tell whether this
    call won. A unique token per write keeps the answer unambiguous when two
    writers raced on the same starting revision.
    """
    new_revision = uuid.uuid4().hex
    query = (
        table.update()
        .where(table.c.id == record_id, table.c.revision == expected_revision)
        .values(revision=new_revision, **values)
    )
    await db.execute(query)
    current = await db.fetch_val(sqlalchemy.select(table.c.revision).where(table.c.id == record_id))
    return current == new_revision
