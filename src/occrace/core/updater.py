"""Version-checked conditional update, the primitive optimistic locking rests on."""

from __future__ import annotations

import logging
import uuid

from occrace.storage.transactions import TransactionHandle

logger = logging.getLogger(__name__)


def advance_statement(table: str) -> str:
    """Return the increment-if-match UPDATE for *table*."""
    return f"UPDATE {table} SET version = version + 1 WHERE primary_key = $1 AND version = $2"


async def try_advance(
    tx: TransactionHandle,
    table: str,
    primary_key: uuid.UUID,
    expected_version: int,
) -> int:
    """Increment the version of *primary_key* only if it equals *expected_version*.

    Runs inside the caller's open transaction and never commits or rolls
    back: the caller decides the transaction boundary.  The match and the
    increment are one statement, so PostgreSQL's row lock serializes
    concurrent attempts on the same row.

    Returns:
        1 when the row matched and was incremented, 0 when the version was
        stale or the key does not exist.
    """
    if expected_version < 0:
        raise ValueError(f"expected_version must be non-negative, got {expected_version}")
    count = await tx.execute(advance_statement(table), primary_key, expected_version)
    logger.debug(
        "Conditional advance of %s at version %d affected %d row(s)",
        primary_key,
        expected_version,
        count,
    )
    return count
