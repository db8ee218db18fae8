"""Error taxonomy for the versioned record store and the race harness.

Store and infrastructure failures derive from :class:`StoreError`.
:class:`ConcurrentUpdateError` deliberately does not, so callers can tell
"a conflict was detected" apart from "an operation failed".
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

# PostgreSQL SQLSTATE codes the harness cares about.
SQLSTATE_UNIQUE_VIOLATION = "23505"
SQLSTATE_SERIALIZATION_FAILURE = "40001"


class StoreError(Exception):
    """Base class for record store and storage-collaborator failures."""


class NotFoundError(StoreError):
    """Raised when an operation references a key that does not exist."""

    def __init__(self, key: Any) -> None:
        self.key = key
        super().__init__(f"Entity {key} was not found")


class DuplicateKeyError(StoreError):
    """Raised when creating an entity whose key already exists."""

    def __init__(self, key: Any) -> None:
        self.key = key
        super().__init__(f"Entity {key} already exists")


class StoreConnectionError(StoreError):
    """Raised when a connection or transaction cannot be opened."""


class StatementError(StoreError):
    """Raised when a statement fails inside an open transaction.

    Attributes:
        sqlstate: The PostgreSQL SQLSTATE code, when the server reported one.
    """

    def __init__(self, message: str, sqlstate: str | None = None) -> None:
        self.sqlstate = sqlstate
        super().__init__(message)


class OperationTimeoutError(StoreError, TimeoutError):
    """Raised when an operation exceeds its deadline."""

    def __init__(self, operation: str, timeout: float | None) -> None:
        self.operation = operation
        self.timeout = timeout
        super().__init__(f"{operation} timed out after {timeout}s")


class ConcurrentUpdateError(Exception):
    """Raised when a writer's two attempts disagree on the affected-row count.

    This is the expected outcome for the losing writer of an optimistic
    update race, not a bug.

    Attributes:
        key: The entity key the writer raced on.
        expected_version: The version both attempts conditioned on.
        first_count: Rows affected by the first (rolled back) attempt.
        second_count: Rows affected by the second attempt, or None when the
            database aborted the attempt with a serialization failure.
        writer: Name of the writer that observed the conflict.
    """

    def __init__(
        self,
        key: Any = None,
        expected_version: int | None = None,
        first_count: int | None = None,
        second_count: int | None = None,
        writer: str | None = None,
    ) -> None:
        self.key = key
        self.expected_version = expected_version
        self.first_count = first_count
        self.second_count = second_count
        self.writer = writer
        super().__init__(
            f"Concurrent update violation on {key} at version {expected_version}: "
            f"first attempt affected {first_count!r} row(s), second {second_count!r}"
        )


class RendezvousBrokenError(Exception):
    """Raised to waiters when a peer abandoned the rendezvous before arriving."""


@asynccontextmanager
async def deadline(timeout: float | None, operation: str) -> AsyncIterator[None]:
    """Bound the enclosed block by *timeout* seconds.

    Expiry cancels the block (so enclosed transactions roll back on their way
    out) and surfaces as :class:`OperationTimeoutError`.  ``None`` disables
    the deadline.
    """
    try:
        async with asyncio.timeout(timeout):
            yield
    except OperationTimeoutError:
        raise
    except TimeoutError as exc:
        raise OperationTimeoutError(operation, timeout) from exc
