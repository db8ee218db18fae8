"""Transaction handles over an asyncpg pool.

A :class:`TransactionHandle` owns one pooled connection and one explicit
transaction for its whole life.  ``commit()`` and ``rollback()`` each end
the handle and return the connection to the pool; calling either again is
a no-op.  asyncpg exceptions are translated into :mod:`occrace.errors` at
this boundary.
"""

from __future__ import annotations

import logging
from typing import Any

import asyncpg

from occrace.config import IsolationLevel
from occrace.errors import (
    OperationTimeoutError,
    StatementError,
    StoreConnectionError,
    StoreError,
)

logger = logging.getLogger(__name__)

_CONNECTION_ERRORS = (OSError, asyncpg.InterfaceError)


def affected_rows(status: str) -> int:
    """Parse the row count from a command status tag.

    ``"UPDATE 1"`` -> 1, ``"INSERT 0 1"`` -> 1, ``"DELETE 0"`` -> 0.  Tags
    without a trailing count (``"CREATE TABLE"``) yield 0.
    """
    tail = status.rsplit(" ", 1)[-1] if status else ""
    return int(tail) if tail.isdigit() else 0


def _statement_error(exc: asyncpg.PostgresError) -> StatementError:
    return StatementError(str(exc), sqlstate=getattr(exc, "sqlstate", None))


class TransactionHandle:
    """One connection, one transaction, at a fixed isolation level.

    Use as an async context manager: entering opens the transaction and
    leaving rolls back anything not explicitly committed.
    """

    def __init__(
        self,
        pool: asyncpg.Pool,
        isolation_level: IsolationLevel | str = IsolationLevel.READ_COMMITTED,
        command_timeout: float | None = None,
    ) -> None:
        self.isolation_level = IsolationLevel.parse(isolation_level)
        self.command_timeout = command_timeout
        self._pool = pool
        self._connection: asyncpg.Connection | None = None
        self._transaction: Any = None
        self._finished = False

    @property
    def is_open(self) -> bool:
        return self._connection is not None and not self._finished

    async def open(self) -> TransactionHandle:
        """Acquire a connection and start the transaction."""
        if self._connection is not None or self._finished:
            raise StatementError("Transaction handle cannot be reopened")
        try:
            connection = await self._pool.acquire(timeout=self.command_timeout)
        except TimeoutError as exc:
            raise OperationTimeoutError("connection acquire", self.command_timeout) from exc
        except (*_CONNECTION_ERRORS, asyncpg.PostgresError) as exc:
            raise StoreConnectionError(f"Could not acquire a connection: {exc}") from exc

        transaction = connection.transaction(isolation=self.isolation_level.value)
        try:
            await transaction.start()
        except (*_CONNECTION_ERRORS, asyncpg.PostgresError) as exc:
            await self._pool.release(connection)
            raise StoreConnectionError(f"Could not start transaction: {exc}") from exc
        except BaseException:
            await self._pool.release(connection)
            raise
        self._connection = connection
        self._transaction = transaction
        logger.debug("Opened %s transaction", self.isolation_level)
        return self

    def _require_open(self) -> asyncpg.Connection:
        if self._connection is None or self._finished:
            raise StatementError("Transaction handle is not open")
        return self._connection

    async def execute(self, statement: str, *args: Any) -> int:
        """Run *statement* and return the number of affected rows."""
        connection = self._require_open()
        try:
            status = await connection.execute(statement, *args, timeout=self.command_timeout)
        except TimeoutError as exc:
            raise OperationTimeoutError("statement", self.command_timeout) from exc
        except asyncpg.PostgresError as exc:
            raise _statement_error(exc) from exc
        except _CONNECTION_ERRORS as exc:
            raise StoreConnectionError(str(exc)) from exc
        return affected_rows(status)

    async def query(self, statement: str, *args: Any) -> asyncpg.Record | None:
        """Run *statement* and return its only row, or None when it returned nothing."""
        connection = self._require_open()
        try:
            rows = await connection.fetch(statement, *args, timeout=self.command_timeout)
        except TimeoutError as exc:
            raise OperationTimeoutError("query", self.command_timeout) from exc
        except asyncpg.PostgresError as exc:
            raise _statement_error(exc) from exc
        except _CONNECTION_ERRORS as exc:
            raise StoreConnectionError(str(exc)) from exc
        if len(rows) > 1:
            raise StatementError(f"Expected at most one row, got {len(rows)}")
        return rows[0] if rows else None

    async def commit(self) -> None:
        """Commit and end the handle.  A no-op once the handle has ended."""
        if self._finished or self._connection is None:
            return
        self._finished = True
        try:
            await self._transaction.commit()
        except asyncpg.PostgresError as exc:
            raise _statement_error(exc) from exc
        except _CONNECTION_ERRORS as exc:
            raise StoreConnectionError(str(exc)) from exc
        finally:
            await self._release()

    async def rollback(self) -> None:
        """Roll back and end the handle.  A no-op once the handle has ended."""
        if self._finished or self._connection is None:
            return
        self._finished = True
        try:
            await self._transaction.rollback()
        except (*_CONNECTION_ERRORS, asyncpg.PostgresError) as exc:
            # The connection state is unknown (e.g. a cancelled statement is
            # still draining); never hand it back to the pool as-is.
            self._connection.terminate()
            raise StatementError(f"Rollback failed: {exc}") from exc
        finally:
            await self._release()

    async def _release(self) -> None:
        connection, self._connection = self._connection, None
        self._transaction = None
        if connection is not None:
            await self._pool.release(connection)

    async def __aenter__(self) -> TransactionHandle:
        return await self.open()

    async def __aexit__(self, exc_type, exc, tb) -> None:  # noqa: ANN001
        if exc_type is None:
            await self.rollback()
            return
        try:
            await self.rollback()
        except StoreError as rollback_exc:
            logger.warning(
                "Rollback after %s failed: %s", exc_type.__name__, rollback_exc
            )
