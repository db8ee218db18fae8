"""Versioned record store backed by PostgreSQL.

Each operation runs in its own transaction at the store's isolation level
(overridable per call) and is bounded by an optional deadline.  Reads are
always rolled back so they never leave locks or transaction state behind.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING

from occrace.config import IsolationLevel
from occrace.core.updater import try_advance
from occrace.errors import (
    SQLSTATE_UNIQUE_VIOLATION,
    DuplicateKeyError,
    NotFoundError,
    StatementError,
    deadline,
)

if TYPE_CHECKING:
    from occrace.db import Database

logger = logging.getLogger(__name__)

INITIAL_VERSION = 1


@dataclass(frozen=True)
class Entity:
    """A single versioned record."""

    primary_key: uuid.UUID
    version: int


class RecordStore:
    """Versioned CRUD for the entity table."""

    def __init__(
        self,
        db: Database,
        isolation_level: IsolationLevel | str = IsolationLevel.READ_COMMITTED,
        timeout: float | None = None,
    ) -> None:
        self._db = db
        self.isolation_level = IsolationLevel.parse(isolation_level)
        self.timeout = timeout

    def _level(self, isolation_level: IsolationLevel | str | None) -> IsolationLevel:
        if isolation_level is None:
            return self.isolation_level
        return IsolationLevel.parse(isolation_level)

    def _timeout(self, timeout: float | None) -> float | None:
        return self.timeout if timeout is None else timeout

    async def create(
        self,
        primary_key: uuid.UUID,
        *,
        isolation_level: IsolationLevel | str | None = None,
        timeout: float | None = None,
    ) -> int:
        """Insert a new entity at version 1 and commit.

        Raises:
            DuplicateKeyError: If *primary_key* already exists.
        """
        async with deadline(self._timeout(timeout), "create"):
            async with self._db.transaction(self._level(isolation_level)) as tx:
                try:
                    count = await tx.execute(
                        f"INSERT INTO {self._db.entity_table} (primary_key, version) "
                        "VALUES ($1, $2)",
                        primary_key,
                        INITIAL_VERSION,
                    )
                except StatementError as exc:
                    if exc.sqlstate == SQLSTATE_UNIQUE_VIOLATION:
                        raise DuplicateKeyError(primary_key) from exc
                    raise
                await tx.commit()
        logger.info("Created entity %s at version %d", primary_key, INITIAL_VERSION)
        return count

    async def read(
        self,
        primary_key: uuid.UUID,
        *,
        isolation_level: IsolationLevel | str | None = None,
        timeout: float | None = None,
    ) -> Entity:
        """Return the current committed entity.

        Raises:
            NotFoundError: If *primary_key* does not exist.
        """
        async with deadline(self._timeout(timeout), "read"):
            async with self._db.transaction(self._level(isolation_level)) as tx:
                try:
                    row = await tx.query(
                        f"SELECT primary_key, version FROM {self._db.entity_table} "
                        "WHERE primary_key = $1",
                        primary_key,
                    )
                finally:
                    await tx.rollback()
        if row is None:
            raise NotFoundError(primary_key)
        return Entity(primary_key=row["primary_key"], version=int(row["version"]))

    async def advance(
        self,
        primary_key: uuid.UUID,
        expected_version: int,
        *,
        isolation_level: IsolationLevel | str | None = None,
        timeout: float | None = None,
    ) -> int:
        """Run one conditional advance in its own transaction and commit it."""
        async with deadline(self._timeout(timeout), "advance"):
            async with self._db.transaction(self._level(isolation_level)) as tx:
                count = await try_advance(tx, self._db.entity_table, primary_key, expected_version)
                await tx.commit()
        logger.info(
            "Advanced entity %s from version %d: %d row(s)", primary_key, expected_version, count
        )
        return count

    async def delete(
        self,
        primary_key: uuid.UUID,
        *,
        isolation_level: IsolationLevel | str | None = None,
        timeout: float | None = None,
    ) -> int:
        """Delete the entity unconditionally; returns the number of rows removed."""
        async with deadline(self._timeout(timeout), "delete"):
            async with self._db.transaction(self._level(isolation_level)) as tx:
                count = await tx.execute(
                    f"DELETE FROM {self._db.entity_table} WHERE primary_key = $1",
                    primary_key,
                )
                await tx.commit()
        logger.info("Deleted entity %s: %d row(s)", primary_key, count)
        return count
