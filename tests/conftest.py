"""Shared fixtures for the occrace test suite.

Two kinds of database are available:

- ``fake_db``: an in-memory stand-in with PostgreSQL-like row locking under
  READ COMMITTED, for fast unit tests of the race coordinator.
- ``provisioned_database``: a real database in a shared PostgreSQL
  testcontainer, provisioned per test with a random name.
"""

from __future__ import annotations

import asyncio
import shutil
import uuid
from collections.abc import AsyncIterator, Callable, Iterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import pytest

from occrace.config import IsolationLevel
from occrace.errors import SQLSTATE_UNIQUE_VIOLATION, StatementError, StoreConnectionError

if TYPE_CHECKING:
    from testcontainers.postgres import PostgresContainer

    from occrace.db import Database

docker_available = shutil.which("docker") is not None


# ---------------------------------------------------------------------------
# In-memory database
# ---------------------------------------------------------------------------


@dataclass
class FakeRow:
    version: int
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class FakeTransaction:
    """Transaction over :class:`FakeDatabase` with row locks held until commit/rollback.

    A conditional update on a row another transaction has locked waits for
    the lock and then re-checks the committed version, which is how
    PostgreSQL behaves under READ COMMITTED.
    """

    def __init__(self, db: FakeDatabase, isolation_level: IsolationLevel) -> None:
        self.db = db
        self.isolation_level = isolation_level
        self.is_open = False
        self._finished = False
        self._locked: dict[Any, FakeRow] = {}
        self._pending: dict[Any, int] = {}

    async def open(self) -> FakeTransaction:
        self.db.opened += 1
        if self.db.fail_open_at == self.db.opened:
            raise StoreConnectionError("connection refused")
        self.db.isolation_levels.append(self.isolation_level)
        self.is_open = True
        return self

    async def execute(self, statement: str, *args: Any) -> int:
        self.db.statements.append(statement)
        verb = statement.split(None, 1)[0].upper()
        if verb == "UPDATE":
            return await self._advance(*args)
        if verb == "INSERT":
            key, version = args
            if key in self.db.rows:
                raise StatementError("duplicate key", sqlstate=SQLSTATE_UNIQUE_VIOLATION)
            self.db.rows[key] = FakeRow(version=version)
            return 1
        if verb == "DELETE":
            return 1 if self.db.rows.pop(args[0], None) is not None else 0
        raise AssertionError(f"unexpected statement: {statement}")

    async def query(self, statement: str, *args: Any) -> dict | None:
        row = self.db.rows.get(args[0])
        if row is None:
            return None
        return {"primary_key": args[0], "version": row.version}

    async def _advance(self, key: Any, expected_version: int) -> int:
        if key in self._pending:
            if self._pending[key] != expected_version:
                return 0
            self._pending[key] += 1
            return 1
        row = self.db.rows.get(key)
        if row is None or row.version != expected_version:
            return 0
        await row.lock.acquire()
        if self.db.rows.get(key) is not row or row.version != expected_version:
            row.lock.release()
            return 0
        self._locked[key] = row
        self._pending[key] = expected_version + 1
        return 1

    def _end(self) -> None:
        self._finished = True
        self.is_open = False
        for row in self._locked.values():
            row.lock.release()
        self._locked.clear()
        self._pending.clear()

    async def commit(self) -> None:
        if self._finished:
            return
        for key, version in self._pending.items():
            self._locked[key].version = version
        self.db.commits += 1
        self._end()

    async def rollback(self) -> None:
        if self._finished:
            return
        self.db.rollbacks += 1
        self._end()

    async def __aenter__(self) -> FakeTransaction:
        return await self.open()

    async def __aexit__(self, exc_type, exc, tb) -> None:  # noqa: ANN001
        await self.rollback()


class FakeDatabase:
    """Quacks like :class:`occrace.db.Database` for the record store and race code."""

    entity_table = '"occrace"."entity"'

    def __init__(self, fail_open_at: int | None = None) -> None:
        self.rows: dict[Any, FakeRow] = {}
        self.fail_open_at = fail_open_at
        self.opened = 0
        self.commits = 0
        self.rollbacks = 0
        self.statements: list[str] = []
        self.isolation_levels: list[IsolationLevel] = []

    def seed(self, key: Any, version: int) -> None:
        self.rows[key] = FakeRow(version=version)

    def transaction(
        self, isolation_level: IsolationLevel | str = IsolationLevel.READ_COMMITTED
    ) -> FakeTransaction:
        return FakeTransaction(self, IsolationLevel.parse(isolation_level))


@pytest.fixture
def fake_db() -> FakeDatabase:
    return FakeDatabase()


@pytest.fixture
def fake_db_factory() -> Callable[..., FakeDatabase]:
    return FakeDatabase


# ---------------------------------------------------------------------------
# PostgreSQL testcontainer
# ---------------------------------------------------------------------------


def _unique_test_db_name() -> str:
    return f"test_{uuid.uuid4().hex[:12]}"


@pytest.fixture(scope="session")
def postgres_container() -> Iterator[PostgresContainer]:
    """Shared Postgres testcontainer for all DB-backed tests in this pytest session.

    Each test provisions its own randomly named database, so rows and schemas
    never leak between tests.
    """
    from testcontainers.postgres import PostgresContainer

    with PostgresContainer("postgres:16") as pg:
        yield pg


@pytest.fixture
def database_factory(postgres_container: PostgresContainer) -> Callable[..., Database]:
    """Factory for unprovisioned Database instances wired to the container."""
    from occrace.db import Database

    def _make(db_name: str | None = None, **kwargs: Any) -> Database:
        kwargs.setdefault("min_pool_size", 1)
        kwargs.setdefault("max_pool_size", 4)
        return Database(
            db_name=db_name or _unique_test_db_name(),
            host=postgres_container.get_container_host_ip(),
            port=int(postgres_container.get_exposed_port(5432)),
            user=postgres_container.username,
            password=postgres_container.password,
            **kwargs,
        )

    return _make


@pytest.fixture
def provisioned_database(
    database_factory: Callable[..., Database],
) -> Callable[..., AbstractAsyncContextManager[Database]]:
    """Create a fresh database with the entity table for a single test usage.

    Tests should use this as:
        async with provisioned_database() as db:
            ...
    """

    @asynccontextmanager
    async def _provision(**kwargs: Any) -> AsyncIterator[Database]:
        db = database_factory(**kwargs)
        await db.provision()
        await db.connect()
        try:
            await db.ensure_schema()
            yield db
        finally:
            await db.close()

    return _provision


@pytest.fixture
async def db(provisioned_database) -> AsyncIterator[Database]:  # noqa: ANN001
    """A connected, schema-ready Database."""
    async with provisioned_database() as database:
        yield database
