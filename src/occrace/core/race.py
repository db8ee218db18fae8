"""Race coordinator: two writers, one conditional update, a forced interleaving.

Each writer runs the same protocol against the same ``(key, version)``:

1. open T1 and issue the conditional advance;
2. arrive at the rendezvous once the statement has been issued, and wait
   until every writer has arrived;
3. hold T1 open for ``delay`` seconds, then pass the gate;
4. roll back T1 and release the gate;
5. open T2 and issue the same conditional advance again;
6. commit T2 if both attempts affected the same number of rows, otherwise
   roll it back and raise :class:`ConcurrentUpdateError`.

The writer holding the row lock finishes step 4 first, so the blocked peer's
first attempt always evaluates against the original version and the peer's
second attempt always loses to the first writer's commit.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import uuid
from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

from occrace.config import IsolationLevel
from occrace.core.conflict import check_consistency
from occrace.core.logging import reset_writer_context, set_writer_context
from occrace.core.rendezvous import Rendezvous
from occrace.core.telemetry import race_span
from occrace.core.updater import try_advance
from occrace.errors import (
    SQLSTATE_SERIALIZATION_FAILURE,
    ConcurrentUpdateError,
    StatementError,
    deadline,
)

if TYPE_CHECKING:
    from occrace.db import Database

logger = logging.getLogger(__name__)

DEFAULT_WRITERS: tuple[str, str] = ("writer-a", "writer-b")
DEFAULT_DELAY_S = 1.0
DEFAULT_ARRIVAL_GRACE_S = 0.05


class WriterStatus(enum.StrEnum):
    """How a writer's protocol run ended."""

    OK = "ok"
    CONFLICT = "conflict"
    FAILED = "failed"


@dataclass
class WriterOutcome:
    """Affected-row counts of both attempts, plus the error that ended the run."""

    writer: str
    first_count: int | None = None
    second_count: int | None = None
    error: Exception | None = None

    @property
    def status(self) -> WriterStatus:
        if self.error is None:
            return WriterStatus.OK
        if isinstance(self.error, ConcurrentUpdateError):
            return WriterStatus.CONFLICT
        return WriterStatus.FAILED

    @property
    def committed_advances(self) -> int:
        """Rows this writer's committed second attempt advanced (0 or 1)."""
        if self.status is WriterStatus.OK:
            return self.second_count or 0
        return 0


@dataclass
class RaceResult:
    """Aggregate of every writer's fate; nothing is hidden or merged."""

    primary_key: uuid.UUID
    expected_version: int
    isolation_level: IsolationLevel
    outcomes: tuple[WriterOutcome, ...]

    @property
    def conflicts(self) -> list[WriterOutcome]:
        return [o for o in self.outcomes if o.status is WriterStatus.CONFLICT]

    @property
    def failures(self) -> list[WriterOutcome]:
        return [o for o in self.outcomes if o.status is WriterStatus.FAILED]

    @property
    def conflict_detected(self) -> bool:
        return bool(self.conflicts)

    @property
    def committed_advances(self) -> int:
        return sum(o.committed_advances for o in self.outcomes)

    def violations(self, final_version: int | None, start_version: int | None = None) -> list[str]:
        """List every way this race broke the optimistic-update guarantees.

        Parameters
        ----------
        final_version:
            Version read back after the race, or None to skip version checks.
        start_version:
            Version before the race; defaults to ``expected_version``.
        """
        issues = [
            f"{o.writer} failed: {type(o.error).__name__}: {o.error}" for o in self.failures
        ]
        if self.committed_advances > 1:
            issues.append(
                f"version advanced {self.committed_advances} times for a single race"
            )
        if final_version is not None:
            base = self.expected_version if start_version is None else start_version
            expected_final = base + self.committed_advances
            if final_version != expected_final:
                issues.append(
                    f"final version {final_version} does not match {base} "
                    f"+ {self.committed_advances} committed advance(s)"
                )
        return issues


async def _settle(attempt: asyncio.Future) -> None:
    """Make sure the first attempt is no longer running on the connection."""
    if attempt.done():
        if not attempt.cancelled() and attempt.exception() is not None:
            logger.debug("First attempt ended with %r", attempt.exception())
        return
    attempt.cancel()
    await asyncio.wait({attempt})


async def run_writer(
    db: Database,
    primary_key: uuid.UUID,
    expected_version: int,
    rendezvous: Rendezvous,
    *,
    writer: str,
    isolation_level: IsolationLevel | str = IsolationLevel.READ_COMMITTED,
    delay: float = DEFAULT_DELAY_S,
    arrival_grace: float = DEFAULT_ARRIVAL_GRACE_S,
    timeout: float | None = None,
    outcome: WriterOutcome | None = None,
) -> WriterOutcome:
    """Run one writer's side of the forced interleaving.

    Counts are recorded on *outcome* as the attempts complete, so a caller
    that passes its own instance still sees how far a failed writer got.

    Returns:
        The writer's outcome when both attempts agreed and T2 was committed.

    Raises:
        ConcurrentUpdateError: When the attempts disagreed, or the database
            aborted the second attempt with a serialization failure.
        RendezvousBrokenError: When a peer failed before arriving.
        OperationTimeoutError: When *timeout* expired; open transactions are
            rolled back first.
    """
    level = IsolationLevel.parse(isolation_level)
    table = db.entity_table
    if outcome is None:
        outcome = WriterOutcome(writer=writer)
    arrived = False
    token = set_writer_context(writer)
    try:
        async with deadline(timeout, f"{writer} race"):
            with race_span(
                "writer",
                writer=writer,
                key=primary_key,
                expected_version=expected_version,
                isolation_level=level.value,
            ):
                async with db.transaction(level) as first_tx:
                    attempt = asyncio.ensure_future(
                        try_advance(first_tx, table, primary_key, expected_version)
                    )
                    try:
                        # A first attempt still in flight after the grace period is
                        # parked behind the peer's row lock; it has been issued.
                        await asyncio.wait({attempt}, timeout=arrival_grace)
                        rendezvous.arrive(writer)
                        arrived = True
                        await rendezvous.wait()
                        outcome.first_count = await attempt
                    finally:
                        await _settle(attempt)
                    logger.info(
                        "First attempt affected %d row(s); holding transaction for %.3fs",
                        outcome.first_count,
                        delay,
                    )
                    await asyncio.sleep(delay)
                    async with rendezvous.gate(writer):
                        await first_tx.rollback()
                        logger.debug("First attempt rolled back")

                async with db.transaction(level) as second_tx:
                    try:
                        outcome.second_count = await try_advance(
                            second_tx, table, primary_key, expected_version
                        )
                    except StatementError as exc:
                        if exc.sqlstate != SQLSTATE_SERIALIZATION_FAILURE:
                            raise
                        raise ConcurrentUpdateError(
                            key=primary_key,
                            expected_version=expected_version,
                            first_count=outcome.first_count,
                            second_count=None,
                            writer=writer,
                        ) from exc
                    check_consistency(
                        outcome.first_count,
                        outcome.second_count,
                        key=primary_key,
                        expected_version=expected_version,
                        writer=writer,
                    )
                    await second_tx.commit()
    except ConcurrentUpdateError as exc:
        logger.info("Conflict detected: %s", exc)
        raise
    except BaseException:
        if not arrived:
            rendezvous.abort(writer)
        raise
    finally:
        reset_writer_context(token)

    logger.info(
        "Committed second attempt: %d row(s) (first attempt %d)",
        outcome.second_count,
        outcome.first_count,
    )
    return outcome


async def race(
    db: Database,
    primary_key: uuid.UUID,
    expected_version: int,
    *,
    isolation_level: IsolationLevel | str = IsolationLevel.READ_COMMITTED,
    delay: float = DEFAULT_DELAY_S,
    arrival_grace: float = DEFAULT_ARRIVAL_GRACE_S,
    timeout: float | None = None,
    writers: Sequence[str] = DEFAULT_WRITERS,
) -> RaceResult:
    """Run the writers concurrently and report every writer's fate.

    A conflict or failure in one writer never cancels its peers.  Only
    non-``Exception`` outcomes (e.g. cancellation of the race itself) are
    re-raised.
    """
    if len(set(writers)) != len(writers) or not writers:
        raise ValueError(f"writer names must be unique and non-empty: {list(writers)!r}")
    level = IsolationLevel.parse(isolation_level)
    rendezvous = Rendezvous(parties=len(writers))
    outcomes = [WriterOutcome(writer=writer) for writer in writers]

    tasks = [
        asyncio.create_task(
            run_writer(
                db,
                primary_key,
                expected_version,
                rendezvous,
                writer=outcome.writer,
                isolation_level=level,
                delay=delay,
                arrival_grace=arrival_grace,
                timeout=timeout,
                outcome=outcome,
            ),
            name=outcome.writer,
        )
        for outcome in outcomes
    ]
    results = await asyncio.gather(*tasks, return_exceptions=True)

    for outcome, result in zip(outcomes, results, strict=True):
        if isinstance(result, WriterOutcome):
            continue
        if not isinstance(result, Exception):
            raise result
        outcome.error = result

    for outcome in outcomes:
        logger.info(
            "Race on %s at version %d: %s -> %s (first=%s, second=%s)",
            primary_key,
            expected_version,
            outcome.writer,
            outcome.status,
            outcome.first_count,
            outcome.second_count,
        )
    return RaceResult(
        primary_key=primary_key,
        expected_version=expected_version,
        isolation_level=level,
        outcomes=tuple(outcomes),
    )
