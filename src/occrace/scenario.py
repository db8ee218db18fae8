"""End-to-end optimistic update scenario.

Runs, against one fresh key:

- A: create, read (version 1), advance from 1, read (version 2);
- B: advance from the stale version 1 (no effect), read (still 2);
- C: race two writers on version 2, read (version 3);
- D: delete, read (not found).

Every expectation that does not hold is recorded as a violation instead of
being raised, so the report always shows the full picture.  Store errors
(connection, statement, timeout) are not expectations and propagate.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from occrace.config import IsolationLevel, RaceConfig
from occrace.core.race import (
    DEFAULT_ARRIVAL_GRACE_S,
    DEFAULT_DELAY_S,
    RaceResult,
    race,
)
from occrace.core.records import INITIAL_VERSION, RecordStore
from occrace.core.telemetry import race_span
from occrace.errors import NotFoundError, deadline

if TYPE_CHECKING:
    from occrace.db import Database

logger = logging.getLogger(__name__)


@dataclass
class ScenarioReport:
    """Pass/fail verdict plus everything observed along the way."""

    primary_key: uuid.UUID
    isolation_level: IsolationLevel
    race: RaceResult | None = None
    versions: dict[str, int] = field(default_factory=dict)
    violations: list[str] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return self.race is not None and not self.violations

    @property
    def conflict_detected(self) -> bool:
        return self.race is not None and self.race.conflict_detected

    def expect(self, step: str, observed: object, expected: object) -> None:
        if observed != expected:
            self.violations.append(f"{step}: expected {expected!r}, observed {observed!r}")

    def summary(self) -> str:
        verdict = "PASS" if self.passed else "FAIL"
        lines = [
            f"{verdict} key={self.primary_key} isolation={self.isolation_level} "
            f"conflict_detected={self.conflict_detected}"
        ]
        if self.race is not None:
            for outcome in self.race.outcomes:
                lines.append(
                    f"  {outcome.writer}: {outcome.status} "
                    f"(first={outcome.first_count}, second={outcome.second_count})"
                )
        lines.extend(f"  violation: {v}" for v in self.violations)
        return "\n".join(lines)


async def run_scenario(
    db: Database,
    *,
    primary_key: uuid.UUID | None = None,
    isolation_level: IsolationLevel | str = IsolationLevel.READ_COMMITTED,
    delay: float = DEFAULT_DELAY_S,
    arrival_grace: float = DEFAULT_ARRIVAL_GRACE_S,
    timeout: float | None = 60.0,
) -> ScenarioReport:
    """Run scenarios A-D for one key and return the report.

    Raises:
        OperationTimeoutError: If the whole run exceeds *timeout*.
        StoreError: On any infrastructure failure outside the race itself.
    """
    level = IsolationLevel.parse(isolation_level)
    key = primary_key or uuid.uuid4()
    store = RecordStore(db, isolation_level=level)
    report = ScenarioReport(primary_key=key, isolation_level=level)

    async with deadline(timeout, "scenario"):
        with race_span("scenario", key=key, isolation_level=level.value):
            # A - baseline create, read, advance
            report.expect("create", await store.create(key), 1)
            entity = await store.read(key)
            report.versions["created"] = entity.version
            report.expect("read after create", entity.version, INITIAL_VERSION)

            report.expect("advance from 1", await store.advance(key, INITIAL_VERSION), 1)
            entity = await store.read(key)
            report.versions["advanced"] = entity.version
            report.expect("read after advance", entity.version, INITIAL_VERSION + 1)

            # B - a stale expected version is not reapplied
            report.expect("stale advance from 1", await store.advance(key, INITIAL_VERSION), 0)
            entity = await store.read(key)
            report.versions["after_stale"] = entity.version
            report.expect("read after stale advance", entity.version, INITIAL_VERSION + 1)

            # C - two writers race on the same expected version
            start_version = entity.version
            report.race = await race(
                db,
                key,
                start_version,
                isolation_level=level,
                delay=delay,
                arrival_grace=arrival_grace,
            )
            entity = await store.read(key)
            report.versions["after_race"] = entity.version
            report.violations.extend(
                report.race.violations(entity.version, start_version=start_version)
            )
            if not report.race.conflict_detected:
                report.violations.append("no writer observed a concurrent update")
            report.expect("read after race", entity.version, start_version + 1)

            # D - delete, then the key is gone
            report.expect("delete", await store.delete(key), 1)
            try:
                entity = await store.read(key)
            except NotFoundError:
                pass
            else:
                report.violations.append(f"read after delete returned version {entity.version}")

    logger.info("Scenario %s: %s", "passed" if report.passed else "failed", key)
    return report


async def run_scenario_from_config(db: Database, config: RaceConfig) -> ScenarioReport:
    """Convenience wrapper taking the [race] config section."""
    return await run_scenario(
        db,
        isolation_level=config.isolation_level,
        delay=config.delay_s,
        arrival_grace=config.arrival_grace_s,
        timeout=config.timeout_s,
    )
