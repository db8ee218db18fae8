"""Tests for occrace.scenario on the in-memory database."""

from __future__ import annotations

import uuid

import pytest

from occrace import scenario as scenario_module
from occrace.config import IsolationLevel, RaceConfig
from occrace.core.race import RaceResult, WriterOutcome
from occrace.errors import OperationTimeoutError
from occrace.scenario import ScenarioReport, run_scenario, run_scenario_from_config

pytestmark = pytest.mark.unit

FAST = {"delay": 0.01, "arrival_grace": 0.01}


async def test_scenario_passes_and_cleans_up(fake_db):
    key = uuid.uuid4()

    report = await run_scenario(fake_db, primary_key=key, **FAST)

    assert report.passed, report.summary()
    assert report.conflict_detected
    assert report.versions == {"created": 1, "advanced": 2, "after_stale": 2, "after_race": 3}
    assert key not in fake_db.rows
    assert report.summary().startswith(f"PASS key={key}")


async def test_scenario_uses_requested_isolation_level(fake_db):
    report = await run_scenario(fake_db, isolation_level="serializable", **FAST)

    assert report.isolation_level is IsolationLevel.SERIALIZABLE
    assert set(fake_db.isolation_levels) == {IsolationLevel.SERIALIZABLE}


async def test_scenario_from_config(fake_db):
    config = RaceConfig(delay_s=0.01, arrival_grace_s=0.01, timeout_s=5)

    report = await run_scenario_from_config(fake_db, config)

    assert report.passed, report.summary()


async def test_missing_conflict_is_a_violation(fake_db, monkeypatch: pytest.MonkeyPatch):
    """A race where both writers commit must fail the run, not pass silently."""

    async def _no_conflict(db, key, expected_version, **kwargs):
        return RaceResult(
            primary_key=key,
            expected_version=expected_version,
            isolation_level=IsolationLevel.READ_COMMITTED,
            outcomes=(WriterOutcome("writer-a", 0, 0), WriterOutcome("writer-b", 0, 0)),
        )

    monkeypatch.setattr(scenario_module, "race", _no_conflict)

    report = await run_scenario(fake_db, **FAST)

    assert not report.passed
    assert "no writer observed a concurrent update" in report.violations
    assert any(v.startswith("read after race") for v in report.violations)
    assert report.summary().startswith("FAIL")


async def test_scenario_timeout(fake_db):
    with pytest.raises(OperationTimeoutError) as exc_info:
        await run_scenario(fake_db, delay=1.0, arrival_grace=0.01, timeout=0.2)
    assert exc_info.value.operation == "scenario"


def test_report_without_race_never_passes():
    report = ScenarioReport(primary_key=uuid.uuid4(), isolation_level=IsolationLevel.SERIALIZABLE)
    assert not report.passed
    assert not report.conflict_detected


def test_expect_records_mismatch_only():
    report = ScenarioReport(primary_key=uuid.uuid4(), isolation_level=IsolationLevel.READ_COMMITTED)
    report.expect("read after create", 1, 1)
    report.expect("read after advance", 1, 2)
    assert report.violations == ["read after advance: expected 2, observed 1"]
