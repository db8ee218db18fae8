"""CLI for occrace: run the optimistic update race against PostgreSQL."""

from __future__ import annotations

import asyncio
import dataclasses
import sys
from pathlib import Path

import asyncpg
import click

from occrace.config import (
    ConfigError,
    HarnessConfig,
    IsolationLevel,
    RaceConfig,
    load_config,
    validate_race,
)
from occrace.core.logging import configure_logging
from occrace.db import Database
from occrace.errors import StoreError
from occrace.scenario import ScenarioReport, run_scenario_from_config

EXIT_FAILED = 1
EXIT_CONFIG = 2


def _load(config_path: Path | None) -> HarnessConfig:
    if config_path is None:
        return HarnessConfig()
    return load_config(config_path)


@click.group()
@click.version_option(version="0.1.0")
def cli() -> None:
    """occrace: optimistic concurrency race harness for PostgreSQL."""


@cli.command()
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, path_type=Path),
    default=None,
    help="occrace.toml file or a directory containing one",
)
@click.option(
    "--isolation",
    type=click.Choice([level.value for level in IsolationLevel]),
    default=None,
    help="Transaction isolation level (overrides config)",
)
@click.option("--delay", type=float, default=None, help="Seconds each writer holds T1 open")
@click.option("--timeout", type=float, default=None, help="Deadline for the whole scenario")
@click.option("--db-name", default=None, help="Database to provision and use")
def run(
    config_path: Path | None,
    isolation: str | None,
    delay: float | None,
    timeout: float | None,
    db_name: str | None,
) -> None:
    """Provision the database and run the race scenario once."""
    try:
        config = _load(config_path)
    except ConfigError as exc:
        click.echo(f"Config error: {exc}", err=True)
        sys.exit(EXIT_CONFIG)

    race_config = config.race
    if isolation is not None:
        race_config = dataclasses.replace(race_config, isolation_level=IsolationLevel(isolation))
    if delay is not None:
        race_config = dataclasses.replace(race_config, delay_s=delay)
    if timeout is not None:
        race_config = dataclasses.replace(race_config, timeout_s=timeout)
    try:
        validate_race(race_config)
    except ConfigError as exc:
        click.echo(f"Config error: {exc}", err=True)
        sys.exit(EXIT_CONFIG)

    db_config = config.database
    if db_name is not None:
        db_config = dataclasses.replace(db_config, name=db_name)

    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_file=config.logging.log_file,
    )

    try:
        report = asyncio.run(_run(Database.from_config(db_config), race_config))
    except (StoreError, OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as exc:
        click.echo(f"Scenario aborted: {type(exc).__name__}: {exc}", err=True)
        sys.exit(EXIT_FAILED)

    click.echo(report.summary())
    if not report.passed:
        sys.exit(EXIT_FAILED)


@cli.command("check-config")
@click.option(
    "--config",
    "config_path",
    required=True,
    type=click.Path(exists=True, path_type=Path),
    help="occrace.toml file or a directory containing one",
)
def check_config(config_path: Path) -> None:
    """Validate a configuration file and print the effective settings."""
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Config error: {exc}", err=True)
        sys.exit(EXIT_CONFIG)

    click.echo(f"database: {config.database.name} (schema {config.database.schema})")
    click.echo(
        f"race: isolation={config.race.isolation_level} delay={config.race.delay_s}s "
        f"timeout={config.race.timeout_s}s"
    )
    click.echo(f"logging: {config.logging.level} {config.logging.format}")


async def _run(db: Database, race_config: RaceConfig) -> ScenarioReport:
    await db.provision()
    await db.connect()
    try:
        await db.ensure_schema()
        return await run_scenario_from_config(db, race_config)
    finally:
        await db.close()
