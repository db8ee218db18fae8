"""Conflict detection from affected-row counts."""

from __future__ import annotations

from typing import Any

from occrace.errors import ConcurrentUpdateError


def is_consistent(first_count: int, second_count: int) -> bool:
    """True when both attempts of the same conditional update behaved alike."""
    return first_count == second_count


def check_consistency(
    first_count: int,
    second_count: int,
    *,
    key: Any = None,
    expected_version: int | None = None,
    writer: str | None = None,
) -> None:
    """Raise :class:`ConcurrentUpdateError` when the two counts differ.

    A first attempt that matched a row followed by a second attempt that
    found nothing means a concurrent writer advanced the version in between.
    """
    if is_consistent(first_count, second_count):
        return
    raise ConcurrentUpdateError(
        key=key,
        expected_version=expected_version,
        first_count=first_count,
        second_count=second_count,
        writer=writer,
    )
