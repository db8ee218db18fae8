"""Tests for occrace.core.rendezvous: arrival countdown and gate."""

from __future__ import annotations

import asyncio

import pytest

from occrace.core.rendezvous import Rendezvous
from occrace.errors import RendezvousBrokenError

pytestmark = pytest.mark.unit


async def test_wait_blocks_until_every_party_arrived():
    rendezvous = Rendezvous(parties=2)
    rendezvous.arrive("a")

    waiter = asyncio.create_task(rendezvous.wait())
    await asyncio.sleep(0.01)
    assert not waiter.done()

    rendezvous.arrive("b")
    await asyncio.wait_for(waiter, timeout=1)
    assert rendezvous.arrived == ("a", "b")


async def test_wait_returns_immediately_once_complete():
    rendezvous = Rendezvous(parties=1)
    rendezvous.arrive("solo")
    await asyncio.wait_for(rendezvous.wait(), timeout=1)


def test_double_arrival_rejected():
    rendezvous = Rendezvous()
    rendezvous.arrive("a")
    with pytest.raises(ValueError):
        rendezvous.arrive("a")


def test_parties_must_be_positive():
    with pytest.raises(ValueError):
        Rendezvous(parties=0)


async def test_abort_wakes_waiters_with_broken_error():
    rendezvous = Rendezvous(parties=2)
    rendezvous.arrive("a")
    waiter = asyncio.create_task(rendezvous.wait())
    await asyncio.sleep(0)

    rendezvous.abort("b")

    with pytest.raises(RendezvousBrokenError, match="b abandoned"):
        await asyncio.wait_for(waiter, timeout=1)
    assert rendezvous.broken


async def test_abort_after_everyone_arrived_is_noop():
    rendezvous = Rendezvous(parties=2)
    rendezvous.arrive("a")
    rendezvous.arrive("b")

    rendezvous.abort("a")

    assert not rendezvous.broken
    await rendezvous.wait()


async def test_wait_is_cancellable():
    rendezvous = Rendezvous(parties=2)
    with pytest.raises(TimeoutError):
        await asyncio.wait_for(rendezvous.wait(), timeout=0.01)


async def test_gate_admits_one_party_at_a_time():
    rendezvous = Rendezvous(parties=2)
    inside: list[str] = []
    max_inside = 0

    async def _pass(party: str) -> None:
        nonlocal max_inside
        async with rendezvous.gate(party):
            inside.append(party)
            max_inside = max(max_inside, len(inside))
            assert rendezvous.holder == party
            await asyncio.sleep(0.01)
            inside.remove(party)

    await asyncio.gather(_pass("a"), _pass("b"))

    assert max_inside == 1
    assert rendezvous.holder is None


async def test_gate_released_on_error():
    rendezvous = Rendezvous()
    with pytest.raises(RuntimeError):
        async with rendezvous.gate("a"):
            raise RuntimeError("boom")

    async with asyncio.timeout(1):
        async with rendezvous.gate("b"):
            assert rendezvous.holder == "b"
