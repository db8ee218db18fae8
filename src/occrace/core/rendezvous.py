"""Two-party rendezvous used to force writers into a shared race window.

The barrier has two halves:

- an arrival countdown: :meth:`Rendezvous.wait` blocks until every party
  has called :meth:`Rendezvous.arrive`;
- a gate: :meth:`Rendezvous.gate` lets exactly one party through at a time.

A party that fails before arriving calls :meth:`Rendezvous.abort`, which
wakes every waiter with :class:`RendezvousBrokenError` instead of leaving
them blocked forever.  Waits are plain awaits, so they can also be
cancelled or bounded by a deadline.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from occrace.errors import RendezvousBrokenError

logger = logging.getLogger(__name__)


class Rendezvous:
    """Arrival countdown paired with a one-at-a-time gate."""

    def __init__(self, parties: int = 2) -> None:
        if parties < 1:
            raise ValueError(f"parties must be positive, got {parties}")
        self.parties = parties
        self._arrived: list[str] = []
        self._all_arrived = asyncio.Event()
        self._gate = asyncio.Lock()
        self._broken_by: str | None = None
        self._holder: str | None = None

    @property
    def arrived(self) -> tuple[str, ...]:
        return tuple(self._arrived)

    @property
    def broken(self) -> bool:
        return self._broken_by is not None

    @property
    def holder(self) -> str | None:
        """Name of the party currently past the gate, if any."""
        return self._holder

    def arrive(self, party: str) -> None:
        """Record that *party* reached the barrier."""
        if party in self._arrived:
            raise ValueError(f"{party!r} already arrived")
        self._arrived.append(party)
        logger.debug("%s arrived (%d/%d)", party, len(self._arrived), self.parties)
        if len(self._arrived) >= self.parties:
            self._all_arrived.set()

    def abort(self, party: str) -> None:
        """Break the barrier because *party* will never arrive.

        A no-op once every party has arrived, since nobody can be waiting
        on the countdown any more.
        """
        if self._all_arrived.is_set():
            return
        self._broken_by = party
        logger.warning("Rendezvous broken by %s", party)
        self._all_arrived.set()

    async def wait(self) -> None:
        """Block until all parties arrived.

        Raises:
            RendezvousBrokenError: If a party aborted before arriving.
        """
        await self._all_arrived.wait()
        if self._broken_by is not None:
            raise RendezvousBrokenError(f"{self._broken_by} abandoned the rendezvous")

    @asynccontextmanager
    async def gate(self, party: str) -> AsyncIterator[None]:
        """Hold the gate for the duration of the block."""
        async with self._gate:
            self._holder = party
            logger.debug("%s passed the gate", party)
            try:
                yield
            finally:
                self._holder = None
