"""
Bounded-concurrency admission control for CLI generation processes.

At most ``max_concurrent`` slots are held at any time. Callers that find no free
slot are parked on a WaitTicket and granted strictly in arrival order. A release
hands its capacity straight to the oldest parked caller, so a newcomer can never
overtake the queue.
"""
from __future__ import annotations

import asyncio
import itertools
from collections import deque
from typing import Deque

from logging_utils import jlog


class Slot:
    """Permit to run one CLI process."""

    __slots__ = ("id", "released")

    def __init__(self, slot_id: int):
        self.id = slot_id
        self.released = False

    def __repr__(self) -> str:
        return f"Slot(id={self.id}, released={self.released})"


class WaitTicket:
    """A parked caller's place in line; resolved with a Slot on grant."""

    __slots__ = ("seq", "future")

    def __init__(self, seq: int, future: "asyncio.Future[Slot]"):
        self.seq = seq
        self.future = future


class AdmissionQueue:
    def __init__(self, max_concurrent: int):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        self.max_concurrent = max_concurrent
        self._active = 0
        self._waiters: Deque[WaitTicket] = deque()
        self._slot_ids = itertools.count(1)
        self._ticket_ids = itertools.count(1)

    @property
    def active(self) -> int:
        return self._active

    @property
    def waiting(self) -> int:
        return len(self._waiters)

    def _grant(self) -> Slot:
        self._active += 1
        slot = Slot(next(self._slot_ids))
        jlog("queue.granted", slot_id=slot.id, active=self._active,
             limit=self.max_concurrent, waiting=len(self._waiters))
        return slot

    async def acquire(self) -> Slot:
        """Wait (FIFO) until a slot is free. Never fails; cancellation abandons the ticket."""
        if self._active < self.max_concurrent and not self._waiters:
            return self._grant()

        ticket = WaitTicket(next(self._ticket_ids), asyncio.get_running_loop().create_future())
        self._waiters.append(ticket)
        jlog("queue.waiting", ticket=ticket.seq, active=self._active,
             limit=self.max_concurrent, waiting=len(self._waiters))
        try:
            return await ticket.future
        except asyncio.CancelledError:
            if ticket.future.done() and not ticket.future.cancelled():
                # granted and cancelled in the same tick: pass the slot on
                self.release(ticket.future.result())
            else:
                self._discard(ticket)
            jlog("queue.abandoned", ticket=ticket.seq, waiting=len(self._waiters))
            raise

    def release(self, slot: Slot) -> None:
        if slot.released:
            raise RuntimeError(f"slot {slot.id} released twice")
        slot.released = True
        self._active -= 1
        jlog("queue.released", slot_id=slot.id, active=self._active,
             limit=self.max_concurrent, waiting=len(self._waiters))
        self._wake_next()

    def _discard(self, ticket: WaitTicket) -> None:
        try:
            self._waiters.remove(ticket)
        except ValueError:
            pass

    def _wake_next(self) -> None:
        while self._waiters and self._active < self.max_concurrent:
            ticket = self._waiters.popleft()
            if ticket.future.done():
                continue
            ticket.future.set_result(self._grant())
