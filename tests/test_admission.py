import asyncio
import random

import pytest

from admission import AdmissionQueue, Slot


async def _park(queue: AdmissionQueue) -> "asyncio.Task[Slot]":
    task = asyncio.create_task(queue.acquire())
    await asyncio.sleep(0)
    return task


class TestAdmissionQueueGrants:

    @pytest.mark.asyncio
    async def test_grants_up_to_limit_without_waiting(self):
        queue = AdmissionQueue(2)
        a = await queue.acquire()
        b = await queue.acquire()
        assert a.id != b.id
        assert queue.active == 2
        assert queue.waiting == 0

        third = await _park(queue)
        assert not third.done()
        assert queue.waiting == 1

        queue.release(a)
        slot = await third
        assert isinstance(slot, Slot)
        assert queue.active == 2
        assert queue.waiting == 0

    @pytest.mark.asyncio
    async def test_waiters_granted_in_arrival_order(self):
        queue = AdmissionQueue(2)
        first = await queue.acquire()
        second = await queue.acquire()

        third = await _park(queue)
        fourth = await _park(queue)

        queue.release(first)
        await asyncio.sleep(0)
        assert third.done()
        assert not fourth.done()

        queue.release(second)
        await asyncio.sleep(0)
        assert fourth.done()

    @pytest.mark.asyncio
    async def test_newcomer_cannot_overtake_parked_caller(self):
        queue = AdmissionQueue(1)
        held = await queue.acquire()
        parked = await _park(queue)

        queue.release(held)
        # the freed slot already belongs to the parked caller
        newcomer = await _park(queue)
        assert parked.done()
        assert not newcomer.done()
        assert queue.active == 1

        queue.release(parked.result())
        await newcomer
        queue.release(newcomer.result())
        assert queue.active == 0

    def test_rejects_non_positive_limit(self):
        with pytest.raises(ValueError):
            AdmissionQueue(0)


class TestAdmissionQueueRelease:

    @pytest.mark.asyncio
    async def test_double_release_raises(self):
        queue = AdmissionQueue(1)
        slot = await queue.acquire()
        queue.release(slot)
        with pytest.raises(RuntimeError):
            queue.release(slot)
        assert queue.active == 0

    @pytest.mark.asyncio
    async def test_cancelled_waiter_leaves_the_queue(self):
        queue = AdmissionQueue(1)
        held = await queue.acquire()
        abandoned = await _park(queue)
        behind = await _park(queue)
        assert queue.waiting == 2

        abandoned.cancel()
        with pytest.raises(asyncio.CancelledError):
            await abandoned
        assert queue.waiting == 1

        queue.release(held)
        slot = await behind
        assert queue.active == 1
        queue.release(slot)
        assert queue.active == 0

    @pytest.mark.asyncio
    async def test_cancel_after_grant_passes_slot_on(self):
        queue = AdmissionQueue(1)
        held = await queue.acquire()
        granted_then_cancelled = await _park(queue)
        behind = await _park(queue)

        # grant and cancellation land in the same tick
        queue.release(held)
        granted_then_cancelled.cancel()
        with pytest.raises(asyncio.CancelledError):
            await granted_then_cancelled

        slot = await behind
        assert queue.active == 1
        queue.release(slot)
        assert queue.active == 0

    @pytest.mark.asyncio
    async def test_slot_accounting_is_conserved_under_load(self):
        queue = AdmissionQueue(3)
        peak = 0

        async def worker():
            nonlocal peak
            slot = await queue.acquire()
            try:
                peak = max(peak, queue.active)
                assert queue.active <= queue.max_concurrent
                await asyncio.sleep(random.random() / 100)
            finally:
                queue.release(slot)

        await asyncio.gather(*(worker() for _ in range(40)))
        assert peak == 3
        assert queue.active == 0
        assert queue.waiting == 0
