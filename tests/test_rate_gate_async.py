"""Tests for the asyncio side of RateGate."""

import asyncio
import threading
import time

import pytest

from cancellation import CancellationToken, OperationCancelledError
from rate_gate import GateClosedError, RateGate


async def _noop():
    return None


class TestRunAsync:

    @pytest.mark.asyncio
    async def test_no_arg_action(self):
        gate = RateGate(2, 1.0)

        async def action():
            return "done"

        assert await gate.run_async(action) == "done"
        assert gate.admitted == 1
        assert gate.released == 1

    @pytest.mark.asyncio
    async def test_arg_passed_through(self, token):
        gate = RateGate(2, 1.0)

        async def double(value):
            return value * 2

        assert await gate.run_async(double, 21, cancel_token=token) == 42

    @pytest.mark.asyncio
    async def test_with_token_passes_same_token_and_returns_result(self, token):
        gate = RateGate(1, 0.0)
        seen = []

        async def action(arg, tok):
            seen.append(tok)
            return arg.upper()

        assert await gate.run_async_with_token(action, "abc", token) == "ABC"
        assert seen == [token]

    @pytest.mark.asyncio
    async def test_with_token_supplies_token_when_none_given(self):
        gate = RateGate(1, 0.0)

        async def action(arg, tok):
            return isinstance(tok, CancellationToken) and not tok.cancelled

        assert await gate.run_async_with_token(action, None) is True

    @pytest.mark.asyncio
    async def test_action_error_propagates_and_releases(self):
        gate = RateGate(1, 0.0)

        async def boom():
            raise LookupError("missing")

        with pytest.raises(LookupError, match="missing"):
            await gate.run_async(boom)
        assert gate.available == 1
        assert gate.released == 1

    @pytest.mark.asyncio
    async def test_first_max_count_tasks_never_block(self):
        gate = RateGate(5, 30.0)
        start = time.monotonic()
        await asyncio.gather(*(gate.run_async(_noop) for _ in range(5)))
        assert time.monotonic() - start < 0.5

    @pytest.mark.asyncio
    async def test_window_delay_does_not_block_loop(self):
        gate = RateGate(1, 0.3)
        await gate.run_async(_noop)

        ticks = 0

        async def ticker():
            nonlocal ticks
            while True:
                ticks += 1
                await asyncio.sleep(0.01)

        tick_task = asyncio.create_task(ticker())
        start = time.monotonic()
        await gate.run_async(_noop)
        elapsed = time.monotonic() - start
        tick_task.cancel()

        assert elapsed >= 0.25
        assert ticks >= 10


class TestSlotHeldDuringSuspension:

    @pytest.mark.asyncio
    async def test_second_caller_waits_for_first_to_finish(self):
        gate = RateGate(1, 0.0)
        finish_first = asyncio.Event()
        order = []

        async def first():
            order.append("first-start")
            await finish_first.wait()
            order.append("first-end")

        async def second():
            order.append("second")

        task_a = asyncio.create_task(gate.run_async(first))
        await asyncio.sleep(0.02)
        task_b = asyncio.create_task(gate.run_async(second))
        await asyncio.sleep(0.05)

        assert order == ["first-start"]
        assert not task_b.done()

        finish_first.set()
        await asyncio.gather(task_a, task_b)
        assert order == ["first-start", "first-end", "second"]

    @pytest.mark.asyncio
    async def test_slot_async_scope(self):
        gate = RateGate(2, 0.0)
        async with gate.slot_async() as held:
            assert held is gate
            assert gate.available == 1
        assert gate.available == 2

    @pytest.mark.asyncio
    async def test_thread_release_wakes_task(self):
        gate = RateGate(1, 0.0)
        holder = gate.slot()
        holder.__enter__()

        task = asyncio.create_task(gate.run_async(_noop))
        await asyncio.sleep(0.05)
        assert not task.done()

        threading.Timer(0.05, holder.__exit__, args=(None, None, None)).start()
        await asyncio.wait_for(task, timeout=2)
        assert gate.admitted == 2
        assert gate.available == 1


class TestAsyncCancellation:

    @pytest.mark.asyncio
    async def test_token_cancel_while_waiting_for_slot(self, token):
        gate = RateGate(1, 0.0)
        async with gate.slot_async():
            task = asyncio.create_task(gate.run_async(_noop, cancel_token=token))
            await asyncio.sleep(0.05)
            token.cancel()
            with pytest.raises(OperationCancelledError):
                await task
            assert gate.available == 0
            assert len(gate._pool._waiters) == 0
        assert gate.available == 1
        assert gate.released == 1

    @pytest.mark.asyncio
    async def test_token_cancel_during_window_wait(self, token):
        gate = RateGate(1, 5.0)
        await gate.run_async(_noop)

        called = []

        async def action():
            called.append(1)

        token.cancel_after(0.1)
        start = time.monotonic()
        with pytest.raises(OperationCancelledError):
            await gate.run_async(action, cancel_token=token)

        assert time.monotonic() - start < 1.0
        assert called == []
        assert gate.admitted == 1
        assert gate.released == 2
        assert gate.available == 1

    @pytest.mark.asyncio
    async def test_task_cancel_while_waiting_for_slot(self):
        gate = RateGate(1, 0.0)
        async with gate.slot_async():
            task = asyncio.create_task(gate.run_async(_noop))
            await asyncio.sleep(0.05)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            assert len(gate._pool._waiters) == 0
        assert gate.available == 1
        assert gate.admitted == 1

    @pytest.mark.asyncio
    async def test_task_cancel_during_window_wait_releases(self):
        gate = RateGate(1, 5.0)
        await gate.run_async(_noop)

        task = asyncio.create_task(gate.run_async(_noop))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert gate.released == 2
        assert gate.available == 1
        assert len(gate._history) == 1

    @pytest.mark.asyncio
    async def test_closed_gate_wakes_async_waiter(self):
        gate = RateGate(1, 0.0)
        async with gate:
            async with gate.slot_async():
                task = asyncio.create_task(gate.run_async(_noop))
                await asyncio.sleep(0.05)
                gate.close()
                with pytest.raises(GateClosedError):
                    await task
        assert gate.closed

    @pytest.mark.asyncio
    async def test_grant_and_cancel_together_returns_slot(self, token):
        gate = RateGate(1, 0.0)
        holder = gate.slot()
        holder.__enter__()
        task = asyncio.create_task(gate.run_async(_noop, cancel_token=token))
        await asyncio.sleep(0.02)

        # Slot handed over and token fired before the task gets to run again
        holder.__exit__(None, None, None)
        token.cancel()

        with pytest.raises(OperationCancelledError):
            await task
        assert gate.available == 1
        assert gate.admitted == 1
        assert gate.released == 1
        assert len(gate._history) == 1
