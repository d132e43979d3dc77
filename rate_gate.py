"""
Rolling-window rate gate.

Admits at most `max_count` operations per rolling `reset_span` seconds and
never lets more than `max_count` run at once. Works for both threads
(run_sync) and asyncio tasks (run_async), which may share one gate.

Each admission takes a slot from a fixed pool and pops the oldest of the
last `max_count` release timestamps; if that release happened less than
`reset_span` ago, the caller sleeps out the remainder of the window.
Leaving the gate records a fresh timestamp and returns the slot.
"""

import asyncio
import logging
import math
import threading
import time
from collections import deque
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager, contextmanager
from datetime import timedelta
from typing import Any, TypeVar

from cancellation import CancellationToken, OperationCancelledError

logger = logging.getLogger(__name__)

T = TypeVar("T")
A = TypeVar("A")

# Primes the history so the first max_count admissions never wait
SENTINEL_TIMESTAMP = float("-inf")

# Shortest window sleep; guarantees the window has strictly elapsed on wake
MIN_DELAY = 0.001

__all__ = [
    "RateGate",
    "RateGateError",
    "GateConfigurationError",
    "GateClosedError",
    "OperationCancelledError",
    "CancellationToken",
]


class RateGateError(Exception):
    """Base class for rate gate errors."""


class GateConfigurationError(RateGateError, ValueError):
    """Raised when a gate is constructed with invalid arguments."""


class GateClosedError(RateGateError):
    """Raised when acquiring from a gate that has been closed."""


class _Waiter:
    """A caller parked on the admission pool.

    Sync waiters block on a threading.Event; async waiters await a future
    on their own event loop. `granted` is only written under the pool lock.
    """

    __slots__ = ("granted", "event", "loop", "future")

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None):
        self.granted = False
        self.loop = loop
        if loop is None:
            self.event = threading.Event()
            self.future = None
        else:
            self.event = None
            self.future = loop.create_future()

    def wake(self) -> None:
        """Wake the waiter. Safe to call from any thread."""
        if self.loop is None:
            self.event.set()
        else:
            self.loop.call_soon_threadsafe(self._resolve)

    def _resolve(self) -> None:
        if not self.future.done():
            self.future.set_result(None)


class _AdmissionPool:
    """Counting gate of fixed capacity shared by threads and asyncio tasks.

    Released slots are handed straight to the oldest waiter, so waiters are
    served roughly in arrival order.
    """

    def __init__(self, capacity: int):
        self._capacity = capacity
        self._free = capacity
        self._waiters: deque[_Waiter] = deque()
        self._lock = threading.Lock()
        self._closed = False

    @property
    def available(self) -> int:
        return self._free

    @property
    def closed(self) -> bool:
        return self._closed

    def _try_take_locked(self) -> bool:
        if self._closed:
            raise GateClosedError("Rate gate is closed")
        if self._free > 0 and not self._waiters:
            self._free -= 1
            return True
        return False

    def take(self, token: CancellationToken) -> None:
        """Block the calling thread until a slot is ours."""
        token.raise_if_cancelled()
        with self._lock:
            if self._try_take_locked():
                return
            waiter = _Waiter()
            self._waiters.append(waiter)

        registration = token.register(waiter.wake)
        try:
            waiter.event.wait()
        except BaseException:
            self._abandon(waiter)
            raise
        finally:
            token.unregister(registration)
        self._settle(waiter, token)

    async def take_async(self, token: CancellationToken) -> None:
        """Suspend the calling task until a slot is ours."""
        token.raise_if_cancelled()
        loop = asyncio.get_running_loop()
        with self._lock:
            if self._try_take_locked():
                return
            waiter = _Waiter(loop)
            self._waiters.append(waiter)

        registration = token.register(waiter.wake)
        try:
            await waiter.future
        except asyncio.CancelledError:
            self._abandon(waiter)
            raise
        finally:
            token.unregister(registration)
        self._settle(waiter, token)

    def _abandon(self, waiter: _Waiter) -> None:
        """Drop a waiter whose caller went away, passing on any slot it was granted."""
        with self._lock:
            granted = waiter.granted
            if not granted and waiter in self._waiters:
                self._waiters.remove(waiter)
        if granted:
            self.give()

    def _settle(self, waiter: _Waiter, token: CancellationToken) -> None:
        """Keep the granted slot, or raise for a cancelled or closed wake-up."""
        with self._lock:
            granted = waiter.granted
            if not granted and waiter in self._waiters:
                self._waiters.remove(waiter)
            closed = self._closed

        if not granted:
            if closed and not token.cancelled:
                raise GateClosedError("Rate gate was closed while waiting")
            raise OperationCancelledError("Cancelled while waiting for a slot")

        # Granted and cancelled at the same moment: the slot was never used
        if token.cancelled:
            self.give()
            raise OperationCancelledError("Cancelled while waiting for a slot")

    def give(self) -> None:
        """Return a slot, handing it to the oldest waiter that can still be woken."""
        while True:
            with self._lock:
                if self._waiters:
                    waiter = self._waiters.popleft()
                    waiter.granted = True
                else:
                    if self._free >= self._capacity:
                        raise ValueError("Admission pool released too many times")
                    self._free += 1
                    return
            try:
                waiter.wake()
                return
            except RuntimeError:
                # Its event loop is closed; nobody will ever claim the slot
                logger.warning("Skipping waiter whose event loop is closed")

    def close(self) -> bool:
        """Refuse new takers and wake every parked waiter.

        Returns False if the pool was already closed.
        """
        with self._lock:
            if self._closed:
                return False
            self._closed = True
            waiters = list(self._waiters)
            self._waiters.clear()
        for waiter in waiters:
            try:
                waiter.wake()
            except RuntimeError:
                logger.warning("Skipping waiter whose event loop is closed")
        return True


class _ReleaseHistory:
    """The last `size` release timestamps, oldest first.

    One pop per admission is always paired with one push per release, so
    the length returns to `size` whenever no admission is in flight.
    """

    def __init__(self, size: int):
        self._times: deque[float] = deque([SENTINEL_TIMESTAMP] * size)
        self._lock = threading.Lock()
        self._pushes = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._times)

    @property
    def pushes(self) -> int:
        return self._pushes

    def pop_oldest(self) -> float:
        with self._lock:
            return self._times.popleft()

    def push_newest(self, timestamp: float) -> None:
        with self._lock:
            self._times.append(timestamp)
            self._pushes += 1


class RateGate:
    """Allows at most `max_count` admissions during any `reset_span` window.

    Usage::

        gate = RateGate(max_count=10, reset_span=1.0)

        result = gate.run_sync(call_api)
        result = await gate.run_async(fetch_page, 3)

        with gate.slot():
            call_api()

    The gate holds no threads of its own. close() wakes blocked waiters with
    GateClosedError; callers already inside the gate may still leave it
    normally after close().
    """

    def __init__(
        self,
        max_count: int,
        reset_span: float | timedelta,
        *,
        clock: Callable[[], float] = time.monotonic,
        name: str | None = None,
    ):
        if isinstance(max_count, bool) or not isinstance(max_count, int):
            raise GateConfigurationError(f"max_count must be an int, got {max_count!r}")
        if max_count <= 0:
            raise GateConfigurationError(f"max_count must be positive, got {max_count}")

        if isinstance(reset_span, timedelta):
            reset_span = reset_span.total_seconds()
        try:
            span = float(reset_span)
        except (TypeError, ValueError):
            raise GateConfigurationError(f"reset_span must be a number of seconds, got {reset_span!r}") from None
        if span < 0 or not math.isfinite(span):
            raise GateConfigurationError(f"reset_span must be finite and non-negative, got {span}")

        self._max_count = max_count
        self._reset_span = span
        self._clock = clock
        self._name = name or f"gate-{id(self):x}"
        self._pool = _AdmissionPool(max_count)
        self._history = _ReleaseHistory(max_count)
        self._admitted = 0
        self._admitted_lock = threading.Lock()

    def __repr__(self) -> str:
        return (f"<RateGate {self._name} max_count={self._max_count} "
                f"reset_span={self._reset_span}s available={self.available}>")

    @property
    def name(self) -> str:
        return self._name

    @property
    def max_count(self) -> int:
        return self._max_count

    @property
    def reset_span(self) -> float:
        """Window length in seconds."""
        return self._reset_span

    @property
    def available(self) -> int:
        """Free slots right now."""
        return self._pool.available

    @property
    def closed(self) -> bool:
        return self._pool.closed

    @property
    def admitted(self) -> int:
        """Callers that got through the gate."""
        return self._admitted

    @property
    def released(self) -> int:
        """Slots returned, including those returned after a cancelled window wait."""
        return self._history.pushes

    # -----------------------------------------------
    # Acquire / release
    # -----------------------------------------------

    def _delay_for(self, oldest_release: float) -> float:
        """Seconds to sleep before `oldest_release` falls out of the window."""
        window_end = oldest_release + self._reset_span
        now = self._clock()
        if now >= window_end:
            return 0.0
        # Round up to the millisecond so we never wake just inside the window
        return max(math.ceil((window_end - now) * 1000) / 1000, MIN_DELAY)

    def _enter(self, token: CancellationToken) -> None:
        self._pool.take(token)
        delay = self._delay_for(self._history.pop_oldest())
        if delay:
            logger.debug(f"{self._name}: window full, sleeping {delay:.3f}s")
            if token.wait(delay):
                self._exit()
                raise OperationCancelledError("Cancelled while waiting for the rate window")
        self._record_admission()

    async def _enter_async(self, token: CancellationToken) -> None:
        await self._pool.take_async(token)
        delay = self._delay_for(self._history.pop_oldest())
        if delay:
            logger.debug(f"{self._name}: window full, sleeping {delay:.3f}s")
            try:
                cancelled = await token.wait_async(delay)
            except asyncio.CancelledError:
                self._exit()
                raise
            if cancelled:
                self._exit()
                raise OperationCancelledError("Cancelled while waiting for the rate window")
        self._record_admission()

    def _record_admission(self) -> None:
        with self._admitted_lock:
            self._admitted += 1

    def _exit(self) -> None:
        self._history.push_newest(self._clock())
        self._pool.give()

    # -----------------------------------------------
    # Scoped admission
    # -----------------------------------------------

    @contextmanager
    def slot(self, cancel_token: CancellationToken | None = None):
        """Hold one admission for the duration of the with-block (threads)."""
        token = cancel_token if cancel_token is not None else CancellationToken()
        self._enter(token)
        try:
            yield self
        finally:
            self._exit()

    @asynccontextmanager
    async def slot_async(self, cancel_token: CancellationToken | None = None):
        """Hold one admission for the duration of the async with-block."""
        token = cancel_token if cancel_token is not None else CancellationToken()
        await self._enter_async(token)
        try:
            yield self
        finally:
            self._exit()

    # -----------------------------------------------
    # Guarded execution
    # -----------------------------------------------

    def run_sync(self, action: Callable[[], T], cancel_token: CancellationToken | None = None) -> T:
        """Run `action` inside the gate, blocking the calling thread to enter.

        Errors from `action` propagate unchanged after the slot is released.
        Do not call this from a running event loop; use run_async there.
        """
        with self.slot(cancel_token):
            return action()

    async def run_async(
        self,
        action: Callable[..., Awaitable[T]],
        *args: Any,
        cancel_token: CancellationToken | None = None,
    ) -> T:
        """Await `action(*args)` inside the gate.

        The slot stays held until the awaitable finishes.
        """
        async with self.slot_async(cancel_token):
            return await action(*args)

    async def run_async_with_token(
        self,
        action: Callable[[A, CancellationToken], Awaitable[T]],
        arg: A,
        cancel_token: CancellationToken | None = None,
    ) -> T:
        """Await `action(arg, token)` inside the gate and return its result.

        The action receives the same token the gate observes, so it can stop
        early when the caller cancels.
        """
        token = cancel_token if cancel_token is not None else CancellationToken()
        async with self.slot_async(token):
            return await action(arg, token)

    # -----------------------------------------------
    # Teardown
    # -----------------------------------------------

    def close(self) -> None:
        """Close the gate. Safe to call more than once."""
        if self._pool.close():
            logger.info(f"{self._name}: closed after {self._admitted} admissions")

    def __enter__(self) -> 'RateGate':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    async def __aenter__(self) -> 'RateGate':
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
