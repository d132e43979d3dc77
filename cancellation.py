"""
Cooperative cancellation signal for rate-gated work.

A CancellationToken is created by the caller and handed to the gate (and
optionally to the wrapped action). Firing it wakes any thread or asyncio
task currently blocked on the token, wherever it is waiting.
"""

import asyncio
import logging
import threading
from collections.abc import Callable

logger = logging.getLogger(__name__)


class OperationCancelledError(Exception):
    """Raised when a cancellation token fires while a caller is waiting."""


class CancellationToken:
    """Thread-safe, one-shot cancellation flag with wake-up callbacks.

    Usage::

        token = CancellationToken()
        token.cancel_after(5.0)
        gate.run_sync(do_work, cancel_token=token)

    Callbacks registered with register() run exactly once, on the thread
    that calls cancel(). They must be quick and must not block.
    """

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: dict[int, Callable[[], None]] = {}
        self._next_id = 0
        self._timer: threading.Timer | None = None

    def __repr__(self) -> str:
        return f"<CancellationToken cancelled={self.cancelled}>"

    @property
    def cancelled(self) -> bool:
        """True once cancel() has been called."""
        return self._event.is_set()

    def cancel(self) -> None:
        """Fire the token. Later calls are no-ops."""
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = list(self._callbacks.values())
            self._callbacks.clear()
            timer, self._timer = self._timer, None

        if timer is not None:
            timer.cancel()

        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Cancellation callback failed")

    def cancel_after(self, delay: float) -> None:
        """Schedule cancel() to fire after `delay` seconds."""
        timer = threading.Timer(delay, self.cancel)
        timer.daemon = True
        with self._lock:
            if self._event.is_set():
                return
            if self._timer is not None:
                self._timer.cancel()
            self._timer = timer
        timer.start()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelledError("Operation was cancelled")

    def register(self, callback: Callable[[], None]) -> int | None:
        """Run `callback` when the token fires.

        If the token has already fired the callback runs immediately and
        None is returned. Otherwise returns a registration id for unregister().
        """
        with self._lock:
            if not self._event.is_set():
                registration = self._next_id
                self._next_id += 1
                self._callbacks[registration] = callback
                return registration
        callback()
        return None

    def unregister(self, registration: int | None) -> None:
        if registration is None:
            return
        with self._lock:
            self._callbacks.pop(registration, None)

    def wait(self, timeout: float | None = None) -> bool:
        """Block the calling thread until cancelled or `timeout` elapses.

        Returns True if the token fired, False on timeout.
        """
        return self._event.wait(timeout)

    async def wait_async(self, timeout: float | None = None) -> bool:
        """Suspend the calling task until cancelled or `timeout` elapses.

        Returns True if the token fired, False on timeout. The event loop
        is never blocked; cancel() may be called from any thread.
        """
        if self._event.is_set():
            return True

        loop = asyncio.get_running_loop()
        fired = loop.create_future()

        def _resolve() -> None:
            if not fired.done():
                fired.set_result(True)

        registration = self.register(lambda: loop.call_soon_threadsafe(_resolve))
        try:
            await asyncio.wait_for(fired, timeout)
            return True
        except asyncio.TimeoutError:
            return False
        finally:
            self.unregister(registration)
