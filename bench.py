"""
Stress harness for RateGate.

Drives many concurrent callers (threads or asyncio tasks) through one gate
for a fixed duration and records when each admission happened, so the
rolling-window bound can be checked after the fact.
"""

import asyncio
import logging
import math
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from cancellation import CancellationToken, OperationCancelledError
from rate_gate import RateGate

logger = logging.getLogger(__name__)


def max_admissions_in_window(times: list[float], span: float) -> int:
    """Largest number of admissions inside any half-open window [t, t + span)."""
    ordered = sorted(times)
    best = 0
    left = 0
    for right, t in enumerate(ordered):
        while ordered[left] <= t - span:
            left += 1
        best = max(best, right - left + 1)
    return best


@dataclass
class BenchResult:
    """Admission timeline of one bench run. Offsets are seconds from start."""
    max_count: int
    reset_span: float
    duration: float
    callers: int
    mode: str
    admissions: list[float] = field(default_factory=list)
    cancelled: int = 0
    elapsed_seconds: float = 0.0

    @property
    def admission_count(self) -> int:
        return len(self.admissions)

    @property
    def expected_admissions(self) -> int | None:
        """Admissions the gate should allow over `duration`; None when unbounded."""
        if self.reset_span <= 0:
            return None
        return self.max_count * math.ceil(self.duration / self.reset_span)

    @property
    def max_in_window(self) -> int:
        if self.reset_span <= 0:
            return self.admission_count
        return max_admissions_in_window(self.admissions, self.reset_span)

    @property
    def within_limit(self) -> bool:
        return self.reset_span <= 0 or self.max_in_window <= self.max_count


def run_thread_bench(
    gate: RateGate,
    callers: int,
    duration: float,
    on_admission: Callable[[int], None] | None = None,
) -> BenchResult:
    """Hammer `gate` from `callers` threads for `duration` seconds."""
    result = BenchResult(gate.max_count, gate.reset_span, duration, callers, 'thread')
    token = CancellationToken()
    lock = threading.Lock()
    start = time.monotonic()

    def record() -> None:
        with lock:
            result.admissions.append(time.monotonic() - start)
            count = len(result.admissions)
        if on_admission:
            on_admission(count)

    def worker() -> None:
        while not token.cancelled:
            try:
                gate.run_sync(record, cancel_token=token)
            except OperationCancelledError:
                with lock:
                    result.cancelled += 1
                return

    threads = [
        threading.Thread(target=worker, name=f"bench-{i}", daemon=True)
        for i in range(callers)
    ]
    logger.info(f"Thread bench: {callers} callers, {duration}s against {gate!r}")
    token.cancel_after(duration)
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    result.elapsed_seconds = time.monotonic() - start
    logger.info(f"Thread bench complete: {result.admission_count} admissions, "
                f"{result.cancelled} cancelled, {result.elapsed_seconds:.2f}s")
    return result


async def run_async_bench(
    gate: RateGate,
    callers: int,
    duration: float,
    on_admission: Callable[[int], None] | None = None,
) -> BenchResult:
    """Hammer `gate` from `callers` asyncio tasks for `duration` seconds."""
    result = BenchResult(gate.max_count, gate.reset_span, duration, callers, 'async')
    token = CancellationToken()
    start = time.monotonic()

    async def record() -> None:
        result.admissions.append(time.monotonic() - start)
        if on_admission:
            on_admission(len(result.admissions))

    async def worker() -> None:
        while not token.cancelled:
            try:
                await gate.run_async(record, cancel_token=token)
            except OperationCancelledError:
                result.cancelled += 1
                return
            # Let other tasks reach the gate between admissions
            await asyncio.sleep(0)

    logger.info(f"Async bench: {callers} callers, {duration}s against {gate!r}")
    token.cancel_after(duration)
    await asyncio.gather(*(worker() for _ in range(callers)))

    result.elapsed_seconds = time.monotonic() - start
    logger.info(f"Async bench complete: {result.admission_count} admissions, "
                f"{result.cancelled} cancelled, {result.elapsed_seconds:.2f}s")
    return result
