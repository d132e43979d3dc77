"""Shared fixtures for rate gate tests."""

import sys
import threading
import time
from pathlib import Path

import pytest

# Add project root to path so we can import modules directly
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from cancellation import CancellationToken  # noqa: E402
from config import HttpConfig  # noqa: E402


@pytest.fixture
def token():
    return CancellationToken()


@pytest.fixture
def fast_http_config():
    """HttpConfig with no backoff delay so retry tests run instantly."""
    return HttpConfig(
        base_url="https://api.example.test/2",
        max_retries=2,
        retry_delay=0.0,
        retry_backoff_factor=1.0,
    )


@pytest.fixture
def start_thread():
    """Start a daemon thread running `target`; the fixture joins them on teardown."""
    threads = []

    def _start(target, *args):
        thread = threading.Thread(target=target, args=args, daemon=True)
        thread.start()
        threads.append(thread)
        return thread

    yield _start
    for thread in threads:
        thread.join(timeout=5)


@pytest.fixture
def wait_until():
    """Poll a predicate until it is true or the timeout elapses."""

    def _wait(predicate, timeout: float = 2.0) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(0.005)
        return predicate()

    return _wait
