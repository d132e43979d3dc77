"""
Rate-gated HTTP client.

ThrottledClient wraps an aiohttp session so that every request attempt,
retries included, passes through a RateGate. Use it for REST APIs with a
"max N calls per T seconds" policy.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import aiohttp

from cancellation import CancellationToken, OperationCancelledError
from config import HttpConfig
from rate_gate import RateGate

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = frozenset({429, 500, 502, 503, 504})


class HttpRequestError(Exception):
    """Raised when a request fails for good (non-retryable status or retries exhausted)."""

    def __init__(self, status: int, message: str, url: str):
        super().__init__(f"{status or 'no response'} for {url}: {message}")
        self.status = status
        self.message = message
        self.url = url


@dataclass
class RequestStats:
    """Running counters for one client."""
    requests: int = 0
    retries: int = 0
    errors: int = 0
    elapsed_seconds: float = 0.0


@dataclass
class _Request:
    method: str
    url: str
    kwargs: dict[str, Any] = field(default_factory=dict)


@dataclass
class _Response:
    status: int
    data: Any = None
    error: str = ""
    retry_after: float | None = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


def _parse_retry_after(value: str | None) -> float | None:
    """Retry-After in seconds; HTTP-date values fall back to normal backoff."""
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


class ThrottledClient:
    """JSON HTTP client whose requests are admitted by a RateGate.

    Use as an async context manager to ensure the session is properly closed::

        gate = RateGate(max_count=10, reset_span=1.0)
        async with ThrottledClient(config.http, gate) as client:
            data = await client.get_json('/files/list', params={'path': '/'})
    """

    def __init__(self, config: HttpConfig, gate: RateGate | None = None):
        self._config = config
        self._owns_gate = gate is None
        self._gate = gate or RateGate(5, 1.0, name='http')
        self._max_retries = config.max_retries
        self._retry_delay = config.retry_delay
        self._retry_backoff = config.retry_backoff_factor
        self._timeout = aiohttp.ClientTimeout(total=config.timeout_seconds)
        self._headers = {
            'accept': 'application/json',
            'User-Agent': config.format_user_agent(),
        }
        self._session: aiohttp.ClientSession | None = None
        self.stats = RequestStats()

    async def __aenter__(self) -> 'ThrottledClient':
        self._session = aiohttp.ClientSession()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._session:
            await self._session.close()
            self._session = None
        if self._owns_gate:
            self._gate.close()

    @property
    def gate(self) -> RateGate:
        return self._gate

    def _url(self, path: str) -> str:
        if path.startswith(('http://', 'https://')) or not self._config.base_url:
            return path
        return self._config.base_url.rstrip('/') + '/' + path.lstrip('/')

    async def get_json(
        self,
        path: str,
        params: dict[str, Any] | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> Any:
        """GET `path` and return the decoded JSON body."""
        request = _Request('GET', self._url(path), {'params': params} if params else {})
        return await self._request_json(request, cancel_token)

    async def post_json(
        self,
        path: str,
        payload: Any,
        cancel_token: CancellationToken | None = None,
    ) -> Any:
        """POST `payload` as JSON to `path` and return the decoded JSON body."""
        request = _Request('POST', self._url(path), {'json': payload})
        return await self._request_json(request, cancel_token)

    async def _send(self, request: _Request, token: CancellationToken) -> _Response:
        """One attempt; runs while holding a gate slot."""
        token.raise_if_cancelled()
        async with self._session.request(
            request.method,
            request.url,
            headers=self._headers,
            timeout=self._timeout,
            **request.kwargs,
        ) as response:
            code = response.status
            logger.debug(f"{request.method} {request.url}: {code}")

            if 200 <= code < 300:
                data = await response.json(content_type=None)
                return _Response(code, data=data)

            try:
                body = await response.json(content_type=None)
                error_msg = body.get('error', 'Unknown error') if isinstance(body, dict) else str(body)
            except Exception:
                error_msg = f'HTTP {code}'

            return _Response(
                code,
                error=error_msg,
                retry_after=_parse_retry_after(response.headers.get('Retry-After')),
            )

    async def _request_json(self, request: _Request, cancel_token: CancellationToken | None) -> Any:
        if self._session is None:
            raise RuntimeError("ThrottledClient must be used as an async context manager")

        token = cancel_token if cancel_token is not None else CancellationToken()
        start = datetime.now()
        retries = 0

        try:
            while True:
                self.stats.requests += 1
                try:
                    response = await self._gate.run_async_with_token(self._send, request, token)
                except asyncio.TimeoutError:
                    logger.error(f"Timeout for {request.method} {request.url}")
                    response = _Response(0, error='timeout')
                except aiohttp.ClientError as e:
                    logger.error(f"Connection error for {request.method} {request.url}: {e}")
                    response = _Response(0, error=str(e))

                if response.ok:
                    return response.data

                self.stats.errors += 1
                retryable = response.status == 0 or response.status in RETRYABLE_STATUSES
                if not retryable:
                    raise HttpRequestError(response.status, response.error, request.url)
                if retries >= self._max_retries:
                    logger.error(f"Max retries reached for {request.url}. Giving up.")
                    raise HttpRequestError(response.status, response.error, request.url)

                if response.status == 429 and response.retry_after is not None:
                    delay = response.retry_after
                else:
                    delay = self._retry_delay * (self._retry_backoff ** retries)
                retries += 1
                self.stats.retries += 1
                logger.warning(f"{request.url}: {response.error}. Retry {retries}/{self._max_retries} in {delay:.1f}s")

                if await token.wait_async(delay):
                    raise OperationCancelledError("Cancelled while backing off")
        finally:
            self.stats.elapsed_seconds += (datetime.now() - start).total_seconds()
