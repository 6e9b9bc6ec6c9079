"""
cryptotourney/executor.py - One logical request against the tournament API.

Each call gets a fixed per-attempt timeout and up to `max_retries` retries on
timeouts, transport failures and 5xx responses, with a constant delay between
attempts (no backoff, no jitter). 4xx responses are not retried.

When the budget runs out, exactly one error is raised:

    RemoteRejection   the last response carried {"message": ...}
    RequestTimeout    the last attempt timed out
    ServerError       the last response was an error status without a message
    Unreachable       no response at all

Usage:
    async with RequestExecutor("http://localhost:3000") as executor:
        body = await executor.execute("/api/tournaments")
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable

import httpx
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_fixed

from .config import ApiConfig
from .errors import RemoteRejection, RequestError, RequestTimeout, ServerError, Unreachable

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY = 1.0

# Sent on every request; the bypass header lets requests through ngrok-style tunnels
DEFAULT_HEADERS = {
    "Content-Type": "application/json",
    "ngrok-skip-browser-warning": "true",
}


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return isinstance(exc, httpx.TransportError)


def _error_message(response: httpx.Response) -> str | None:
    """Pull `message` out of a structured error body, if there is one."""
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict) and isinstance(body.get("message"), str) and body["message"]:
        return body["message"]
    return None


def translate_error(exc: BaseException, endpoint: str, attempts: int) -> RequestError | None:
    """Map an httpx failure onto the executor's error kinds. None if unknown."""
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        message = _error_message(exc.response)
        if message:
            return RemoteRejection(message, status_code=status, endpoint=endpoint, attempts=attempts)
        return ServerError(
            "Server error - please try again later",
            status_code=status, endpoint=endpoint, attempts=attempts,
        )
    if isinstance(exc, httpx.TimeoutException):
        return RequestTimeout(
            "Server connection timeout - please try again", endpoint=endpoint, attempts=attempts,
        )
    if isinstance(exc, httpx.TransportError):
        return Unreachable(
            "Unable to reach server - please check your connection",
            endpoint=endpoint, attempts=attempts,
        )
    return None


class RequestExecutor:
    """Retrying JSON client for the tournament backend.

    Stateless apart from the pooled connection, so independent requests can
    run concurrently; a retrying call only delays its own caller.

    Args:
        base_url: Backend root, e.g. "http://localhost:3000".
        timeout: Seconds per attempt.
        max_retries: Retries after the first attempt (3 -> 4 attempts total).
        retry_delay: Constant seconds between attempts.
        transport: Optional httpx transport (tests use httpx.MockTransport).
        sleep: Coroutine used to wait between attempts.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = DEFAULT_TIMEOUT,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._sleep = sleep
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout),
            headers=DEFAULT_HEADERS,
            transport=transport,
        )

    @classmethod
    def from_config(cls, api: ApiConfig, **kwargs) -> "RequestExecutor":
        return cls(
            api.base_url,
            timeout=api.timeout,
            max_retries=api.max_retries,
            retry_delay=api.retry_delay,
            **kwargs,
        )

    async def __aenter__(self) -> "RequestExecutor":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def execute(self, endpoint: str, method: str = "GET", body: Any = None) -> Any:
        """Issue one logical request and return the parsed JSON body.

        Returns None when the response has no JSON body.

        Raises:
            RequestError subclass once retries are exhausted (or at once for 4xx).
        """
        attempts = 0
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_fixed(self.retry_delay),
            retry=retry_if_exception(_is_retryable),
            sleep=self._sleep,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    return await self._send(endpoint, method, body, attempts)
        except httpx.HTTPError as e:
            error = translate_error(e, endpoint, attempts)
            if error is None:
                raise
            raise error from e

    async def _send(self, endpoint: str, method: str, body: Any, attempt: int) -> Any:
        try:
            response = await self._client.request(method.upper(), endpoint, json=body)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"API request attempt {attempt} failed for {endpoint}: {e}")
            raise

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            logger.warning(f"Non-JSON response from {endpoint}")
            return None
