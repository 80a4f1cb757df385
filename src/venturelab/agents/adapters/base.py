"""
Base adapter utilities shared across AI backends.

Provides:
- Retry logic with exponential backoff
- Minimum-interval throttle for research starts
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, TypeVar

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ...pipeline.errors import RateLimitError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (httpx.TransportError, RateLimitError)


class AgentAuthenticationError(Exception):
    """Raised when a backend rejects the configured API key."""

    def __init__(self, provider: str, api_key_env: str):
        self.provider = provider
        self.api_key_env = api_key_env
        super().__init__(
            f"{provider} authentication failed. "
            f"Check that {api_key_env} is set to a valid API key."
        )


class RequestThrottle:
    """
    Enforces a minimum interval between calls across all tasks sharing it.

    Usage:
        throttle = RequestThrottle(6.0)
        await throttle.wait()  # returns immediately the first time
    """

    def __init__(
        self,
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._last: float | None = None
        self._lock = asyncio.Lock()

    async def wait(self) -> float:
        """
        Block until the interval since the previous call has elapsed.

        Returns:
            Seconds spent waiting
        """
        async with self._lock:
            waited = 0.0
            if self._last is not None:
                remaining = self.min_interval - (self._clock() - self._last)
                if remaining > 0:
                    logger.info(f"Research rate limit: waiting {remaining:.1f}s")
                    await self._sleep(remaining)
                    waited = remaining
            self._last = self._clock()
            return waited


class BaseAdapter:
    """Base class with shared adapter utilities."""

    def __init__(self, model: str, api_key: str | None = None, max_retries: int = 3):
        """
        Initialize base adapter.

        Args:
            model: Model identifier
            api_key: API key for authentication
            max_retries: Attempts per request for transient failures
        """
        self.model = model
        self.api_key = api_key
        self.max_retries = max_retries

    async def _with_retry(
        self,
        func: Callable[..., Awaitable[T]],
        *args: Any,
        **kwargs: Any,
    ) -> T:
        """
        Execute an async function, retrying transport errors and rate limits.

        Raises:
            Last exception if all retries fail
        """
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(RETRYABLE_ERRORS),
            stop=stop_after_attempt(self.max_retries),
            wait=wait_exponential(multiplier=1, min=2, max=10),
            reraise=True,
        ):
            with attempt:
                logger.debug(f"Attempt {attempt.retry_state.attempt_number}/{self.max_retries}")
                return await func(*args, **kwargs)

        raise RuntimeError("Retry logic failed unexpectedly")
