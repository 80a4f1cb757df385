"""
Callers that keep runs moving.

- ``drive_run``: local loop calling the executor until a run finishes
- ``StepChainer``: asks the HTTP process endpoint to execute the next step
- ``recover_stale_runs``: re-triggers runs whose ``updated_at`` went stale
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Awaitable, Callable

import httpx
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_incrementing,
)

from .errors import ChainRequestError, get_error_message
from .models import Phase, StepResult

if TYPE_CHECKING:
    from ..store.sqlite import RunStore
    from .executor import StepExecutor

logger = logging.getLogger(__name__)

POLLING_PHASES = frozenset({Phase.RUN_RESEARCH_POLLING, Phase.HYPOTHESIS_RESEARCH_POLLING})

CRON_SECRET_HEADER = "x-cron-secret"


async def drive_run(
    executor: "StepExecutor",
    run_id: int,
    poll_interval: float = 15.0,
    max_steps: int | None = None,
    on_step: Callable[[StepResult], Any] | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> StepResult:
    """
    Execute steps for a run until it reports no more work.

    Args:
        executor: Step executor
        run_id: Run to drive
        poll_interval: Seconds to wait after a polling step
        max_steps: Stop after this many steps (None for no limit)
        on_step: Callback invoked with every result
        sleep: Sleep function (injectable for tests)

    Returns:
        The last StepResult
    """
    steps = 0
    while True:
        result = await executor.execute_step(run_id)
        steps += 1
        if on_step is not None:
            on_step(result)
        if not result.has_more:
            return result
        if max_steps is not None and steps >= max_steps:
            logger.info(f"Run {run_id}: stopping after {steps} steps")
            return result
        if result.phase in POLLING_PHASES and poll_interval > 0:
            await sleep(poll_interval)


class _RetryableStatus(ChainRequestError):
    """5xx from the process endpoint."""


class StepChainer:
    """
    Re-invokes the process endpoint for a run.

    Connection failures and 5xx responses are retried with a linearly growing
    delay. Redirects and 4xx responses are not retried. A read timeout means
    the request reached the server, which keeps processing, so it counts as
    delivered. When every attempt fails the run is left for the recovery
    sweep.
    """

    def __init__(
        self,
        base_url: str,
        cron_secret: str | None = None,
        max_retries: int = 3,
        timeout: float = 30.0,
        backoff_seconds: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.cron_secret = cron_secret
        self.max_retries = max_retries
        self.timeout = timeout
        self.backoff_seconds = backoff_seconds
        self._transport = transport

    def process_url(self, run_id: int) -> str:
        return f"{self.base_url}/api/runs/{run_id}/process"

    def _headers(self) -> dict[str, str]:
        if not self.cron_secret:
            return {}
        return {CRON_SECRET_HEADER: self.cron_secret}

    async def _post(self, run_id: int) -> httpx.Response:
        async with httpx.AsyncClient(
            timeout=self.timeout,
            follow_redirects=False,
            transport=self._transport,
        ) as client:
            response = await client.post(self.process_url(run_id), headers=self._headers())
        if response.status_code >= 500:
            raise _RetryableStatus(
                f"Process endpoint error {response.status_code}: {response.text[:200]}",
                details={"status_code": response.status_code},
            )
        return response

    async def schedule_next(self, run_id: int) -> bool:
        """
        Request the next step for a run.

        Returns:
            True if the endpoint accepted the request
        """
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type((httpx.ConnectError, httpx.ConnectTimeout, _RetryableStatus)),
                stop=stop_after_attempt(self.max_retries),
                wait=wait_incrementing(start=self.backoff_seconds, increment=self.backoff_seconds),
            ):
                with attempt:
                    logger.debug(
                        f"Run {run_id}: scheduling next step "
                        f"(attempt {attempt.retry_state.attempt_number}/{self.max_retries})"
                    )
                    response = await self._post(run_id)
        except RetryError as e:
            last = e.last_attempt.exception()
            logger.error(f"Run {run_id}: all {self.max_retries} chain attempts failed: {last}")
            return False
        except httpx.ReadTimeout:
            logger.warning(f"Run {run_id}: process request timed out after delivery; assuming it is running")
            return True
        except httpx.HTTPError as e:
            logger.error(f"Run {run_id}: chain request failed: {e}")
            return False

        if response.is_redirect:
            logger.error(
                f"Run {run_id}: process endpoint redirected to {response.headers.get('location')}; not retrying"
            )
            return False
        if response.is_error:
            logger.error(f"Run {run_id}: process endpoint rejected request ({response.status_code})")
            return False

        logger.debug(f"Run {run_id}: next step scheduled")
        return True


@dataclass
class RecoveryResult:
    run_id: int
    status: str
    resumed: bool
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"run_id": self.run_id, "status": self.status, "resumed": self.resumed, "error": self.error}


async def recover_stale_runs(
    store: "RunStore",
    trigger: Callable[[int], Awaitable[bool]],
    stale_after_seconds: int = 300,
    limit: int = 10,
    now: datetime | None = None,
) -> list[RecoveryResult]:
    """
    Re-trigger runs that are pending or running but have not progressed.

    Args:
        store: Run store
        trigger: Coroutine function resuming one run; returns success
        stale_after_seconds: Staleness threshold on updated_at
        limit: Maximum runs handled per sweep
        now: Reference time (default: current UTC time)

    Returns:
        One RecoveryResult per stale run; a failing run does not stop the sweep
    """
    stale = await store.find_stale_runs(stale_after_seconds, limit=limit, now=now)
    logger.info(f"Recovery sweep found {len(stale)} stale runs")

    results = []
    for run in stale:
        try:
            resumed = await trigger(run.id)
            results.append(
                RecoveryResult(
                    run_id=run.id,
                    status=run.status,
                    resumed=resumed,
                    error=None if resumed else "Trigger was not accepted",
                )
            )
        except Exception as e:
            logger.error(f"Failed to resume run {run.id}: {e}")
            results.append(
                RecoveryResult(run_id=run.id, status=run.status, resumed=False, error=get_error_message(e))
            )
    return results
