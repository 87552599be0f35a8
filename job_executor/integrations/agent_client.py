"""Async HTTP client for remote agents.

Wraps the agent endpoint contract: job calls with retry and exponential
backoff, health probes, cancellation and load probes. Public methods never
raise on remote failures; they return failure values instead.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from ..config import AgentClientSettings
from ..exceptions import RemoteCallFailure
from ..schemas.models import (
    AgentLoad,
    AgentResponse,
    HealthStatus,
    JobPayload,
    RetryPolicy,
)

logger = logging.getLogger(__name__)

RETRYABLE_TRANSPORT_ERRORS = (
    httpx.ConnectError,
    httpx.ReadError,
    httpx.WriteError,
    httpx.RemoteProtocolError,
    httpx.TimeoutException,
)

# InvalidURL is not an HTTPError; a malformed agent address raises it.
REQUEST_ERRORS = (httpx.HTTPError, httpx.InvalidURL)


def is_retryable(error: BaseException) -> bool:
    """Default retry predicate: refused, reset, timed out or a 5xx reply."""
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code >= 500
    return isinstance(error, RETRYABLE_TRANSPORT_ERRORS)


class AgentClient:
    """Client for the remote agent HTTP contract.

    The underlying ``httpx.AsyncClient`` is created lazily unless one is
    injected. Use as an async context manager or call ``aclose``.
    """

    def __init__(
        self,
        settings: AgentClientSettings | None = None,
        http_client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """Initialize the client.

        Args:
            settings: Timeouts and retry defaults. Loaded from the
                environment when omitted.
            http_client: Pre-built client, e.g. one with a mock transport.
            sleep: Coroutine used to wait between retries.

        """
        self.settings = settings or AgentClientSettings()
        self._client = http_client
        self._owns_client = http_client is None
        self._sleep = sleep

    def default_policy(self) -> RetryPolicy:
        """Retry policy derived from settings."""
        return RetryPolicy(
            max_retries=self.settings.max_retries,
            base_delay_seconds=self.settings.base_retry_delay,
            backoff_multiplier=self.settings.backoff_multiplier,
        )

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                headers={
                    "Content-Type": "application/json",
                    "User-Agent": self.settings.user_agent,
                },
                timeout=self.settings.request_timeout_seconds,
            )
        return self._client

    async def call(
        self,
        address: str,
        payload: JobPayload,
        retry_policy: RetryPolicy | None = None,
    ) -> AgentResponse:
        """Send a job to an agent, retrying transient failures.

        Returns:
            A successful response carrying the agent's ``text`` output, or a
            failed response with the last error and the number of attempts.

        """
        policy = retry_policy or self.default_policy()
        should_retry = policy.retry_predicate or is_retryable
        last_error: RemoteCallFailure | None = None
        attempts = 0

        for attempt in range(policy.max_retries + 1):
            attempts = attempt + 1
            try:
                text = await self._call_once(address, payload)
                logger.info(
                    f"Agent {address} answered job {payload.job_id} "
                    f"after {attempts} attempt(s)"
                )
                return AgentResponse(
                    success=True,
                    job_id=payload.job_id,
                    message=text,
                    attempts=attempts,
                )
            except RemoteCallFailure as e:
                last_error = e
                cause = e.cause or e
                if attempt >= policy.max_retries or not should_retry(cause):
                    break
                delay = policy.delay_for(attempt)
                logger.warning(
                    f"Call to {address} failed (attempt {attempts}/"
                    f"{policy.max_retries + 1}): {e}. Retrying in {delay:.2f}s"
                )
                await self._sleep(delay)

        logger.error(f"Agent call for job {payload.job_id} gave up: {last_error}")
        return AgentResponse(
            success=False,
            job_id=payload.job_id,
            error=str(last_error) if last_error else "Unknown error",
            status_code=_status_code(last_error),
            attempts=attempts,
        )

    async def _call_once(self, address: str, payload: JobPayload) -> str:
        """Perform a single call attempt.

        Raises:
            RemoteCallFailure: On transport errors, non-2xx replies or a
                malformed body

        """
        client = await self._get_client()
        body = {
            "messages": [{"content": payload.message(), "role": "user"}],
            "job": payload.model_dump(mode="json"),
        }
        try:
            response = await client.post(
                address,
                json=body,
                timeout=self.settings.request_timeout_seconds,
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise RemoteCallFailure(
                address, f"status {e.response.status_code}", cause=e
            ) from e
        except REQUEST_ERRORS as e:
            raise RemoteCallFailure(address, f"{type(e).__name__}: {e}", cause=e) from e
        except ValueError as e:
            raise RemoteCallFailure(address, "malformed response body", cause=e) from e

        if not isinstance(data, dict):
            raise RemoteCallFailure(address, "response body is not an object")
        return str(data.get("text") or "")

    async def health_check(self, address: str) -> HealthStatus:
        """Probe ``{address}/health``; healthy iff 200 with status ok."""
        client = await self._get_client()
        started = time.perf_counter()
        try:
            response = await client.get(
                f"{address.rstrip('/')}/health",
                timeout=self.settings.health_check_timeout_seconds,
            )
            elapsed_ms = (time.perf_counter() - started) * 1000
            healthy = response.status_code == 200 and _json_field(
                response, "status"
            ) == "ok"
            return HealthStatus(
                address=address,
                is_healthy=healthy,
                response_time_ms=elapsed_ms,
                error=None if healthy else f"Unhealthy reply ({response.status_code})",
            )
        except REQUEST_ERRORS as e:
            logger.warning(f"Health check failed for agent {address}: {e}")
            return HealthStatus(
                address=address,
                is_healthy=False,
                response_time_ms=(time.perf_counter() - started) * 1000,
                error=str(e) or type(e).__name__,
            )

    async def batch_health_check(self, addresses: list[str]) -> list[HealthStatus]:
        """Probe several agents in parallel, preserving input order."""
        return list(
            await asyncio.gather(*(self.health_check(address) for address in addresses))
        )

    async def cancel(self, address: str, task_id: str) -> bool:
        """Ask an agent to drop a task. Any failure returns False."""
        client = await self._get_client()
        try:
            response = await client.post(
                f"{address.rstrip('/')}/api/cancel-task",
                json={"taskId": task_id},
                timeout=self.settings.request_timeout_seconds,
            )
            response.raise_for_status()
            cancelled = _json_field(response, "success") is True
        except REQUEST_ERRORS as e:
            logger.warning(f"Failed to cancel task {task_id} on agent {address}: {e}")
            return False
        logger.info(f"Cancel of task {task_id} on agent {address}: {cancelled}")
        return cancelled

    async def get_status(self, address: str) -> AgentLoad:
        """Read an agent's load; failures report the agent offline."""
        client = await self._get_client()
        try:
            response = await client.get(
                f"{address.rstrip('/')}/api/status",
                timeout=self.settings.health_check_timeout_seconds,
            )
            response.raise_for_status()
            data = response.json()
            return AgentLoad(
                is_online=True,
                current_tasks=int(data.get("currentTasks", 0)),
                max_tasks=int(data.get("maxTasks", 1)),
                is_available=bool(data.get("isAvailable", False)),
            )
        except (
            httpx.HTTPError,
            httpx.InvalidURL,
            ValueError,
            AttributeError,
            TypeError,
        ) as e:
            logger.warning(f"Failed to get status for agent {address}: {e}")
            return AgentLoad(is_online=False)

    async def aclose(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._client and self._owns_client:
            await self._client.aclose()
        self._client = None

    async def __aenter__(self) -> "AgentClient":
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.aclose()


def _json_field(response: httpx.Response, name: str) -> Any:
    try:
        data = response.json()
    except ValueError:
        return None
    return data.get(name) if isinstance(data, dict) else None


def _status_code(error: RemoteCallFailure | None) -> int | None:
    if error is not None and isinstance(error.cause, httpx.HTTPStatusError):
        return error.cause.response.status_code
    return None
