"""Outbound HTTP with bounded retries.

One ``ResilientHttpClient`` wraps one lazily created ``httpx.AsyncClient`` so
connections are pooled across calls. Each call site supplies its own
``RetryPolicy``; delays are only slept between attempts.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence

import httpx

from taskkeeper.logging import get_logger

logger = get_logger(__name__)

SUCCESS_STATUSES = range(200, 300)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    delays: tuple[float, ...]

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if not self.delays:
            raise ValueError("delays must not be empty")

    @classmethod
    def from_millis(cls, delays_ms: Sequence[int], max_attempts: int = 3) -> "RetryPolicy":
        return cls(max_attempts=max_attempts, delays=tuple(ms / 1000 for ms in delays_ms))

    def delay_before(self, attempt: int) -> float:
        """Delay slept after failed ``attempt`` (1-based); last entry repeats."""
        return self.delays[min(attempt - 1, len(self.delays) - 1)]


BACKEND_RETRY_POLICY = RetryPolicy.from_millis([200, 500, 1000])
EMAIL_RETRY_POLICY = RetryPolicy.from_millis([1000, 2000, 5000])


class OutboundHttpError(Exception):
    """Base class for failures of a resilient outbound call."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, body: str = "") -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.body = body


class RequestRejected(OutboundHttpError):
    """The server answered 4xx; retrying the same request cannot help."""


class ServiceUnavailable(OutboundHttpError):
    """Every attempt failed with a transport error or a retryable status."""


class ResilientHttpClient:
    def __init__(
        self,
        *,
        name: str,
        base_url: str = "",
        headers: Optional[Dict[str, str]] = None,
        auth: Optional[httpx.Auth | tuple[str, str]] = None,
        timeout: float = 10.0,
        retry_policy: RetryPolicy = BACKEND_RETRY_POLICY,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.name = name
        self.base_url = base_url
        self.headers = dict(headers or {})
        self.auth = auth
        self.timeout = timeout
        self.retry_policy = retry_policy
        self._sleep = sleep
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the pooled HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self.headers,
                auth=self.auth,
                timeout=httpx.Timeout(self.timeout, connect=min(self.timeout, 5.0)),
                transport=self._transport,
            )
        return self._client

    async def request(
        self,
        method: str,
        url: str,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send a request, retrying transport failures and 5xx responses.

        Raises:
            RequestRejected: on a 4xx response, without retrying
            ServiceUnavailable: once the attempt budget is spent
        """
        policy = retry_policy or self.retry_policy
        client = await self._get_client()
        last_error: Optional[BaseException] = None
        last_status: Optional[int] = None

        for attempt in range(1, policy.max_attempts + 1):
            try:
                response = await client.request(method, url, **kwargs)
            except httpx.TransportError as exc:
                last_error = exc
                logger.warning(
                    "outbound_http_transport_error",
                    client=self.name,
                    attempt=attempt,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
            else:
                if response.status_code in SUCCESS_STATUSES:
                    if attempt > 1:
                        logger.info("outbound_http_recovered", client=self.name, attempt=attempt)
                    return response
                last_status = response.status_code
                if 400 <= response.status_code < 500:
                    logger.warning(
                        "outbound_http_rejected",
                        client=self.name,
                        status_code=response.status_code,
                    )
                    raise RequestRejected(
                        f"{self.name} rejected request with {response.status_code}",
                        status_code=response.status_code,
                        body=response.text,
                    )
                last_error = None
                logger.warning(
                    "outbound_http_retryable_status",
                    client=self.name,
                    attempt=attempt,
                    status_code=response.status_code,
                )

            if attempt < policy.max_attempts:
                await self._sleep(policy.delay_before(attempt))

        logger.error(
            "outbound_http_exhausted",
            client=self.name,
            attempts=policy.max_attempts,
            last_status=last_status,
        )
        if last_error is not None:
            raise ServiceUnavailable(
                f"{self.name} unreachable after {policy.max_attempts} attempts: {last_error}",
                status_code=last_status,
            ) from last_error
        raise ServiceUnavailable(
            f"{self.name} exhausted retries (last status {last_status})",
            status_code=last_status,
        )

    async def post(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def aclose(self) -> None:
        """Close the pooled HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None


__all__ = [
    "BACKEND_RETRY_POLICY",
    "EMAIL_RETRY_POLICY",
    "OutboundHttpError",
    "RequestRejected",
    "ResilientHttpClient",
    "RetryPolicy",
    "ServiceUnavailable",
]
