"""
Gateway HTTP Client

Async HTTP client shared by every component that talks to the messaging
gateway. Provides standard timeouts, connection pooling and a retry loop with
exponential backoff, and normalizes transport failures and gateway status
codes into the partner messaging error taxonomy.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Iterable, Optional

import httpx

from partner_messaging.core.exceptions import (
    AuthenticationError,
    ConflictError,
    ExternalServiceError,
    TransientNetworkError,
)

logger = logging.getLogger(__name__)

RETRYABLE_TRANSPORT_ERRORS = (
    httpx.TimeoutException,
    httpx.NetworkError,
    httpx.RemoteProtocolError,
)


class RetryPolicy:
    """
    How many times a request is attempted and which responses are retried.

    The delay before retry n (0-based) is base_delay * 2 ** n. Status 429 is
    deliberately absent from the default set: rate-limit responses surface to
    the caller instead of being retried here.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 2.0,
        retry_on_status: Iterable[int] = (500, 502, 503, 504),
        retry_on_network_errors: bool = True
    ):
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay
        self.retry_on_status: FrozenSet[int] = frozenset(retry_on_status)
        self.retry_on_network_errors = retry_on_network_errors

    def backoff(self, attempt: int) -> float:
        return self.base_delay * (2 ** attempt)


class HTTPClientConfig:
    """Configuration for HTTP client."""

    def __init__(
        self,
        timeout: float = 30.0,
        max_attempts: int = 3,
        retry_base_delay: float = 2.0,
        user_agent: str = "partner-messaging/1.0",
        max_connections: int = 100,
        max_keepalive_connections: int = 20
    ):
        self.timeout = timeout
        self.max_connections = max_connections
        self.max_keepalive_connections = max_keepalive_connections
        self.user_agent = user_agent
        self.retry_policy = RetryPolicy(max_attempts=max_attempts, base_delay=retry_base_delay)

    @classmethod
    def from_settings(cls, settings) -> "HTTPClientConfig":
        return cls(
            timeout=settings.http_timeout,
            max_attempts=settings.http_max_attempts,
            retry_base_delay=settings.http_retry_base_delay,
            user_agent=settings.http_user_agent
        )

    def to_limits(self):
        """Convert to httpx.Limits object."""
        return httpx.Limits(
            max_connections=self.max_connections,
            max_keepalive_connections=self.max_keepalive_connections
        )

    def to_timeout(self):
        """Convert to httpx.Timeout object."""
        return httpx.Timeout(self.timeout)


class HTTPClient:
    """Async HTTP client with retry and error normalization."""

    def __init__(
        self,
        config: Optional[HTTPClientConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        self.config = config or HTTPClientConfig()
        self._transport = transport
        self._sleep = sleep
        self._client: Optional[httpx.AsyncClient] = None

    async def _ensure_client(self):
        """Ensure HTTP client is initialized."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                limits=self.config.to_limits(),
                timeout=self.config.to_timeout(),
                headers={
                    'User-Agent': self.config.user_agent
                },
                transport=self._transport
            )

    async def close(self):
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def request(
        self,
        method: str,
        url: str,
        retry_policy: Optional[RetryPolicy] = None,
        operation: str = "gateway_request",
        **kwargs
    ) -> httpx.Response:
        """
        Make an HTTP request with retry logic.

        Args:
            method: HTTP method
            url: Request URL
            retry_policy: Overrides the configured policy for this call
            operation: Name used in logs and error context
            **kwargs: Additional request parameters

        Returns:
            The final HTTP response, which may still carry an error status

        Raises:
            TransientNetworkError: If every attempt failed at the transport level
        """
        await self._ensure_client()
        policy = retry_policy or self.config.retry_policy

        for attempt in range(policy.max_attempts):
            is_last = attempt == policy.max_attempts - 1
            try:
                response = await self._client.request(method, url, **kwargs)
            except RETRYABLE_TRANSPORT_ERRORS as e:
                if not policy.retry_on_network_errors or is_last:
                    logger.error(
                        f"{operation}: {method} {url} failed after {attempt + 1} attempt(s): {type(e).__name__}",
                        extra={"operation": operation}
                    )
                    raise TransientNetworkError(
                        f"{operation} failed: {type(e).__name__}: {e}",
                        context={"operation": operation, "attempts": attempt + 1}
                    )
                delay = policy.backoff(attempt)
                logger.warning(
                    "{}: {} {} failed: {}. Retrying in {:.1f}s (attempt {}/{})".format(
                        operation, method, url, type(e).__name__, delay, attempt + 1, policy.max_attempts
                    )
                )
                await self._sleep(delay)
                continue

            if response.status_code in policy.retry_on_status and not is_last:
                delay = policy.backoff(attempt)
                logger.warning(
                    "{}: {} {} returned {}. Retrying in {:.1f}s (attempt {}/{})".format(
                        operation, method, url, response.status_code, delay, attempt + 1, policy.max_attempts
                    )
                )
                await self._sleep(delay)
                continue

            return response

        # Unreachable: the last attempt always returns or raises
        raise TransientNetworkError(f"{operation} exhausted retries", context={"operation": operation})

    # Convenience methods
    async def get(self, url: str, **kwargs) -> httpx.Response:
        """Make GET request."""
        return await self.request('GET', url, **kwargs)

    async def post(self, url: str, **kwargs) -> httpx.Response:
        """Make POST request."""
        return await self.request('POST', url, **kwargs)

    async def delete(self, url: str, **kwargs) -> httpx.Response:
        """Make DELETE request."""
        return await self.request('DELETE', url, **kwargs)


def parse_json(response: httpx.Response) -> Any:
    """Response body as JSON, or None when the body is not JSON."""
    try:
        return response.json()
    except ValueError:
        return None


def gateway_error_message(payload: Any, fallback: str = "") -> str:
    """Pull the human-readable reason out of a gateway error body."""
    if isinstance(payload, dict):
        for key in ("message", "error", "reason", "errorMessage"):
            value = payload.get(key)
            if isinstance(value, str) and value:
                return value
            if isinstance(value, dict):
                nested = gateway_error_message(value)
                if nested:
                    return nested
    return fallback


def raise_for_gateway_status(
    response: httpx.Response,
    operation: str,
    context: Optional[Dict[str, Any]] = None
) -> None:
    """
    Translate a non-2xx gateway response into the error taxonomy.

    Args:
        response: Gateway response
        operation: Name used in logs and error context
        context: Extra structured fields (agent_id, app_id, ...)

    Raises:
        AuthenticationError: On 401/403
        ConflictError: On 409
        TransientNetworkError: On 5xx
        ExternalServiceError: On any other 4xx
    """
    if response.is_success:
        return

    status = response.status_code
    payload = parse_json(response)
    reason = gateway_error_message(payload, fallback=response.text[:200])
    error_context = dict(context or {}, operation=operation, status=status)
    message = f"{operation} failed with HTTP {status}: {reason}"

    logger.error(message, extra={k: v for k, v in error_context.items() if k in ("agent_id", "app_id", "operation")})

    if status in (401, 403):
        raise AuthenticationError(message, context=error_context)
    if status == 409:
        raise ConflictError(message, context=error_context)
    if status >= 500:
        raise TransientNetworkError(message, context=error_context)
    raise ExternalServiceError(message, context=error_context, http_status=status, payload=payload)
