"""
Async HTTP client wrapper for provider requests.
Includes retry logic, timeout management, rate-limit classification and metrics.
"""
from __future__ import annotations

import asyncio
import time
from typing import Any, Optional

import httpx

from shared.config import get_settings
from shared.utils.logging import get_logger
from shared.utils.metrics import PROVIDER_LATENCY, PROVIDER_REQUESTS

logger = get_logger(__name__)

_RATE_LIMIT_MARKERS = ("429", "rate limit", "too many requests")


class ProviderError(Exception):
    """An upstream provider call failed after the client's own retries."""

    def __init__(self, provider: str, path: str, message: str, status: int | None = None) -> None:
        super().__init__(f"{provider} {path}: {message}")
        self.provider = provider
        self.path = path
        self.status = status


class RateLimitedError(ProviderError):
    """The provider rejected the call with its rate-limit signal (HTTP 429)."""

    def __init__(
        self, provider: str, path: str, retry_after_s: float | None = None
    ) -> None:
        super().__init__(provider, path, "rate limit exceeded (429)", status=429)
        self.retry_after_s = retry_after_s


def is_rate_limit_error(exc: BaseException) -> bool:
    """
    True when an error carries the upstream rate-limit signal.

    Provider errors are judged by status only, since their text embeds the
    request path. Other errors fall back to the wording of the message.
    """
    if isinstance(exc, ProviderError):
        return exc.status == 429
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code == 429
    text = str(exc).lower()
    return any(marker in text for marker in _RATE_LIMIT_MARKERS)


class ProviderHTTPClient:
    """
    Async HTTP client tailored for sports data provider APIs.
    Handles timeouts, retries, and records metrics per request.
    """

    def __init__(
        self,
        provider_name: str,
        base_url: str,
        headers: dict[str, str] | None = None,
        timeout_s: float | None = None,
        max_retries: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = get_settings()
        self._provider = provider_name
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_s or settings.provider_request_timeout_s
        self._max_retries = max(1, max_retries or settings.provider_max_retries)
        self._default_headers = headers or {}
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def start(self) -> None:
        """Initialize the underlying httpx client."""
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers=self._default_headers,
            timeout=httpx.Timeout(self._timeout, connect=5.0),
            follow_redirects=True,
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
            transport=self._transport,
        )

    async def close(self) -> None:
        """Close the underlying httpx client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def get_json(
        self,
        path: str,
        params: dict[str, Any] | None = None,
        endpoint: str = "unknown",
    ) -> Any:
        """
        Perform a GET request with retry, metrics, and structured logging.

        Args:
            path: API path relative to base_url.
            params: Query parameters.
            endpoint: Endpoint label for metrics.

        Returns:
            The decoded JSON body.

        Raises:
            RateLimitedError: The provider kept answering 429 until retries ran out.
            ProviderError: Any other non-retryable or exhausted failure.
        """
        if not self._client:
            raise RuntimeError("ProviderHTTPClient not started. Call start() first.")

        last_exc: Optional[ProviderError] = None

        for attempt in range(1, self._max_retries + 1):
            start_time = time.perf_counter()
            status = "unknown"
            try:
                resp = await self._client.get(path, params=params)
                status = str(resp.status_code)

                if resp.status_code == 429:
                    retry_after = _parse_retry_after(resp)
                    logger.warning(
                        "provider_rate_limited",
                        provider=self._provider,
                        path=path,
                        attempt=attempt,
                        retry_after_s=retry_after,
                    )
                    last_exc = RateLimitedError(self._provider, path, retry_after)
                    if attempt < self._max_retries:
                        await asyncio.sleep(min(retry_after or 2.0, 10.0))
                        continue
                    raise last_exc

                if resp.status_code >= 500:
                    logger.warning(
                        "provider_server_error",
                        provider=self._provider,
                        path=path,
                        status=resp.status_code,
                        attempt=attempt,
                    )
                    last_exc = ProviderError(
                        self._provider, path, f"server error {resp.status_code}", resp.status_code
                    )
                    if attempt < self._max_retries:
                        await asyncio.sleep(1.0 * attempt)
                        continue
                    raise last_exc

                if resp.status_code >= 400:
                    logger.error(
                        "provider_http_error",
                        provider=self._provider,
                        path=path,
                        status=resp.status_code,
                    )
                    raise ProviderError(
                        self._provider, path, f"client error {resp.status_code}", resp.status_code
                    )

                logger.debug(
                    "provider_request_success",
                    provider=self._provider,
                    path=path,
                    status=resp.status_code,
                    latency_ms=round((time.perf_counter() - start_time) * 1000, 2),
                )
                try:
                    return resp.json()
                except ValueError as exc:
                    status = "invalid_body"
                    logger.error("provider_invalid_body", provider=self._provider, path=path)
                    raise ProviderError(
                        self._provider, path, f"invalid JSON body: {exc}", resp.status_code
                    ) from exc

            except httpx.TimeoutException as exc:
                status = "timeout"
                logger.warning(
                    "provider_timeout",
                    provider=self._provider,
                    path=path,
                    attempt=attempt,
                )
                last_exc = ProviderError(self._provider, path, f"timeout: {exc}")
                if attempt < self._max_retries:
                    await asyncio.sleep(1.0 * attempt)
                    continue
                raise last_exc from exc

            except httpx.HTTPError as exc:
                status = "error"
                logger.error(
                    "provider_request_error",
                    provider=self._provider,
                    path=path,
                    error=str(exc),
                    attempt=attempt,
                )
                last_exc = ProviderError(self._provider, path, str(exc))
                if attempt < self._max_retries:
                    await asyncio.sleep(1.0 * attempt)
                    continue
                raise last_exc from exc

            finally:
                PROVIDER_REQUESTS.labels(
                    provider=self._provider, endpoint=endpoint, status=status
                ).inc()
                PROVIDER_LATENCY.labels(provider=self._provider).observe(
                    time.perf_counter() - start_time
                )

        if last_exc:
            raise last_exc
        raise ProviderError(self._provider, path, f"failed after {self._max_retries} attempts")


def _parse_retry_after(resp: httpx.Response) -> float | None:
    raw = resp.headers.get("Retry-After") or resp.headers.get("X-RequestCounter-Reset")
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError:
        return None
