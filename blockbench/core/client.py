"""blockbench.core.client

HTTP transport for the subgraph providers.

Every outbound request goes through one :class:`DataClient`, which paces
requests with a token bucket, retries 429/5xx and network errors with
capped exponential backoff and stops calling a failing host once
:class:`CircuitBreaker` trips.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlparse

import httpx

from blockbench.core.exceptions import DataUnavailableError

logger = logging.getLogger(__name__)

_ALLOWED_SCHEMES = frozenset({"http", "https"})
_MAX_BACKOFF_S = 8.0


@dataclass(frozen=True, slots=True)
class ClientConfig:
    rate_limit_rps: float = 2.0
    max_retries: int = 3
    timeout_s: float = 20.0
    circuit_breaker_threshold: int = 5
    circuit_breaker_cooldown_s: float = 30.0


class _RequestPacer:
    """Single-slot token bucket shared by all coroutines using one client."""

    def __init__(self, rate_per_sec: float) -> None:
        self.rate = max(rate_per_sec, 0.001)
        self.tokens = 1.0
        self.refilled_at = time.monotonic()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = time.monotonic()
        self.tokens = min(1.0, self.tokens + (now - self.refilled_at) * self.rate)
        self.refilled_at = now

    async def wait_turn(self) -> None:
        while True:
            async with self._lock:
                self._refill()
                if self.tokens >= 1.0:
                    self.tokens -= 1.0
                    return
                delay = (1.0 - self.tokens) / self.rate
            await asyncio.sleep(delay)


class CircuitBreaker:
    """Opens after ``threshold`` consecutive failures, half-opens after ``cooldown_s``."""

    def __init__(self, threshold: int, cooldown_s: float) -> None:
        self.threshold = threshold
        self.cooldown_s = cooldown_s
        self.failures = 0
        self.opened_at: float | None = None

    @property
    def is_open(self) -> bool:
        return self.opened_at is not None

    def allow(self) -> bool:
        if self.opened_at is None:
            return True
        if time.monotonic() - self.opened_at < self.cooldown_s:
            return False
        self.failures = 0
        self.opened_at = None
        return True

    def on_success(self) -> None:
        self.failures = 0
        self.opened_at = None

    def on_failure(self) -> None:
        self.failures += 1
        if self.failures >= self.threshold and self.opened_at is None:
            self.opened_at = time.monotonic()
            logger.warning("circuit_breaker_opened", extra={"failures": self.failures})


def _retryable(exc: Exception) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        code = exc.response.status_code
        return code == 429 or code >= 500
    return True


def _backoff_s(attempt: int, exc: Exception) -> float:
    if isinstance(exc, httpx.HTTPStatusError):
        retry_after = exc.response.headers.get("retry-after", "")
        if retry_after.isdigit():
            return min(float(retry_after), _MAX_BACKOFF_S)
    return min(float(2**attempt), _MAX_BACKOFF_S)


class DataClient:
    def __init__(self, config: ClientConfig | None = None, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.config = config or ClientConfig()
        self._pacer = _RequestPacer(self.config.rate_limit_rps)
        self._breaker = CircuitBreaker(
            threshold=self.config.circuit_breaker_threshold,
            cooldown_s=self.config.circuit_breaker_cooldown_s,
        )
        self._http = httpx.AsyncClient(timeout=self.config.timeout_s, transport=transport)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        if urlparse(url).scheme not in _ALLOWED_SCHEMES:
            raise httpx.UnsupportedProtocol(f"blocked_url ({url})")
        if not self._breaker.allow():
            raise httpx.TransportError("circuit breaker open")

        await self._pacer.wait_turn()

        attempt = 0
        while True:
            try:
                resp = await self._http.request(method, url, **kwargs)
                resp.raise_for_status()
                await resp.aread()
            except httpx.HTTPError as exc:
                self._breaker.on_failure()
                if attempt >= self.config.max_retries or not _retryable(exc):
                    raise
                delay = _backoff_s(attempt, exc)
                logger.info(
                    "http_retry",
                    extra={"url": url, "attempt": attempt + 1, "delay_s": delay, "error": type(exc).__name__},
                )
                attempt += 1
                await asyncio.sleep(delay)
                continue
            self._breaker.on_success()
            return resp

    async def request_json(
        self,
        method: str,
        url: str,
        *,
        expected: type | tuple[type, ...] | None = None,
        **kwargs: Any,
    ) -> Any:
        resp = await self.request(method, url, **kwargs)
        data: Any = resp.json()
        if expected is not None and not isinstance(data, expected):
            raise httpx.TransportError("response_schema_mismatch")
        return data

    async def graphql(self, url: str, query: str, variables: dict[str, Any] | None = None) -> dict[str, Any]:
        """POST a GraphQL query and return its ``data`` object.

        Subgraphs report query failures in-band with HTTP 200; those surface
        as :class:`DataUnavailableError`.
        """

        body = await self.request_json("POST", url, expected=dict, json={"query": query, "variables": variables or {}})
        if body.get("errors"):
            first = body["errors"][0]
            msg = first.get("message") if isinstance(first, dict) else str(first)
            raise DataUnavailableError(f"graphql_error: {msg}")
        data = body.get("data")
        if not isinstance(data, dict):
            raise DataUnavailableError("graphql_missing_data")
        return data
