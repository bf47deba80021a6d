"""mirror.core.client

Shared HTTP client for chain providers:
- request pacing (one start per ``1 / rate_limit_rps`` seconds, small bursts allowed)
- retries on transport failures, 429 and 5xx
- circuit breaker per client
- JSON-RPC calls on top of plain JSON requests

Every failure leaves this module as a ``ProviderError``; the transient ones
as ``TransientProviderError`` so the scheduler knows to back off and retry.
"""

from __future__ import annotations

import asyncio
import itertools
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

import httpx

from mirror.core.exceptions import ProviderError, TransientProviderError

Clock = Callable[[], float]


@dataclass(frozen=True, slots=True)
class ClientConfig:
    rate_limit_rps: float = 5.0
    rate_limit_burst: int = 1
    max_retries: int = 2
    timeout_s: float = 20.0
    circuit_breaker_threshold: int = 5
    circuit_breaker_cooldown_s: float = 30.0

    @classmethod
    def from_settings(cls, settings: Any) -> ClientConfig:
        fields = {name: getattr(settings, name) for name in cls.__dataclass_fields__ if hasattr(settings, name)}
        return cls(**fields)


class _Pacer:
    """Generic cell rate limiter.

    Keeps the earliest time the next request may start; up to ``burst``
    requests may start back to back before spacing applies.
    """

    def __init__(self, rate_per_sec: float, burst: int = 1, clock: Clock = time.monotonic) -> None:
        self.interval = 1.0 / max(rate_per_sec, 0.001)
        self.slack = self.interval * (max(burst, 1) - 1)
        self._clock = clock
        self._next_at = clock()
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        async with self._lock:
            now = self._clock()
            due = max(self._next_at, now)
            delay = due - self.slack - now
            self._next_at = due + self.interval
        if delay > 0:
            await asyncio.sleep(delay)


class BreakerState(StrEnum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Opens after ``threshold`` consecutive failures.

    Once ``cooldown_s`` has passed one probe request goes through; its
    outcome closes the breaker or opens it for another cooldown.
    """

    def __init__(self, threshold: int, cooldown_s: float, *, clock: Clock = time.monotonic) -> None:
        self.threshold = max(threshold, 1)
        self.cooldown_s = cooldown_s
        self.state = BreakerState.CLOSED
        self._clock = clock
        self._streak = 0
        self._retry_at = 0.0

    def allow(self) -> bool:
        if self.state is BreakerState.OPEN and self._clock() >= self._retry_at:
            self.state = BreakerState.HALF_OPEN
        return self.state is not BreakerState.OPEN

    @property
    def is_open(self) -> bool:
        return not self.allow()

    def record(self, ok: bool) -> None:
        if ok:
            self.state = BreakerState.CLOSED
            self._streak = 0
            return
        self._streak += 1
        if self.state is BreakerState.HALF_OPEN or self._streak >= self.threshold:
            self.state = BreakerState.OPEN
            self._retry_at = self._clock() + self.cooldown_s


class DataClient:
    """HTTP access for one provider. Not shared across chains."""

    def __init__(
        self,
        config: ClientConfig | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Any = asyncio.sleep,
        clock: Clock = time.monotonic,
    ) -> None:
        self.config = config or ClientConfig()
        self._pacer = _Pacer(self.config.rate_limit_rps, self.config.rate_limit_burst, clock)
        self._breaker = CircuitBreaker(
            self.config.circuit_breaker_threshold, self.config.circuit_breaker_cooldown_s, clock=clock
        )
        self._client = httpx.AsyncClient(timeout=self.config.timeout_s, transport=transport)
        self._sleep = sleep
        self._ids = itertools.count(1)

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            resp = await self._client.request(method, url, **kwargs)
            await resp.aread()
        except httpx.HTTPError as e:
            self._breaker.record(False)
            raise TransientProviderError(f"{method} {url} failed: {e!r}") from e

        status = resp.status_code
        if status == 429 or status >= 500:
            self._breaker.record(False)
            raise TransientProviderError(f"{method} {url} -> HTTP {status}")
        if status >= 400:
            raise ProviderError(f"{method} {url} -> HTTP {status}")
        self._breaker.record(True)
        return resp

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        if not self._breaker.allow():
            raise TransientProviderError(f"circuit breaker open for {httpx.URL(url).host}")
        await self._pacer.acquire()

        attempt = 0
        while True:
            try:
                return await self._send(method, url, **kwargs)
            except TransientProviderError:
                if attempt >= self.config.max_retries or not self._breaker.allow():
                    raise
            await self._sleep(min(2**attempt, 8))
            attempt += 1

    async def request_json(
        self,
        method: str,
        url: str,
        *,
        expected: type | tuple[type, ...] | None = None,
        max_bytes: int = 16 * 1024 * 1024,
        **kwargs: Any,
    ) -> Any:
        """Request and parse JSON.

        ``max_bytes`` caps the response body; ``expected`` checks the top-level shape.
        """

        resp = await self.request(method, url, **kwargs)
        if len(resp.content) > int(max_bytes):
            raise ProviderError(f"response too large: {len(resp.content)} bytes from {url}")
        try:
            data: Any = resp.json()
        except ValueError as e:
            raise TransientProviderError(f"non-JSON response from {url}") from e
        if expected is not None and not isinstance(data, expected):
            raise ProviderError(f"unexpected response shape from {url}: {type(data).__name__}")
        return data


class JsonRpcError(ProviderError):
    """The node answered with a JSON-RPC error object."""

    def __init__(self, method: str, error: dict[str, Any]) -> None:
        self.method = method
        self.code = error.get("code")
        self.rpc_message = str(error.get("message", ""))
        super().__init__(f"{method}: rpc error {self.code} {self.rpc_message}")


class JsonRpcClient:
    """JSON-RPC 2.0 over a ``DataClient``."""

    def __init__(self, client: DataClient, url: str) -> None:
        self.client = client
        self.url = url

    async def call(self, method: str, params: list[Any] | None = None) -> Any:
        body = {"jsonrpc": "2.0", "id": next(self.client._ids), "method": method, "params": params or []}
        data = await self.client.request_json("POST", self.url, json=body, expected=dict)
        if data.get("error"):
            err = data["error"] if isinstance(data["error"], dict) else {"message": data["error"]}
            # Rate limits and server-side hiccups surface as rpc errors on some nodes.
            code = err.get("code")
            if code in (-32005, -32603) or "rate limit" in str(err.get("message", "")).lower():
                raise TransientProviderError(f"{method}: rpc error {code} {err.get('message')}")
            raise JsonRpcError(method, err)
        if "result" not in data:
            raise ProviderError(f"{method}: response has neither result nor error")
        return data["result"]
