"""
Shared HTTP pipeline for the entitlement sync client.

Every backend call goes through :class:`RequestExecutor`, which layers a
response cache, in-flight deduplication, a per-URL sliding-window rate
limiter, retry with exponential backoff and scoped abort on top of an
``httpx.AsyncClient``.
"""

import asyncio
import functools
import json
import time
from collections import deque
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Deque, Dict, Optional, Tuple

import httpx

from shared.errors import RequestCancelledError, RequestFailedError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.retry import RetryConfig, retry_call


CacheKey = Tuple[str, str, str, str]


@dataclass(frozen=True)
class RequestOptions:
    """Per-request behavior. Durations are in seconds."""
    cache_duration: float = 60.0
    skip_cache: bool = False
    retries: int = 3
    retry_delay: float = 0.3
    force_refresh: bool = False


@dataclass
class ApiResult:
    """Response body plus where it came from."""
    data: Any
    from_cache: bool = False
    stale: bool = False


@dataclass
class _CachedResponse:
    data: Any
    expires_at: float
    scope: Optional[str]


@dataclass
class _PendingRequest:
    task: asyncio.Task
    started_at: float
    scope: Optional[str]


def _serialize(value: Any) -> str:
    if value is None:
        return ""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def make_cache_key(method: str, url: str, params: Optional[Dict[str, Any]] = None,
                   body: Any = None) -> CacheKey:
    """Typed cache key; params and body serialize deterministically."""
    return (method.upper(), url, _serialize(params), _serialize(body))


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """Seconds to wait from a ``Retry-After`` header (delta-seconds or HTTP date)."""
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (when - now).total_seconds())


class RequestExecutor:
    """Cached, deduplicated, rate limited and retried HTTP requests."""

    def __init__(self,
                 base_url: str,
                 *,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 client: Optional[httpx.AsyncClient] = None,
                 timeout: float = 10.0,
                 max_requests_per_minute: int = 50,
                 rate_limit_window: float = 60.0,
                 rate_limit_delay: float = 1.0,
                 dedup_timeout: float = 10.0,
                 max_retry_delay: float = 30.0,
                 default_options: Optional[RequestOptions] = None,
                 metrics: Optional[MetricsCollector] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.base_url = base_url.rstrip("/")
        self.logger = get_logger("sync.http.executor")
        self.metrics = metrics or MetricsCollector("sync.http")
        self.default_options = default_options or RequestOptions()

        self.max_requests_per_minute = max_requests_per_minute
        self.rate_limit_window = rate_limit_window
        self.rate_limit_delay = rate_limit_delay
        self.dedup_timeout = dedup_timeout
        self.max_retry_delay = max_retry_delay
        self._clock = clock

        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout, transport=transport)
        self._auth_token: Optional[str] = None

        self._cache: Dict[CacheKey, _CachedResponse] = {}
        self._pending: Dict[CacheKey, _PendingRequest] = {}
        self._request_log: Dict[str, Deque[float]] = {}

    def set_auth_token(self, token: Optional[str]) -> None:
        """Set or clear the bearer token sent with every request."""
        self._auth_token = token

    async def get(self, url: str, params: Optional[Dict[str, Any]] = None,
                  options: Optional[RequestOptions] = None, scope: Optional[str] = None) -> ApiResult:
        return await self.request(url, method="GET", params=params, options=options, scope=scope)

    async def post(self, url: str, json: Any = None,
                   options: Optional[RequestOptions] = None, scope: Optional[str] = None) -> ApiResult:
        return await self.request(url, method="POST", json=json, options=options, scope=scope)

    async def put(self, url: str, json: Any = None,
                  options: Optional[RequestOptions] = None, scope: Optional[str] = None) -> ApiResult:
        return await self.request(url, method="PUT", json=json, options=options, scope=scope)

    async def delete(self, url: str, options: Optional[RequestOptions] = None,
                     scope: Optional[str] = None) -> ApiResult:
        return await self.request(url, method="DELETE", options=options, scope=scope)

    async def request(self,
                      url: str,
                      *,
                      method: str = "GET",
                      params: Optional[Dict[str, Any]] = None,
                      json: Any = None,
                      options: Optional[RequestOptions] = None,
                      scope: Optional[str] = None) -> ApiResult:
        """Issue a request through cache, dedup table, rate limiter and network."""
        method = method.upper()
        options = options or self.default_options
        if method != "GET":
            options = replace(options, skip_cache=True)

        full_url = self._resolve_url(url)
        key = make_cache_key(method, full_url, params, json)
        now = self._clock()

        if not options.skip_cache and not options.force_refresh:
            cached = self._cache.get(key)
            if cached is not None and cached.expires_at > now:
                self.metrics.record_request(method, "cache_hit")
                return ApiResult(cached.data, from_cache=True)

        pending = self._pending.get(key)
        if pending is not None:
            if not pending.task.done() and now - pending.started_at < self.dedup_timeout:
                self.metrics.record_request(method, "deduplicated")
                return await self._await_shared(pending.task)
            self.logger.warning("Cancelling stale pending request", url=full_url,
                                age=now - pending.started_at)
            pending.task.cancel()
            self._pending.pop(key, None)

        if self._is_rate_limited(full_url, now):
            cached = self._cache.get(key)
            if cached is not None:
                self.logger.warning("Rate limit reached, serving cached response", url=full_url)
                self.metrics.record_request(method, "rate_limited_stale")
                return ApiResult(cached.data, from_cache=True, stale=True)

            self.logger.warning("Rate limit reached, delaying request", url=full_url,
                                delay=self.rate_limit_delay)
            await asyncio.sleep(self.rate_limit_delay)

            # another caller may have issued the same request while we waited
            pending = self._pending.get(key)
            if pending is not None and not pending.task.done():
                self.metrics.record_request(method, "deduplicated")
                return await self._await_shared(pending.task)

        self._note_request(full_url)
        task = asyncio.create_task(self._execute(method, full_url, key, params, json, options, scope))
        self._pending[key] = _PendingRequest(task, self._clock(), scope)
        task.add_done_callback(functools.partial(self._on_request_done, key))
        return await self._await_shared(task)

    async def _await_shared(self, task: asyncio.Task) -> ApiResult:
        # shield keeps one caller's cancellation from cancelling the shared request
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                raise RequestCancelledError()
            raise

    async def _execute(self, method: str, url: str, key: CacheKey, params: Optional[Dict[str, Any]],
                       body: Any, options: RequestOptions, scope: Optional[str]) -> ApiResult:
        config = RetryConfig(
            max_attempts=options.retries + 1,
            base_delay=options.retry_delay,
            max_delay=self.max_retry_delay,
            exponential_base=2.0,
            jitter=False
        )

        try:
            data = await retry_call(
                lambda: self._send(method, url, params, body),
                config,
                should_retry=self._should_retry,
                delay_for=self._retry_delay,
                name=f"{method} {url}"
            )
        except Exception as e:
            self.metrics.record_request(method, "error")
            self.logger.error("Request failed", method=method, url=url, error=str(e))
            raise

        self.metrics.record_request(method, "network")
        if options.cache_duration > 0 and not options.skip_cache:
            self._cache[key] = _CachedResponse(data, self._clock() + options.cache_duration, scope)
        return ApiResult(data)

    async def _send(self, method: str, url: str, params: Optional[Dict[str, Any]], body: Any) -> Any:
        headers = {"Accept": "application/json"}
        if self._auth_token:
            headers["Authorization"] = f"Bearer {self._auth_token}"

        response = await self.client.request(method, url, params=params, json=body, headers=headers)

        if response.status_code >= 400:
            raise RequestFailedError(
                response.status_code,
                self._error_message(response),
                retry_after=parse_retry_after(response.headers.get("Retry-After"))
            )

        try:
            return response.json()
        except ValueError:
            raise RequestFailedError(response.status_code, "Response body is not valid JSON")

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            payload = response.json()
        except ValueError:
            payload = None
        if isinstance(payload, dict) and payload.get("message"):
            return str(payload["message"])
        return f"Request failed with status {response.status_code}"

    @staticmethod
    def _should_retry(error: Exception) -> bool:
        if isinstance(error, httpx.TransportError):
            return True
        return isinstance(error, RequestFailedError) and error.retryable

    def _retry_delay(self, error: Exception) -> Optional[float]:
        if isinstance(error, RequestFailedError):
            self.metrics.record_retry(str(error.status_code))
            if error.status_code == 429 and error.retry_after is not None:
                return min(error.retry_after, self.max_retry_delay)
        else:
            self.metrics.record_retry("network")
        return None

    def _on_request_done(self, key: CacheKey, task: asyncio.Task) -> None:
        pending = self._pending.get(key)
        if pending is not None and pending.task is task:
            del self._pending[key]
        if not task.cancelled():
            # mark the failure as retrieved; callers receive it through shield
            task.exception()

    def _resolve_url(self, url: str) -> str:
        if url.startswith(("http://", "https://")):
            return url
        return f"{self.base_url}/{url.lstrip('/')}"

    def _is_rate_limited(self, url: str, now: float) -> bool:
        log = self._request_log.get(url)
        if not log:
            return False
        while log and now - log[0] >= self.rate_limit_window:
            log.popleft()
        return len(log) >= self.max_requests_per_minute

    def _note_request(self, url: str) -> None:
        self._request_log.setdefault(url, deque()).append(self._clock())

    def abort(self, scope: Optional[str] = None) -> int:
        """Cancel in-flight requests of ``scope`` (all when None)."""
        aborted = 0
        for key, pending in list(self._pending.items()):
            if scope is not None and pending.scope != scope:
                continue
            del self._pending[key]
            if not pending.task.done():
                pending.task.cancel()
                aborted += 1

        if aborted:
            self.logger.info("Aborted in-flight requests", scope=scope, count=aborted)
        return aborted

    def clear_cache(self, scope: Optional[str] = None) -> int:
        """Drop cached responses of ``scope`` (all when None)."""
        if scope is None:
            cleared = len(self._cache)
            self._cache.clear()
        else:
            keys = [key for key, entry in self._cache.items() if entry.scope == scope]
            for key in keys:
                del self._cache[key]
            cleared = len(keys)
        self.logger.debug("Response cache cleared", scope=scope, count=cleared)
        return cleared

    def invalidate(self, url: str, *, method: str = "GET", params: Optional[Dict[str, Any]] = None,
                   body: Any = None) -> bool:
        """Drop a single cached response."""
        key = make_cache_key(method, self._resolve_url(url), params, body)
        return self._cache.pop(key, None) is not None

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def aclose(self) -> None:
        self.abort()
        if self._owns_client:
            await self.client.aclose()
