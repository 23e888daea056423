"""
Unit tests for the request executor.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime
from unittest.mock import AsyncMock, patch

import pytest

from entitlement_sync.app.http.request_executor import (
    RequestExecutor,
    RequestOptions,
    make_cache_key,
    parse_retry_after,
)
from shared.errors import RequestCancelledError, RequestFailedError
from shared.retry import RetryError
from shared.test_helpers import MockBackend


CHECK_PATH = "/purchases/check/Q1"
FAST = RequestOptions(retries=3, retry_delay=0.0)


class TestRequestExecutor:
    """Test cases for RequestExecutor."""

    @pytest.fixture
    def backend(self):
        backend = MockBackend()
        backend.grant("u1", "Q1")
        return backend

    @pytest.fixture
    def executor(self, backend):
        return RequestExecutor("http://test/api", transport=backend.transport, rate_limit_delay=0.0)

    @pytest.mark.asyncio
    async def test_second_get_is_served_from_cache(self, executor, backend):
        """Identical GETs within the cache duration hit the network once."""
        first = await executor.get(CHECK_PATH, params={"userId": "u1"}, options=FAST)
        second = await executor.get(CHECK_PATH, params={"userId": "u1"}, options=FAST)

        assert first.data == second.data
        assert first.from_cache is False
        assert second.from_cache is True
        assert backend.call_count(CHECK_PATH) == 1
        assert executor.metrics.sample("sync_requests_total", method="GET", outcome="cache_hit") == 1

    @pytest.mark.asyncio
    async def test_force_refresh_and_skip_cache_bypass_cache(self, executor, backend):
        await executor.get(CHECK_PATH, params={"userId": "u1"}, options=FAST)
        await executor.get(CHECK_PATH, params={"userId": "u1"},
                           options=RequestOptions(retry_delay=0.0, force_refresh=True))
        await executor.get(CHECK_PATH, params={"userId": "u1"},
                           options=RequestOptions(retry_delay=0.0, skip_cache=True))

        assert backend.call_count(CHECK_PATH) == 3

    @pytest.mark.asyncio
    async def test_writes_are_never_cached(self, executor, backend):
        await executor.post("/question-sets", json={"title": "x"}, options=FAST)
        await executor.post("/question-sets", json={"title": "x"}, options=FAST)
        await executor.put("/question-sets", json={"title": "y"}, options=FAST)
        await executor.delete("/question-sets", options=FAST)

        assert backend.call_count("/question-sets") == 4
        assert [r.method for r in backend.requests] == ["POST", "POST", "PUT", "DELETE"]

    @pytest.mark.asyncio
    async def test_concurrent_identical_requests_are_deduplicated(self, executor, backend):
        backend.delay = 0.05

        first, second = await asyncio.gather(
            executor.get(CHECK_PATH, params={"userId": "u1"}, options=FAST),
            executor.get(CHECK_PATH, params={"userId": "u1"}, options=FAST),
        )

        assert first.data == second.data
        assert backend.call_count(CHECK_PATH) == 1
        assert executor.metrics.sample("sync_requests_total", method="GET", outcome="deduplicated") == 1

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_cancel_shared_request(self, executor, backend):
        backend.delay = 0.05

        first = asyncio.create_task(executor.get(CHECK_PATH, params={"userId": "u1"}, options=FAST))
        second = asyncio.create_task(executor.get(CHECK_PATH, params={"userId": "u1"}, options=FAST))
        await asyncio.sleep(0.01)
        first.cancel()

        result = await second
        assert result.data["data"]["hasAccess"] is True
        assert backend.call_count(CHECK_PATH) == 1
        with pytest.raises(asyncio.CancelledError):
            await first

    @pytest.mark.asyncio
    async def test_stale_pending_request_is_replaced(self, backend):
        now = [100.0]
        executor = RequestExecutor("http://test/api", transport=backend.transport, clock=lambda: now[0])
        backend.delay = 0.05

        stale = asyncio.create_task(executor.get(CHECK_PATH, params={"userId": "u1"}, options=FAST))
        await asyncio.sleep(0.01)
        now[0] += 11
        fresh = await executor.get(CHECK_PATH, params={"userId": "u1"}, options=FAST)

        assert fresh.from_cache is False
        with pytest.raises(RequestCancelledError):
            await stale
        assert backend.call_count(CHECK_PATH) == 2

    @pytest.mark.asyncio
    async def test_server_errors_are_retried(self, executor, backend):
        backend.fail(CHECK_PATH, 500, 503)

        result = await executor.get(CHECK_PATH, params={"userId": "u1"}, options=FAST)

        assert result.data["success"] is True
        assert backend.call_count(CHECK_PATH) == 3
        assert executor.metrics.sample("sync_request_retries_total", reason="500") == 1
        assert executor.metrics.sample("sync_request_retries_total", reason="503") == 1

    @pytest.mark.asyncio
    async def test_network_errors_are_retried(self, executor, backend):
        backend.fail(CHECK_PATH, MockBackend.NETWORK_ERROR)

        result = await executor.get(CHECK_PATH, params={"userId": "u1"}, options=FAST)

        assert result.data["success"] is True
        assert executor.metrics.sample("sync_request_retries_total", reason="network") == 1

    @pytest.mark.asyncio
    async def test_client_errors_are_not_retried(self, executor, backend):
        with pytest.raises(RequestFailedError) as exc_info:
            await executor.get("/unknown", options=FAST)

        assert exc_info.value.status_code == 404
        assert exc_info.value.message == "not found"
        assert backend.call_count("/unknown") == 1

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise_retry_error(self, executor, backend):
        backend.fail(CHECK_PATH, 500, 500, 500, 500)

        with pytest.raises(RetryError) as exc_info:
            await executor.get(CHECK_PATH, params={"userId": "u1"}, options=FAST)

        assert exc_info.value.attempts == 4
        assert isinstance(exc_info.value.last_exception, RequestFailedError)
        assert backend.call_count(CHECK_PATH) == 4
        assert executor.invalidate(CHECK_PATH, params={"userId": "u1"}) is False

    @pytest.mark.asyncio
    async def test_backoff_doubles_per_attempt(self, executor, backend):
        backend.fail(CHECK_PATH, 500, 500)

        with patch("shared.retry.asyncio.sleep", new_callable=AsyncMock) as sleep:
            await executor.get(CHECK_PATH, params={"userId": "u1"},
                               options=RequestOptions(retries=3, retry_delay=0.3))

        assert [call.args[0] for call in sleep.await_args_list] == pytest.approx([0.3, 0.6])

    @pytest.mark.asyncio
    async def test_retry_after_header_is_honored(self, executor, backend):
        backend.fail(CHECK_PATH, 429)
        backend.retry_after = "2"

        with patch("shared.retry.asyncio.sleep", new_callable=AsyncMock) as sleep:
            await executor.get(CHECK_PATH, params={"userId": "u1"}, options=FAST)

        sleep.assert_awaited_once_with(2.0)
        assert backend.call_count(CHECK_PATH) == 2

    @pytest.mark.asyncio
    async def test_abort_cancels_requests_of_scope(self, executor, backend):
        backend.delay = 0.2

        doomed = asyncio.create_task(
            executor.get(CHECK_PATH, params={"userId": "u1"}, options=FAST, scope="u1")
        )
        survivor = asyncio.create_task(
            executor.get("/purchases/check/Q2", params={"userId": "u2"}, options=FAST, scope="u2")
        )
        await asyncio.sleep(0.01)

        assert executor.pending_count == 2
        assert executor.abort("u1") == 1
        with pytest.raises(RequestCancelledError):
            await doomed
        assert (await survivor).data["success"] is True
        assert executor.invalidate(CHECK_PATH, params={"userId": "u1"}) is False

    @pytest.mark.asyncio
    async def test_rate_limited_request_serves_stale_cache(self, backend):
        executor = RequestExecutor("http://test/api", transport=backend.transport, max_requests_per_minute=2)
        forced = RequestOptions(retry_delay=0.0, force_refresh=True)

        await executor.get(CHECK_PATH, params={"userId": "u1"}, options=forced)
        await executor.get(CHECK_PATH, params={"userId": "u1"}, options=forced)
        third = await executor.get(CHECK_PATH, params={"userId": "u1"}, options=forced)

        assert third.stale is True
        assert third.from_cache is True
        assert backend.call_count(CHECK_PATH) == 2

    @pytest.mark.asyncio
    async def test_rate_limited_request_without_cache_is_delayed(self, backend):
        executor = RequestExecutor("http://test/api", transport=backend.transport,
                                   max_requests_per_minute=1, rate_limit_delay=0.01)
        uncached = RequestOptions(retry_delay=0.0, skip_cache=True)

        await executor.get(CHECK_PATH, params={"userId": "u1"}, options=uncached)
        second = await executor.get(CHECK_PATH, params={"userId": "u1"}, options=uncached)

        assert second.stale is False
        assert backend.call_count(CHECK_PATH) == 2

    @pytest.mark.asyncio
    async def test_auth_token_is_sent(self, executor, backend):
        executor.set_auth_token("abc")
        await executor.get(CHECK_PATH, params={"userId": "u1"}, options=FAST)
        assert backend.requests[-1].headers["Authorization"] == "Bearer abc"

        executor.set_auth_token(None)
        await executor.get("/question-sets", options=FAST)
        assert "Authorization" not in backend.requests[-1].headers

    @pytest.mark.asyncio
    async def test_clear_cache_is_scoped(self, executor, backend):
        await executor.get(CHECK_PATH, params={"userId": "u1"}, options=FAST, scope="u1")
        await executor.get(CHECK_PATH, params={"userId": "u2"}, options=FAST, scope="u2")

        assert executor.clear_cache("u1") == 1
        await executor.get(CHECK_PATH, params={"userId": "u2"}, options=FAST, scope="u2")
        await executor.get(CHECK_PATH, params={"userId": "u1"}, options=FAST, scope="u1")

        assert backend.call_count(CHECK_PATH) == 3


class TestCacheKeyAndHeaders:
    """Test cases for cache keys and Retry-After parsing."""

    def test_cache_key_ignores_param_order(self):
        assert make_cache_key("get", "http://x/a", {"b": 1, "a": 2}) == \
            make_cache_key("GET", "http://x/a", {"a": 2, "b": 1})

    def test_cache_key_distinguishes_bodies(self):
        assert make_cache_key("POST", "http://x/a", body={"code": "A"}) != \
            make_cache_key("POST", "http://x/a", body={"code": "B"})

    def test_retry_after_seconds(self):
        assert parse_retry_after("3") == 3.0
        assert parse_retry_after("-1") == 0.0

    def test_retry_after_http_date(self):
        now = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
        header = format_datetime(now + timedelta(seconds=5), usegmt=True)
        assert parse_retry_after(header, now=now) == pytest.approx(5.0)

    def test_retry_after_garbage(self):
        assert parse_retry_after(None) is None
        assert parse_retry_after("soon") is None
