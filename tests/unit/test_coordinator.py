"""Tests for the async retry coordinator, driven end to end through
``httpx.AsyncClient`` and a scripted mock transport.

Covers:
  - Retry grant/decline and the retry budget
  - validate_response turning successes into failures
  - Hook ordering and hook failures
  - Lifecycle timeout arithmetic
  - Per-request overrides
  - Body reuse and per-request transport handling
  - Cancellation during a pending delay
  - attach/detach
"""

from __future__ import annotations

import asyncio
import json
import time
from typing import Any
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from conftest import BASE_URL, ScriptedTransport

from retryhttp import (
    CancellationSignal,
    InterceptorHandles,
    InterceptorsNotInstalledError,
    RequestCancelledError,
    ResponseValidationError,
    attach,
    detach,
    get_retry_state,
)


def _client(transport: httpx.AsyncBaseTransport, **kwargs: Any) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=transport, base_url=BASE_URL, **kwargs)


def _always(error: BaseException) -> bool:
    return True


def _fixed(ms: float):
    def delay(retry_count: int, error: BaseException) -> float:
        return ms
    return delay


class RecordingMetricsHook:
    """A metrics backend that records all calls for assertion."""

    def __init__(self) -> None:
        self.increments: list[dict[str, Any]] = []
        self.timings: list[dict[str, Any]] = []

    def increment(self, name: str, value: int = 1, tags: dict[str, str] | None = None) -> None:
        self.increments.append({"name": name, "value": value, "tags": tags})

    def timing(self, name: str, ms: float, tags: dict[str, str] | None = None) -> None:
        self.timings.append({"name": name, "ms": ms, "tags": tags})

    def names(self) -> list[str]:
        return [entry["name"] for entry in self.increments]


# ---------------------------------------------------------------------------
# Basic retry behaviour
# ---------------------------------------------------------------------------

class TestRetryBasics:
    async def test_network_error_then_success(self, scripted):
        transport = scripted(httpx.ConnectError, (200, "ok"))
        async with _client(transport) as client:
            attach(client, retries=1)
            response = await client.get("/test")
        assert response.text == "ok"
        assert len(transport.calls) == 2
        assert get_retry_state(response.request).retry_count == 1

    async def test_condition_false_raises_original_error(self, scripted):
        transport = scripted(httpx.ConnectError, 200)
        async with _client(transport) as client:
            attach(client, retry_condition=lambda error: False)
            with pytest.raises(httpx.ConnectError) as exc_info:
                await client.get("/test")
        assert exc_info.value is transport.raised[0]
        assert len(transport.calls) == 1

    async def test_zero_retries_sends_once(self, scripted):
        transport = scripted(500, 200)
        async with _client(transport) as client:
            attach(client, retries=0)
            response = await client.get("/test")
        assert response.status_code == 500
        assert len(transport.calls) == 1

    async def test_retries_5xx_on_idempotent_method(self, scripted):
        transport = scripted(503, 502, (200, "ok"))
        async with _client(transport) as client:
            attach(client)
            response = await client.put("/test")
        assert response.status_code == 200
        assert len(transport.calls) == 3

    async def test_post_5xx_not_retried_by_default(self, scripted):
        transport = scripted(500, 200)
        async with _client(transport) as client:
            attach(client)
            response = await client.post("/test")
        assert response.status_code == 500
        assert len(transport.calls) == 1

    async def test_success_passes_through_untouched(self, scripted):
        transport = scripted((200, "ok"))
        async with _client(transport) as client:
            attach(client)
            response = await client.get("/test")
        assert response.text == "ok"
        assert get_retry_state(response.request).retry_count == 0

    async def test_client_timeout_not_retried_by_default(self, scripted):
        transport = scripted(httpx.ReadTimeout, 200)
        async with _client(transport) as client:
            attach(client)
            with pytest.raises(httpx.ReadTimeout):
                await client.get("/test")
        assert len(transport.calls) == 1

    async def test_client_timeout_retried_when_opted_in(self, scripted):
        transport = scripted(httpx.ReadTimeout, (200, "ok"))
        async with _client(transport) as client:
            attach(client, retry_timeouts=True)
            response = await client.get("/test")
        assert response.text == "ok"
        assert len(transport.calls) == 2

    async def test_invalid_options_rejected_at_attach(self, scripted):
        async with _client(scripted(200)) as client:
            with pytest.raises(ValueError, match="retries must be >= 0"):
                attach(client, retries=-1)


# ---------------------------------------------------------------------------
# Responses reach the caller as plain httpx would return them
# ---------------------------------------------------------------------------

def _redirecting(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/old":
        return httpx.Response(302, headers={"Location": "/new"})
    return httpx.Response(200, text="ok")


class TestStatusPassThrough:
    async def test_redirect_followed(self, scripted):
        transport = scripted(_redirecting)
        async with _client(transport, follow_redirects=True) as client:
            attach(client)
            response = await client.get("/old")
        assert response.text == "ok"
        assert [r.url.path for r in response.history] == ["/old"]
        assert [r.url.path for r in transport.calls] == ["/old", "/new"]

    async def test_redirect_returned_when_not_followed(self, scripted):
        async with _client(scripted(_redirecting)) as client:
            attach(client)
            response = await client.get("/old")
        assert response.status_code == 302
        assert response.headers["Location"] == "/new"

    async def test_not_modified_returned(self, scripted):
        async with _client(scripted(304)) as client:
            attach(client)
            response = await client.get("/test")
        assert response.status_code == 304

    async def test_client_error_returned(self, scripted):
        transport = scripted((404, "missing"))
        async with _client(transport) as client:
            attach(client, retries=0)
            response = await client.get("/test")
        assert response.status_code == 404
        assert response.text == "missing"
        assert len(transport.calls) == 1

    async def test_exhausted_server_error_returned(self, scripted):
        transport = scripted((503, "busy"))
        async with _client(transport) as client:
            attach(client, retries=2)
            response = await client.get("/test")
        assert response.status_code == 503
        assert response.text == "busy"
        assert len(transport.calls) == 3
        with pytest.raises(httpx.HTTPStatusError):
            response.raise_for_status()

    async def test_status_error_replaced_by_interceptor_is_raised(self, scripted):
        async with _client(scripted(500)) as client:
            transport = client._transport
            attach(client, retries=0)

            def replace(error: Exception):
                raise LookupError("mapped")

            client._transport.response_interceptors.use(None, replace)
            with pytest.raises(LookupError, match="mapped"):
                await client.get("/test")
        assert transport.calls


# ---------------------------------------------------------------------------
# Retry budget exhaustion
# ---------------------------------------------------------------------------

class TestExhaustion:
    async def test_hook_called_once_with_final_count(self, scripted):
        calls: list[tuple[BaseException, int]] = []
        transport = scripted(500)
        async with _client(transport) as client:
            attach(
                client,
                retries=2,
                on_max_retry_times_exceeded=lambda error, count: calls.append((error, count)),
            )
            response = await client.get("/test")
        assert len(transport.calls) == 3
        assert len(calls) == 1
        assert calls[0][1] == 2
        assert isinstance(calls[0][0], httpx.HTTPStatusError)
        assert calls[0][0].response is response

    async def test_async_hook_is_awaited(self, scripted):
        seen: list[int] = []

        async def hook(error: BaseException, count: int) -> None:
            seen.append(count)

        async with _client(scripted(httpx.ConnectError)) as client:
            attach(client, retries=1, on_max_retry_times_exceeded=hook)
            with pytest.raises(httpx.ConnectError):
                await client.get("/test")
        assert seen == [1]

    async def test_hook_error_replaces_original(self, scripted):
        def hook(error: BaseException, count: int) -> None:
            raise LookupError("hook failed")

        async with _client(scripted(500)) as client:
            attach(client, retries=1, on_max_retry_times_exceeded=hook)
            with pytest.raises(LookupError, match="hook failed"):
                await client.get("/test")

    async def test_async_hook_error_replaces_original(self, scripted):
        async def hook(error: BaseException, count: int) -> None:
            raise LookupError("async hook failed")

        async with _client(scripted(500)) as client:
            attach(client, retries=1, on_max_retry_times_exceeded=hook)
            with pytest.raises(LookupError, match="async hook failed"):
                await client.get("/test")

    async def test_hook_not_called_when_condition_declines(self, scripted):
        hook = AsyncMock()
        async with _client(scripted(500)) as client:
            attach(client, retries=3, retry_condition=lambda e: False,
                   on_max_retry_times_exceeded=hook)
            response = await client.get("/test")
        assert response.status_code == 500
        hook.assert_not_called()

    async def test_hook_called_when_no_retries_configured(self, scripted):
        hook = AsyncMock()
        async with _client(scripted(500)) as client:
            attach(client, retries=0, on_max_retry_times_exceeded=hook)
            await client.get("/test")
        # retries=0 is already exhausted on the first failure.
        hook.assert_awaited_once()


# ---------------------------------------------------------------------------
# Retry conditions
# ---------------------------------------------------------------------------

class TestRetryCondition:
    async def test_async_condition_false_declines(self, scripted):
        async def condition(error: BaseException) -> bool:
            return False

        transport = scripted(httpx.ConnectError, 200)
        async with _client(transport) as client:
            attach(client, retry_condition=condition)
            with pytest.raises(httpx.ConnectError):
                await client.get("/test")
        assert len(transport.calls) == 1

    async def test_async_condition_none_retries(self, scripted):
        async def condition(error: BaseException) -> None:
            return None

        transport = scripted(httpx.ConnectError, (200, "ok"))
        async with _client(transport) as client:
            attach(client, retry_condition=condition)
            response = await client.get("/test")
        assert response.text == "ok"

    async def test_async_condition_raising_declines(self, scripted):
        async def condition(error: BaseException) -> bool:
            raise RuntimeError("condition broke")

        transport = scripted(httpx.ConnectError, 200)
        async with _client(transport) as client:
            attach(client, retry_condition=condition)
            with pytest.raises(httpx.ConnectError):
                await client.get("/test")
        assert len(transport.calls) == 1

    async def test_sync_condition_raising_declines(self, scripted):
        def condition(error: BaseException) -> bool:
            raise RuntimeError("condition broke")

        transport = scripted(httpx.ConnectError, 200)
        async with _client(transport) as client:
            attach(client, retry_condition=condition)
            with pytest.raises(httpx.ConnectError):
                await client.get("/test")
        assert len(transport.calls) == 1

    async def test_condition_receives_failure(self, scripted):
        seen: list[BaseException] = []

        def condition(error: BaseException) -> bool:
            seen.append(error)
            return False

        transport = scripted(429)
        async with _client(transport) as client:
            attach(client, retry_condition=condition)
            response = await client.get("/test")
        assert response.status_code == 429
        assert seen[0].response is response


# ---------------------------------------------------------------------------
# on_retry
# ---------------------------------------------------------------------------

class TestOnRetry:
    async def test_called_before_each_retry(self, scripted):
        seen: list[tuple[int, str]] = []
        transport = scripted(httpx.ConnectError, httpx.ConnectError, (200, "ok"))
        async with _client(transport) as client:
            attach(
                client,
                on_retry=lambda count, error, request: seen.append((count, request.method)),
            )
            await client.get("/test")
        assert seen == [(1, "GET"), (2, "GET")]

    async def test_async_on_retry_error_abandons_retry(self, scripted):
        async def on_retry(count: int, error: BaseException, request: httpx.Request) -> None:
            raise LookupError("stop retrying")

        transport = scripted(httpx.ConnectError, 200)
        async with _client(transport) as client:
            attach(client, on_retry=on_retry)
            with pytest.raises(LookupError, match="stop retrying"):
                await client.get("/test")
        assert len(transport.calls) == 1


# ---------------------------------------------------------------------------
# validate_response
# ---------------------------------------------------------------------------

class TestValidateResponse:
    async def test_rejected_response_is_retried(self, scripted):
        transport = scripted((200, "retry me"), (200, "ok"))
        async with _client(transport) as client:
            attach(
                client,
                retry_condition=_always,
                validate_response=lambda response: response.text == "ok",
            )
            response = await client.get("/test")
        assert response.text == "ok"
        assert len(transport.calls) == 2

    async def test_rejected_response_raises_when_not_retried(self, scripted):
        transport = scripted((200, "nope"))
        async with _client(transport) as client:
            attach(client, retries=0, validate_response=lambda response: False)
            with pytest.raises(ResponseValidationError) as exc_info:
                await client.get("/test")
        assert exc_info.value.response.text == "nope"

    async def test_async_validator(self, scripted):
        async def validate(response: httpx.Response) -> bool:
            return response.text == "ok"

        transport = scripted((200, "bad"), (200, "ok"))
        async with _client(transport) as client:
            attach(client, retry_condition=_always, validate_response=validate)
            response = await client.get("/test")
        assert response.text == "ok"

    async def test_none_verdict_accepts(self, scripted):
        transport = scripted((200, "ok"))
        async with _client(transport) as client:
            attach(client, validate_response=lambda response: None)
            response = await client.get("/test")
        assert response.text == "ok"

    async def test_per_request_none_disables_validator(self, scripted):
        transport = scripted((200, "ok"))
        async with _client(transport) as client:
            attach(client, retry_condition=_always, validate_response=lambda r: False)
            response = await client.get(
                "/test", extensions={"retryhttp": {"validate_response": None}},
            )
        assert response.text == "ok"
        assert len(transport.calls) == 1


# ---------------------------------------------------------------------------
# Lifecycle timeout
# ---------------------------------------------------------------------------

class TestLifecycleTimeout:
    async def test_retry_timeout_shrinks_by_delay(self, scripted):
        transport = scripted(httpx.ConnectError, 200)
        wait = AsyncMock()
        with patch("retryhttp.coordinator._wait_async", wait):
            async with _client(transport, timeout=5.0) as client:
                attach(client, retry_delay=_fixed(1000))
                await client.get("/test")
        wait.assert_awaited_once()
        assert set(transport.timeouts[0].values()) == {5.0}
        for value in transport.timeouts[1].values():
            assert 3.5 < value <= 4.0

    async def test_deadline_exhausted_gives_up_without_waiting(self, scripted):
        transport = scripted(httpx.ConnectError, 200)
        wait = AsyncMock()
        with patch("retryhttp.coordinator._wait_async", wait):
            async with _client(transport, timeout=0.5) as client:
                attach(client, retry_delay=_fixed(1000))
                with pytest.raises(httpx.ConnectError) as exc_info:
                    await client.get("/test")
        wait.assert_not_awaited()
        assert len(transport.calls) == 1
        # The retry was granted before the deadline check declined it.
        assert get_retry_state(exc_info.value.request).retry_count == 1

    async def test_reset_timeout_keeps_full_timeout(self, scripted):
        transport = scripted(httpx.ConnectError, 200)
        with patch("retryhttp.coordinator._wait_async", AsyncMock()):
            async with _client(transport, timeout=5.0) as client:
                attach(client, retry_delay=_fixed(1000), should_reset_timeout=True)
                await client.get("/test")
        assert set(transport.timeouts[1].values()) == {5.0}

    async def test_disabled_timeout_has_no_budget(self, scripted):
        transport = scripted(httpx.ConnectError, 200)
        with patch("retryhttp.coordinator._wait_async", AsyncMock()):
            async with _client(transport, timeout=None) as client:
                attach(client, retry_delay=_fixed(60_000))
                response = await client.get("/test")
        assert response.status_code == 200
        assert set(transport.timeouts[1].values()) == {None}

    async def test_total_time_bounded_by_timeout(self, scripted):
        transport = scripted(httpx.ConnectError)
        started = time.monotonic()
        async with _client(transport, timeout=0.3) as client:
            attach(client, retries=10, retry_delay=_fixed(100))
            with pytest.raises(httpx.ConnectError):
                await client.get("/test")
        elapsed = time.monotonic() - started
        assert elapsed < 0.6
        assert 2 <= len(transport.calls) <= 3
        # Each later attempt is granted only what is left of the budget.
        assert transport.timeouts[-1]["read"] < transport.timeouts[0]["read"]


# ---------------------------------------------------------------------------
# Per-request configuration
# ---------------------------------------------------------------------------

class TestPerRequestOverride:
    async def test_override_retries(self, scripted):
        transport = scripted(httpx.ConnectError, 200)
        async with _client(transport) as client:
            attach(client, retries=3)
            with pytest.raises(httpx.ConnectError):
                await client.get("/test", extensions={"retryhttp": {"retries": 0}})
        assert len(transport.calls) == 1

    async def test_override_does_not_leak_to_other_requests(self, scripted):
        transport = scripted(httpx.ConnectError, 200)
        async with _client(transport) as client:
            attach(client, retries=3)
            with pytest.raises(httpx.ConnectError):
                await client.get("/a", extensions={"retryhttp": {"retries": 0}})
            response = await client.get("/b")
        assert response.status_code == 200
        assert get_retry_state(response.request).config.retries == 3

    async def test_unknown_override_key(self, scripted):
        async with _client(scripted(200)) as client:
            attach(client)
            with pytest.raises(ValueError, match="Unknown retry option"):
                await client.get("/test", extensions={"retryhttp": {"retires": 1}})

    async def test_state_isolated_between_requests(self, scripted):
        transport = scripted(httpx.ConnectError, 200, 200)
        async with _client(transport) as client:
            attach(client)
            first = await client.get("/a")
            second = await client.get("/b")
        assert get_retry_state(first.request).retry_count == 1
        assert get_retry_state(second.request).retry_count == 0


# ---------------------------------------------------------------------------
# Request reuse
# ---------------------------------------------------------------------------

class TestRequestReuse:
    async def test_body_resent_unchanged(self, scripted):
        bodies: list[bytes] = []

        def record(status: int):
            def handler(request: httpx.Request) -> httpx.Response:
                bodies.append(request.read())
                return httpx.Response(status)
            return handler

        transport = scripted(record(500), record(200))
        async with _client(transport) as client:
            attach(client, retry_condition=_always)
            response = await client.post("/test", json={"a": 1})
        assert response.status_code == 200
        assert len(bodies) == 2
        assert bodies[0] == bodies[1]
        assert json.loads(bodies[1]) == {"a": 1}

    async def test_default_transport_extension_stripped(self, scripted):
        transport = scripted(httpx.ConnectError, 200)
        async with _client(transport) as client:
            attach(client)
            response = await client.get("/test", extensions={"transport": transport})
        assert "transport" not in response.request.extensions
        assert len(transport.calls) == 2

    async def test_custom_transport_extension_kept(self, scripted):
        default = scripted(200)
        custom = scripted(httpx.ConnectError, 200)
        async with _client(default) as client:
            attach(client)
            response = await client.get("/test", extensions={"transport": custom})
        assert response.request.extensions["transport"] is custom
        assert len(custom.calls) == 2
        assert default.calls == []


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

class TestCancellation:
    async def test_cancel_during_delay_wakes_immediately(self, scripted):
        signal = CancellationSignal()
        transport = scripted(httpx.ConnectError, 200)
        loop = asyncio.get_running_loop()
        loop.call_later(0.05, signal.cancel, "user aborted")
        started = time.monotonic()
        async with _client(transport, timeout=None) as client:
            attach(client, retry_delay=_fixed(10_000))
            with pytest.raises(RequestCancelledError) as exc_info:
                await client.get("/test", extensions={"cancel_signal": signal})
        assert time.monotonic() - started < 2
        assert exc_info.value.reason == "user aborted"
        assert len(transport.calls) == 1

    async def test_cancelled_before_send(self, scripted):
        signal = CancellationSignal()
        signal.cancel()
        transport = scripted(200)
        async with _client(transport) as client:
            attach(client)
            with pytest.raises(RequestCancelledError):
                await client.get("/test", extensions={"cancel_signal": signal})
        assert transport.calls == []


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------

class TestMetrics:
    async def test_retry_metrics_emitted(self, scripted):
        metrics = RecordingMetricsHook()
        async with _client(scripted(httpx.ConnectError, 200)) as client:
            attach(client, metrics=metrics, retry_delay=_fixed(0))
            await client.get("/test")
        assert metrics.names() == ["retryhttp.retries_total"]
        assert metrics.increments[0]["tags"] == {"method": "GET", "reason": "CONNECT_ERROR"}
        assert metrics.timings[0]["name"] == "retryhttp.retry_delay_ms"

    async def test_exhausted_metric(self, scripted):
        metrics = RecordingMetricsHook()
        async with _client(scripted(500)) as client:
            attach(client, retries=1, metrics=metrics)
            await client.get("/test")
        assert metrics.names() == ["retryhttp.retries_total", "retryhttp.retry_exhausted_total"]

    async def test_declined_metric(self, scripted):
        metrics = RecordingMetricsHook()
        async with _client(scripted(404)) as client:
            attach(client, metrics=metrics)
            await client.get("/test")
        assert metrics.names() == ["retryhttp.retry_declined_total"]

    async def test_deadline_metric(self, scripted):
        metrics = RecordingMetricsHook()
        async with _client(scripted(httpx.ConnectError), timeout=0.1) as client:
            attach(client, metrics=metrics, retry_delay=_fixed(1000))
            with pytest.raises(httpx.ConnectError):
                await client.get("/test")
        assert metrics.names() == ["retryhttp.deadline_exceeded_total"]


# ---------------------------------------------------------------------------
# attach / detach
# ---------------------------------------------------------------------------

class TestAttachDetach:
    async def test_detach_restores_transport(self, scripted):
        transport = scripted(httpx.ConnectError, 200)
        async with _client(transport) as client:
            handles = attach(client)
            detach(client, handles)
            assert client._transport is transport
            with pytest.raises(httpx.ConnectError):
                await client.get("/test")
        assert len(transport.calls) == 1

    async def test_detach_without_attach(self, scripted):
        async with _client(scripted(200)) as client:
            with pytest.raises(InterceptorsNotInstalledError) as exc_info:
                detach(client, InterceptorHandles(0, 0))
        assert exc_info.value.context["transport_type"] == "ScriptedTransport"

    async def test_mounted_transport_is_retried(self, scripted):
        default = scripted(200)
        mounted = scripted(httpx.ConnectError, (200, "mounted"))
        async with _client(default, mounts={"https://other.example.com": mounted}) as client:
            attach(client)
            response = await client.get("https://other.example.com/test")
        assert response.text == "mounted"
        assert len(mounted.calls) == 2
        assert default.calls == []
        assert get_retry_state(response.request).retry_count == 1

    async def test_detach_restores_mounts(self, scripted):
        mounted = scripted(200)
        async with _client(scripted(200), mounts={"https://other.example.com": mounted}) as client:
            detach(client, attach(client))
            assert list(client._mounts.values()) == [mounted]

    async def test_handles_are_distinct_per_attach(self, scripted):
        async with _client(scripted(200)) as client:
            first = attach(client)
            second = attach(client)
        assert first.request_interceptor_id != second.request_interceptor_id
