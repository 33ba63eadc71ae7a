"""Retry coordinator: decides, schedules and replays failed attempts.

The coordinator plugs into an intercepting transport as one request
interceptor and one response interceptor.  For every failed attempt it:

1. Loads the request's :class:`~retryhttp.state.RetryState`.
2. Asks ``retry_condition`` whether the failure is retryable, unless the
   retry budget is already spent.
3. On a decline because of the budget, calls
   ``on_max_retry_times_exceeded`` and re-raises.
4. On a grant, bumps ``retry_count``, computes the delay, shrinks the
   remaining lifecycle timeout (giving up at once if nothing is left), calls
   ``on_retry``, waits, and dispatches the request again.

The replayed attempt runs through the same interceptors, so its outcome is
evaluated by this same pipeline.

:func:`detach` finds the intercepting transport through the private
``client._transport`` attribute, as :func:`~retryhttp.interceptors.install`
does.
"""

from __future__ import annotations

import asyncio
import inspect
import threading
from collections.abc import Mapping
from typing import Any

import httpx

from retryhttp.cancellation import CancellationSignal, get_signal
from retryhttp.config import RetryConfig
from retryhttp.conditions import describe_failure
from retryhttp.errors import (
    ErrorCode,
    InterceptorsNotInstalledError,
    ResponseValidationError,
    RetryHookError,
)
from retryhttp.interceptors import (
    AsyncInterceptingTransport,
    InterceptingTransport,
    install,
    uninstall,
)
from retryhttp.models import (
    DISPATCHER_EXTENSION,
    TIMEOUT_EXTENSION,
    TRANSPORT_EXTENSION,
    InterceptorHandles,
)
from retryhttp.observability import NoopMetricsHook, RetryLogAdapter, get_logger
from retryhttp.state import RetryState, get_current_state, now_ms

log = get_logger("retryhttp.coordinator")


# ---------------------------------------------------------------------------
# Shared helpers (used by both sync and async coordinators)
# ---------------------------------------------------------------------------

def _retry_log(request: httpx.Request, state: RetryState, error: BaseException) -> RetryLogAdapter:
    return RetryLogAdapter(log, {
        "op": "retry",
        "method": request.method,
        # Query strings may carry credentials; log host and path only.
        "url": f"{request.url.host}{request.url.path}",
        "retry_count": state.retry_count,
        "retries": state.config.retries,
        "error_code": _reason(error),
        "error": str(error),
    })


def _reason(error: BaseException) -> str:
    code = describe_failure(error).code
    if isinstance(code, ErrorCode):
        return code.value
    return code or "UNKNOWN"


def _shrink_timeout(timeout: Mapping[str, float | None], remaining_s: float) -> dict:
    return {
        key: (None if value is None else min(value, remaining_s))
        for key, value in timeout.items()
    }


def _reuse_encoded_body(request: httpx.Request) -> None:
    """Re-wrap the already encoded body so the next attempt resends it as is."""
    try:
        content = request.content
    except httpx.RequestNotRead:
        # Streaming body that was never buffered; the transport decides
        # whether it can be replayed.
        return
    request.stream = httpx.ByteStream(content)


class _BaseCoordinator:
    """Decision logic shared by :class:`RetryCoordinator` and
    :class:`AsyncRetryCoordinator`.
    """

    def __init__(
        self,
        transport: InterceptingTransport | AsyncInterceptingTransport,
        defaults: RetryConfig | Mapping[str, Any] | None = None,
        metrics: Any | None = None,
    ) -> None:
        self._transport = transport
        # Validate client-wide options eagerly so mistakes surface at attach time.
        RetryConfig.from_layers(defaults)
        self._defaults = defaults
        self._metrics = metrics if metrics is not None else NoopMetricsHook()

    def on_request(self, request: httpx.Request) -> httpx.Request:
        """Request interceptor: create or refresh the retry state."""
        state = get_current_state(request, self._defaults)
        state.stamp(request)
        return request

    def _state_for(self, error: BaseException) -> tuple[httpx.Request, RetryState] | None:
        request = describe_failure(error).request
        if request is None:
            return None
        return request, get_current_state(request, self._defaults)

    def _dispatcher(
        self, request: httpx.Request,
    ) -> InterceptingTransport | AsyncInterceptingTransport:
        # Mounted transports have their own wrapper; resubmit through it.
        return request.extensions.get(DISPATCHER_EXTENSION, self._transport)

    def _prepare_retry(
        self,
        request: httpx.Request,
        state: RetryState,
        error: BaseException,
    ) -> float | None:
        """Account for a granted retry.

        Returns the delay in milliseconds, or ``None`` when the lifecycle
        timeout leaves no room for another attempt.
        """
        state.retry_count += 1
        delay = max(0.0, float(state.config.retry_delay(state.retry_count, error)))

        if request.extensions.get(TRANSPORT_EXTENSION) is self._dispatcher(request).transport:
            del request.extensions[TRANSPORT_EXTENSION]

        budget = state.timeout_budget_ms()
        if (
            not state.config.should_reset_timeout
            and budget is not None
            and state.last_request_time is not None
            and state.original_timeout is not None
        ):
            elapsed = now_ms() - state.last_request_time
            remaining = budget - elapsed - delay
            if remaining <= 0:
                self._metrics.increment(
                    "retryhttp.deadline_exceeded_total",
                    tags={"method": request.method},
                )
                _retry_log(request, state, error).warning(
                    "Retry skipped: lifecycle timeout exhausted",
                    fields={
                        "elapsed_ms": round(elapsed, 1),
                        "delay_ms": round(delay, 1),
                        "timeout_ms": budget,
                    },
                )
                return None
            request.extensions[TIMEOUT_EXTENSION] = _shrink_timeout(
                state.original_timeout, remaining / 1000,
            )

        _reuse_encoded_body(request)

        self._metrics.increment(
            "retryhttp.retries_total",
            tags={"method": request.method, "reason": _reason(error)},
        )
        self._metrics.timing(
            "retryhttp.retry_delay_ms", delay, tags={"method": request.method},
        )
        _retry_log(request, state, error).info(
            "Retrying request", fields={"delay_ms": round(delay, 1)},
        )
        return delay

    def _record_decline(
        self,
        request: httpx.Request,
        state: RetryState,
        error: BaseException,
    ) -> None:
        if state.retries_exhausted:
            self._metrics.increment(
                "retryhttp.retry_exhausted_total", tags={"method": request.method},
            )
            _retry_log(request, state, error).warning("Retries exhausted")
        else:
            self._metrics.increment(
                "retryhttp.retry_declined_total", tags={"method": request.method},
            )
            _retry_log(request, state, error).debug("Retry condition declined")

    @staticmethod
    def _log_condition_error(exc: Exception) -> None:
        log.warning(
            "retry_condition raised; not retrying",
            extra={"extra_fields": {"op": "retry", "error": repr(exc)}},
        )


# ---------------------------------------------------------------------------
# Sync coordinator
# ---------------------------------------------------------------------------

class RetryCoordinator(_BaseCoordinator):
    """Retry coordinator for :class:`httpx.Client`.

    Hooks must be plain functions; one returning an awaitable raises
    :class:`~retryhttp.errors.RetryHookError`.
    """

    _transport: InterceptingTransport

    def on_response(self, response: httpx.Response) -> httpx.Response:
        """Fulfilled interceptor: apply ``validate_response``."""
        state = get_current_state(response.request, self._defaults)
        validator = state.config.validate_response
        if validator is None:
            return response
        response.read()
        if _call_sync("validate_response", validator, response) is False:
            return self.on_error(_validation_error(response))
        return response

    def on_error(self, error: Exception) -> httpx.Response:
        """Rejected interceptor: retry *error*'s request or re-raise."""
        found = self._state_for(error)
        if found is None:
            raise error
        request, state = found

        if self._should_retry(state, error):
            delay = self._prepare_retry(request, state, error)
            if delay is None:
                raise error
            if state.config.on_retry is not None:
                _call_sync("on_retry", state.config.on_retry, state.retry_count, error, request)
            _wait_sync(delay, get_signal(request))
            return self._dispatcher(request).dispatch(request)

        self._record_decline(request, state, error)
        hook = state.config.on_max_retry_times_exceeded
        if state.retries_exhausted and hook is not None:
            _call_sync("on_max_retry_times_exceeded", hook, error, state.retry_count)
        raise error

    def _should_retry(self, state: RetryState, error: Exception) -> bool:
        if state.retries_exhausted:
            return False
        try:
            verdict = _call_sync("retry_condition", state.config.retry_condition, error)
        except Exception as exc:
            self._log_condition_error(exc)
            return False
        return bool(verdict)


# ---------------------------------------------------------------------------
# Async coordinator
# ---------------------------------------------------------------------------

class AsyncRetryCoordinator(_BaseCoordinator):
    """Retry coordinator for :class:`httpx.AsyncClient`.

    Every hook may be a plain function or return an awaitable.
    """

    _transport: AsyncInterceptingTransport

    async def on_response(self, response: httpx.Response) -> httpx.Response:
        """Fulfilled interceptor: apply ``validate_response``."""
        state = get_current_state(response.request, self._defaults)
        validator = state.config.validate_response
        if validator is None:
            return response
        await response.aread()
        if await _call_async(validator, response) is False:
            return await self.on_error(_validation_error(response))
        return response

    async def on_error(self, error: Exception) -> httpx.Response:
        """Rejected interceptor: retry *error*'s request or re-raise."""
        found = self._state_for(error)
        if found is None:
            raise error
        request, state = found

        if await self._should_retry(state, error):
            delay = self._prepare_retry(request, state, error)
            if delay is None:
                raise error
            if state.config.on_retry is not None:
                await _call_async(state.config.on_retry, state.retry_count, error, request)
            await _wait_async(delay, get_signal(request))
            return await self._dispatcher(request).dispatch(request)

        self._record_decline(request, state, error)
        hook = state.config.on_max_retry_times_exceeded
        if state.retries_exhausted and hook is not None:
            await _call_async(hook, error, state.retry_count)
        raise error

    async def _should_retry(self, state: RetryState, error: Exception) -> bool:
        if state.retries_exhausted:
            return False
        try:
            verdict = state.config.retry_condition(error)
            if inspect.isawaitable(verdict):
                # An async condition declines only with an explicit False.
                return (await verdict) is not False
        except Exception as exc:
            self._log_condition_error(exc)
            return False
        return bool(verdict)


# ---------------------------------------------------------------------------
# Hook and wait helpers
# ---------------------------------------------------------------------------

def _validation_error(response: httpx.Response) -> ResponseValidationError:
    request = response.request
    return ResponseValidationError(
        f"Response '{response.status_code} {response.reason_phrase}' for url "
        f"'{request.url}' rejected by validate_response",
        request=request,
        response=response,
    )


def _call_sync(name: str, hook: Any, *args: Any) -> Any:
    result = hook(*args)
    if inspect.isawaitable(result):
        if inspect.iscoroutine(result):
            result.close()
        raise RetryHookError(
            message=f"{name} returned an awaitable; use an httpx.AsyncClient for async hooks",
            context={"hook": name},
        )
    return result


async def _call_async(hook: Any, *args: Any) -> Any:
    result = hook(*args)
    if inspect.isawaitable(result):
        return await result
    return result


async def _wait_async(delay_ms: float, signal: CancellationSignal | None) -> None:
    """Sleep *delay_ms*, returning early if *signal* fires."""
    if signal is None:
        await asyncio.sleep(delay_ms / 1000)
        return
    if signal.cancelled:
        return
    woken = asyncio.Event()
    listener = woken.set
    signal.add_listener(listener)
    try:
        await asyncio.wait_for(woken.wait(), timeout=delay_ms / 1000)
    except asyncio.TimeoutError:
        pass
    finally:
        signal.remove_listener(listener)


def _wait_sync(delay_ms: float, signal: CancellationSignal | None) -> None:
    """Blocking counterpart of :func:`_wait_async`."""
    # Event.wait raises OverflowError past TIMEOUT_MAX.
    seconds = min(delay_ms / 1000, threading.TIMEOUT_MAX)
    woken = threading.Event()
    if signal is None:
        woken.wait(seconds)
        return
    listener = woken.set
    signal.add_listener(listener)
    try:
        woken.wait(seconds)
    finally:
        signal.remove_listener(listener)


# ---------------------------------------------------------------------------
# Public registration API
# ---------------------------------------------------------------------------

def attach(
    client: httpx.Client | httpx.AsyncClient,
    config: RetryConfig | Mapping[str, Any] | None = None,
    *,
    metrics: Any | None = None,
    **options: Any,
) -> InterceptorHandles:
    """Add retry behaviour to *client*.

    Parameters
    ----------
    client:
        An :class:`httpx.Client` or :class:`httpx.AsyncClient`.
    config:
        Client-wide retry options, as a :class:`RetryConfig` or a mapping.
    metrics:
        Optional :class:`~retryhttp.observability.MetricsHook` backend.
    **options:
        Client-wide retry options as keywords; override *config*.

    Returns
    -------
    InterceptorHandles
        Pass to :func:`detach` to remove the retry behaviour.

    Example::

        client = httpx.AsyncClient(base_url="https://example.com")
        attach(client, retries=3, retry_delay=exponential_delay)

        # Per-request override
        await client.get("/test", extensions={"retryhttp": {"retries": 0}})
    """
    defaults: dict[str, Any] = {}
    if isinstance(config, RetryConfig):
        defaults.update(config.as_dict())
    elif config is not None:
        defaults.update(config)
    defaults.update(options)

    transport = install(client)
    coordinator: RetryCoordinator | AsyncRetryCoordinator
    if isinstance(transport, AsyncInterceptingTransport):
        coordinator = AsyncRetryCoordinator(transport, defaults, metrics)
    else:
        coordinator = RetryCoordinator(transport, defaults, metrics)

    request_id = transport.request_interceptors.use(coordinator.on_request)
    response_id = transport.response_interceptors.use(
        coordinator.on_response, coordinator.on_error,
    )
    return InterceptorHandles(
        request_interceptor_id=request_id,
        response_interceptor_id=response_id,
    )


def detach(client: httpx.Client | httpx.AsyncClient, handles: InterceptorHandles) -> None:
    """Remove the interceptors registered by :func:`attach`.

    When no interceptors remain the client's original transport is
    restored.

    Raises
    ------
    InterceptorsNotInstalledError
        If *client* has no intercepting transport.
    """
    transport = client._transport
    if not isinstance(transport, (InterceptingTransport, AsyncInterceptingTransport)):
        raise InterceptorsNotInstalledError(
            message="Client has no retry interceptors installed",
            context={"transport_type": type(transport).__name__},
        )
    transport.request_interceptors.eject(handles.request_interceptor_id)
    transport.response_interceptors.eject(handles.response_interceptor_id)
    uninstall(client)
