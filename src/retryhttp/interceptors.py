"""Request/response interceptors for httpx clients.

httpx has event hooks, but they cannot replace a response or recover from
an error.  This module provides the small interceptor mechanism the retry
coordinator needs, as an httpx transport that wraps the client's own:

1. Run every request interceptor (each may mutate and must return the
   request).
2. Refuse to send if the request's cancellation signal fired.
3. Send through the per-request transport, if one is set, else the wrapped
   one.
4. Turn a status rejected by ``validate_status`` into
   :class:`httpx.HTTPStatusError`.
5. Run every response interceptor.  ``on_fulfilled`` sees successes,
   ``on_rejected`` sees failures; each may return a replacement response or
   raise a replacement error.
6. If the status error from step 4 is still the outcome, hand its response
   back to httpx as a normal response.  The client therefore sees exactly
   the responses it would see without interceptors, redirects included.

:meth:`AsyncInterceptingTransport.dispatch` is also the "resubmit" entry
point: calling it again with the same request replays the full chain.

:func:`install` and :func:`uninstall` swap ``client._transport`` and the
values of ``client._mounts``.  Both are private httpx attributes, which is
why ``pyproject.toml`` pins the supported httpx range.
"""

from __future__ import annotations

import inspect
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Any

import httpx

from retryhttp.cancellation import get_signal
from retryhttp.errors import RequestCancelledError
from retryhttp.models import DISPATCHER_EXTENSION, TRANSPORT_EXTENSION
from retryhttp.observability import get_logger

log = get_logger("retryhttp.interceptors")

StatusValidator = Callable[[int], bool]


def default_validate_status(status_code: int) -> bool:
    """Accept everything below ``400``.

    ``4xx`` and ``5xx`` responses take the rejection path so retry logic can
    inspect them.  Redirects and ``304`` pass straight through to httpx.
    """
    return status_code < 400


def _status_error(request: httpx.Request, response: httpx.Response) -> httpx.HTTPStatusError:
    kind = "Server error" if response.status_code >= 500 else "Client error"
    if response.status_code < 400:
        kind = "Unexpected status"
    message = (
        f"{kind} '{response.status_code} {response.reason_phrase}' "
        f"for url '{request.url}'"
    )
    return httpx.HTTPStatusError(message, request=request, response=response)


# ---------------------------------------------------------------------------
# Interceptor registry
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Interceptor:
    on_fulfilled: Callable[[Any], Any] | None = None
    on_rejected: Callable[[Exception], Any] | None = None


class InterceptorManager:
    """Ordered registry of interceptors with integer handles."""

    __slots__ = ("_interceptors", "_next_id")

    def __init__(self) -> None:
        self._interceptors: dict[int, Interceptor] = {}
        self._next_id = 0

    def use(
        self,
        on_fulfilled: Callable[[Any], Any] | None = None,
        on_rejected: Callable[[Exception], Any] | None = None,
    ) -> int:
        """Register an interceptor and return its handle."""
        handle = self._next_id
        self._next_id += 1
        self._interceptors[handle] = Interceptor(on_fulfilled, on_rejected)
        return handle

    def eject(self, handle: int) -> None:
        """Remove the interceptor registered under *handle* (no-op if absent)."""
        self._interceptors.pop(handle, None)

    def clear(self) -> None:
        self._interceptors.clear()

    def __contains__(self, handle: object) -> bool:
        return handle in self._interceptors

    def __iter__(self) -> Iterator[Interceptor]:
        # Snapshot: interceptors may be ejected while a chain is running.
        return iter(list(self._interceptors.values()))

    def __len__(self) -> int:
        return len(self._interceptors)


# ---------------------------------------------------------------------------
# Sync transport
# ---------------------------------------------------------------------------

class InterceptingTransport(httpx.BaseTransport):
    """Synchronous transport running interceptors around *transport*.

    Parameters
    ----------
    transport:
        The transport that actually talks to the network.  It is also the
        default connection-pool handle.
    validate_status:
        ``(status_code) -> bool``; statuses it rejects go through the
        ``on_rejected`` interceptors as :class:`httpx.HTTPStatusError`.
        Defaults to :func:`default_validate_status`.
    request_interceptors, response_interceptors:
        Registries to share with another intercepting transport.  Fresh
        ones are created when omitted.
    """

    def __init__(
        self,
        transport: httpx.BaseTransport,
        *,
        validate_status: StatusValidator | None = None,
        request_interceptors: InterceptorManager | None = None,
        response_interceptors: InterceptorManager | None = None,
    ) -> None:
        self.transport = transport
        self.validate_status = validate_status or default_validate_status
        self.request_interceptors = (
            request_interceptors if request_interceptors is not None else InterceptorManager()
        )
        self.response_interceptors = (
            response_interceptors if response_interceptors is not None else InterceptorManager()
        )

    def handle_request(self, request: httpx.Request) -> httpx.Response:
        return self.dispatch(request)

    def dispatch(self, request: httpx.Request) -> httpx.Response:
        """Run the full interceptor chain for one attempt of *request*."""
        request.extensions[DISPATCHER_EXTENSION] = self
        for interceptor in self.request_interceptors:
            if interceptor.on_fulfilled is not None:
                request = _require_sync(interceptor.on_fulfilled(request))

        response: httpx.Response | None = None
        error: Exception | None = None
        rejected: httpx.HTTPStatusError | None = None
        try:
            response = self._send(request)
            if not self.validate_status(response.status_code):
                response.read()
                error = rejected = _status_error(request, response)
        except Exception as exc:
            error = exc

        for interceptor in self.response_interceptors:
            try:
                if error is None and interceptor.on_fulfilled is not None:
                    response = _require_sync(interceptor.on_fulfilled(response))
                elif error is not None and interceptor.on_rejected is not None:
                    response = _require_sync(interceptor.on_rejected(error))
                    error = None
            except Exception as exc:
                error = exc

        if error is not None:
            if error is rejected:
                return rejected.response
            raise error
        assert response is not None
        return response

    def _send(self, request: httpx.Request) -> httpx.Response:
        signal = get_signal(request)
        if signal is not None and signal.cancelled:
            raise RequestCancelledError(
                f"Request to {request.url} was cancelled",
                request=request,
                reason=signal.reason,
            )
        transport = request.extensions.get(TRANSPORT_EXTENSION) or self.transport
        response = transport.handle_request(request)
        response.request = request
        return response

    def close(self) -> None:
        self.transport.close()


# ---------------------------------------------------------------------------
# Async transport
# ---------------------------------------------------------------------------

class AsyncInterceptingTransport(httpx.AsyncBaseTransport):
    """Asynchronous transport running interceptors around *transport*.

    Mirrors :class:`InterceptingTransport`; interceptors may be plain
    functions or coroutine functions.
    """

    def __init__(
        self,
        transport: httpx.AsyncBaseTransport,
        *,
        validate_status: StatusValidator | None = None,
        request_interceptors: InterceptorManager | None = None,
        response_interceptors: InterceptorManager | None = None,
    ) -> None:
        self.transport = transport
        self.validate_status = validate_status or default_validate_status
        self.request_interceptors = (
            request_interceptors if request_interceptors is not None else InterceptorManager()
        )
        self.response_interceptors = (
            response_interceptors if response_interceptors is not None else InterceptorManager()
        )

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        return await self.dispatch(request)

    async def dispatch(self, request: httpx.Request) -> httpx.Response:
        """Run the full interceptor chain for one attempt of *request*."""
        request.extensions[DISPATCHER_EXTENSION] = self
        for interceptor in self.request_interceptors:
            if interceptor.on_fulfilled is not None:
                request = await _resolve(interceptor.on_fulfilled(request))

        response: httpx.Response | None = None
        error: Exception | None = None
        rejected: httpx.HTTPStatusError | None = None
        try:
            response = await self._send(request)
            if not self.validate_status(response.status_code):
                await response.aread()
                error = rejected = _status_error(request, response)
        except Exception as exc:
            error = exc

        for interceptor in self.response_interceptors:
            try:
                if error is None and interceptor.on_fulfilled is not None:
                    response = await _resolve(interceptor.on_fulfilled(response))
                elif error is not None and interceptor.on_rejected is not None:
                    response = await _resolve(interceptor.on_rejected(error))
                    error = None
            except Exception as exc:
                error = exc

        if error is not None:
            if error is rejected:
                return rejected.response
            raise error
        assert response is not None
        return response

    async def _send(self, request: httpx.Request) -> httpx.Response:
        signal = get_signal(request)
        if signal is not None and signal.cancelled:
            raise RequestCancelledError(
                f"Request to {request.url} was cancelled",
                request=request,
                reason=signal.reason,
            )
        transport = request.extensions.get(TRANSPORT_EXTENSION) or self.transport
        response = await transport.handle_async_request(request)
        response.request = request
        return response

    async def aclose(self) -> None:
        await self.transport.aclose()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_WRAPPERS = (InterceptingTransport, AsyncInterceptingTransport)


async def _resolve(value: Any) -> Any:
    """Await *value* if it is awaitable, else return it unchanged."""
    if inspect.isawaitable(value):
        return await value
    return value


def _require_sync(value: Any) -> Any:
    if inspect.isawaitable(value):
        if inspect.iscoroutine(value):
            value.close()
        raise TypeError("Interceptors of a synchronous client must not return awaitables")
    return value


def install(
    client: httpx.Client | httpx.AsyncClient,
    *,
    validate_status: StatusValidator | None = None,
) -> InterceptingTransport | AsyncInterceptingTransport:
    """Wrap the client's transports with intercepting ones.

    The default transport and every mounted one (``mounts=``, ``proxy=``, or
    proxies taken from the environment) are wrapped.  All wrappers share the
    interceptor registries of the one returned.  Idempotent: transports that
    are already wrapped are left alone.
    """
    wrapper_cls = (
        AsyncInterceptingTransport if isinstance(client, httpx.AsyncClient)
        else InterceptingTransport
    )
    main = client._transport
    if not isinstance(main, _WRAPPERS):
        main = wrapper_cls(main, validate_status=validate_status)
        client._transport = main
        log.debug(
            "Installed intercepting transport",
            extra={"extra_fields": {
                "op": "install", "transport": type(main.transport).__name__,
            }},
        )

    for pattern, mounted in list(client._mounts.items()):
        if mounted is None or isinstance(mounted, _WRAPPERS):
            continue
        client._mounts[pattern] = wrapper_cls(
            mounted,
            validate_status=main.validate_status,
            request_interceptors=main.request_interceptors,
            response_interceptors=main.response_interceptors,
        )
        log.debug(
            "Installed intercepting transport",
            extra={"extra_fields": {
                "op": "install", "mount": pattern.pattern, "transport": type(mounted).__name__,
            }},
        )
    return main


def uninstall(client: httpx.Client | httpx.AsyncClient) -> bool:
    """Restore the client's original transports if no interceptors remain.

    Returns ``True`` when the original transports were restored.
    """
    current = client._transport
    if not isinstance(current, _WRAPPERS):
        return False
    if len(current.request_interceptors) or len(current.response_interceptors):
        return False
    client._transport = current.transport
    for pattern, mounted in list(client._mounts.items()):
        if isinstance(mounted, _WRAPPERS):
            client._mounts[pattern] = mounted.transport
    return True
