"""Shared test fixtures for the retryhttp test suite."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import httpx
import pytest

BASE_URL = "https://example.com"


class ScriptedTransport(httpx.MockTransport):
    """Mock transport replaying a fixed script of outcomes.

    Each step is one of:

    * an ``int`` status code (empty body),
    * a ``(status, body)`` tuple,
    * an exception *class* from httpx, raised with the request attached,
    * a callable ``(request) -> httpx.Response``.

    The last step repeats once the script runs out.  Every request seen is
    recorded in :attr:`calls`, and every exception raised in :attr:`raised`.
    """

    def __init__(self, *steps: Any) -> None:
        self.steps = steps
        self.calls: list[httpx.Request] = []
        self.timeouts: list[dict] = []
        self.raised: list[Exception] = []
        super().__init__(self._handle)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        self.timeouts.append(dict(request.extensions.get("timeout") or {}))
        step = self.steps[min(len(self.calls), len(self.steps)) - 1]
        if isinstance(step, type) and issubclass(step, Exception):
            exc = step(f"scripted {step.__name__}", request=request)
            self.raised.append(exc)
            raise exc
        if isinstance(step, int):
            return httpx.Response(step)
        if isinstance(step, tuple):
            status, body = step
            return httpx.Response(status, text=body)
        return step(request)


@pytest.fixture
def scripted() -> Callable[..., ScriptedTransport]:
    """Factory for :class:`ScriptedTransport` instances."""
    return ScriptedTransport


def make_request(method: str = "GET", url: str = f"{BASE_URL}/test") -> httpx.Request:
    return httpx.Request(method, url)


def make_status_error(
    status: int,
    method: str = "GET",
    headers: dict[str, str] | None = None,
) -> httpx.HTTPStatusError:
    request = make_request(method)
    response = httpx.Response(status, headers=headers or {}, request=request)
    return httpx.HTTPStatusError(f"status {status}", request=request, response=response)
