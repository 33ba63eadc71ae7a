"""Per-request retry state.

A :class:`RetryState` is created the first time a request is dispatched and
stored on the request itself under ``request.extensions["retryhttp"]``.
Every later attempt of the same logical request reads and mutates that one
object; nothing is shared between requests.
"""

from __future__ import annotations

import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import httpx

from retryhttp.config import RetryConfig
from retryhttp.models import NAMESPACE, TIMEOUT_EXTENSION


def now_ms() -> float:
    """Monotonic clock in milliseconds."""
    return time.monotonic() * 1000


@dataclass
class RetryState:
    """Retry bookkeeping for one logical request.

    Attributes
    ----------
    config:
        The resolved options for this request.
    retry_count:
        Retries granted so far.  Never exceeds ``config.retries``.
    last_request_time:
        Monotonic timestamp (ms) anchoring the lifecycle timeout.  Set on the
        first dispatch; re-stamped on every dispatch only when
        ``config.should_reset_timeout`` is set.
    original_timeout:
        The httpx timeout dict the request carried on its first dispatch.
    """

    config: RetryConfig
    retry_count: int = 0
    last_request_time: float | None = None
    original_timeout: dict[str, float | None] | None = None

    @property
    def retries_exhausted(self) -> bool:
        return self.retry_count >= self.config.retries

    def stamp(self, request: httpx.Request) -> None:
        """Record a dispatch of *request*."""
        if self.last_request_time is None or self.config.should_reset_timeout:
            self.last_request_time = now_ms()
        if self.original_timeout is None:
            timeout = request.extensions.get(TIMEOUT_EXTENSION)
            if timeout:
                self.original_timeout = dict(timeout)

    def timeout_budget_ms(self) -> float | None:
        """The lifecycle timeout in ms, or ``None`` when no timeout is set."""
        if not self.original_timeout:
            return None
        values = [v for v in self.original_timeout.values() if v is not None]
        if not values or max(values) <= 0:
            return None
        return max(values) * 1000


def get_retry_state(request: httpx.Request) -> RetryState | None:
    """Return the :class:`RetryState` of *request*, if it was dispatched."""
    state = request.extensions.get(NAMESPACE)
    return state if isinstance(state, RetryState) else None


def get_current_state(
    request: httpx.Request,
    defaults: RetryConfig | Mapping[str, Any] | None = None,
) -> RetryState:
    """Return the state of *request*, creating it on first use.

    On creation the client-wide *defaults* are merged with any per-request
    override found under the reserved extension key, and the override is
    replaced by the new state.
    """
    existing = request.extensions.get(NAMESPACE)
    if isinstance(existing, RetryState):
        return existing
    state = RetryState(config=RetryConfig.from_layers(defaults, existing))
    request.extensions[NAMESPACE] = state
    return state
