"""Shared data types for retryhttp.

All public types are simple dataclasses with no behaviour beyond
construction.  They carry data between the classifier, the coordinator and
the intercepting transport.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import httpx

# ---------------------------------------------------------------------------
# Reserved request extension keys
# ---------------------------------------------------------------------------

NAMESPACE = "retryhttp"
"""Extension key holding the per-request override and, once dispatched,
the :class:`~retryhttp.state.RetryState`."""

SIGNAL_EXTENSION = "cancel_signal"
"""Extension key for an optional :class:`~retryhttp.cancellation.CancellationSignal`."""

TRANSPORT_EXTENSION = "transport"
"""Extension key for an optional per-request httpx transport (pool handle)."""

TIMEOUT_EXTENSION = "timeout"
"""Extension key httpx uses for the per-request timeout dict."""

DISPATCHER_EXTENSION = "retryhttp.dispatcher"
"""Extension key for the intercepting transport that last dispatched the
request; retries are resubmitted through it."""


# ---------------------------------------------------------------------------
# Failure view
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FailureInfo:
    """Normalised view of a failed attempt.

    Attributes
    ----------
    code:
        Machine-readable failure code (an :class:`~retryhttp.errors.ErrorCode`
        value), or ``None`` when the error carries none.
    response:
        The response received before failing, if any.
    request:
        The request that failed, or ``None`` when it cannot be identified.
    """

    code: str | None = None
    response: httpx.Response | None = None
    request: httpx.Request | None = None

    @property
    def status(self) -> int | None:
        return self.response.status_code if self.response is not None else None

    @property
    def method(self) -> str | None:
        return self.request.method if self.request is not None else None


# ---------------------------------------------------------------------------
# Registration result
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class InterceptorHandles:
    """Handles returned by :func:`~retryhttp.coordinator.attach`.

    Pass them to :func:`~retryhttp.coordinator.detach` to remove the retry
    interceptors again.
    """

    request_interceptor_id: int
    response_interceptor_id: int
