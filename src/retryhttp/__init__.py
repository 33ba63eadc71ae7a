"""retryhttp -- automatic retries for httpx clients.

Public re-exports
-----------------

* **Registration:** :func:`attach`, :func:`detach`
* **Configuration:** :class:`RetryConfig`
* **Retry conditions:** :func:`is_network_error`, :func:`is_retryable_error`,
  :func:`is_safe_request_error`, :func:`is_idempotent_request_error`,
  :func:`is_network_or_idempotent_request_error`
* **Delay strategies:** :func:`no_delay`, :func:`linear_delay`,
  :func:`exponential_delay`, :func:`retry_after`
* **Cancellation:** :class:`CancellationSignal`
* **Errors:** :class:`RetryHTTPError` and subclasses, :class:`ErrorCode`

Usage::

    import httpx
    from retryhttp import attach, exponential_delay

    client = httpx.AsyncClient(base_url="https://example.com")
    attach(client, retries=3, retry_delay=exponential_delay)

    response = await client.get("/test")  # transient failures are retried

    # Per-request configuration
    await client.get("/test", extensions={"retryhttp": {"retries": 0}})
"""

from __future__ import annotations

# ── Cancellation ────────────────────────────────────────────────────────
from retryhttp.cancellation import CancellationSignal

# ── Retry conditions ────────────────────────────────────────────────────
from retryhttp.conditions import (
    describe_failure,
    error_code,
    is_idempotent_request_error,
    is_network_error,
    is_network_or_idempotent_request_error,
    is_retry_allowed,
    is_retryable_error,
    is_safe_request_error,
)

# ── Configuration ───────────────────────────────────────────────────────
from retryhttp.config import DEFAULT_RETRIES, RetryConfig

# ── Registration ────────────────────────────────────────────────────────
from retryhttp.coordinator import AsyncRetryCoordinator, RetryCoordinator, attach, detach

# ── Delay strategies ────────────────────────────────────────────────────
from retryhttp.delays import exponential_delay, linear_delay, no_delay, retry_after

# ── Errors ──────────────────────────────────────────────────────────────
from retryhttp.errors import (
    ErrorCode,
    InterceptorsNotInstalledError,
    RequestCancelledError,
    ResponseValidationError,
    RetryHookError,
    RetryHTTPError,
)

# ── Transport collaborator ──────────────────────────────────────────────
from retryhttp.interceptors import (
    AsyncInterceptingTransport,
    InterceptingTransport,
    InterceptorManager,
    install,
)

# ── Models ──────────────────────────────────────────────────────────────
from retryhttp.models import NAMESPACE, FailureInfo, InterceptorHandles
from retryhttp.state import RetryState, get_retry_state

__all__ = [
    # Registration
    "attach",
    "detach",
    "RetryCoordinator",
    "AsyncRetryCoordinator",
    # Configuration
    "RetryConfig",
    "DEFAULT_RETRIES",
    "NAMESPACE",
    # State
    "RetryState",
    "get_retry_state",
    # Conditions
    "describe_failure",
    "error_code",
    "is_retry_allowed",
    "is_network_error",
    "is_retryable_error",
    "is_safe_request_error",
    "is_idempotent_request_error",
    "is_network_or_idempotent_request_error",
    # Delays
    "no_delay",
    "linear_delay",
    "exponential_delay",
    "retry_after",
    # Cancellation
    "CancellationSignal",
    # Transport
    "InterceptingTransport",
    "AsyncInterceptingTransport",
    "InterceptorManager",
    "install",
    # Errors
    "ErrorCode",
    "RetryHTTPError",
    "RetryHookError",
    "InterceptorsNotInstalledError",
    "RequestCancelledError",
    "ResponseValidationError",
    # Models
    "FailureInfo",
    "InterceptorHandles",
]
