"""Retry eligibility predicates.

Every predicate takes the exception raised for a failed attempt and returns
a ``bool``.  They are pure: the same error always yields the same answer.

* :func:`is_network_error` -- no response arrived and the failure is worth
  another attempt.
* :func:`is_retryable_error` -- no response, ``429``, or ``5xx``.
* :func:`is_safe_request_error` -- retryable and the method is safe.
* :func:`is_idempotent_request_error` -- retryable and the method is
  idempotent.
* :func:`is_network_or_idempotent_request_error` -- the default
  ``retry_condition``.
"""

from __future__ import annotations

import socket
import ssl

import httpx

from retryhttp.errors import ErrorCode, RequestCancelledError
from retryhttp.models import NAMESPACE, FailureInfo

SAFE_HTTP_METHODS: frozenset[str] = frozenset({"GET", "HEAD", "OPTIONS"})

IDEMPOTENT_HTTP_METHODS: frozenset[str] = SAFE_HTTP_METHODS | {"PUT", "DELETE"}

# Most specific classes first: TimeoutException subclasses TransportError,
# ConnectTimeout is both a timeout and a "connect" failure.
_EXCEPTION_CODES: tuple[tuple[type[Exception], ErrorCode], ...] = (
    (RequestCancelledError, ErrorCode.CANCELLED),
    (httpx.TimeoutException, ErrorCode.TIMEOUT),
    (httpx.ConnectError, ErrorCode.CONNECT_ERROR),
    (httpx.ReadError, ErrorCode.READ_ERROR),
    (httpx.WriteError, ErrorCode.WRITE_ERROR),
    (httpx.CloseError, ErrorCode.CLOSE_ERROR),
    (httpx.ProxyError, ErrorCode.PROXY_ERROR),
    (httpx.UnsupportedProtocol, ErrorCode.UNSUPPORTED_PROTOCOL),
    (httpx.LocalProtocolError, ErrorCode.LOCAL_PROTOCOL_ERROR),
    (httpx.RemoteProtocolError, ErrorCode.REMOTE_PROTOCOL_ERROR),
    (httpx.DecodingError, ErrorCode.DECODING_ERROR),
    (httpx.TooManyRedirects, ErrorCode.TOO_MANY_REDIRECTS),
    (httpx.HTTPStatusError, ErrorCode.BAD_RESPONSE),
)

# Codes that are never worth retrying: they describe a mistake in the
# request itself rather than a transient condition.
_NOT_RETRY_SAFE_CODES: frozenset[str] = frozenset({
    ErrorCode.UNSUPPORTED_PROTOCOL,
    ErrorCode.LOCAL_PROTOCOL_ERROR,
    ErrorCode.TOO_MANY_REDIRECTS,
})

# Low-level causes that will fail identically on every attempt.
_NOT_RETRY_SAFE_CAUSES: tuple[type[BaseException], ...] = (
    ssl.SSLCertVerificationError,
    socket.gaierror,
)

_NETWORK_EXCLUDED_CODES: frozenset[str] = frozenset({
    ErrorCode.CANCELLED,
    ErrorCode.TIMEOUT,
})


# ---------------------------------------------------------------------------
# Failure inspection
# ---------------------------------------------------------------------------

def error_code(error: BaseException) -> str | None:
    """Return the :class:`ErrorCode` for *error*, or ``None``.

    httpx exceptions are mapped by type.  Any other exception contributes its
    own string ``code`` attribute when it has one.
    """
    for exc_type, code in _EXCEPTION_CODES:
        if isinstance(error, exc_type):
            return code
    code = getattr(error, "code", None)
    return code if isinstance(code, str) and code else None


def _request_of(error: BaseException) -> httpx.Request | None:
    # httpx raises RuntimeError from ``.request`` when none was attached.
    try:
        request = error.request  # type: ignore[attr-defined]
    except (AttributeError, RuntimeError):
        return None
    return request if isinstance(request, httpx.Request) else None


def describe_failure(error: BaseException) -> FailureInfo:
    """Normalise *error* into a :class:`FailureInfo`."""
    response = getattr(error, "response", None)
    return FailureInfo(
        code=error_code(error),
        response=response if isinstance(response, httpx.Response) else None,
        request=_request_of(error),
    )


def _retries_timeouts(info: FailureInfo) -> bool:
    """Whether the failed request opted in to retrying client timeouts."""
    if info.request is None:
        return False
    state = info.request.extensions.get(NAMESPACE)
    config = getattr(state, "config", None)
    return bool(getattr(config, "retry_timeouts", False))


def _cause_chain(error: BaseException):
    seen: set[int] = set()
    current: BaseException | None = error
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ or current.__context__


# ---------------------------------------------------------------------------
# Predicates
# ---------------------------------------------------------------------------

def is_retry_allowed(error: BaseException) -> bool:
    """Return ``False`` for errors that no amount of retrying can fix.

    Covers malformed URLs, unsupported schemes, local protocol violations,
    redirect loops, TLS certificate failures and DNS resolution failures.
    """
    if isinstance(error, httpx.InvalidURL):
        return False
    if error_code(error) in _NOT_RETRY_SAFE_CODES:
        return False
    return not any(
        isinstance(exc, _NOT_RETRY_SAFE_CAUSES) for exc in _cause_chain(error)
    )


def is_network_error(error: BaseException) -> bool:
    """Return ``True`` if *error* is a retry-safe failure with no response."""
    info = describe_failure(error)
    if info.response is not None or info.code is None:
        return False
    if info.code in _NETWORK_EXCLUDED_CODES:
        if not (info.code == ErrorCode.TIMEOUT and _retries_timeouts(info)):
            return False
    return is_retry_allowed(error)


def is_retryable_error(error: BaseException) -> bool:
    """Return ``True`` for failures with no response, a ``429`` or a ``5xx``.

    Client-side timeouts are excluded unless the request set
    ``retry_timeouts``.
    """
    info = describe_failure(error)
    if info.code == ErrorCode.TIMEOUT and not _retries_timeouts(info):
        return False
    status = info.status
    return status is None or status == 429 or 500 <= status <= 599


def _is_method_retryable(error: BaseException, methods: frozenset[str]) -> bool:
    info = describe_failure(error)
    if info.request is None:
        # Cannot tell whether the request can be repeated.
        return False
    return info.method in methods and is_retryable_error(error)


def is_safe_request_error(error: BaseException) -> bool:
    """Retryable failure of a ``GET``, ``HEAD`` or ``OPTIONS`` request."""
    return _is_method_retryable(error, SAFE_HTTP_METHODS)


def is_idempotent_request_error(error: BaseException) -> bool:
    """Retryable failure of an idempotent request (safe methods, ``PUT``, ``DELETE``)."""
    return _is_method_retryable(error, IDEMPOTENT_HTTP_METHODS)


def is_network_or_idempotent_request_error(error: BaseException) -> bool:
    return is_network_error(error) or is_idempotent_request_error(error)
