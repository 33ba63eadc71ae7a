"""Error hierarchy for retryhttp.

Library errors inherit from :class:`RetryHTTPError`, which carries a
machine-readable ``code`` (from :class:`ErrorCode`), a human-readable
``message``, an optional structured ``context`` dict, and an optional
``cause`` (chained exception).

Errors that stand in for a failed attempt subclass the matching ``httpx``
exception instead, so callers catch them exactly as they would without
retry logic installed.

Error codes are defined as a :class:`str` enum so that they serialise
naturally to JSON and can be matched with simple ``==`` comparisons.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

import httpx

# ---------------------------------------------------------------------------
# Error code enum
# ---------------------------------------------------------------------------

class ErrorCode(str, Enum):
    """Machine-readable codes for failed attempts and library errors."""

    # Attempt failures (derived from the httpx exception type).
    CANCELLED = "CANCELLED"
    TIMEOUT = "TIMEOUT"
    CONNECT_ERROR = "CONNECT_ERROR"
    READ_ERROR = "READ_ERROR"
    WRITE_ERROR = "WRITE_ERROR"
    CLOSE_ERROR = "CLOSE_ERROR"
    PROXY_ERROR = "PROXY_ERROR"
    UNSUPPORTED_PROTOCOL = "UNSUPPORTED_PROTOCOL"
    LOCAL_PROTOCOL_ERROR = "LOCAL_PROTOCOL_ERROR"
    REMOTE_PROTOCOL_ERROR = "REMOTE_PROTOCOL_ERROR"
    DECODING_ERROR = "DECODING_ERROR"
    TOO_MANY_REDIRECTS = "TOO_MANY_REDIRECTS"
    BAD_RESPONSE = "BAD_RESPONSE"

    # Library errors.
    INVALID_HOOK = "INVALID_HOOK"
    NOT_INSTALLED = "NOT_INSTALLED"


# ---------------------------------------------------------------------------
# Base error
# ---------------------------------------------------------------------------

class RetryHTTPError(Exception):
    """Base exception for errors raised by retryhttp itself.

    Parameters
    ----------
    code:
        A value from :class:`ErrorCode` (or any string) identifying the
        error category.
    message:
        A developer-friendly description of what went wrong.
    context:
        Arbitrary structured data providing extra diagnostic detail.
    cause:
        The underlying exception, if this error wraps another.
    """

    def __init__(
        self,
        code: str,
        message: str,
        context: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        self.code: str = code
        self.message: str = message
        self.context: dict[str, Any] = context or {}
        self.cause: Exception | None = cause
        super().__init__(message)
        if cause is not None:
            self.__cause__ = cause

    def __repr__(self) -> str:
        ctx = f", context={self.context!r}" if self.context else ""
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r}{ctx})"


class RetryHookError(RetryHTTPError):
    """A hook returned something the client cannot use.

    Raised when a hook handed to a *synchronous* client returns an
    awaitable.

    Context keys: ``hook``.
    """

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(
            code=ErrorCode.INVALID_HOOK,
            message=message,
            context=context,
            cause=cause,
        )


class InterceptorsNotInstalledError(RetryHTTPError):
    """:func:`~retryhttp.detach` was called on a client without interceptors.

    Context keys: ``transport_type``.
    """

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(
            code=ErrorCode.NOT_INSTALLED,
            message=message,
            context=context,
            cause=cause,
        )


# ---------------------------------------------------------------------------
# Attempt failures
# ---------------------------------------------------------------------------

class RequestCancelledError(httpx.RequestError):
    """The request's :class:`~retryhttp.cancellation.CancellationSignal` fired
    before the attempt could be sent.
    """

    code = ErrorCode.CANCELLED

    def __init__(
        self,
        message: str,
        *,
        request: httpx.Request | None = None,
        reason: Any | None = None,
    ) -> None:
        super().__init__(message, request=request)
        self.reason = reason


class ResponseValidationError(httpx.HTTPStatusError):
    """A response was received but rejected by ``validate_response``.

    Carries the rejected ``response`` so retry conditions and callers can
    inspect it exactly like any other :class:`httpx.HTTPStatusError`.
    """

    code = ErrorCode.BAD_RESPONSE
