"""Retry configuration for retryhttp.

:class:`RetryConfig` captures every option the retry coordinator
understands.  Options are resolved per request by layering, in increasing
precedence:

1. the dataclass defaults,
2. the client-wide options passed to :func:`~retryhttp.attach`,
3. the per-request override stored under
   ``request.extensions["retryhttp"]``.

An explicit ``None`` in a later layer wins, so a single request can switch
off a client-wide hook::

    client.get(url, extensions={"retryhttp": {"validate_response": None}})
"""

from __future__ import annotations

import dataclasses
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from retryhttp.conditions import is_network_or_idempotent_request_error
from retryhttp.delays import no_delay

DEFAULT_RETRIES = 3

RetryCondition = Callable[[BaseException], Any]
RetryDelay = Callable[[int, BaseException], float]


# ---------------------------------------------------------------------------
# Configuration dataclass
# ---------------------------------------------------------------------------

@dataclass
class RetryConfig:
    """Complete retry configuration for one logical request.

    Parameters
    ----------
    retries:
        Maximum number of attempts after the first one.
    retry_condition:
        ``(error) -> bool`` deciding whether a failure is retryable.  May
        return an awaitable (async clients only).  An async condition
        declines only by resolving to ``False`` or raising.
    retry_delay:
        ``(retry_count, error) -> milliseconds`` to wait before the next
        attempt.
    should_reset_timeout:
        When ``True`` the request timeout applies to each attempt
        separately.  When ``False`` it is a budget for the whole logical
        request, retries and delays included.
    retry_timeouts:
        Treat client-side timeouts as retryable for this request.  Off by
        default so that a server that is merely slow is not hammered.
    on_retry:
        ``(retry_count, error, request)`` called before each retry.  May be
        async.  If it raises, the retry is abandoned and its exception
        propagates.
    on_max_retry_times_exceeded:
        ``(error, retry_count)`` called once when the retry budget is spent.
        May be async.  If it raises, its exception replaces the original.
    validate_response:
        ``(response) -> bool`` applied to successful responses.  ``False``
        turns the response into a failure that goes through the retry
        decision like any other.
    """

    retries: int = DEFAULT_RETRIES

    retry_condition: RetryCondition = is_network_or_idempotent_request_error

    retry_delay: RetryDelay = no_delay

    should_reset_timeout: bool = False

    retry_timeouts: bool = False

    on_retry: Callable[..., Any] | None = None

    on_max_retry_times_exceeded: Callable[..., Any] | None = None

    validate_response: Callable[[Any], Any] | None = None

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        if isinstance(self.retries, bool) or not isinstance(self.retries, int):
            raise ValueError(f"retries must be an int, got {self.retries!r}")
        if self.retries < 0:
            raise ValueError(f"retries must be >= 0, got {self.retries}")
        for name in ("retry_condition", "retry_delay"):
            if not callable(getattr(self, name)):
                raise ValueError(f"{name} must be callable, got {getattr(self, name)!r}")
        for name in ("on_retry", "on_max_retry_times_exceeded", "validate_response"):
            hook = getattr(self, name)
            if hook is not None and not callable(hook):
                raise ValueError(f"{name} must be callable or None, got {hook!r}")

    @classmethod
    def option_names(cls) -> frozenset[str]:
        return frozenset(f.name for f in dataclasses.fields(cls))

    @classmethod
    def from_layers(
        cls,
        *layers: RetryConfig | Mapping[str, Any] | None,
    ) -> RetryConfig:
        """Merge option layers into a config; later layers win.

        Each layer is a mapping of option names (only the keys present are
        applied), a full :class:`RetryConfig`, or ``None`` (skipped).

        Raises
        ------
        ValueError
            If a mapping names an unknown option, or a merged value is
            invalid.
        """
        merged: dict[str, Any] = {}
        known = cls.option_names()
        for layer in layers:
            if layer is None:
                continue
            if isinstance(layer, RetryConfig):
                merged.update(layer.as_dict())
                continue
            unknown = set(layer) - known
            if unknown:
                raise ValueError(f"Unknown retry option(s): {', '.join(sorted(unknown))}")
            merged.update(layer)
        return cls(**merged)

    def as_dict(self) -> dict[str, Any]:
        """Shallow field mapping (hooks are not copied)."""
        return {f.name: getattr(self, f.name) for f in dataclasses.fields(self)}

    def __repr__(self) -> str:
        """Show hooks by name rather than by function repr."""
        parts: list[str] = []
        for f in dataclasses.fields(self):
            val = getattr(self, f.name)
            if callable(val):
                parts.append(f"{f.name}={getattr(val, '__name__', type(val).__name__)}")
            else:
                parts.append(f"{f.name}={val!r}")
        return f"RetryConfig({', '.join(parts)})"
