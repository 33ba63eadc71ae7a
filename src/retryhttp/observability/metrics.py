"""Metrics hook protocol and no-op default implementation.

retryhttp emits counters and timings while deciding on retries.  By default
a :class:`NoopMetricsHook` is used so there is zero overhead.  Pass any
object satisfying :class:`MetricsHook` to :func:`~retryhttp.attach` to route
them to Datadog, Prometheus, StatsD or any other backend.

Emitted metric names:

* ``retryhttp.retries_total``            -- counter, tagged ``method``, ``reason``
* ``retryhttp.retry_delay_ms``           -- timing
* ``retryhttp.retry_declined_total``     -- counter
* ``retryhttp.retry_exhausted_total``    -- counter
* ``retryhttp.deadline_exceeded_total``  -- counter
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class MetricsHook(Protocol):
    """Protocol that any metrics backend must satisfy.

    All methods accept an optional *tags* dict whose keys and values are
    strings.
    """

    def increment(
        self,
        name: str,
        value: int = 1,
        tags: dict[str, str] | None = None,
    ) -> None:
        """Increment a counter metric."""
        ...

    def timing(
        self,
        name: str,
        ms: float,
        tags: dict[str, str] | None = None,
    ) -> None:
        """Record a duration in milliseconds."""
        ...


class NoopMetricsHook:
    """Default metrics implementation that discards all data points."""

    __slots__ = ()

    def increment(
        self,
        name: str,
        value: int = 1,
        tags: dict[str, str] | None = None,
    ) -> None:
        pass

    def timing(
        self,
        name: str,
        ms: float,
        tags: dict[str, str] | None = None,
    ) -> None:
        pass
