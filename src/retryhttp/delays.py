"""Delay strategies for retry backoff.

A delay strategy is any callable ``(retry_count, error) -> milliseconds``.
The built-ins all honour a server-supplied ``Retry-After`` header: the
computed delay is never shorter than what the server asked for.

* :func:`no_delay` -- retry immediately (the default).
* :func:`linear_delay` -- ``retry_count * factor``.
* :func:`exponential_delay` -- ``2 ** retry_count * factor`` plus up to 20 %
  jitter.
"""

from __future__ import annotations

import math
import random
from collections.abc import Callable
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

from retryhttp.conditions import describe_failure

DelayStrategy = Callable[[int, "BaseException | None"], float]

DEFAULT_DELAY_FACTOR_MS = 100

# Longest pause a server can request through Retry-After: one day.
MAX_RETRY_AFTER_MS = 24 * 60 * 60 * 1000


def _parse_retry_after(raw: str) -> float:
    """Convert a ``Retry-After`` value (seconds or HTTP date) to milliseconds.

    The result is clamped to ``[0, MAX_RETRY_AFTER_MS]``; ``inf`` and ``nan``
    count as unparsable.
    """
    raw = raw.strip()
    try:
        seconds = float(raw)
    except ValueError:
        pass
    else:
        if not math.isfinite(seconds):
            return 0.0
        return _clamp(min(seconds, MAX_RETRY_AFTER_MS / 1000) * 1000)
    try:
        when = parsedate_to_datetime(raw)
    except (TypeError, ValueError, IndexError):
        return 0.0
    if when is None:
        return 0.0
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    delta = when - datetime.now(timezone.utc)
    return _clamp(delta.total_seconds() * 1000)


def _clamp(ms: float) -> float:
    return min(max(0.0, ms), float(MAX_RETRY_AFTER_MS))


def retry_after(error: BaseException | None) -> float:
    """Return the server-requested delay in milliseconds (``0`` if none).

    Reads the ``Retry-After`` header of the error's response.  Numeric
    values are seconds; anything else is parsed as an HTTP date relative to
    now.  Negative and unparsable values yield ``0``.
    """
    if error is None:
        return 0.0
    response = describe_failure(error).response
    if response is None:
        return 0.0
    raw = response.headers.get("retry-after")
    if raw is None:
        return 0.0
    return _parse_retry_after(raw)


def no_delay(retry_number: int = 0, error: BaseException | None = None) -> float:
    """Retry immediately unless the server asked for a pause."""
    return max(0.0, retry_after(error))


def linear_delay(delay_factor: float = DEFAULT_DELAY_FACTOR_MS) -> DelayStrategy:
    """Build a strategy waiting ``retry_number * delay_factor`` milliseconds."""

    def delay(retry_number: int = 0, error: BaseException | None = None) -> float:
        return max(retry_number * delay_factor, retry_after(error))

    return delay


def exponential_delay(
    retry_number: int = 0,
    error: BaseException | None = None,
    delay_factor: float = DEFAULT_DELAY_FACTOR_MS,
) -> float:
    """Exponential backoff with jitter.

    The base delay is ``2 ** retry_number * delay_factor`` (or the
    ``Retry-After`` value when that is larger).  A uniformly drawn jitter of
    up to 20 % of the base is added so that many clients backing off from
    the same outage do not retry in lockstep.

    Use ``delay_factor=1000`` for delays on the order of seconds::

        attach(client, retry_delay=lambda n, err: exponential_delay(n, err, 1000))
    """
    base = max(2 ** retry_number * delay_factor, retry_after(error))
    return base + base * 0.2 * random.random()
