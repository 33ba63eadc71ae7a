"""Cancellation signal for in-progress logical requests.

Attach a :class:`CancellationSignal` to a request through its extensions::

    signal = CancellationSignal()
    task = asyncio.create_task(
        client.get(url, extensions={"cancel_signal": signal})
    )
    ...
    signal.cancel("user navigated away")

A retry delay that is pending when the signal fires ends immediately, and
the intercepting transport refuses to send the next attempt, raising
:class:`~retryhttp.errors.RequestCancelledError`.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from typing import Any

import httpx

from retryhttp.models import SIGNAL_EXTENSION

Listener = Callable[[], Any]


class CancellationSignal:
    """A one-shot, thread-safe cancellation flag with listeners.

    Listeners run synchronously in the thread calling :meth:`cancel`.  For
    async clients cancel from the event loop thread.
    """

    __slots__ = ("_cancelled", "_listeners", "_lock", "reason")

    def __init__(self) -> None:
        self._cancelled = False
        self._listeners: list[Listener] = []
        self._lock = threading.Lock()
        self.reason: Any | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: Any | None = None) -> None:
        """Fire the signal.  Later calls are no-ops."""
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            self.reason = reason
            listeners = list(self._listeners)
            self._listeners.clear()
        for listener in listeners:
            listener()

    def add_listener(self, listener: Listener) -> None:
        """Register *listener*; it is called at once if already cancelled."""
        with self._lock:
            if not self._cancelled:
                self._listeners.append(listener)
                return
        listener()

    def remove_listener(self, listener: Listener) -> None:
        with self._lock:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass


def get_signal(request: httpx.Request) -> CancellationSignal | None:
    """Return the signal attached to *request*, if any."""
    signal = request.extensions.get(SIGNAL_EXTENSION)
    return signal if isinstance(signal, CancellationSignal) else None
