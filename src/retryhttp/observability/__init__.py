"""Observability: structured logging and metrics hooks for retryhttp."""

from __future__ import annotations

from .logger import RetryLogAdapter, StructuredFormatter, get_logger
from .metrics import MetricsHook, NoopMetricsHook

__all__ = [
    "MetricsHook",
    "NoopMetricsHook",
    "RetryLogAdapter",
    "StructuredFormatter",
    "get_logger",
]
