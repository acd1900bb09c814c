"""Shared utilities for tokenfeed."""

from .logging import (
    JSONFormatter,
    StructuredLogger,
    configure_logging,
    correlation_context,
    get_logger,
)
from .metrics import MetricsCollector, get_metrics_collector

__all__ = [
    "JSONFormatter",
    "StructuredLogger",
    "configure_logging",
    "correlation_context",
    "get_logger",
    "MetricsCollector",
    "get_metrics_collector",
]
