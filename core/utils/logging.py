# SPDX-License-Identifier: MIT
"""Structured JSON logging for tokenfeed services.

Loggers returned by :func:`get_logger` accept keyword fields which are
rendered as top-level JSON attributes, and every record carries the
correlation identifier bound to the current request or poll tick.
"""
from __future__ import annotations

import json
import logging
import sys
import time
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, Iterator, Optional
from uuid import uuid4


_CORRELATION_ID_VAR: ContextVar[Optional[str]] = ContextVar(
    "tokenfeed_correlation_id", default=None
)


def generate_correlation_id() -> str:
    """Generate a new correlation identifier."""

    return uuid4().hex


def get_correlation_id() -> Optional[str]:
    """Return the currently active correlation identifier, if any."""

    return _CORRELATION_ID_VAR.get()


@contextmanager
def correlation_context(correlation_id: Optional[str] = None) -> Iterator[str]:
    """Bind *correlation_id* (or a fresh one) for the duration of the block."""

    resolved = correlation_id or generate_correlation_id()
    token = _CORRELATION_ID_VAR.set(resolved)
    try:
        yield resolved
    finally:
        _CORRELATION_ID_VAR.reset(token)


class JSONFormatter(logging.Formatter):
    """Render log records as single-line JSON documents."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        correlation_id = getattr(record, "correlation_id", None)
        if correlation_id:
            log_data["correlation_id"] = correlation_id

        extra_fields = getattr(record, "extra_fields", None)
        if extra_fields:
            log_data.update(extra_fields)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class StructuredLogger:
    """Wrapper around :class:`logging.Logger` accepting keyword fields."""

    def __init__(self, name: str) -> None:
        self.logger = logging.getLogger(name)

    def _log(self, level: int, msg: str, *, exc_info: bool = False, **kwargs: Any) -> None:
        if not self.logger.isEnabledFor(level):
            return
        correlation_id = kwargs.pop("correlation_id", None) or get_correlation_id()
        extra_data: Dict[str, Any] = {"correlation_id": correlation_id}
        if kwargs:
            extra_data["extra_fields"] = kwargs
        self.logger.log(level, msg, extra=extra_data, exc_info=exc_info)

    def debug(self, msg: str, **kwargs: Any) -> None:
        self._log(logging.DEBUG, msg, **kwargs)

    def info(self, msg: str, **kwargs: Any) -> None:
        self._log(logging.INFO, msg, **kwargs)

    def warning(self, msg: str, **kwargs: Any) -> None:
        self._log(logging.WARNING, msg, **kwargs)

    def error(self, msg: str, **kwargs: Any) -> None:
        self._log(logging.ERROR, msg, **kwargs)

    def exception(self, msg: str, **kwargs: Any) -> None:
        self._log(logging.ERROR, msg, exc_info=True, **kwargs)

    @contextmanager
    def operation(
        self, operation_name: str, *, correlation_id: Optional[str] = None, **context: Any
    ) -> Iterator[Dict[str, Any]]:
        """Log start, completion and failure of an operation with its duration.

        Example:
            >>> logger = get_logger("tokenfeed.poller")
            >>> with logger.operation("poll_tick", chain="solana") as op:
            ...     op["accepted"] = 12
        """
        start_time = time.perf_counter()
        op_context: Dict[str, Any] = {"operation": operation_name, **context}

        with correlation_context(correlation_id or get_correlation_id()):
            self.debug(f"Starting operation: {operation_name}", **op_context)
            try:
                yield op_context
            except Exception as exc:
                op_context.setdefault("status", "failure")
                self.error(
                    f"Failed operation: {operation_name}",
                    **op_context,
                    duration_seconds=time.perf_counter() - start_time,
                    error_type=type(exc).__name__,
                    error_message=str(exc),
                )
                raise
            op_context.setdefault("status", "success")
            self.info(
                f"Completed operation: {operation_name}",
                **op_context,
                duration_seconds=time.perf_counter() - start_time,
            )


def configure_logging(
    level: str = "INFO",
    use_json: bool = True,
    stream: Any = None,
) -> None:
    """Configure application-wide logging.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        use_json: Whether to use JSON formatting
        stream: Output stream (defaults to sys.stdout)
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))
    root_logger.handlers.clear()

    handler = logging.StreamHandler(stream or sys.stdout)
    if use_json:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
    root_logger.addHandler(handler)


def get_logger(name: str) -> StructuredLogger:
    """Return a :class:`StructuredLogger` for *name* (typically ``__name__``)."""

    return StructuredLogger(name)


__all__ = [
    "JSONFormatter",
    "StructuredLogger",
    "configure_logging",
    "get_logger",
    "correlation_context",
    "generate_correlation_id",
    "get_correlation_id",
]
