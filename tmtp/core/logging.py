"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMTP, licensed under the MIT License.
See LICENSE file for details.
"""

"""Logging infrastructure with contextual error tracking.

Import runs log through ``StructuredLogger`` so every record can carry a
``context`` dict (job id, entity, source id, ...) and the correlation id of the
job being processed. Sensitive values such as passwords and emails coming from
user mapping decisions are redacted before they reach a handler.
"""

import json
import logging
import os
import re
import sys
import threading
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from re import Pattern
from typing import Any

from rich.logging import RichHandler

# Thread-local storage for context data
_context_local = threading.local()

CORRELATION_PREFIX = "tmtp"


class CorrelationIdManager:
    """Manages correlation IDs per thread."""

    def get_correlation_id(self) -> str:
        """Get the current correlation ID or generate a new one."""
        if not getattr(_context_local, "correlation_id", None):
            _context_local.correlation_id = f"{CORRELATION_PREFIX}-{uuid.uuid4()}"
        return _context_local.correlation_id

    def set_correlation_id(self, correlation_id: str) -> None:
        _context_local.correlation_id = correlation_id

    def clear_correlation_id(self) -> None:
        if hasattr(_context_local, "correlation_id"):
            delattr(_context_local, "correlation_id")

    def has_correlation_id(self) -> bool:
        return bool(getattr(_context_local, "correlation_id", None))


# Global correlation ID manager instance
correlation_manager = CorrelationIdManager()


class LogRedactor:
    """Redacts sensitive information from log messages."""

    def __init__(self) -> None:
        self.patterns: dict[str, Pattern] = {
            "api_key": re.compile(
                r'(api[_-]?key|token)["\']?\s*[:=]\s*["\']?([^"\'&\s]{8,})', re.IGNORECASE
            ),
            "password": re.compile(
                r'(password|passwd|secret)["\']?\s*[:=]\s*["\']?([^"\'&\s]+)', re.IGNORECASE
            ),
            "bearer_token": re.compile(
                r'(Authorization|Bearer)["\']?\s*[:=]\s*["\']?([^"\'&\s]{8,})', re.IGNORECASE
            ),
            "email": re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
        }

    def redact(self, message: str) -> str:
        """Redact sensitive information from the message."""
        if not isinstance(message, str):
            return message

        for field, pattern in self.patterns.items():
            if field == "email":
                message = pattern.sub("[REDACTED]", message)
            else:
                # Keep the key, redact the value
                message = pattern.sub(r"\1: [REDACTED]", message)
        return message

    def redact_context(self, context: dict[str, Any]) -> dict[str, Any]:
        """Redact string values of a context dict, and drop password values entirely."""
        cleaned: dict[str, Any] = {}
        for key, value in context.items():
            if "password" in key.lower():
                cleaned[key] = "[REDACTED]"
            elif isinstance(value, str):
                cleaned[key] = self.redact(value)
            else:
                cleaned[key] = value
        return cleaned


# Global redactor instance
redactor = LogRedactor()


class StructuredLogger(logging.Logger):
    """
    Logger that supports structured logging with context data.

    Any logging call accepts a ``context`` keyword with a dict of extra fields.
    """

    def _log(
        self,
        level: int,
        msg: Any,
        args: tuple,
        exc_info: bool | tuple | BaseException | None = None,
        extra: dict[str, Any] | None = None,
        stack_info: bool = False,
        stacklevel: int = 1,
        **kwargs: Any,
    ) -> None:
        context = kwargs.pop("context", None) or {}
        extra = dict(extra or {})

        if context:
            # context_data avoids clashing with LogRecord attributes
            extra["context_data"] = redactor.redact_context(context)

        extra["correlation_id"] = correlation_manager.get_correlation_id()

        if isinstance(msg, str):
            msg = redactor.redact(msg)

        super()._log(level, msg, args, exc_info, extra, stack_info, stacklevel + 1)


class JSONFormatter(logging.Formatter):
    """Formatter that outputs log records as JSON."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now().isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if hasattr(record, "correlation_id"):
            log_data["correlation_id"] = record.correlation_id

        if getattr(record, "context_data", None):
            log_data["context"] = record.context_data

        if record.exc_info:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": self.formatException(record.exc_info),
            }

        return json.dumps(log_data, default=str)


class RichContextFormatter(logging.Formatter):
    """Formatter for Rich console output with context data."""

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)

        context_data = getattr(record, "context_data", None)
        if context_data:
            context_str = " ".join(f"[{k}={v}]" for k, v in context_data.items())
            message = f"{message} {context_str}"

        if hasattr(record, "correlation_id"):
            message = f"{message} [correlation_id={record.correlation_id}]"

        return message


@contextmanager
def log_operation(
    logger: logging.Logger,
    operation_name: str,
    level: int = logging.INFO,
    context: dict[str, Any] | None = None,
) -> Iterator[dict[str, Any]]:
    """
    Log the start, completion and failure of an operation with its duration.

    Yields the context dict so callers can enrich it before completion.
    Exceptions are logged with the elapsed time and re-raised.
    """
    start_time = time.time()
    context = dict(context or {})
    context["operation_id"] = str(uuid.uuid4())[:8]

    logger.log(level, f"Starting {operation_name}", context=context)

    try:
        yield context
    except Exception as e:
        duration = time.time() - start_time
        error_context = {
            **context,
            "error_type": type(e).__name__,
            "error": str(e),
            "duration": f"{duration:.2f}s",
        }
        logger.log(
            logging.ERROR,
            f"Failed {operation_name} after {duration:.2f}s",
            context=error_context,
            exc_info=True,
        )
        raise
    duration = time.time() - start_time
    logger.log(level, f"Completed {operation_name} in {duration:.2f}s", context=context)


@contextmanager
def correlation_id(value: str | None = None) -> Iterator[str]:
    """
    Set a correlation ID for the duration of the block.

    The import worker uses the job id here so every record of one run shares it.
    """
    previous_id = (
        correlation_manager.get_correlation_id()
        if correlation_manager.has_correlation_id()
        else None
    )

    correlation_manager.set_correlation_id(value or f"{CORRELATION_PREFIX}-{uuid.uuid4()}")

    try:
        yield correlation_manager.get_correlation_id()
    finally:
        if previous_id:
            correlation_manager.set_correlation_id(previous_id)
        else:
            correlation_manager.clear_correlation_id()


class ErrorTracker:
    """
    Collects recoverable per-row problems during an import run.

    Transformers record skipped rows here instead of raising, so the run can
    finish and report how many rows were dropped and why.
    """

    def __init__(self, logger: logging.Logger | None = None, max_samples: int = 50) -> None:
        self.errors: list[dict[str, Any]] = []
        self.counts: dict[str, int] = {}
        self.max_samples = max_samples
        self.logger = logger or get_logger("tmtp.error_tracker")

    def add_warning(
        self, category: str, message: str, context: dict[str, Any] | None = None, log: bool = True
    ) -> None:
        """Track a recoverable problem such as an unresolved reference."""
        self.counts[category] = self.counts.get(category, 0) + 1
        if len(self.errors) < self.max_samples:
            self.errors.append(
                {
                    "category": category,
                    "message": message,
                    "timestamp": datetime.now().isoformat(),
                    "correlation_id": correlation_manager.get_correlation_id(),
                    "context": context or {},
                }
            )
        if log:
            self.logger.warning(message, context={"category": category, **(context or {})})

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    def has_errors(self) -> bool:
        return self.total > 0


def _plain_format(include_timestamp: bool) -> str:
    if include_timestamp:
        return "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    return "[%(levelname)s] %(name)s: %(message)s"


def configure_logging(
    level: int | str = logging.INFO,
    log_file: str | None = None,
    json_format: bool = False,
    include_timestamp: bool = True,
    use_rich: bool = True,
    debug: bool = False,
) -> None:
    """
    Configure application logging.

    Args:
    ----
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL or integer)
        log_file: Optional path to log file
        json_format: Whether to use JSON format for logs
        include_timestamp: Whether to include timestamps in logs
        use_rich: Whether to use Rich for console output
        debug: Whether to force debug mode

    """
    if isinstance(level, str):
        level = getattr(logging, level.upper())

    if debug:
        level = logging.DEBUG

    logging.setLoggerClass(StructuredLogger)

    handlers: list[logging.Handler] = []

    if use_rich and not json_format:
        rich_handler = RichHandler(rich_tracebacks=True, markup=False, show_time=include_timestamp)
        rich_handler.setFormatter(RichContextFormatter("%(message)s"))
        handlers.append(rich_handler)
    else:
        console_handler = logging.StreamHandler(sys.stderr)
        if json_format:
            console_handler.setFormatter(JSONFormatter())
        else:
            console_handler.setFormatter(logging.Formatter(_plain_format(include_timestamp)))
        handlers.append(console_handler)

    if log_file:
        os.makedirs(os.path.dirname(os.path.abspath(log_file)), exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        if json_format:
            file_handler.setFormatter(JSONFormatter())
        else:
            file_handler.setFormatter(logging.Formatter(_plain_format(include_timestamp)))
        handlers.append(file_handler)

    root = logging.getLogger()
    root.setLevel(max(level, logging.WARNING))  # Root logger should be at least WARNING
    for handler in list(root.handlers):
        root.removeHandler(handler)
    for handler in handlers:
        root.addHandler(handler)

    logger = get_logger("tmtp")
    logger.setLevel(level)
    logger.propagate = False
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    for handler in handlers:
        logger.addHandler(handler)

    logger.debug(f"Logging configured with level {logging.getLevelName(level)}")


def get_logger(name: str) -> StructuredLogger:
    """
    Get a structured logger.

    The logger is created as a ``StructuredLogger`` even when logging has not
    been configured yet, so ``context=`` keywords are always accepted.
    """
    existing = logging.Logger.manager.loggerDict.get(name)
    if isinstance(existing, StructuredLogger):
        return existing

    previous_class = logging.getLoggerClass()
    logging.setLoggerClass(StructuredLogger)
    try:
        return logging.getLogger(name)
    finally:
        logging.setLoggerClass(previous_class)
