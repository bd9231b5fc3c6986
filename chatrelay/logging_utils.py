"""
Centralized logging and error handling utilities for chatrelay.

Shared by the streaming client and the proxy handlers:
- structlog configuration (console or JSON rendering)
- error classification into an HTTP status and a category
- timing of async operations
- the ``{"error": ...}`` body every proxy failure returns
"""

from __future__ import annotations

import functools
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any, ParamSpec, TypeVar

import httpx
import structlog
from pydantic import ValidationError

from chatrelay.llm.exceptions import (
    ExhaustedFallbackError,
    LLMError,
    ProviderError,
    StreamTimeoutError,
    TransportError,
    UpstreamError,
)


def configure_logging(level: str = "INFO", json_output: bool = False) -> None:
    """Configure stdlib logging and structlog processors."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
        force=True,
    )
    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=True)
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()

# Type variables for generic decorators
P = ParamSpec("P")
T = TypeVar("T")
AsyncCallable = Callable[P, Awaitable[T]]

logger = structlog.get_logger(__name__)


class StreamErrorHandler:
    """Centralized error classification with structured logging."""

    @staticmethod
    def classify_error(error: Exception) -> tuple[int, str]:
        """
        Classify an error and return an HTTP status code and category.

        Args:
            error: The exception to classify

        Returns:
            Tuple of (http_status, error_category)
        """
        if isinstance(error, ExhaustedFallbackError):
            return 502, "exhausted_fallback"
        if isinstance(error, StreamTimeoutError):
            return 504, "timeout_error"
        if isinstance(error, TransportError):
            return 502, "transport_error"
        if isinstance(error, UpstreamError):
            return 502, "upstream_error"
        if isinstance(error, ProviderError):
            return 500, "provider_error"
        if isinstance(error, LLMError):
            return 500, "llm_error"
        if isinstance(error, ValidationError):
            return 422, "validation_error"
        if isinstance(error, TimeoutError | httpx.TimeoutException):
            return 504, "timeout_error"
        if isinstance(error, ConnectionError | OSError | httpx.TransportError):
            return 502, "connection_error"
        if isinstance(error, ValueError | TypeError):
            return 400, "parameter_error"
        return 500, "unknown_error"

    @staticmethod
    def to_payload(
        error: Exception,
        operation: str,
        context: dict[str, Any] | None = None,
        custom_message: str | None = None,
    ) -> tuple[int, dict[str, Any]]:
        """
        Log an error and build the ``{"error": ...}`` body returned to callers.

        Args:
            error: Original exception
            operation: Description of the operation that failed
            context: Additional context for logging
            custom_message: Override the default error message

        Returns:
            Tuple of (http_status, payload)
        """
        status, category = StreamErrorHandler.classify_error(error)
        context = context or {}
        message = custom_message or str(error) or f"{operation} failed"

        logger.error(
            "Operation failed",
            operation=operation,
            error_type=type(error).__name__,
            error_category=category,
            status=status,
            error_message=str(error),
            **context,
        )

        return status, {"error": message}


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


def _log_failure(log: Any, error: Exception, started: float) -> None:
    log.error(
        "Operation failed",
        error_type=type(error).__name__,
        error_message=str(error),
        duration_ms=_elapsed_ms(started),
    )


def log_operation(
    operation: str,
    *,
    log_result: bool = False,
) -> Callable[[AsyncCallable[P, T]], AsyncCallable[P, T]]:
    """
    Decorator timing an async call and logging its outcome.

    Failures are logged and re-raised unchanged.
    """
    def decorator(func: AsyncCallable[P, T]) -> AsyncCallable[P, T]:
        @functools.wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            log = logger.bind(operation=operation, function=func.__name__)
            started = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                _log_failure(log, e, started)
                raise

            extra: dict[str, Any] = {"duration_ms": _elapsed_ms(started)}
            if log_result:
                extra["result"] = result
            log.info("Operation completed", **extra)
            return result

        return wrapper
    return decorator


@asynccontextmanager
async def operation_context(
    operation: str,
    *,
    context: dict[str, Any] | None = None,
) -> AsyncIterator[Any]:
    """Time a block of work; yields a logger bound to the operation."""
    log = logger.bind(operation=operation, **(context or {}))
    started = time.perf_counter()
    try:
        yield log
    except Exception as e:
        _log_failure(log, e, started)
        raise
    log.info("Operation completed", duration_ms=_elapsed_ms(started))


class ContextualLogger:
    """Logger carrying fixed context (generation, model, conversation)."""

    def __init__(
        self, base_context: dict[str, Any] | None = None, name: str = __name__
    ):
        self.base_context = base_context or {}
        self.name = name
        self._logger = structlog.get_logger(name).bind(**self.base_context)

    def bind(self, **context: Any) -> ContextualLogger:
        return ContextualLogger({**self.base_context, **context}, name=self.name)

    def debug(self, message: str, **context: Any) -> None:
        self._logger.debug(message, **context)

    def info(self, message: str, **context: Any) -> None:
        self._logger.info(message, **context)

    def warning(self, message: str, **context: Any) -> None:
        self._logger.warning(message, **context)

    def error(self, message: str, **context: Any) -> None:
        self._logger.error(message, **context)
