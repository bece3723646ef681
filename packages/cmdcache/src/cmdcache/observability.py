"""Structured logging and OpenTelemetry spans for cmdcache.

This module provides:
- Structured logging setup via structlog
- OpenTelemetry span helpers for cache operations
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

import structlog
from opentelemetry import trace
from opentelemetry.trace import SpanKind, Status, StatusCode

from cmdcache.keys import encode_key

if TYPE_CHECKING:
    from opentelemetry.trace import Span, Tracer
    from structlog.stdlib import BoundLogger

_logger: BoundLogger | None = None
_tracer: Tracer | None = None

TRACER_NAME = "cmdcache"


def get_logger() -> BoundLogger:
    """Get the package logger, creating it if necessary.

    Example:
        >>> logger = get_logger()
        >>> logger.info("cache_created", store_enabled=True)
    """
    global _logger
    if _logger is None:
        _logger = structlog.get_logger(TRACER_NAME)
    assert _logger is not None  # Type narrowing for mypy
    return _logger


def get_tracer() -> Tracer:
    """Get the OpenTelemetry tracer for cmdcache."""
    global _tracer
    if _tracer is None:
        _tracer = trace.get_tracer(TRACER_NAME)
    return _tracer


def configure_logging(
    *,
    log_level: str = "INFO",
    json_format: bool = True,
    add_timestamp: bool = True,
) -> None:
    """Configure structured logging for cmdcache.

    Args:
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        json_format: If True, output JSON format. If False, output human-readable.
        add_timestamp: If True, add ISO timestamp to log entries.

    Example:
        >>> configure_logging(log_level="DEBUG", json_format=False)
    """
    processors: list[Any] = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if add_timestamp:
        processors.insert(0, structlog.processors.TimeStamper(fmt="iso"))

    if json_format:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper()),
    )


@contextmanager
def span(
    name: str,
    *,
    kind: SpanKind = SpanKind.INTERNAL,
    attributes: dict[str, Any] | None = None,
) -> Iterator[Span]:
    """Create an OpenTelemetry span that records failures.

    Args:
        name: Span name (e.g., "cache.store").
        kind: Span kind.
        attributes: Optional span attributes.

    Yields:
        OpenTelemetry Span instance.
    """
    tracer = get_tracer()
    attrs = attributes or {}

    with tracer.start_as_current_span(name, kind=kind, attributes=attrs) as s:
        try:
            yield s
            s.set_status(Status(StatusCode.OK))
        except Exception as exc:
            s.set_status(Status(StatusCode.ERROR, str(exc)))
            s.record_exception(exc)
            raise


@contextmanager
def cache_operation(
    operation: str,
    *,
    label: str | None = None,
    key: bytes | None = None,
) -> Iterator[Span]:
    """Create a span for a cache operation with standard attributes.

    Args:
        operation: Operation name ("store" or "retrieve").
        label: Label of the build unit.
        key: Raw cache key; recorded as hex.

    Example:
        >>> with cache_operation("retrieve", label="//src:lib", key=b"\\x01") as s:
        ...     s.set_attribute("cache.hit", True)
    """
    attrs: dict[str, Any] = {"cache.operation": operation}
    if label:
        attrs["cache.target"] = label
    if key is not None:
        attrs["cache.key"] = encode_key(key)

    with span(f"cache.{operation}", kind=SpanKind.CLIENT, attributes=attrs) as s:
        yield s
