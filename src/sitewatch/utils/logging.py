"""Structured logging setup using structlog."""

import logging
import sys
from typing import Any

import structlog
from structlog.types import FilteringBoundLogger


def setup_logging(log_level: str = "INFO", json_logs: bool = False) -> None:
    """Configure structured logging with appropriate processors."""

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, log_level.upper()),
    )

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        _safe_add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    processors.extend(
        [
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.format_exc_info,
        ]
    )

    if json_logs:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
        )

    # stdout is reserved for command output
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper())
        ),
        logger_factory=structlog.WriteLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def _safe_add_logger_name(logger, method_name: str, event_dict):
    """Add the logger name, tolerating WriteLogger instances without one."""
    name = getattr(logger, "name", None)
    if name is None and hasattr(logger, "_logger"):
        name = getattr(logger._logger, "name", None)
    event_dict.setdefault("logger", name or "unknown")
    return event_dict


def get_logger(name: str) -> FilteringBoundLogger:
    """Get a configured structlog logger."""
    return structlog.get_logger(name)


def bind_site_context(site_id: str, **context: Any) -> None:
    """Bind the site being crawled to every log event of the current task."""
    structlog.contextvars.bind_contextvars(site_id=site_id, **context)


def clear_site_context() -> None:
    """Clear context bound by bind_site_context."""
    structlog.contextvars.clear_contextvars()


class StructuredLogger:
    """Wrapper for structured logging with convenience methods."""

    def __init__(self, name: str):
        self.logger = get_logger(name).bind(logger=name)
        self.name = name

    def debug(self, message: str, **kwargs: Any) -> None:
        self.logger.debug(message, **kwargs)

    def info(self, message: str, **kwargs: Any) -> None:
        self.logger.info(message, **kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self.logger.warning(message, **kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        self.logger.error(message, **kwargs)

    def exception(self, message: str, **kwargs: Any) -> None:
        """Log exception with traceback."""
        self.logger.exception(message, **kwargs)

    def bind(self, **kwargs: Any) -> "StructuredLogger":
        """Create a new logger with bound context."""
        bound_logger = StructuredLogger(self.name)
        bound_logger.logger = self.logger.bind(**kwargs)
        return bound_logger


def get_structured_logger(name: str) -> StructuredLogger:
    """Get a structured logger instance."""
    return StructuredLogger(name)
