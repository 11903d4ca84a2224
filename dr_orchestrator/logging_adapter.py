"""
Safe logging adapter for the DR orchestrator.
Gives every component the same keyword-style interface whether the wrapped
logger is a structlog logger or a plain stdlib logger.
"""

from typing import Any, Optional
import logging
import sys

import structlog


_STDLIB_SPECIAL_KWARGS = ("exc_info", "stack_info", "stacklevel")


class SafeLogger:
    """
    Keyword-context logger.

    structlog loggers receive the context as-is. Stdlib loggers get it folded
    into ``extra={"fields": {...}}`` so keys never collide with LogRecord
    attributes.
    """

    def __init__(self, logger: Any):
        self._logger = logger
        self._is_structlog = hasattr(logger, "bind")

    def _log(self, log_level: str, event: str, **kwargs) -> None:
        if self._is_structlog:
            getattr(self._logger, log_level)(event, **kwargs)
            return

        special = {key: kwargs.pop(key) for key in _STDLIB_SPECIAL_KWARGS if key in kwargs}
        extra = dict(kwargs.pop("extra", None) or {})
        if kwargs:
            extra["fields"] = kwargs
        getattr(self._logger, log_level)(event, extra=extra, **special)

    def bind(self, **kwargs) -> "SafeLogger":
        """Return a logger carrying ``kwargs`` on every event (structlog only)."""
        if self._is_structlog:
            return SafeLogger(self._logger.bind(**kwargs))
        return self

    def debug(self, event: str, **kwargs) -> None:
        self._log("debug", event, **kwargs)

    def info(self, event: str, **kwargs) -> None:
        self._log("info", event, **kwargs)

    def warning(self, event: str, **kwargs) -> None:
        self._log("warning", event, **kwargs)

    def error(self, event: str, **kwargs) -> None:
        self._log("error", event, **kwargs)

    def critical(self, event: str, **kwargs) -> None:
        self._log("critical", event, **kwargs)

    warn = warning


def get_safe_logger(name: Optional[str] = None) -> SafeLogger:
    """Get a SafeLogger backed by structlog."""
    return SafeLogger(structlog.get_logger(name) if name else structlog.get_logger())


def configure_logging(level: str = "INFO", json_output: bool = True) -> None:
    """
    Configure the structlog processor chain and the stdlib root handler.

    Args:
        level: Minimum log level name
        json_output: Render JSON lines (production) instead of console output
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level.upper(), logging.INFO),
    )

    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
