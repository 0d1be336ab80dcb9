# Structured logging with job id correlation

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, Iterator, Optional

import structlog

# Context variable for the job currently being handled
job_id_ctx: ContextVar[Optional[str]] = ContextVar("job_id", default=None)


def get_job_id() -> Optional[str]:
    """Get the job id bound to the current context, if any"""
    return job_id_ctx.get()


@contextmanager
def job_context(job_id: str) -> Iterator[None]:
    """Bind job_id to every log event emitted inside the block"""
    token = job_id_ctx.set(job_id)
    try:
        yield
    finally:
        job_id_ctx.reset(token)


def add_job_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Add job id to log event"""
    job_id = get_job_id()
    if job_id and "job_id" not in event_dict:
        event_dict["job_id"] = job_id
    return event_dict


def setup_logging(log_level: str = "INFO", json: bool = True) -> None:
    """
    Setup structured logging.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json: Render events as JSON lines; console renderer otherwise
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    renderer = (
        structlog.processors.JSONRenderer()
        if json
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            add_job_id,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (typically __name__)
    """
    return structlog.get_logger(name)


class LoggerAdapter:
    """Adapter for structured logging with common fields"""

    def __init__(self, logger: structlog.BoundLogger, **default_fields: Any):
        self.logger = logger
        self.default_fields = default_fields

    def _log(self, level: str, event: str, **kwargs: Any) -> None:
        fields = {**self.default_fields, **kwargs}
        getattr(self.logger, level)(event, **fields)

    def debug(self, event: str, **kwargs: Any) -> None:
        self._log("debug", event, **kwargs)

    def info(self, event: str, **kwargs: Any) -> None:
        self._log("info", event, **kwargs)

    def warning(self, event: str, **kwargs: Any) -> None:
        self._log("warning", event, **kwargs)

    def error(self, event: str, **kwargs: Any) -> None:
        self._log("error", event, **kwargs)

    def bind(self, **new_fields: Any) -> "LoggerAdapter":
        """Create a new adapter with additional bound fields"""
        fields = {**self.default_fields, **new_fields}
        return LoggerAdapter(self.logger, **fields)
