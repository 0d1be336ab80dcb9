# Observability package
from .logging import (
    LoggerAdapter,
    get_job_id,
    get_logger,
    job_context,
    setup_logging,
)
from .metrics import start_metrics_server

__all__ = [
    "get_logger",
    "setup_logging",
    "get_job_id",
    "job_context",
    "LoggerAdapter",
    "start_metrics_server",
]
