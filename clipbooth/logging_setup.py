"""
Process-wide logging configuration and job-scoped log routing.
"""

import logging
from contextvars import ContextVar
from typing import Optional

from clipbooth.config import get_settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Job whose code is running in the current task (None outside a job)
current_job_id: ContextVar[Optional[str]] = ContextVar("clipbooth_job_id", default=None)


class JobLogFilter(logging.Filter):
    """Passes only records emitted while `job_id` is the current job."""

    def __init__(self, job_id: str):
        super().__init__()
        self.job_id = job_id

    def filter(self, record: logging.LogRecord) -> bool:
        return current_job_id.get() == self.job_id


def configure_logging(level: Optional[str] = None) -> None:
    """
    Configure root logging for a service embedding the pipeline.

    Args:
        level: Log level name; defaults to the configured log_level
            (DEBUG when debug is enabled)
    """
    settings = get_settings()
    if level is None:
        level = "DEBUG" if settings.debug else settings.log_level

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )
