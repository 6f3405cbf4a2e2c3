"""
Error categories raised by the video pipeline.

Callers receive exactly one of these per failed job. The category lets the
surrounding service pick a user-facing message (e.g. suggest a shorter clip
on timeout) without parsing encoder output.
"""

from enum import Enum
from typing import Optional


class ErrorCategory(str, Enum):
    """Category attached to every pipeline error."""

    TIMEOUT = "timeout"
    INVALID_INPUT = "invalid_input"
    ENCODING = "encoding"
    MISSING_ASSET = "missing_asset"


class ProcessingError(Exception):
    """Base class for categorized pipeline failures."""

    category: ErrorCategory = ErrorCategory.ENCODING

    def __init__(self, message: str, stage: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.stage = stage

    def __str__(self) -> str:
        if self.stage:
            return f"[{self.stage}] {self.message}"
        return self.message


class StageTimeoutError(ProcessingError):
    """A stage's watchdog expired before the encoder exited."""

    category = ErrorCategory.TIMEOUT

    def __init__(self, message: str, stage: Optional[str] = None, timeout_seconds: float = 0.0):
        super().__init__(message, stage)
        self.timeout_seconds = timeout_seconds


class InvalidInputError(ProcessingError):
    """Source file is missing, unreadable, empty or implausibly small."""

    category = ErrorCategory.INVALID_INPUT


class EncodingError(ProcessingError):
    """The encoder exited non-zero or produced no usable output."""

    category = ErrorCategory.ENCODING

    def __init__(
        self,
        message: str,
        stage: Optional[str] = None,
        returncode: Optional[int] = None,
        stderr_tail: str = "",
    ):
        super().__init__(message, stage)
        self.returncode = returncode
        self.stderr_tail = stderr_tail


class MissingAssetError(ProcessingError):
    """An optional asset (e.g. a music track) is not available. Always recovered."""

    category = ErrorCategory.MISSING_ASSET


class PipelineBusyError(RuntimeError):
    """A pipeline instance was asked to run a second job concurrently."""
    pass
