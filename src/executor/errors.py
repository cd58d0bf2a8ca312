"""Executor exceptions and error classification.

Per-image analysis failures never raise: they become failed
ProcessingResults. The exceptions here are the ones that are allowed to
travel up to the engine and end a job.
"""

import re
from typing import Optional


class PipelineError(Exception):
    """Base class for executor errors."""

    error_code = "UNKNOWN_ERROR"


class PipelineConfigurationError(PipelineError):
    """The pipeline snapshot is malformed (stage order gaps, duplicates, no images)."""

    error_code = "INVALID_PIPELINE"


class StageConfigurationError(PipelineError):
    """A stage cannot be attempted at all (e.g. no prompt attached)."""

    error_code = "MISSING_PROMPT"

    def __init__(self, message: str, stage_order: Optional[int] = None):
        super().__init__(message)
        self.stage_order = stage_order


class JobCancelledError(PipelineError):
    """The job's cancellation check fired between images or stages.

    `images_processed` counts the images the interrupted stage finished
    before stopping, so the job counter can still be brought up to date.
    """

    error_code = "JOB_CANCELLED"

    def __init__(self, message: str = "Job cancelled", images_processed: int = 0):
        super().__init__(message)
        self.images_processed = images_processed


class PersistenceError(PipelineError):
    """A ResultStore write failed after every retry."""

    error_code = "DATABASE_ERROR"


CRITICAL_ERROR_CODES = frozenset({
    "INVALID_PIPELINE",
    "MISSING_PROMPT",
    "DATABASE_ERROR",
    "STORAGE_ERROR",
    "API_QUOTA_EXCEEDED",
})

ERROR_MESSAGES = {
    "RATE_LIMIT_EXCEEDED": "Analysis service is busy. Try again in a few minutes.",
    "API_QUOTA_EXCEEDED": "Daily analysis limit reached.",
    "API_TIMEOUT": "Analysis service took too long to respond.",
    "API_UNAVAILABLE": "Analysis service is temporarily unavailable.",
    "IMAGE_TOO_LARGE": "Image file is too large to analyze.",
    "IMAGE_DOWNLOAD_FAILED": "Could not download image from storage.",
    "INVALID_PIPELINE": "Pipeline configuration has errors.",
    "MISSING_PROMPT": "Pipeline stage is missing required prompt configuration.",
    "UNAUTHORIZED": "Analysis service rejected the credentials.",
    "INSUFFICIENT_PERMISSIONS": "Analysis service refused the request.",
    "DATABASE_ERROR": "Database write failed.",
    "STORAGE_ERROR": "File storage error.",
    "TIMEOUT_ERROR": "Operation timed out.",
    "JOB_CANCELLED": "Job was cancelled.",
    "UNKNOWN_ERROR": "An unexpected error occurred.",
}

_CODE_PATTERNS = [
    re.compile(r"ERROR_(\w+)"),
    re.compile(r"([A-Z_]+_ERROR)"),
    re.compile(r"(\w+_LIMIT_EXCEEDED)"),
    re.compile(r"([A-Z_]+_FAILED)"),
]


def categorize_error(message: str) -> str:
    """Map an error message to a coarse lower-case error type."""
    lower = message.lower()
    if "rate limit" in lower or "429" in lower:
        return "rate_limit"
    if "timeout" in lower or "timed out" in lower:
        return "timeout"
    if "image" in lower and "large" in lower:
        return "image_size"
    if "unauthorized" in lower or "403" in lower or "401" in lower:
        return "authorization"
    if "database" in lower or "sql" in lower:
        return "database"
    if "network" in lower or "connection" in lower:
        return "network"
    if "prompt" in lower or "pipeline" in lower:
        return "configuration"
    if "analysis" in lower:
        return "analysis"
    return "unknown"


def extract_error_code(message: str) -> str:
    """Pull an upper-case error code out of a message, or derive one."""
    for pattern in _CODE_PATTERNS:
        match = pattern.search(message)
        if match:
            return match.group(1)

    lower = message.lower()
    if "429" in message or "rate limit" in lower:
        return "RATE_LIMIT_EXCEEDED"
    if "401" in message:
        return "UNAUTHORIZED"
    if "403" in message:
        return "INSUFFICIENT_PERMISSIONS"
    if "404" in message:
        return "RESOURCE_NOT_FOUND"
    if "500" in message:
        return "SERVER_ERROR"
    if "timed out" in lower:
        return "API_TIMEOUT"
    if "timeout" in lower:
        return "TIMEOUT_ERROR"
    return "UNKNOWN_ERROR"


def classify_error(error) -> tuple[str, str]:
    """Return (error_type, error_code) for an exception or message."""
    if isinstance(error, PipelineError):
        message = str(error)
        error_type = categorize_error(message)
        if isinstance(error, (PipelineConfigurationError, StageConfigurationError)):
            error_type = "configuration"
        return error_type, error.error_code

    message = str(error)
    return categorize_error(message), extract_error_code(message)


def is_critical(error_code: str) -> bool:
    return error_code in CRITICAL_ERROR_CODES


def friendly_message(error_code: str, fallback: Optional[str] = None) -> str:
    """User-facing text for an error code."""
    return ERROR_MESSAGES.get(error_code) or fallback or ERROR_MESSAGES["UNKNOWN_ERROR"]
