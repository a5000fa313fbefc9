"""
Pipeline exception taxonomy and error message helpers.

Every error a job or refresh can end with is a PipelineError carrying a
FailureReason and an HTTP-like status code, so callers can map outcomes
without string matching. The sanitizing helpers keep stored and displayed
error text bounded and free of internal paths.
"""

import logging
import re
from typing import Optional

from core.enums import FailureReason

logger = logging.getLogger(__name__)


class PipelineError(Exception):
    """Base class for all pipeline failures."""

    reason = FailureReason.INTERNAL_ERROR
    status_code = 500

    def __init__(self, message: str = "", *, reason: Optional[FailureReason] = None):
        super().__init__(message)
        if reason is not None:
            self.reason = reason


class ValidationError(PipelineError):
    """The source was rejected before any work was done."""

    status_code = 400


class PayloadTooLarge(ValidationError):
    reason = FailureReason.PAYLOAD_TOO_LARGE
    status_code = 413


class UnsupportedMediaType(ValidationError):
    reason = FailureReason.UNSUPPORTED_MEDIA_TYPE
    status_code = 415


class EncoderError(PipelineError):
    """The encoder exited non-zero or produced malformed output."""

    reason = FailureReason.ENCODER_ERROR
    status_code = 502


class TranscodeTimeoutError(PipelineError):
    """The encoder exceeded its wall-clock limit and was killed."""

    reason = FailureReason.TIMEOUT
    status_code = 504


class PipelineIOError(PipelineError):
    """Local filesystem failure while staging or reading scratch output."""

    reason = FailureReason.IO_ERROR
    status_code = 500


class StoreError(PipelineError):
    """Object store operation failed."""

    reason = FailureReason.STORE_ERROR
    status_code = 502


class TransientStoreError(StoreError):
    """Retryable store failure (network, throttling, 5xx); raised after retries are exhausted."""

    status_code = 503


class PermanentStoreError(StoreError):
    """Non-retryable store failure (auth, bad request)."""


class ObjectNotFoundError(PermanentStoreError):
    status_code = 404

    def __init__(self, key: str):
        super().__init__(f"Object not found: {key}")
        self.key = key


class SigningConfigError(PipelineError):
    """Signing credentials or key material are missing or unusable."""

    reason = FailureReason.SIGNING_CONFIG_ERROR
    status_code = 500


class RewriteRaceError(PipelineError):
    """Segment enumeration and playlist contents disagree; the rewrite is skipped."""

    reason = FailureReason.REWRITE_RACE
    status_code = 409


class InvalidTransitionError(ValueError):
    """A job was asked to move between states the state machine does not allow."""


# Patterns that indicate internal details
INTERNAL_PATTERNS = [
    r'/home/\w+/',           # Home directory paths
    r'/mnt/\w+/',            # Mount paths
    r'/tmp/\w+',             # Temp paths
    r'/var/\w+/',            # Var paths
    r'File "[^"]+\.py"',     # Python file paths
    r'Signature=',           # Signed URL material
    r'X-Amz-Credential=',    # Presigned credentials
    r'No such file or directory',
    r'Permission denied',
]

# Generic messages keyed by failure reason
ERROR_MESSAGES = {
    FailureReason.PAYLOAD_TOO_LARGE: "The uploaded file is too large.",
    FailureReason.UNSUPPORTED_MEDIA_TYPE: "The uploaded file is not a supported video format.",
    FailureReason.ENCODER_ERROR: "Video transcoding failed. Please try uploading again.",
    FailureReason.TIMEOUT: "Video processing timed out. Please try again with a shorter video.",
    FailureReason.IO_ERROR: "A file access error occurred. Please try again.",
    FailureReason.STORE_ERROR: "Storage is temporarily unavailable. Please try again.",
    FailureReason.SIGNING_CONFIG_ERROR: "Streaming is misconfigured. Please contact support.",
    FailureReason.REWRITE_RACE: "The stream is being updated. Please try again shortly.",
    FailureReason.INTERNAL_ERROR: "An error occurred while processing your request. Please try again.",
}


def truncate_string(text: Optional[str], max_length: int) -> Optional[str]:
    """Truncate text to max_length characters, marking the cut with '...'."""
    if text is None:
        return None
    if len(text) <= max_length:
        return text
    if max_length <= 3:
        return text[:max_length]
    return text[: max_length - 3] + "..."


def truncate_error(error: Optional[str], max_length: Optional[int] = None) -> Optional[str]:
    """Truncate an error message for storage or logging."""
    if max_length is None:
        from config import ERROR_DETAIL_MAX_LENGTH

        max_length = ERROR_DETAIL_MAX_LENGTH
    return truncate_string(error, max_length)


def sanitize_error_message(
    error: Optional[str],
    reason: Optional[FailureReason] = None,
    log_original: bool = True,
    context: str = "",
) -> Optional[str]:
    """
    Sanitize an error message for display outside the worker (CLI output).

    Args:
        error: The original error message (may contain internal details)
        reason: Failure classification; selects a friendly message when the
            original text is unsafe to show
        log_original: Whether to log the original message before sanitizing
        context: Additional context for logging (e.g., "asset=abc123")

    Returns:
        A sanitized message, or None if input was None
    """
    if error is None:
        return None

    if log_original and error:
        log_msg = "Original error"
        if context:
            log_msg += f" ({context})"
        log_msg += f": {error}"
        logger.warning(log_msg)

    fallback = ERROR_MESSAGES.get(reason, ERROR_MESSAGES[FailureReason.INTERNAL_ERROR])

    for pattern in INTERNAL_PATTERNS:
        if re.search(pattern, error, re.IGNORECASE):
            return fallback

    # Short messages without path-like segments are safe as-is
    if len(error) < 100 and "/" not in error and "\\" not in error:
        return error

    return fallback
