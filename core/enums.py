"""
Centralized enums for pipeline state and classification values.
Using str-based enums for database compatibility.
"""

from enum import Enum


class JobState(str, Enum):
    """
    Transcode job states.

    State Transition Flow:
        STAGED -> TRANSCODING -> TRANSCODED -> UPLOAD_PENDING -> UPLOADED
               -> URL_ISSUED -> PUBLISHED

    FAILED is reachable from every non-terminal state. FAILED and
    PUBLISHED are terminal.
    """

    STAGED = "staged"
    TRANSCODING = "transcoding"
    TRANSCODED = "transcoded"
    UPLOAD_PENDING = "upload_pending"
    UPLOADED = "uploaded"
    URL_ISSUED = "url_issued"
    PUBLISHED = "published"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.PUBLISHED, JobState.FAILED)


class FailureReason(str, Enum):
    """Why a job or refresh ended in failure."""

    PAYLOAD_TOO_LARGE = "payload_too_large"
    UNSUPPORTED_MEDIA_TYPE = "unsupported_media_type"
    ENCODER_ERROR = "encoder_error"
    TIMEOUT = "timeout"
    IO_ERROR = "io_error"
    STORE_ERROR = "store_error"
    SIGNING_CONFIG_ERROR = "signing_config_error"
    REWRITE_RACE = "rewrite_race"
    INTERNAL_ERROR = "internal_error"


class GrantAction(str, Enum):
    """Operation a signed URL authorizes."""

    READ = "read"
    WRITE = "write"


class AssetCategory(str, Enum):
    """Top-level object store prefix for an asset."""

    EPISODE = "hls"
    THUMBNAIL = "thumbnail_hls"
