"""
Domain types for the HLS pipeline.

MediaAsset is the durable record of one published rendition; TranscodeJob is
the ephemeral unit of work that produces it. SignedUrlGrant values are
minted on demand and never persisted on their own.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, List, Mapping, Optional, Tuple

from core.common import ensure_utc, utcnow
from core.enums import AssetCategory, FailureReason, GrantAction, JobState
from core.errors import InvalidTransitionError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MediaAssetKey:
    """Catalog identity of a rendition: one per (episode, language)."""

    episode_id: str
    language_tag: str

    def __str__(self) -> str:
        return f"{self.episode_id}/{self.language_tag}"


@dataclass
class MediaAsset:
    key: MediaAssetKey
    asset_id: str
    category: AssetCategory
    prefix: str
    playlist_key: str
    template_key: str
    segment_count: int
    created_at: datetime
    last_refreshed_at: Optional[datetime] = None
    playlist_url: Optional[str] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "MediaAsset":
        """Build from a media_assets database row."""
        return cls(
            key=MediaAssetKey(row["episode_id"], row["language_tag"]),
            asset_id=row["asset_id"],
            category=AssetCategory(row["category"]),
            prefix=row["prefix"],
            playlist_key=row["playlist_key"],
            template_key=row["template_key"],
            segment_count=row["segment_count"],
            created_at=ensure_utc(row["created_at"]),
            last_refreshed_at=ensure_utc(row["last_refreshed_at"]),
            playlist_url=row["playlist_url"],
        )


@dataclass(frozen=True)
class SignedUrlGrant:
    key: str
    url: str
    expires_at: int  # epoch seconds
    action: GrantAction = GrantAction.READ


@dataclass
class SourceMedia:
    """
    An input video: exactly one of in-memory bytes, a local file, or a
    previously uploaded object store blob.
    """

    filename: str
    content_type: Optional[str] = None
    data: Optional[bytes] = None
    path: Optional[Path] = None
    blob_key: Optional[str] = None
    size: Optional[int] = None

    def __post_init__(self):
        provided = [v for v in (self.data, self.path, self.blob_key) if v is not None]
        if len(provided) != 1:
            raise ValueError("SourceMedia needs exactly one of data, path or blob_key")
        if self.path is not None:
            self.path = Path(self.path)

    @classmethod
    def from_bytes(cls, data: bytes, filename: str, content_type: Optional[str] = None) -> "SourceMedia":
        return cls(filename=filename, content_type=content_type, data=data, size=len(data))

    @classmethod
    def from_path(cls, path, content_type: Optional[str] = None) -> "SourceMedia":
        path = Path(path)
        return cls(filename=path.name, content_type=content_type, path=path)

    @classmethod
    def from_blob(
        cls,
        blob_key: str,
        content_type: Optional[str] = None,
        size: Optional[int] = None,
    ) -> "SourceMedia":
        return cls(
            filename=blob_key.rsplit("/", 1)[-1],
            content_type=content_type,
            blob_key=blob_key,
            size=size,
        )

    @property
    def extension(self) -> str:
        return Path(self.filename).suffix.lower()

    def known_size(self) -> Optional[int]:
        """Size in bytes if it can be determined without downloading."""
        if self.data is not None:
            return len(self.data)
        if self.path is not None:
            try:
                return self.path.stat().st_size
            except OSError:
                return None
        return self.size


# Allowed forward transitions; FAILED is additionally reachable from any
# non-terminal state.
JOB_TRANSITIONS = {
    JobState.STAGED: JobState.TRANSCODING,
    JobState.TRANSCODING: JobState.TRANSCODED,
    JobState.TRANSCODED: JobState.UPLOAD_PENDING,
    JobState.UPLOAD_PENDING: JobState.UPLOADED,
    JobState.UPLOADED: JobState.URL_ISSUED,
    JobState.URL_ISSUED: JobState.PUBLISHED,
}


@dataclass
class TranscodeJob:
    source: SourceMedia
    key: MediaAssetKey
    category: AssetCategory = AssetCategory.EPISODE
    job_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    asset_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: JobState = JobState.STAGED
    scratch_dir: Optional[Path] = None
    failure_reason: Optional[FailureReason] = None
    error: Optional[str] = None
    history: List[Tuple[JobState, datetime]] = field(default_factory=list)

    def __post_init__(self):
        if not self.history:
            self.history.append((self.state, utcnow()))

    @property
    def prefix(self) -> str:
        return f"{self.category.value}/{self.asset_id}/"

    def transition(self, new_state: JobState) -> None:
        """Advance to new_state, rejecting moves the state machine forbids."""
        if self.state.is_terminal:
            raise InvalidTransitionError(f"Job {self.job_id} is already {self.state.value}")
        if new_state == JobState.FAILED:
            raise InvalidTransitionError("Use fail() to move a job to failed")
        if JOB_TRANSITIONS.get(self.state) != new_state:
            raise InvalidTransitionError(
                f"Invalid transition for job {self.job_id}: {self.state.value} -> {new_state.value}"
            )
        logger.debug(f"Job {self.job_id}: {self.state.value} -> {new_state.value}")
        self.state = new_state
        self.history.append((new_state, utcnow()))

    def fail(self, reason: FailureReason, error: str) -> None:
        if self.state.is_terminal:
            raise InvalidTransitionError(f"Job {self.job_id} is already {self.state.value}")
        self.state = JobState.FAILED
        self.failure_reason = reason
        self.error = error
        self.history.append((JobState.FAILED, utcnow()))


@dataclass
class JobOutcome:
    """Terminal report for one submitted job."""

    job_id: str
    key: MediaAssetKey
    state: JobState
    asset: Optional[MediaAsset] = None
    url: Optional[str] = None
    expires_at: Optional[int] = None
    failure_reason: Optional[FailureReason] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.state == JobState.PUBLISHED

    @classmethod
    def from_job(cls, job: TranscodeJob, asset: Optional[MediaAsset] = None,
                 grant: Optional[SignedUrlGrant] = None) -> "JobOutcome":
        return cls(
            job_id=job.job_id,
            key=job.key,
            state=job.state,
            asset=asset,
            url=grant.url if grant else None,
            expires_at=grant.expires_at if grant else None,
            failure_reason=job.failure_reason,
            error=job.error,
        )


@dataclass
class RewriteResult:
    text: str
    playlist_grant: SignedUrlGrant
    segment_count: int
