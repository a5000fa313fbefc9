"""
Transcode pipeline orchestration.

Drives one TranscodeJob through

    staged -> transcoding -> transcoded -> upload_pending -> uploaded
           -> url_issued -> published

inside a bounded pool of concurrent jobs. Segments are uploaded before the
template and playlist; the asset is recorded only once every object is
durably written and a first playlist URL has been minted. A failed job
removes whatever it already uploaded and always releases its scratch
directory.
"""

import asyncio
import logging
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from config import (
    HLS_SEGMENT_DURATION,
    MAX_BATCH_FILES,
    MAX_CONCURRENT_JOBS,
    MAX_SOURCE_SIZE,
    SCRATCH_DIR,
    UPLOAD_CONCURRENCY,
    default_job_concurrency,
)
from core.enums import AssetCategory, FailureReason, JobState
from core.errors import (
    EncoderError,
    PipelineError,
    PipelineIOError,
    StoreError,
    ValidationError,
    truncate_error,
)
from core.models import JobOutcome, MediaAsset, MediaAssetKey, SourceMedia, TranscodeJob
from core.retry import DatabaseRetryableError
from storage.object_store import (
    ObjectStore,
    content_type_for,
    playlist_key_for,
    template_key_for,
)
from storage.signing import UrlSigner
from worker.alerts import (
    alert_job_failed,
    alert_signing_config_error,
    get_metrics,
    send_alert_fire_and_forget,
)
from worker.ingest import OUTPUT_DIRNAME, ScratchSpace, stage_source, validate_source
from worker.playlist import PlaylistRewriter, find_segment_references, read_ttl_for
from worker.transcoder import Transcoder, validate_hls_playlist

logger = logging.getLogger(__name__)


class TranscodePipeline:
    def __init__(
        self,
        store: ObjectStore,
        signer: UrlSigner,
        transcoder: Transcoder,
        repository=None,
        *,
        scratch_root: Path = SCRATCH_DIR,
        max_concurrent_jobs: Optional[int] = None,
        upload_concurrency: int = UPLOAD_CONCURRENCY,
        segment_duration: int = HLS_SEGMENT_DURATION,
        max_source_size: int = MAX_SOURCE_SIZE,
    ):
        self.store = store
        self.signer = signer
        self.transcoder = transcoder
        self.repository = repository
        self.rewriter = PlaylistRewriter(store, signer)
        self.scratch_root = Path(scratch_root)
        self.upload_concurrency = upload_concurrency
        self.segment_duration = segment_duration
        self.max_source_size = max_source_size

        if max_concurrent_jobs is None:
            max_concurrent_jobs = MAX_CONCURRENT_JOBS or default_job_concurrency()
        self.max_concurrent_jobs = max(1, max_concurrent_jobs)
        self._job_slots = asyncio.Semaphore(self.max_concurrent_jobs)

    async def submit(
        self,
        source: SourceMedia,
        key: MediaAssetKey,
        category: AssetCategory = AssetCategory.EPISODE,
    ) -> JobOutcome:
        """
        Transcode, upload and publish one source.

        Raises:
            ValidationError: The source was rejected up front (no work done)

        Returns:
            JobOutcome; failures after validation are reported here, never raised
        """
        validate_source(source, self.max_source_size)
        job = TranscodeJob(source=source, key=key, category=AssetCategory(category))
        logger.info(f"Job {job.job_id} staged for {key} ({source.filename})")
        async with self._job_slots:
            return await self._run_job(job)

    async def submit_batch(
        self,
        items: Sequence[Tuple[SourceMedia, MediaAssetKey]],
        category: AssetCategory = AssetCategory.EPISODE,
    ) -> List[JobOutcome]:
        """
        Submit several sources (typically one episode in several languages).

        Every source is validated before any job starts; one invalid source
        rejects the whole batch.
        """
        if not items:
            raise ValidationError("No sources submitted")
        if len(items) > MAX_BATCH_FILES:
            raise ValidationError(f"Too many files: {len(items)} (max {MAX_BATCH_FILES})")
        for source, _ in items:
            validate_source(source, self.max_source_size)
        return list(await asyncio.gather(*(self.submit(source, key, category) for source, key in items)))

    async def _run_job(self, job: TranscodeJob) -> JobOutcome:
        uploaded: List[str] = []
        asset: Optional[MediaAsset] = None
        grant = None
        try:
            async with ScratchSpace(self.scratch_root) as scratch:
                job.scratch_dir = scratch
                source_path = await stage_source(job.source, scratch, self.store, self.max_source_size)

                job.transition(JobState.TRANSCODING)
                playlist_path = await self.transcoder.transcode(
                    source_path, scratch / OUTPUT_DIRNAME, self.segment_duration
                )
                job.transition(JobState.TRANSCODED)

                segment_paths, template_text = await self._collect_output(playlist_path)
                job.transition(JobState.UPLOAD_PENDING)
                await self._upload_segments(job, segment_paths, uploaded)

                # Template and playlist only after every segment is durable
                template_key = template_key_for(job.prefix)
                uploaded.append(template_key)
                await self.store.put_object(
                    template_key, template_text.encode("utf-8"), content_type_for(template_key)
                )
                job.transition(JobState.UPLOADED)
            job.scratch_dir = None

            playlist_key = playlist_key_for(job.prefix)
            uploaded.append(playlist_key)
            result = await self.rewriter.rewrite(playlist_key, read_ttl_for(job.category))
            grant = result.playlist_grant
            job.transition(JobState.URL_ISSUED)

            asset = MediaAsset(
                key=job.key,
                asset_id=job.asset_id,
                category=job.category,
                prefix=job.prefix,
                playlist_key=playlist_key,
                template_key=template_key,
                segment_count=result.segment_count,
                created_at=job.history[0][1],
                last_refreshed_at=None,
                playlist_url=grant.url,
            )
            if self.repository is not None:
                await self.repository.save(asset)
            job.transition(JobState.PUBLISHED)
        except PipelineError as e:
            await self._fail(job, e.reason, str(e), uploaded)
            asset, grant = None, None
        except DatabaseRetryableError as e:
            await self._fail(job, FailureReason.INTERNAL_ERROR, f"Catalog write failed: {e}", uploaded)
            asset, grant = None, None
        except Exception as e:
            logger.exception(f"Job {job.job_id} crashed")
            await self._fail(job, FailureReason.INTERNAL_ERROR, f"{type(e).__name__}: {e}", uploaded)
            asset, grant = None, None

        if job.state == JobState.PUBLISHED:
            get_metrics().jobs_published += 1
            logger.info(f"Job {job.job_id} published {job.key} as {job.prefix} ({asset.segment_count} segments)")
        return JobOutcome.from_job(job, asset, grant)

    async def _collect_output(self, playlist_path: Path) -> Tuple[List[Path], str]:
        """Validate encoder output; return segment files in playlist order and the template text."""
        is_valid, error = await validate_hls_playlist(playlist_path, check_segments=True)
        if not is_valid:
            raise EncoderError(f"Malformed encoder output: {error}")
        try:
            template_text = await asyncio.to_thread(playlist_path.read_text)
        except OSError as e:
            raise PipelineIOError(f"Cannot read encoder playlist: {e}") from e
        names = find_segment_references(template_text)
        return [playlist_path.parent / name for name in names], template_text

    async def _upload_segments(self, job: TranscodeJob, segment_paths: List[Path], uploaded: List[str]) -> None:
        slots = asyncio.Semaphore(self.upload_concurrency)

        async def upload(path: Path):
            key = f"{job.prefix}{path.name}"
            async with slots:
                uploaded.append(key)
                await self.store.put_file(key, path)

        # Let every in-flight upload settle before reporting the first failure
        results = await asyncio.gather(*(upload(p) for p in segment_paths), return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                raise result
        logger.info(f"Job {job.job_id}: uploaded {len(segment_paths)} segments to {job.prefix}")

    async def _fail(self, job: TranscodeJob, reason: FailureReason, message: str, uploaded: List[str]) -> None:
        failed_state = job.state
        job.fail(reason, truncate_error(message))
        logger.error(f"Job {job.job_id} for {job.key} failed in {failed_state.value}: [{reason.value}] {message}")

        if uploaded:
            await self._discard_uploaded(job, uploaded)

        if reason == FailureReason.SIGNING_CONFIG_ERROR:
            send_alert_fire_and_forget(alert_signing_config_error(f"job {job.job_id}", message))
        else:
            send_alert_fire_and_forget(alert_job_failed(str(job.key), job.job_id, reason.value, message))

    async def _discard_uploaded(self, job: TranscodeJob, keys: List[str]) -> None:
        """Best-effort removal of a failed job's blobs so no partial asset stays visible."""
        remaining = 0
        for key in reversed(keys):
            try:
                await self.store.delete_object(key)
            except StoreError as e:
                remaining += 1
                logger.warning(f"Job {job.job_id}: could not delete {key}: {e}")
        if remaining:
            logger.warning(f"Job {job.job_id}: {remaining} object(s) left under abandoned prefix {job.prefix}")

    async def discard_asset(self, key: MediaAssetKey) -> bool:
        """Delete a recorded asset's objects and its catalog row."""
        if self.repository is None:
            raise ValueError("discard_asset requires a repository")
        asset = await self.repository.get(key)
        if asset is None:
            return False
        removed = await self.store.delete_prefix(asset.prefix)
        await self.repository.delete(key)
        logger.info(f"Discarded {key}: removed {removed} object(s) under {asset.prefix}")
        return True
