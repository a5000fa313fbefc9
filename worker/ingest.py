"""
Ingest and staging.

Validates an incoming source against the size ceiling and media type
allow-list, then materializes it inside a private per-job scratch
directory. Scratch directories are removed on every exit path; the
startup sweep catches whatever a crashed process left behind.
"""

import asyncio
import logging
import shutil
import tempfile
import time
from pathlib import Path
from typing import Optional

from config import (
    GENERIC_MIME_TYPES,
    MAX_SOURCE_SIZE,
    SCRATCH_DIR,
    SUPPORTED_VIDEO_EXTENSIONS,
    SUPPORTED_VIDEO_EXTENSIONS_STR,
    SUPPORTED_VIDEO_MIME_TYPES,
)
from core.errors import PayloadTooLarge, PipelineIOError, UnsupportedMediaType
from core.models import SourceMedia

logger = logging.getLogger(__name__)

SCRATCH_PREFIX = "job-"
SOURCE_BASENAME = "source"
OUTPUT_DIRNAME = "hls"


def _format_size(size: int) -> str:
    return f"{size / (1024 * 1024):.1f} MB"


def validate_source(source: SourceMedia, max_size: int = MAX_SOURCE_SIZE) -> None:
    """
    Reject sources that are too large or not an accepted video type.

    A generic MIME type (application/octet-stream or none) falls back to the
    filename extension check.

    Raises:
        PayloadTooLarge: Known size exceeds max_size
        UnsupportedMediaType: MIME type / extension not allow-listed
    """
    size = source.known_size()
    if size is not None and size > max_size:
        raise PayloadTooLarge(
            f"Source {source.filename} is {_format_size(size)}, limit is {_format_size(max_size)}"
        )
    if size == 0:
        raise UnsupportedMediaType(f"Source {source.filename} is empty")

    content_type = (source.content_type or "").split(";")[0].strip().lower()
    if content_type in SUPPORTED_VIDEO_MIME_TYPES:
        return
    if content_type in GENERIC_MIME_TYPES:
        if source.extension in SUPPORTED_VIDEO_EXTENSIONS:
            return
        raise UnsupportedMediaType(
            f"Unsupported file extension '{source.extension or '(none)'}' "
            f"(supported: {SUPPORTED_VIDEO_EXTENSIONS_STR})"
        )
    raise UnsupportedMediaType(f"Unsupported media type '{content_type}'")


class ScratchSpace:
    """
    Private per-job working directory, deleted with everything beneath it
    on exit.

    Usage:
        async with ScratchSpace() as scratch:
            ...
    """

    def __init__(self, root: Path = SCRATCH_DIR):
        self.root = Path(root)
        self.path: Optional[Path] = None

    async def __aenter__(self) -> Path:
        try:
            await asyncio.to_thread(self.root.mkdir, parents=True, exist_ok=True)
            # mkdtemp creates the directory with mode 0700
            self.path = Path(await asyncio.to_thread(tempfile.mkdtemp, prefix=SCRATCH_PREFIX, dir=self.root))
        except OSError as e:
            raise PipelineIOError(f"Cannot create scratch directory under {self.root}: {e}") from e
        logger.debug(f"Created scratch directory {self.path}")
        return self.path

    async def __aexit__(self, exc_type, exc, tb):
        await self.cleanup()
        return False

    async def cleanup(self) -> None:
        if self.path is None:
            return
        path, self.path = self.path, None
        await asyncio.to_thread(shutil.rmtree, path, True)
        if path.exists():
            logger.warning(f"Scratch directory {path} could not be fully removed")
        else:
            logger.debug(f"Removed scratch directory {path}")


def _write_bytes(path: Path, data: bytes) -> None:
    with open(path, "wb") as f:
        f.write(data)


async def stage_source(
    source: SourceMedia,
    scratch_dir: Path,
    store=None,
    max_size: int = MAX_SOURCE_SIZE,
) -> Path:
    """
    Materialize the source inside scratch_dir and return its path.

    Blob sources are sized through the object store before anything is
    downloaded, then streamed to disk. The size ceiling is checked again
    once the staged file exists.
    """
    target = Path(scratch_dir) / f"{SOURCE_BASENAME}{source.extension or '.bin'}"
    try:
        if source.data is not None:
            await asyncio.to_thread(_write_bytes, target, source.data)
        elif source.path is not None:
            await asyncio.to_thread(shutil.copyfile, source.path, target)
        else:
            if store is None:
                raise ValueError("An object store is required to stage blob sources")
            blob_size = await store.object_size(source.blob_key)
            if blob_size > max_size:
                raise PayloadTooLarge(
                    f"Source {source.filename} is {_format_size(blob_size)}, limit is {_format_size(max_size)}"
                )
            await store.download_file(source.blob_key, target)
        size = target.stat().st_size
    except OSError as e:
        raise PipelineIOError(f"Failed to stage {source.filename}: {e}") from e

    if size > max_size:
        raise PayloadTooLarge(f"Source {source.filename} is {_format_size(size)}, limit is {_format_size(max_size)}")
    logger.info(f"Staged {source.filename} ({_format_size(size)})")
    return target


def sweep_stale_scratch(root: Path = SCRATCH_DIR, max_age: float = 6 * 3600) -> int:
    """
    Remove job scratch directories older than max_age seconds.

    Called at worker startup to clean up after crashed processes. Returns
    the number of directories removed.
    """
    root = Path(root)
    if not root.is_dir():
        return 0
    cutoff = time.time() - max_age
    removed = 0
    for entry in root.iterdir():
        if not entry.is_dir() or not entry.name.startswith(SCRATCH_PREFIX):
            continue
        try:
            if entry.stat().st_mtime >= cutoff:
                continue
        except FileNotFoundError:
            continue
        shutil.rmtree(entry, ignore_errors=True)
        if not entry.exists():
            removed += 1
            logger.info(f"Removed stale scratch directory {entry.name}")
    return removed
