"""
HLS transcoder.

Runs one ffmpeg process per job to turn a staged source file into a single
HLS rendition: H.264 baseline video, AAC audio, fixed-length MPEG-TS
segments and a complete VOD playlist whose segment references are bare
relative filenames. The process runs under a wall-clock timeout and is
killed (never left running) when the limit is hit.
"""

import asyncio
import json
import logging
import math
import resource
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, List, NamedTuple, Optional, Tuple

from config import (
    FFMPEG_AUDIO_BITRATE,
    FFMPEG_CRF,
    FFMPEG_MEMORY_LIMIT_MB,
    FFMPEG_PATH,
    FFMPEG_PRESET,
    FFMPEG_THREADS,
    FFMPEG_TIMEOUT,
    FFPROBE_PATH,
    FFPROBE_TIMEOUT,
    HLS_PLAYLIST_NAME,
    HLS_SEGMENT_DURATION,
    HLS_SEGMENT_PATTERN,
)
from core.errors import EncoderError, TranscodeTimeoutError

logger = logging.getLogger(__name__)

# Maximum video duration allowed (1 week in seconds)
MAX_DURATION_SECONDS = 7 * 24 * 60 * 60


class FFmpegResult(NamedTuple):
    success: bool
    error: Optional[str] = None
    timed_out: bool = False


@dataclass(frozen=True)
class EncodingOptions:
    """Single-rendition encoding policy."""

    preset: str = FFMPEG_PRESET
    crf: int = FFMPEG_CRF
    profile: str = "baseline"
    level: str = "3.0"
    pixel_format: str = "yuv420p"
    audio_bitrate: str = FFMPEG_AUDIO_BITRATE
    threads: int = FFMPEG_THREADS
    memory_limit_mb: int = FFMPEG_MEMORY_LIMIT_MB


class Transcoder(ABC):
    """Turns a local source file into an HLS playlist plus segments."""

    @abstractmethod
    async def transcode(
        self,
        input_path: Path,
        output_dir: Path,
        segment_duration: int = HLS_SEGMENT_DURATION,
    ) -> Path:
        """
        Encode input_path into output_dir.

        Returns:
            Path of the generated playlist

        Raises:
            EncoderError: Non-zero exit or malformed output
            TranscodeTimeoutError: Wall-clock limit exceeded
        """


def build_hls_command(
    ffmpeg_path: str,
    input_path: Path,
    segment_duration: int,
    options: EncodingOptions,
) -> List[str]:
    """
    Build the ffmpeg command. Output names are relative; the process runs
    with the output directory as its working directory so the playlist
    references segments by bare filename.
    """
    cmd = [
        ffmpeg_path,
        "-y",
        "-hide_banner",
        "-nostdin",
        "-i",
        str(input_path),
        "-c:v",
        "libx264",
        "-preset",
        options.preset,
        "-profile:v",
        options.profile,
        "-level",
        options.level,
        "-pix_fmt",
        options.pixel_format,
        "-crf",
        str(options.crf),
        # Keyframe at every segment boundary keeps segment lengths constant
        "-force_key_frames",
        f"expr:gte(t,n_forced*{segment_duration})",
        "-c:a",
        "aac",
        "-b:a",
        options.audio_bitrate,
        "-ac",
        "2",
    ]
    if options.threads > 0:
        cmd += ["-threads", str(options.threads), "-filter_threads", str(options.threads)]
    cmd += [
        "-start_number",
        "0",
        "-hls_time",
        str(segment_duration),
        "-hls_list_size",
        "0",
        "-hls_playlist_type",
        "vod",
        "-hls_segment_filename",
        HLS_SEGMENT_PATTERN,
        "-progress",
        "pipe:1",
        "-f",
        "hls",
        HLS_PLAYLIST_NAME,
    ]
    return cmd


def _memory_limiter(limit_mb: int) -> Optional[Callable[[], None]]:
    """preexec_fn capping the child's address space, or None when disabled."""
    if limit_mb <= 0:
        return None
    limit_bytes = limit_mb * 1024 * 1024

    def apply_limit():
        resource.setrlimit(resource.RLIMIT_AS, (limit_bytes, limit_bytes))

    return apply_limit


async def cleanup_ffmpeg_process(process: asyncio.subprocess.Process, context: str = "FFmpeg") -> None:
    """
    Clean up an FFmpeg subprocess, handling race conditions where the process
    may exit between checking returncode and calling kill().
    """
    if process.returncode is None:
        try:
            process.kill()
        except (ProcessLookupError, OSError):
            # Process already terminated - this is expected in race conditions
            pass
        try:
            await asyncio.wait_for(process.wait(), timeout=5)
        except asyncio.TimeoutError:
            logger.warning(f"{context} process did not terminate after kill")


async def run_ffmpeg_with_progress(
    cmd: List[str],
    duration: float,
    timeout: float,
    progress_callback: Optional[Callable[[int], Awaitable[None]]] = None,
    context: str = "FFmpeg",
    cwd: Optional[Path] = None,
    memory_limit_mb: int = 0,
) -> FFmpegResult:
    """
    Run an FFmpeg command with timeout and progress tracking.

    Handles:
    - Process spawning with progress output on stdout
    - Progress parsing from FFmpeg's progress output format
    - Timeout handling with process termination
    - Cleanup on any exit path

    Args:
        cmd: FFmpeg command as list of arguments
        duration: Video duration in seconds (for progress calculation, 0 if unknown)
        timeout: Maximum time to wait for FFmpeg to complete
        progress_callback: Optional async callback for progress updates (0-100)
        context: Description for logging
        cwd: Working directory for the process
        memory_limit_mb: Address space limit for the child (0 disables)
    """
    process = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.DEVNULL,  # Don't capture stderr - it fills pipe and blocks ffmpeg
        stdin=asyncio.subprocess.DEVNULL,
        cwd=str(cwd) if cwd else None,
        preexec_fn=_memory_limiter(memory_limit_mb),
    )

    last_progress_update = 0
    start_time = asyncio.get_running_loop().time()
    timed_out = False

    async def read_progress():
        nonlocal last_progress_update
        while True:
            line = await process.stdout.readline()
            if not line:
                break

            line_str = line.decode("utf-8", errors="ignore").strip()

            # Format: out_time_ms=123456789 (microseconds despite the name)
            if line_str.startswith("out_time_ms="):
                try:
                    time_ms = int(line_str.split("=")[1])
                    current_seconds = time_ms / 1000000.0
                    if duration > 0:
                        progress = min(100, int(current_seconds / duration * 100))
                        if progress > last_progress_update:
                            last_progress_update = progress
                            if progress_callback:
                                await progress_callback(progress)
                except (ValueError, IndexError):
                    pass

    async def drain_and_wait():
        await read_progress()
        await process.wait()

    async def timeout_killer():
        nonlocal timed_out
        await asyncio.sleep(timeout)
        timed_out = True
        elapsed = asyncio.get_running_loop().time() - start_time
        print(f"  TIMEOUT: {context} exceeded {timeout:.0f}s limit (ran for {elapsed:.0f}s)")
        try:
            process.kill()
        except ProcessLookupError:
            pass

    # Killing the process closes stdout, which lets drain_and_wait finish
    timeout_task = asyncio.create_task(timeout_killer())
    try:
        await drain_and_wait()
    except Exception as e:
        logger.error(f"Unexpected exception during {context}: {e}")
        raise
    finally:
        timeout_task.cancel()
        try:
            await timeout_task
        except asyncio.CancelledError:
            pass

        await cleanup_ffmpeg_process(process, context)

    if timed_out:
        elapsed = asyncio.get_running_loop().time() - start_time
        return FFmpegResult(
            False,
            f"{context} timed out after {elapsed:.0f} seconds (limit: {timeout:.0f}s)",
            timed_out=True,
        )

    if process.returncode != 0:
        error_msg = f"{context} exited with code {process.returncode}"
        print(f"  ERROR: {error_msg}")
        return FFmpegResult(False, error_msg)

    return FFmpegResult(True)


def validate_duration(duration: Any) -> float:
    """
    Validate and normalize video duration from ffprobe.

    Raises:
        ValueError: If duration is invalid, missing, or out of acceptable range
    """
    if duration is None:
        raise ValueError("Could not determine video duration")

    if not isinstance(duration, (int, float)):
        try:
            duration = float(duration)
        except (ValueError, TypeError) as e:
            raise ValueError(f"Could not convert duration to float: {type(duration).__name__}") from e

    if math.isnan(duration) or math.isinf(duration):
        raise ValueError(f"Invalid duration value: {duration}")

    if duration <= 0:
        raise ValueError(f"Invalid duration: {duration} seconds (must be positive)")

    if duration > MAX_DURATION_SECONDS:
        raise ValueError(f"Duration too long: {duration} seconds (max {MAX_DURATION_SECONDS})")

    return float(duration)


async def get_video_info(input_path: Path, timeout: float = FFPROBE_TIMEOUT, ffprobe_path: str = FFPROBE_PATH) -> dict:
    """Get video metadata using ffprobe.

    Returns:
        Dictionary with width, height, duration and codec

    Raises:
        RuntimeError: If ffprobe fails or times out
    """
    cmd = [ffprobe_path, "-v", "quiet", "-print_format", "json", "-show_format", "-show_streams", str(input_path)]

    try:
        process = await asyncio.create_subprocess_exec(
            *cmd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
        )
    except FileNotFoundError as e:
        raise RuntimeError(f"ffprobe not found at {ffprobe_path}") from e

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise RuntimeError(f"ffprobe timed out after {timeout}s (file may be on slow storage or corrupted)")

    if process.returncode != 0:
        raise RuntimeError(f"ffprobe failed: {stderr.decode('utf-8', errors='ignore')}")

    try:
        data = json.loads(stdout.decode("utf-8", errors="ignore"))
    except json.JSONDecodeError as e:
        raise RuntimeError(f"ffprobe returned invalid JSON: {e}") from e

    video_stream = None
    for stream in data.get("streams", []):
        if stream.get("codec_type") == "video":
            video_stream = stream
            break

    if not video_stream:
        raise RuntimeError("No video stream found")

    try:
        duration = validate_duration(data.get("format", {}).get("duration"))
    except ValueError as e:
        raise RuntimeError(str(e)) from e

    return {
        "width": int(video_stream.get("width", 0)),
        "height": int(video_stream.get("height", 0)),
        "duration": duration,
        "codec": video_stream.get("codec_name", "unknown"),
    }


def read_segment_names(playlist_text: str) -> List[str]:
    """Non-tag, non-blank lines of a playlist in order."""
    names = []
    for line in playlist_text.splitlines():
        line = line.strip()
        if line and not line.startswith("#"):
            names.append(line)
    return names


async def validate_hls_playlist(playlist_path: Path, check_segments: bool = True) -> Tuple[bool, Optional[str]]:
    """
    Validate an HLS playlist is complete and well-formed.

    Args:
        playlist_path: Path to the .m3u8 playlist file
        check_segments: If True, also verify all referenced segments exist and are non-empty

    Returns:
        Tuple[bool, Optional[str]]: (is_valid, error_message)
    """
    if not playlist_path.exists():
        return False, "Playlist file does not exist"

    try:
        content = await asyncio.to_thread(playlist_path.read_text)

        if not content.startswith("#EXTM3U"):
            return False, "Missing #EXTM3U header"

        # End marker indicates the encoder finished
        if "#EXT-X-ENDLIST" not in content:
            return False, "Missing #EXT-X-ENDLIST (incomplete transcode)"

        segments = read_segment_names(content)
        if not segments:
            return False, "Playlist contains no segment references"

        for name in segments:
            if "/" in name or "://" in name:
                return False, f"Segment reference is not a bare filename: {name}"
            if not name.endswith(".ts"):
                return False, f"Unexpected playlist entry: {name}"

        if not check_segments:
            return True, None

        for name in segments:
            segment_path = playlist_path.parent / name
            if not segment_path.exists():
                return False, f"Missing segment file: {name}"
            if segment_path.stat().st_size == 0:
                return False, f"Empty segment file: {name}"

        return True, None

    except (IOError, OSError) as e:
        return False, f"Error reading playlist: {e}"


class FFmpegTranscoder(Transcoder):
    def __init__(
        self,
        ffmpeg_path: str = FFMPEG_PATH,
        ffprobe_path: str = FFPROBE_PATH,
        timeout: float = FFMPEG_TIMEOUT,
        options: Optional[EncodingOptions] = None,
        probe: bool = True,
    ):
        self.ffmpeg_path = ffmpeg_path
        self.ffprobe_path = ffprobe_path
        self.timeout = timeout
        self.options = options or EncodingOptions()
        self.probe = probe

    async def transcode(self, input_path, output_dir, segment_duration=HLS_SEGMENT_DURATION) -> Path:
        input_path = Path(input_path).resolve()
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)

        duration = 0.0
        if self.probe:
            try:
                info = await get_video_info(input_path, ffprobe_path=self.ffprobe_path)
            except RuntimeError as e:
                raise EncoderError(f"Cannot read source video: {e}") from e
            duration = info["duration"]
            print(f"  Source: {info['width']}x{info['height']} {info['codec']}, {duration:.1f}s")

        cmd = build_hls_command(self.ffmpeg_path, input_path, segment_duration, self.options)

        async def report(progress: int):
            if progress % 25 == 0:
                logger.info(f"Transcoding {input_path.name}: {progress}%")

        try:
            result = await run_ffmpeg_with_progress(
                cmd,
                duration=duration,
                timeout=self.timeout,
                progress_callback=report,
                context="FFmpeg transcode",
                cwd=output_dir,
                memory_limit_mb=self.options.memory_limit_mb,
            )
        except FileNotFoundError as e:
            raise EncoderError(f"ffmpeg not found at {self.ffmpeg_path}") from e

        if result.timed_out:
            raise TranscodeTimeoutError(result.error)
        if not result.success:
            raise EncoderError(result.error)

        playlist_path = output_dir / HLS_PLAYLIST_NAME
        is_valid, error = await validate_hls_playlist(playlist_path, check_segments=True)
        if not is_valid:
            raise EncoderError(f"Malformed encoder output: {error}")
        return playlist_path
