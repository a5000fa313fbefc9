"""
Tests for the ffmpeg transcoder.

Subprocess handling is exercised with small shell scripts standing in for
ffmpeg, so ffmpeg itself is not required.
"""

import time

import pytest

from core.errors import EncoderError, TranscodeTimeoutError
from tests.fixtures.fakes import build_vod_playlist
from tests.fixtures.sample_videos import (
    CRASHING_ENCODER,
    HANGING_ENCODER,
    SUCCESSFUL_ENCODER,
    TRUNCATED_ENCODER,
    write_fake_encoder,
    write_sample_source,
)
from worker.transcoder import (
    MAX_DURATION_SECONDS,
    EncodingOptions,
    FFmpegTranscoder,
    build_hls_command,
    read_segment_names,
    run_ffmpeg_with_progress,
    validate_duration,
    validate_hls_playlist,
)


class TestValidateDuration:
    """Tests for duration validation."""

    def test_valid_duration_float(self):
        assert validate_duration(120.5) == 120.5

    def test_valid_duration_int(self):
        result = validate_duration(60)
        assert result == 60.0
        assert isinstance(result, float)

    def test_valid_duration_string(self):
        """ffprobe reports duration as a string."""
        assert validate_duration("95.250000") == 95.25

    @pytest.mark.parametrize("value", [None, "abc", float("nan"), float("inf"), 0, -1, MAX_DURATION_SECONDS + 1])
    def test_invalid_durations(self, value):
        with pytest.raises(ValueError):
            validate_duration(value)


class TestBuildHlsCommand:
    def test_single_rendition_policy(self, tmp_path):
        cmd = build_hls_command("ffmpeg", tmp_path / "source.mp4", 10, EncodingOptions(threads=2))
        joined = " ".join(cmd)
        assert cmd[0] == "ffmpeg"
        assert "-c:v libx264" in joined
        assert "-profile:v baseline" in joined
        assert "-level 3.0" in joined
        assert "-pix_fmt yuv420p" in joined
        assert "-crf 23" in joined
        assert "-c:a aac" in joined
        assert "-b:a 128k" in joined
        assert "-threads 2" in joined

    def test_hls_muxer_settings(self, tmp_path):
        cmd = build_hls_command("ffmpeg", tmp_path / "source.mp4", 6, EncodingOptions())
        joined = " ".join(cmd)
        assert "-hls_time 6" in joined
        assert "-hls_list_size 0" in joined
        assert "-start_number 0" in joined
        assert "-hls_playlist_type vod" in joined
        assert "-hls_segment_filename segment_%03d.ts" in joined
        assert "expr:gte(t,n_forced*6)" in joined

    def test_outputs_are_relative(self, tmp_path):
        cmd = build_hls_command("ffmpeg", tmp_path / "source.mp4", 10, EncodingOptions())
        assert cmd[-1] == "playlist.m3u8"
        assert cmd[cmd.index("-hls_segment_filename") + 1] == "segment_%03d.ts"

    def test_threads_zero_omits_flag(self, tmp_path):
        cmd = build_hls_command("ffmpeg", tmp_path / "source.mp4", 10, EncodingOptions(threads=0))
        assert "-threads" not in cmd


class TestValidateHlsPlaylist:
    @pytest.mark.asyncio
    async def test_valid(self, tmp_path):
        (tmp_path / "segment_000.ts").write_bytes(b"x")
        (tmp_path / "segment_001.ts").write_bytes(b"x")
        playlist = tmp_path / "playlist.m3u8"
        playlist.write_text(build_vod_playlist([10.0, 2.0]))
        assert await validate_hls_playlist(playlist) == (True, None)

    @pytest.mark.asyncio
    async def test_missing_file(self, tmp_path):
        is_valid, error = await validate_hls_playlist(tmp_path / "playlist.m3u8")
        assert not is_valid
        assert "does not exist" in error

    @pytest.mark.asyncio
    async def test_missing_end_marker(self, tmp_path):
        playlist = tmp_path / "playlist.m3u8"
        playlist.write_text("#EXTM3U\n#EXTINF:10.0,\nsegment_000.ts\n")
        is_valid, error = await validate_hls_playlist(playlist, check_segments=False)
        assert not is_valid
        assert "ENDLIST" in error

    @pytest.mark.asyncio
    async def test_rejects_absolute_references(self, tmp_path):
        playlist = tmp_path / "playlist.m3u8"
        playlist.write_text("#EXTM3U\n#EXTINF:10.0,\nhttps://cdn/segment_000.ts\n#EXT-X-ENDLIST\n")
        is_valid, error = await validate_hls_playlist(playlist, check_segments=False)
        assert not is_valid
        assert "bare filename" in error

    @pytest.mark.asyncio
    async def test_missing_or_empty_segment(self, tmp_path):
        playlist = tmp_path / "playlist.m3u8"
        playlist.write_text(build_vod_playlist([10.0, 10.0]))
        (tmp_path / "segment_000.ts").write_bytes(b"x")
        is_valid, error = await validate_hls_playlist(playlist)
        assert not is_valid
        assert "segment_001.ts" in error

        (tmp_path / "segment_001.ts").write_bytes(b"")
        is_valid, error = await validate_hls_playlist(playlist)
        assert not is_valid
        assert "Empty" in error

    def test_read_segment_names(self):
        assert read_segment_names(build_vod_playlist([10.0, 3.0])) == ["segment_000.ts", "segment_001.ts"]


class TestRunFfmpegWithProgress:
    @pytest.mark.asyncio
    async def test_success(self, tmp_path):
        encoder = write_fake_encoder(tmp_path, "exit 0")
        result = await run_ffmpeg_with_progress([str(encoder)], duration=0, timeout=10)
        assert result.success
        assert not result.timed_out

    @pytest.mark.asyncio
    async def test_progress_reported(self, tmp_path):
        encoder = write_fake_encoder(tmp_path, "echo out_time_ms=5000000\necho out_time_ms=10000000\nexit 0")
        seen = []

        async def callback(progress):
            seen.append(progress)

        result = await run_ffmpeg_with_progress([str(encoder)], duration=10, timeout=10, progress_callback=callback)
        assert result.success
        assert seen == [50, 100]

    @pytest.mark.asyncio
    async def test_non_zero_exit(self, tmp_path):
        encoder = write_fake_encoder(tmp_path, CRASHING_ENCODER)
        result = await run_ffmpeg_with_progress([str(encoder)], duration=0, timeout=10)
        assert not result.success
        assert "code 3" in result.error

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self, tmp_path):
        encoder = write_fake_encoder(tmp_path, HANGING_ENCODER)
        started = time.monotonic()
        result = await run_ffmpeg_with_progress([str(encoder)], duration=0, timeout=0.5)
        assert result.timed_out
        assert not result.success
        assert time.monotonic() - started < 10


class TestFFmpegTranscoder:
    @pytest.mark.asyncio
    async def test_produces_playlist_in_output_dir(self, tmp_path):
        encoder = write_fake_encoder(tmp_path, SUCCESSFUL_ENCODER)
        source = write_sample_source(tmp_path)
        output_dir = tmp_path / "out"

        playlist = await FFmpegTranscoder(ffmpeg_path=str(encoder), probe=False).transcode(source, output_dir)

        assert playlist == output_dir / "playlist.m3u8"
        assert read_segment_names(playlist.read_text()) == ["segment_000.ts", "segment_001.ts"]
        assert (output_dir / "segment_001.ts").exists()

    @pytest.mark.asyncio
    async def test_non_zero_exit_is_encoder_error(self, tmp_path):
        encoder = write_fake_encoder(tmp_path, CRASHING_ENCODER)
        with pytest.raises(EncoderError):
            await FFmpegTranscoder(ffmpeg_path=str(encoder), probe=False).transcode(
                write_sample_source(tmp_path), tmp_path / "out"
            )

    @pytest.mark.asyncio
    async def test_truncated_output_is_encoder_error(self, tmp_path):
        encoder = write_fake_encoder(tmp_path, TRUNCATED_ENCODER)
        with pytest.raises(EncoderError, match="ENDLIST"):
            await FFmpegTranscoder(ffmpeg_path=str(encoder), probe=False).transcode(
                write_sample_source(tmp_path), tmp_path / "out"
            )

    @pytest.mark.asyncio
    async def test_timeout(self, tmp_path):
        encoder = write_fake_encoder(tmp_path, HANGING_ENCODER)
        transcoder = FFmpegTranscoder(ffmpeg_path=str(encoder), timeout=0.5, probe=False)
        with pytest.raises(TranscodeTimeoutError):
            await transcoder.transcode(write_sample_source(tmp_path), tmp_path / "out")

    @pytest.mark.asyncio
    async def test_missing_binary(self, tmp_path):
        transcoder = FFmpegTranscoder(ffmpeg_path=str(tmp_path / "no-such-ffmpeg"), probe=False)
        with pytest.raises(EncoderError, match="not found"):
            await transcoder.transcode(write_sample_source(tmp_path), tmp_path / "out")

    @pytest.mark.asyncio
    async def test_unreadable_source_is_encoder_error(self, tmp_path):
        prober = write_fake_encoder(tmp_path, "echo 'Invalid data found' >&2\nexit 1", name="ffprobe")
        transcoder = FFmpegTranscoder(ffmpeg_path="ffmpeg", ffprobe_path=str(prober))
        with pytest.raises(EncoderError, match="Cannot read source"):
            await transcoder.transcode(write_sample_source(tmp_path), tmp_path / "out")
