"""Tests for environment-driven configuration helpers."""

from unittest.mock import patch

import config
from config import get_bool_env, get_float_env, get_int_env


class TestGetIntEnv:
    def test_missing_returns_default(self, monkeypatch):
        monkeypatch.delenv("VODPIPE_TEST_INT", raising=False)
        assert get_int_env("VODPIPE_TEST_INT", 42) == 42

    def test_valid_value(self, monkeypatch):
        monkeypatch.setenv("VODPIPE_TEST_INT", "7")
        assert get_int_env("VODPIPE_TEST_INT", 42) == 7

    def test_invalid_value_uses_default(self, monkeypatch):
        monkeypatch.setenv("VODPIPE_TEST_INT", "seven")
        assert get_int_env("VODPIPE_TEST_INT", 42) == 42

    def test_below_minimum_uses_default(self, monkeypatch):
        monkeypatch.setenv("VODPIPE_TEST_INT", "0")
        assert get_int_env("VODPIPE_TEST_INT", 5, min_val=1) == 5

    def test_above_maximum_uses_default(self, monkeypatch):
        monkeypatch.setenv("VODPIPE_TEST_INT", "100")
        assert get_int_env("VODPIPE_TEST_INT", 5, max_val=64) == 5

    def test_bounds_are_inclusive(self, monkeypatch):
        monkeypatch.setenv("VODPIPE_TEST_INT", "64")
        assert get_int_env("VODPIPE_TEST_INT", 5, min_val=1, max_val=64) == 64


class TestGetFloatEnv:
    def test_valid_value(self, monkeypatch):
        monkeypatch.setenv("VODPIPE_TEST_FLOAT", "0.5")
        assert get_float_env("VODPIPE_TEST_FLOAT", 1.0) == 0.5

    def test_rejects_special_floats(self, monkeypatch):
        for value in ("inf", "-inf", "nan"):
            monkeypatch.setenv("VODPIPE_TEST_FLOAT", value)
            assert get_float_env("VODPIPE_TEST_FLOAT", 1.0) == 1.0

    def test_below_minimum_uses_default(self, monkeypatch):
        monkeypatch.setenv("VODPIPE_TEST_FLOAT", "-1")
        assert get_float_env("VODPIPE_TEST_FLOAT", 1.0, min_val=0.0) == 1.0


class TestGetBoolEnv:
    def test_truthy_values(self, monkeypatch):
        for value in ("true", "TRUE", "1", "yes"):
            monkeypatch.setenv("VODPIPE_TEST_BOOL", value)
            assert get_bool_env("VODPIPE_TEST_BOOL", False) is True

    def test_other_values_are_false(self, monkeypatch):
        monkeypatch.setenv("VODPIPE_TEST_BOOL", "nope")
        assert get_bool_env("VODPIPE_TEST_BOOL", True) is False

    def test_missing_returns_default(self, monkeypatch):
        monkeypatch.delenv("VODPIPE_TEST_BOOL", raising=False)
        assert get_bool_env("VODPIPE_TEST_BOOL", True) is True


class TestDefaultJobConcurrency:
    def test_limited_by_cpu(self):
        with patch("psutil.cpu_count", return_value=4), patch("psutil.virtual_memory") as vm:
            vm.return_value.available = 64 * 1024 ** 3
            assert config.default_job_concurrency() == 4 // max(1, config.FFMPEG_THREADS)

    def test_limited_by_memory(self):
        with patch("psutil.cpu_count", return_value=64), patch("psutil.virtual_memory") as vm:
            vm.return_value.available = config.FFMPEG_MEMORY_BUDGET_MB * 1024 * 1024
            assert config.default_job_concurrency() == 1

    def test_capped_and_at_least_one(self):
        with patch("psutil.cpu_count", return_value=None), patch("psutil.virtual_memory") as vm:
            vm.return_value.available = 0
            assert config.default_job_concurrency() == 1
        with patch("psutil.cpu_count", return_value=512), patch("psutil.virtual_memory") as vm:
            vm.return_value.available = 1024 ** 4
            assert config.default_job_concurrency() == 8


class TestDefaults:
    def test_hls_defaults(self):
        assert config.HLS_SEGMENT_DURATION == 10
        assert config.HLS_SEGMENT_PATTERN == "segment_%03d.ts"
        assert config.HLS_PLAYLIST_NAME == "playlist.m3u8"

    def test_source_limits(self):
        assert config.MAX_SOURCE_SIZE == 1024 * 1024 * 1024
        assert ".mp4" in config.SUPPORTED_VIDEO_EXTENSIONS
        assert "video/mp4" in config.SUPPORTED_VIDEO_MIME_TYPES
