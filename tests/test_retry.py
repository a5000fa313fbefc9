"""Tests for the shared retry policy."""

import sqlite3
from unittest.mock import AsyncMock, patch

import pytest

from core.errors import PermanentStoreError, TransientStoreError
from core.retry import (
    DatabaseRetryableError,
    RetryPolicy,
    execute_with_retry,
    is_retryable_database_error,
    with_db_retry,
)


class TestRetryPolicy:
    def test_defaults(self):
        policy = RetryPolicy()
        assert policy.max_retries == 3
        assert policy.max_attempts == 4
        assert policy.base_delay == 1.0
        assert policy.max_delay == 30.0

    def test_delay_grows_exponentially_within_jitter(self):
        policy = RetryPolicy()
        for attempt, nominal in enumerate([1.0, 2.0, 4.0, 8.0]):
            for _ in range(20):
                delay = policy.delay_for(attempt)
                assert nominal * 0.75 <= delay <= nominal * 1.25

    def test_delay_capped(self):
        policy = RetryPolicy(max_delay=30.0)
        for _ in range(20):
            assert policy.delay_for(10) <= 30.0 * 1.25

    def test_delay_floor(self):
        policy = RetryPolicy(base_delay=0.0)
        assert policy.delay_for(0) == 0.01

    def test_from_config(self):
        from config import STORE_MAX_RETRIES

        assert RetryPolicy.from_config().max_retries == STORE_MAX_RETRIES


class TestExecuteWithRetry:
    @pytest.mark.asyncio
    async def test_success_on_first_try(self):
        func = AsyncMock(return_value="ok")
        assert await execute_with_retry(func, 1, key="a") == "ok"
        func.assert_awaited_once_with(1, key="a")

    @pytest.mark.asyncio
    async def test_retries_transient_then_succeeds(self):
        func = AsyncMock(side_effect=[TransientStoreError("slow down"), TransientStoreError("slow down"), "ok"])
        with patch("core.retry.asyncio.sleep", new_callable=AsyncMock) as sleep:
            assert await execute_with_retry(func) == "ok"
        assert func.await_count == 3
        assert sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_exhausted_raises_transient_error(self):
        func = AsyncMock(side_effect=TransientStoreError("503"))
        with patch("core.retry.asyncio.sleep", new_callable=AsyncMock):
            with pytest.raises(TransientStoreError, match="failed after 4 attempts"):
                await execute_with_retry(func, description="S3 put x")
        assert func.await_count == 4

    @pytest.mark.asyncio
    async def test_permanent_error_not_retried(self):
        func = AsyncMock(side_effect=PermanentStoreError("403"))
        with patch("core.retry.asyncio.sleep", new_callable=AsyncMock) as sleep:
            with pytest.raises(PermanentStoreError):
                await execute_with_retry(func)
        assert func.await_count == 1
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_zero_retries(self):
        func = AsyncMock(side_effect=TransientStoreError("503"))
        with pytest.raises(TransientStoreError):
            await execute_with_retry(func, policy=RetryPolicy(max_retries=0))
        assert func.await_count == 1


class TestDatabaseRetry:
    def test_locked_errors_are_retryable(self):
        assert is_retryable_database_error(sqlite3.OperationalError("database is locked"))
        assert is_retryable_database_error(Exception("deadlock detected"))

    def test_wrapped_cause_is_inspected(self):
        try:
            try:
                raise sqlite3.OperationalError("database is locked")
            except sqlite3.OperationalError as inner:
                raise RuntimeError("query failed") from inner
        except RuntimeError as outer:
            assert is_retryable_database_error(outer)

    def test_other_errors_not_retryable(self):
        assert not is_retryable_database_error(sqlite3.OperationalError("no such table: media_assets"))

    @pytest.mark.asyncio
    async def test_decorator_raises_after_retries(self):
        calls = 0

        @with_db_retry(RetryPolicy(max_retries=2, base_delay=0.01))
        async def save():
            nonlocal calls
            calls += 1
            raise sqlite3.OperationalError("database is locked")

        with patch("core.retry.asyncio.sleep", new_callable=AsyncMock):
            with pytest.raises(DatabaseRetryableError):
                await save()
        assert calls == 3

    @pytest.mark.asyncio
    async def test_decorator_passes_through_other_errors(self):
        @with_db_retry()
        async def save():
            raise ValueError("bad row")

        with pytest.raises(ValueError):
            await save()
