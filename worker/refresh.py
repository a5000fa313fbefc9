"""
Expiry refresh scheduler.

Keeps recorded playlist URLs ahead of their expiry. Each tick loads the
recorded assets, picks those whose URL expires within the refresh buffer,
and re-runs the playlist rewrite for each in the background.

At most one refresh runs per asset at any time. The guard is a
check-and-set, not a queue: a second request while one is in flight is
dropped. The in-memory guard covers a single process; the Redis guard
(SET NX with a lease) covers several workers sharing one catalog.
"""

import asyncio
import logging
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Set

from redis.asyncio import ConnectionPool, Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError

from config import (
    REDIS_POOL_SIZE,
    REDIS_SOCKET_CONNECT_TIMEOUT,
    REDIS_SOCKET_TIMEOUT,
    REFRESH_BUFFER,
    REFRESH_CONCURRENCY,
    REFRESH_GUARD_PREFIX,
    REFRESH_GUARD_TTL,
    REFRESH_INTERVAL,
)
from core.errors import PipelineError, RewriteRaceError, SigningConfigError
from core.models import MediaAsset, MediaAssetKey, RewriteResult
from core.retry import DatabaseRetryableError
from storage.signing import is_url_stale, parse_signed_url_expiry
from worker.alerts import (
    alert_refresh_failed,
    alert_signing_config_error,
    get_metrics,
    send_alert_fire_and_forget,
)
from worker.playlist import PlaylistRewriter, read_ttl_for

logger = logging.getLogger(__name__)


class RefreshGuard(ABC):
    """At-most-one-in-flight marker per asset."""

    @abstractmethod
    async def try_acquire(self, key: MediaAssetKey) -> bool:
        """Mark key as refreshing. False if a refresh is already in flight."""

    @abstractmethod
    async def release(self, key: MediaAssetKey) -> None:
        """Clear the marker set by a successful try_acquire."""


class InMemoryRefreshGuard(RefreshGuard):
    def __init__(self):
        self._held: Set[MediaAssetKey] = set()

    async def try_acquire(self, key):
        # No await between check and set, so this is atomic on the event loop
        if key in self._held:
            return False
        self._held.add(key)
        return True

    async def release(self, key):
        self._held.discard(key)


class RedisRefreshGuard(RefreshGuard):
    """
    Shared guard using SET NX with an expiring lease, so a crashed worker
    cannot block an asset forever. Release only deletes the marker if it
    still holds this worker's token.
    """

    RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""

    def __init__(self, redis: Redis, ttl: int = REFRESH_GUARD_TTL, prefix: str = REFRESH_GUARD_PREFIX):
        self.redis = redis
        self.ttl = ttl
        self.prefix = prefix
        self._tokens: Dict[MediaAssetKey, str] = {}

    def _name(self, key: MediaAssetKey) -> str:
        return f"{self.prefix}:{key.episode_id}:{key.language_tag}"

    async def try_acquire(self, key):
        token = uuid.uuid4().hex
        try:
            acquired = await self.redis.set(self._name(key), token, nx=True, ex=self.ttl)
        except RedisError as e:
            # Fail closed: without the shared marker another worker may be refreshing
            logger.warning(f"Refresh guard unavailable for {key}, skipping: {e}")
            return False
        if acquired:
            self._tokens[key] = token
            return True
        return False

    async def release(self, key):
        token = self._tokens.pop(key, None)
        if token is None:
            return
        try:
            await self.redis.eval(self.RELEASE_SCRIPT, 1, self._name(key), token)
        except RedisError as e:
            logger.warning(f"Could not release refresh guard for {key}, lease expires in {self.ttl}s: {e}")


@dataclass
class RefreshReport:
    checked: int = 0
    scheduled: int = 0
    fresh: int = 0
    busy: int = 0


@dataclass
class PlaybackUrl:
    url: str
    expires_at: Optional[int]
    stale: bool
    refresh_scheduled: bool


class RefreshScheduler:
    def __init__(
        self,
        repository,
        rewriter: PlaylistRewriter,
        guard: Optional[RefreshGuard] = None,
        *,
        interval: float = REFRESH_INTERVAL,
        buffer_seconds: float = REFRESH_BUFFER,
        concurrency: int = REFRESH_CONCURRENCY,
        clock: Callable[[], float] = time.time,
    ):
        self.repository = repository
        self.rewriter = rewriter
        self.guard = guard or InMemoryRefreshGuard()
        self.interval = interval
        self.buffer_seconds = buffer_seconds
        # A URL must be refreshed by the tick before it enters the buffer,
        # otherwise it can expire between two ticks
        self.horizon = buffer_seconds + interval
        self.clock = clock
        self._slots = asyncio.Semaphore(max(1, concurrency))
        self._tasks: Set[asyncio.Task] = set()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def needs_refresh(self, asset: MediaAsset, now: Optional[float] = None) -> bool:
        return is_url_stale(asset.playlist_url, self.horizon, self.clock() if now is None else now)

    async def tick(self) -> RefreshReport:
        """Schedule a refresh for every asset whose URL is about to expire."""
        report = RefreshReport()
        now = self.clock()
        for asset in await self.repository.list_all():
            report.checked += 1
            if not self.needs_refresh(asset, now):
                report.fresh += 1
                continue
            if await self.trigger_refresh(asset):
                report.scheduled += 1
            else:
                report.busy += 1
        if report.scheduled or report.busy:
            logger.info(
                f"Refresh tick: {report.checked} checked, {report.scheduled} scheduled, "
                f"{report.busy} already in flight"
            )
        return report

    async def trigger_refresh(self, asset: MediaAsset) -> bool:
        """
        Start a background refresh of asset unless one is already running.

        Returns True if a refresh was started, False if it was dropped.
        """
        if not await self.guard.try_acquire(asset.key):
            logger.debug(f"Refresh for {asset.key} already in flight, dropping request")
            return False
        task = asyncio.create_task(self._refresh_guarded(asset))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    async def refresh(self, key: MediaAssetKey) -> Optional[RewriteResult]:
        """
        Refresh one asset in the foreground (operator use).

        Returns None if the asset is unknown, a refresh is already in
        flight, or the refresh failed.
        """
        asset = await self.repository.get(key)
        if asset is None:
            return None
        if not await self.guard.try_acquire(asset.key):
            return None
        return await self._refresh_guarded(asset)

    async def _refresh_guarded(self, asset: MediaAsset) -> Optional[RewriteResult]:
        """Run one refresh; never raises, always releases the guard."""
        try:
            async with self._slots:
                result = await self.rewriter.rewrite(asset.playlist_key, read_ttl_for(asset.category))
                recorded = await self.repository.record_refresh(
                    asset.key, asset.asset_id, result.playlist_grant.url
                )
            if not recorded:
                logger.warning(f"Discarding refresh of {asset.key}: asset {asset.asset_id} was replaced or removed")
                return None
            get_metrics().refreshes_completed += 1
            logger.info(f"Refreshed {asset.key}, new URL expires at {result.playlist_grant.expires_at}")
            return result
        except RewriteRaceError as e:
            logger.warning(f"Skipping refresh of {asset.key} this cycle: {e}")
        except SigningConfigError as e:
            logger.error(f"Refresh of {asset.key} failed, signing is misconfigured: {e}")
            send_alert_fire_and_forget(alert_signing_config_error(f"refresh {asset.key}", str(e)))
        except (PipelineError, DatabaseRetryableError) as e:
            reason = getattr(e, "reason", None)
            logger.error(f"Refresh of {asset.key} failed: {e}")
            send_alert_fire_and_forget(
                alert_refresh_failed(str(asset.key), reason.value if reason else "database", str(e))
            )
        except Exception as e:
            logger.exception(f"Unexpected error refreshing {asset.key}")
            send_alert_fire_and_forget(alert_refresh_failed(str(asset.key), "internal_error", str(e)))
        finally:
            await self.guard.release(asset.key)
        return None

    async def resolve_playback_url(self, key: MediaAssetKey) -> Optional[PlaybackUrl]:
        """
        Return the recorded playlist URL immediately.

        When the URL is close to expiry a background refresh is scheduled;
        this call never waits for it.
        """
        asset = await self.repository.get(key)
        if asset is None or not asset.playlist_url:
            return None
        stale = self.needs_refresh(asset)
        scheduled = await self.trigger_refresh(asset) if stale else False
        return PlaybackUrl(
            url=asset.playlist_url,
            expires_at=parse_signed_url_expiry(asset.playlist_url),
            stale=stale,
            refresh_scheduled=scheduled,
        )

    async def drain(self) -> None:
        """Wait for every in-flight refresh to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def run(self, stop_event: asyncio.Event) -> None:
        """Tick every interval until stop_event is set, then drain."""
        logger.info(f"Refresh scheduler started (interval {self.interval}s, buffer {self.buffer_seconds}s)")
        while not stop_event.is_set():
            try:
                await self.tick()
            except DatabaseRetryableError as e:
                logger.error(f"Refresh tick could not load assets: {e}")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        await self.drain()
        logger.info("Refresh scheduler stopped")


def create_redis_client(url: str) -> Redis:
    pool = ConnectionPool.from_url(
        url,
        max_connections=REDIS_POOL_SIZE,
        socket_timeout=REDIS_SOCKET_TIMEOUT,
        socket_connect_timeout=REDIS_SOCKET_CONNECT_TIMEOUT,
        retry_on_error=[RedisConnectionError],
        decode_responses=True,
    )
    return Redis(connection_pool=pool)


def create_refresh_guard() -> RefreshGuard:
    """Build the configured refresh guard."""
    from config import REDIS_URL, REFRESH_GUARD_BACKEND

    if REFRESH_GUARD_BACKEND == "redis":
        if not REDIS_URL:
            raise ValueError("VODPIPE_REFRESH_GUARD_BACKEND=redis requires VODPIPE_REDIS_URL")
        logger.info(f"Using Redis refresh guard at {REDIS_URL.split('@')[-1]}")
        return RedisRefreshGuard(create_redis_client(REDIS_URL))
    if REFRESH_GUARD_BACKEND != "memory":
        raise ValueError(f"Unknown refresh guard backend: {REFRESH_GUARD_BACKEND}")
    return InMemoryRefreshGuard()
