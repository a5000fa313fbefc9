"""
Alert system for pipeline events.

Provides webhook notifications for:
- Repeated job failures for the same episode/language
- Signing misconfiguration (always sent)
- Playlist refresh failures
- Worker startup and shutdown

Includes rate limiting to prevent alert flooding.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Dict, Optional, Set

import httpx

from config import ALERT_RATE_LIMIT_SECONDS, ALERT_WEBHOOK_TIMEOUT, ALERT_WEBHOOK_URL
from core.errors import truncate_error

logger = logging.getLogger(__name__)


class AlertType(str, Enum):
    """Types of alerts that can be sent."""

    JOB_FAILED = "job_failed"
    SIGNING_CONFIG_ERROR = "signing_config_error"
    REFRESH_FAILED = "refresh_failed"
    WORKER_STARTUP = "worker_startup"
    WORKER_SHUTDOWN = "worker_shutdown"


@dataclass
class AlertMetrics:
    """Tracks metrics for alerting and monitoring."""

    jobs_published: int = 0
    jobs_failed: int = 0
    refreshes_completed: int = 0
    refreshes_failed: int = 0
    alerts_sent: int = 0
    alerts_rate_limited: int = 0
    alerts_failed: int = 0

    # Last alert timestamps by type (for rate limiting)
    last_alert_time: Dict[str, float] = field(default_factory=dict)

    # Failures per asset key, for pattern detection
    asset_failure_counts: Dict[str, int] = field(default_factory=dict)

    def increment_failed(self, asset_key: Optional[str] = None) -> int:
        self.jobs_failed += 1
        if asset_key is not None:
            self.asset_failure_counts[asset_key] = self.asset_failure_counts.get(asset_key, 0) + 1
        return self.jobs_failed

    def get_asset_failure_count(self, asset_key: str) -> int:
        return self.asset_failure_counts.get(asset_key, 0)

    def can_send_alert(self, alert_type: str, rate_limit_seconds: int = 300) -> bool:
        """Check if enough time has passed since the last alert of this type."""
        last_time = self.last_alert_time.get(alert_type, 0)
        return (time.time() - last_time) >= rate_limit_seconds

    def record_alert_sent(self, alert_type: str):
        self.last_alert_time[alert_type] = time.time()
        self.alerts_sent += 1

    def record_alert_rate_limited(self):
        self.alerts_rate_limited += 1

    def record_alert_failed(self):
        self.alerts_failed += 1

    def to_dict(self) -> Dict[str, Any]:
        """Convert metrics to a dictionary for reporting."""
        return {
            "jobs_published": self.jobs_published,
            "jobs_failed": self.jobs_failed,
            "refreshes_completed": self.refreshes_completed,
            "refreshes_failed": self.refreshes_failed,
            "alerts_sent": self.alerts_sent,
            "alerts_rate_limited": self.alerts_rate_limited,
            "alerts_failed": self.alerts_failed,
            "assets_with_failures": len(self.asset_failure_counts),
        }


# Global metrics instance
_metrics: Optional[AlertMetrics] = None
# Strong references to in-flight fire-and-forget alerts
_pending_alerts: Set[asyncio.Task] = set()


def get_metrics() -> AlertMetrics:
    """Get or create the global metrics instance."""
    global _metrics
    if _metrics is None:
        _metrics = AlertMetrics()
    return _metrics


def reset_metrics():
    """Reset metrics (for testing)."""
    global _metrics
    _metrics = AlertMetrics()


def send_alert_fire_and_forget(coro: Awaitable[Any]) -> None:
    """
    Schedule an alert coroutine as a background task so alert delivery
    never blocks or fails the caller. Delivery errors are logged.
    """

    async def _safe_send():
        try:
            await coro
        except Exception as e:
            logger.warning(f"Failed to send alert (fire-and-forget): {e}")

    try:
        task = asyncio.get_running_loop().create_task(_safe_send())
        _pending_alerts.add(task)
        task.add_done_callback(_pending_alerts.discard)
    except RuntimeError:
        logger.debug("Cannot send alert: no running event loop")
        coro.close()


async def send_webhook_alert(
    alert_type: AlertType,
    details: Dict[str, Any],
    force: bool = False,
    webhook_url: Optional[str] = None,
) -> bool:
    """
    Send an alert to the configured webhook URL.

    Args:
        alert_type: Type of alert being sent
        details: Additional details about the alert
        force: If True, bypass rate limiting
        webhook_url: Override for VODPIPE_ALERT_WEBHOOK_URL

    Returns:
        True if alert was sent successfully, False otherwise
    """
    webhook_url = webhook_url if webhook_url is not None else ALERT_WEBHOOK_URL
    if not webhook_url:
        return False

    metrics = get_metrics()

    if not force and not metrics.can_send_alert(alert_type.value, ALERT_RATE_LIMIT_SECONDS):
        metrics.record_alert_rate_limited()
        logger.debug(f"Alert {alert_type.value} rate limited")
        return False

    payload = {
        "event": alert_type.value,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "details": details,
        "metrics": metrics.to_dict(),
    }

    try:
        async with httpx.AsyncClient(timeout=ALERT_WEBHOOK_TIMEOUT) as client:
            response = await client.post(webhook_url, json=payload)
            response.raise_for_status()

        metrics.record_alert_sent(alert_type.value)
        logger.info(f"Alert sent: {alert_type.value}")
        return True

    except httpx.TimeoutException:
        metrics.record_alert_failed()
        logger.warning(f"Alert webhook timed out after {ALERT_WEBHOOK_TIMEOUT}s")
        return False
    except httpx.HTTPStatusError as e:
        metrics.record_alert_failed()
        logger.warning(f"Alert webhook returned error: {e.response.status_code}")
        return False
    except httpx.HTTPError as e:
        metrics.record_alert_failed()
        logger.warning(f"Failed to send alert webhook: {e}")
        return False


async def alert_job_failed(asset_key: str, job_id: str, reason: str, error: Optional[str]):
    """
    Send alert when a job fails.

    Only sends after repeated failures for the same episode/language.
    """
    metrics = get_metrics()
    metrics.increment_failed(asset_key)
    failure_count = metrics.get_asset_failure_count(asset_key)

    if failure_count >= 2:
        await send_webhook_alert(
            AlertType.JOB_FAILED,
            {
                "asset_key": asset_key,
                "job_id": job_id,
                "reason": reason,
                "error": truncate_error(error),
                "asset_failure_count": failure_count,
            },
        )


async def alert_signing_config_error(context: str, error: str):
    """Signing misconfiguration blocks every stream; always alert."""
    await send_webhook_alert(
        AlertType.SIGNING_CONFIG_ERROR,
        {"context": context, "error": truncate_error(error)},
        force=True,
    )


async def alert_refresh_failed(asset_key: str, reason: str, error: Optional[str]):
    get_metrics().refreshes_failed += 1
    await send_webhook_alert(
        AlertType.REFRESH_FAILED,
        {"asset_key": asset_key, "reason": reason, "error": truncate_error(error)},
    )


async def alert_worker_startup(worker_id: str, recorded_assets: int = 0, stale_scratch_removed: int = 0):
    await send_webhook_alert(
        AlertType.WORKER_STARTUP,
        {
            "worker_id": worker_id,
            "recorded_assets": recorded_assets,
            "stale_scratch_removed": stale_scratch_removed,
        },
        force=True,
    )


async def alert_worker_shutdown(worker_id: str):
    await send_webhook_alert(
        AlertType.WORKER_SHUTDOWN,
        {"worker_id": worker_id, "final_metrics": get_metrics().to_dict()},
        force=True,
    )
