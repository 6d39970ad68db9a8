"""
Alert system for worker events.

Provides webhook notifications for:
- Jobs moved to the dead-letter stream
- Repeated failures for specific jobs
- Malformed stream entries
- Worker startup and shutdown

Includes rate limiting to prevent alert flooding, and process-wide counters
that the health server reports.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Dict, Optional

import httpx

from config import ALERT_RATE_LIMIT_SECONDS, ALERT_WEBHOOK_TIMEOUT, ALERT_WEBHOOK_URL, ERROR_DETAIL_MAX_LENGTH

logger = logging.getLogger(__name__)

# Alert on a job's failures only once it has failed this many times in this process
REPEATED_FAILURE_THRESHOLD = 2


class AlertType(str, Enum):
    """Types of alerts that can be sent."""

    JOB_DEAD_LETTERED = "job_dead_lettered"
    JOB_FAILED = "job_failed"
    MALFORMED_ENTRY = "malformed_entry"
    WORKER_STARTUP = "worker_startup"
    WORKER_SHUTDOWN = "worker_shutdown"


@dataclass
class AlertMetrics:
    """Tracks metrics for alerting and monitoring."""

    # Disposition counters
    jobs_acknowledged: int = 0
    jobs_retried: int = 0
    jobs_dead_lettered: int = 0
    jobs_released: int = 0
    malformed_entries: int = 0
    ack_failures: int = 0
    jobs_lease_lost: int = 0

    # Alert delivery counters
    alerts_sent: int = 0
    alerts_rate_limited: int = 0
    alerts_failed: int = 0

    # Last alert timestamps by type (for rate limiting)
    last_alert_time: Dict[str, float] = field(default_factory=dict)

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
            "jobs_acknowledged": self.jobs_acknowledged,
            "jobs_retried": self.jobs_retried,
            "jobs_dead_lettered": self.jobs_dead_lettered,
            "jobs_released": self.jobs_released,
            "malformed_entries": self.malformed_entries,
            "ack_failures": self.ack_failures,
            "jobs_lease_lost": self.jobs_lease_lost,
            "alerts_sent": self.alerts_sent,
            "alerts_rate_limited": self.alerts_rate_limited,
            "alerts_failed": self.alerts_failed,
        }


# Global metrics instance
_metrics: Optional[AlertMetrics] = None


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


def send_alert_fire_and_forget(coro: Awaitable[Any]) -> Optional[asyncio.Task]:
    """
    Schedule an alert coroutine as a fire-and-forget background task.

    Alert failures never reach the caller; they are logged at debug level.

    Returns:
        The scheduled task, or None if there is no running event loop
    """

    async def _safe_send():
        try:
            await coro
        except Exception as e:
            logger.debug(f"Failed to send alert (fire-and-forget): {e}")

    try:
        return asyncio.create_task(_safe_send())
    except RuntimeError:
        # No running event loop; close the coroutine so it is not reported as never awaited
        if asyncio.iscoroutine(coro):
            coro.close()
        logger.debug("Cannot send alert: no running event loop")
        return None


async def send_webhook_alert(
    alert_type: AlertType,
    details: Dict[str, Any],
    force: bool = False,
) -> bool:
    """
    Send an alert to the configured webhook URL.

    Args:
        alert_type: Type of alert being sent
        details: Additional details about the alert
        force: If True, bypass rate limiting

    Returns:
        True if alert was sent successfully, False otherwise
    """
    if not ALERT_WEBHOOK_URL:
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
            response = await client.post(
                ALERT_WEBHOOK_URL,
                json=payload,
                headers={"Content-Type": "application/json"},
            )
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
    except Exception as e:
        metrics.record_alert_failed()
        logger.warning(f"Failed to send alert webhook: {e}")
        return False


def _clip(error: Optional[str]) -> Optional[str]:
    return error[:ERROR_DETAIL_MAX_LENGTH] if error else None


async def alert_job_dead_lettered(
    job_id: str,
    message_id: str,
    delivery_count: int,
    max_redeliveries: int,
    last_error: Optional[str] = None,
    consumer: Optional[str] = None,
):
    """
    Send alert when a job exhausts its deliveries and is dead-lettered.

    Always sent: a dead-lettered job needs a human.
    """
    await send_webhook_alert(
        AlertType.JOB_DEAD_LETTERED,
        {
            "job_id": job_id,
            "message_id": message_id,
            "delivery_count": delivery_count,
            "max_redeliveries": max_redeliveries,
            "last_error": _clip(last_error),
            "consumer": consumer,
            "total_dead_lettered": get_metrics().jobs_dead_lettered,
        },
        force=True,
    )


async def alert_job_failed(
    job_id: str,
    delivery_count: int,
    error: str,
    will_retry: bool,
):
    """
    Send alert when a job fails.

    Only sends alerts once the broker has delivered the job repeatedly.
    """
    if delivery_count >= REPEATED_FAILURE_THRESHOLD:
        await send_webhook_alert(
            AlertType.JOB_FAILED,
            {
                "job_id": job_id,
                "delivery_count": delivery_count,
                "error": _clip(error),
                "will_retry": will_retry,
            },
        )


async def alert_malformed_entry(
    message_id: str,
    stream: str,
    reason: str,
    fields: Optional[Dict[str, Any]] = None,
):
    """Send alert when a stream entry could not be parsed."""
    await send_webhook_alert(
        AlertType.MALFORMED_ENTRY,
        {
            "message_id": message_id,
            "stream": stream,
            "reason": reason,
            "fields": fields or {},
            "total_malformed": get_metrics().malformed_entries,
        },
    )


async def alert_worker_startup(worker_id: str, stream: str, group: str):
    """Send alert when a worker starts up."""
    await send_webhook_alert(
        AlertType.WORKER_STARTUP,
        {
            "worker_id": worker_id,
            "stream": stream,
            "group": group,
        },
        force=True,
    )


async def alert_worker_shutdown(worker_id: str, jobs_released: int = 0):
    """Send alert when a worker shuts down."""
    await send_webhook_alert(
        AlertType.WORKER_SHUTDOWN,
        {
            "worker_id": worker_id,
            "jobs_released": jobs_released,
            "final_metrics": get_metrics().to_dict(),
        },
        force=True,
    )
