"""
Prometheus metrics for the transcode worker.

Exposed by the health server at /metrics in Prometheus text format. The
delivery count histogram and disposition counters are what operators watch
for redelivery growth and dead-letter rate.
"""

from prometheus_client import Counter, Gauge, Histogram, Info, generate_latest

# Application info
APP_INFO = Info("media_engine", "Media engine worker information")

# =============================================================================
# Job Metrics
# =============================================================================

JOB_DISPOSITIONS_TOTAL = Counter(
    "media_engine_job_dispositions_total",
    "Claimed entries by final disposition",
    ["disposition"],  # acknowledged, retried, dead_lettered, released, malformed, ack_failed, lease_lost
)

JOB_DELIVERY_COUNT = Histogram(
    "media_engine_job_delivery_count",
    "Delivery count of entries when they were decided",
    buckets=[1, 2, 3, 5, 10, 20],
)

TRANSCODE_DURATION_SECONDS = Histogram(
    "media_engine_transcode_duration_seconds",
    "Transcode attempt duration in seconds",
    ["result"],  # success, failed, cancelled
    buckets=[1, 5, 30, 60, 120, 300, 600, 1200, 1800, 3600, 7200],
)

TRANSCODE_JOBS_ACTIVE = Gauge(
    "media_engine_transcode_jobs_active",
    "Number of transcode attempts in progress",
)

# =============================================================================
# Broker Metrics
# =============================================================================

BROKER_ERRORS_TOTAL = Counter(
    "media_engine_broker_errors_total",
    "Claim attempts that failed because the broker was unavailable",
)


def record_disposition(disposition: str, delivery_count=None):
    """Count a decided entry."""
    JOB_DISPOSITIONS_TOTAL.labels(disposition=disposition).inc()
    if delivery_count is not None:
        JOB_DELIVERY_COUNT.observe(delivery_count)


def get_metrics() -> bytes:
    """Generate Prometheus metrics in text format."""
    return generate_latest()


def init_app_info(version: str = "0.1.0", consumer: str = ""):
    """Initialize application info metric."""
    APP_INFO.info({"version": version, "app": "media-engine", "consumer": consumer})
