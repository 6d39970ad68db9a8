import logging
import math
import os
import socket
import uuid
from pathlib import Path
from typing import Optional

# Configure logger for config module warnings
logger = logging.getLogger(__name__)


def get_int_env(
    name: str,
    default: int,
    min_val: Optional[int] = None,
    max_val: Optional[int] = None,
) -> int:
    """Get an integer from environment variable with error handling and validation.

    Args:
        name: Environment variable name
        default: Default value if env var is missing or invalid
        min_val: Optional minimum value (inclusive)
        max_val: Optional maximum value (inclusive)

    Returns:
        Parsed integer value, or default if parsing fails or value is out of range
    """
    value = os.getenv(name)
    if value is None:
        return default

    try:
        result = int(value)
    except ValueError:
        logger.warning(f"Invalid {name}='{value}', using default {default}")
        return default

    # Range validation (only applied to user-provided values)
    if min_val is not None and result < min_val:
        logger.warning(f"{name}={result} is below minimum {min_val}, using default {default}")
        return default
    if max_val is not None and result > max_val:
        logger.warning(f"{name}={result} is above maximum {max_val}, using default {default}")
        return default

    return result


def get_float_env(
    name: str,
    default: float,
    min_val: Optional[float] = None,
    max_val: Optional[float] = None,
) -> float:
    """Get a float from environment variable with error handling and validation.

    Args:
        name: Environment variable name
        default: Default value if env var is missing or invalid
        min_val: Optional minimum value (inclusive)
        max_val: Optional maximum value (inclusive)

    Returns:
        Parsed float value, or default if parsing fails or value is out of range
    """
    value = os.getenv(name)
    if value is None:
        return default

    try:
        result = float(value)
    except ValueError:
        logger.warning(f"Invalid {name}='{value}', using default {default}")
        return default

    # Reject special float values (inf, -inf, nan)
    if math.isinf(result) or math.isnan(result):
        logger.warning(f"Invalid {name}='{value}' (special float), using default {default}")
        return default

    if min_val is not None and result < min_val:
        logger.warning(f"{name}={result} is below minimum {min_val}, using default {default}")
        return default
    if max_val is not None and result > max_val:
        logger.warning(f"{name}={result} is above maximum {max_val}, using default {default}")
        return default

    return result


def get_bool_env(name: str, default: bool) -> bool:
    """Get a boolean from environment variable ("true"/"1"/"yes" are truthy)."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("true", "1", "yes", "on")


def default_consumer_name() -> str:
    """Consumer name unique to this process: <hostname>-<8 hex chars>."""
    return f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"


# Redis Configuration
# Empty URL makes the worker refuse to start (there is no fallback queue)
REDIS_URL = os.getenv("MEDIA_ENGINE_REDIS_URL", "redis://localhost:6379/0")
REDIS_POOL_SIZE = get_int_env("MEDIA_ENGINE_REDIS_POOL_SIZE", 10, min_val=1)
# Read timeout added on top of the claim block time (blocking reads hold the socket for POLL_TIMEOUT)
REDIS_SOCKET_TIMEOUT = get_float_env("MEDIA_ENGINE_REDIS_SOCKET_TIMEOUT", 5.0, min_val=0.1)
REDIS_SOCKET_CONNECT_TIMEOUT = get_float_env("MEDIA_ENGINE_REDIS_SOCKET_CONNECT_TIMEOUT", 5.0, min_val=0.1)
REDIS_HEALTH_CHECK_INTERVAL = get_int_env("MEDIA_ENGINE_REDIS_HEALTH_CHECK_INTERVAL", 30, min_val=1)

# Key prefix for everything this service writes to Redis
REDIS_PREFIX = os.getenv("MEDIA_ENGINE_REDIS_PREFIX", "media-engine")

# Redis Streams Settings
STREAM_NAME = os.getenv("MEDIA_ENGINE_STREAM_NAME", "transcode_jobs")
CONSUMER_GROUP = os.getenv("MEDIA_ENGINE_CONSUMER_GROUP", "media_engine_group")
# Must be unique per running worker; generated when unset
CONSUMER_NAME = os.getenv("MEDIA_ENGINE_CONSUMER_NAME", "") or default_consumer_name()
DEAD_LETTER_STREAM = os.getenv("MEDIA_ENGINE_DEAD_LETTER_STREAM", f"{STREAM_NAME}:dead-letter")
STREAM_MAX_LEN = get_int_env("MEDIA_ENGINE_STREAM_MAX_LEN", 10000, min_val=100)
DEAD_LETTER_MAX_LEN = get_int_env("MEDIA_ENGINE_DEAD_LETTER_MAX_LEN", 1000, min_val=10)

# How long a single claim call blocks waiting for new entries (seconds)
POLL_TIMEOUT = get_float_env("MEDIA_ENGINE_POLL_TIMEOUT", 5.0, min_val=0.1, max_val=300.0)

# Visibility lease: a claimed entry idle longer than this is re-claimable by any consumer
LEASE_MS = get_int_env("MEDIA_ENGINE_LEASE_MS", 300000, min_val=1000)  # 5 min

# Retry policy: dead-letter once an entry has failed on its Nth delivery
MAX_REDELIVERIES = get_int_env("MEDIA_ENGINE_MAX_REDELIVERIES", 3, min_val=1)
# Extra idle time added to the lease before a failed entry is redelivered (doubles per delivery)
RETRY_BACKOFF_BASE_MS = get_int_env("MEDIA_ENGINE_RETRY_BACKOFF_BASE_MS", 30000, min_val=0)
RETRY_BACKOFF_MAX_MS = get_int_env("MEDIA_ENGINE_RETRY_BACKOFF_MAX_MS", 600000, min_val=0)

# Backoff between claim attempts while the broker is unreachable (seconds)
BROKER_BACKOFF_BASE = get_float_env("MEDIA_ENGINE_BROKER_BACKOFF_BASE", 1.0, min_val=0.0)
BROKER_BACKOFF_MAX = get_float_env("MEDIA_ENGINE_BROKER_BACKOFF_MAX", 30.0, min_val=0.0)

# Transcoding
FFMPEG_PATH = os.getenv("MEDIA_ENGINE_FFMPEG_PATH", "ffmpeg")
OUTPUT_DIR = Path(os.getenv("MEDIA_ENGINE_OUTPUT_DIR", "/var/lib/media-engine/output"))
# Optional JSON file with profile definitions merged over the built-in ones
PROFILES_FILE = os.getenv("MEDIA_ENGINE_PROFILES_FILE", "")
DEFAULT_PROFILE = os.getenv("MEDIA_ENGINE_DEFAULT_PROFILE", "hls_single")
# Wall-clock ceiling for one ffmpeg run in seconds (0 disables)
TRANSCODE_TIMEOUT = get_float_env("MEDIA_ENGINE_TRANSCODE_TIMEOUT", 0.0, min_val=0.0)
# Time between SIGTERM and SIGKILL when an ffmpeg run is cancelled
TERMINATE_GRACE_SECONDS = get_float_env("MEDIA_ENGINE_TERMINATE_GRACE_SECONDS", 5.0, min_val=0.1)
# Staging and backup dirs untouched for this long are treated as abandoned by a dead run
STALE_OUTPUT_SECONDS = get_float_env("MEDIA_ENGINE_STALE_OUTPUT_SECONDS", LEASE_MS / 1000.0, min_val=1.0)

# Logging
LOG_LEVEL = os.getenv("MEDIA_ENGINE_LOG_LEVEL", "INFO").upper()

# Error Message Truncation Limits
ERROR_SUMMARY_MAX_LENGTH = get_int_env("MEDIA_ENGINE_ERROR_SUMMARY_MAX_LENGTH", 100, min_val=10)
ERROR_DETAIL_MAX_LENGTH = get_int_env("MEDIA_ENGINE_ERROR_DETAIL_MAX_LENGTH", 500, min_val=10)
ERROR_LOG_MAX_LENGTH = get_int_env("MEDIA_ENGINE_ERROR_LOG_MAX_LENGTH", 2000, min_val=10)

# Alerting Configuration
# Webhook URL for sending alerts (dead-lettered jobs, malformed entries, ...)
# Leave empty to disable webhook alerts
ALERT_WEBHOOK_URL = os.getenv("MEDIA_ENGINE_ALERT_WEBHOOK_URL", "")
ALERT_WEBHOOK_TIMEOUT = get_int_env("MEDIA_ENGINE_ALERT_WEBHOOK_TIMEOUT", 10, min_val=1)
# Minimum interval between alerts for the same event type (seconds)
ALERT_RATE_LIMIT_SECONDS = get_int_env("MEDIA_ENGINE_ALERT_RATE_LIMIT_SECONDS", 300, min_val=0)

# Worker health check server (for K8s liveness/readiness probes)
HEALTH_ENABLED = get_bool_env("MEDIA_ENGINE_HEALTH_ENABLED", True)
HEALTH_PORT = get_int_env("MEDIA_ENGINE_HEALTH_PORT", 8080, min_val=1, max_val=65535)
