"""
Redis client with connection pooling and circuit breaker.

Provides:
- Shared async connection pool for the queue client and job store
- Automatic reconnection probe after failures
- Circuit breaker pattern to prevent hammering a broker that is down
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from redis.asyncio import ConnectionPool, Redis
from redis.exceptions import ConnectionError as RedisConnectionError

from config import (
    POLL_TIMEOUT,
    REDIS_HEALTH_CHECK_INTERVAL,
    REDIS_POOL_SIZE,
    REDIS_SOCKET_CONNECT_TIMEOUT,
    REDIS_SOCKET_TIMEOUT,
    REDIS_URL,
)

logger = logging.getLogger(__name__)

# Consecutive failures before the circuit opens
CIRCUIT_FAILURE_THRESHOLD = 3
CIRCUIT_MAX_BACKOFF_SECONDS = 300


def redact_url(url: str) -> str:
    """Strip credentials from a Redis URL for logging."""
    return url.split("@")[-1]


class RedisClient:
    """Singleton Redis client with connection pooling and health monitoring."""

    _instance: Optional["RedisClient"] = None
    _lock: Optional[asyncio.Lock] = None
    _initialized: bool = False

    def __init__(self, url: Optional[str] = None) -> None:
        self.url = REDIS_URL if url is None else url
        self._pool: Optional[ConnectionPool] = None
        self._client: Optional[Redis] = None
        self._healthy: bool = False
        self._last_health_check: Optional[datetime] = None
        self._consecutive_failures: int = 0
        self._circuit_open: bool = False
        self._circuit_open_until: Optional[datetime] = None

    @classmethod
    def _get_lock(cls) -> asyncio.Lock:
        if cls._lock is None:
            cls._lock = asyncio.Lock()
        return cls._lock

    @classmethod
    async def get_instance(cls) -> "RedisClient":
        """Get or create the singleton instance."""
        async with cls._get_lock():
            if cls._instance is None:
                cls._instance = cls()
            if not cls._initialized:
                await cls._instance.initialize()
                cls._initialized = True
            return cls._instance

    @classmethod
    async def reset_instance(cls) -> None:
        """Reset the singleton instance (for testing and shutdown)."""
        async with cls._get_lock():
            if cls._instance is not None:
                await cls._instance.close()
                cls._instance = None
                cls._initialized = False
        cls._lock = None

    async def initialize(self) -> None:
        """Create the connection pool and test the connection."""
        if not self.url:
            logger.info("Redis URL not configured, broker disabled")
            return

        self._pool = ConnectionPool.from_url(
            self.url,
            max_connections=REDIS_POOL_SIZE,
            # Blocking stream reads hold the socket for up to POLL_TIMEOUT
            socket_timeout=REDIS_SOCKET_TIMEOUT + POLL_TIMEOUT,
            socket_connect_timeout=REDIS_SOCKET_CONNECT_TIMEOUT,
            retry_on_error=[RedisConnectionError],
            decode_responses=True,
        )
        self._client = Redis(connection_pool=self._pool)

        try:
            await self._client.ping()
            self._healthy = True
            self._last_health_check = datetime.now(timezone.utc)
            logger.info(f"Redis connection established: {redact_url(self.url)}")
        except Exception as e:
            logger.warning(f"Redis connection failed during initialization: {e}")
            self._healthy = False

    @property
    def is_configured(self) -> bool:
        """Check if Redis URL is configured."""
        return bool(self.url)

    @property
    def circuit_open(self) -> bool:
        """True while the breaker is refusing calls."""
        if not self._circuit_open:
            return False
        if self._circuit_open_until and datetime.now(timezone.utc) < self._circuit_open_until:
            return True
        # Half-open: let the next call probe the connection
        self._circuit_open = False
        logger.info("Redis circuit breaker closing, attempting reconnection")
        return False

    @property
    def is_available(self) -> bool:
        """Check if Redis is currently available (respects circuit breaker)."""
        if self._client is None:
            return False
        if self.circuit_open:
            return False
        return self._healthy

    async def get_client(self) -> Optional[Redis]:
        """Get the Redis client, probing the connection if the last call failed.

        Returns None while the circuit is open or the broker is unreachable.
        """
        if self._client is None or self.circuit_open:
            return None
        if not self._healthy:
            await self.health_check(force=True)
        return self._client if self._healthy else None

    def record_failure(self) -> None:
        """Record a failure and potentially open circuit breaker."""
        self._consecutive_failures += 1
        self._healthy = False

        if self._consecutive_failures >= CIRCUIT_FAILURE_THRESHOLD:
            self._circuit_open = True
            # Exponential backoff: 30s, 60s, 120s, 240s, max 300s
            exponent = self._consecutive_failures - CIRCUIT_FAILURE_THRESHOLD
            backoff = min(CIRCUIT_MAX_BACKOFF_SECONDS, 30 * (2**exponent))
            self._circuit_open_until = datetime.now(timezone.utc) + timedelta(seconds=backoff)
            logger.warning(
                f"Redis circuit breaker opened for {backoff}s (consecutive failures: {self._consecutive_failures})"
            )

    def record_success(self) -> None:
        """Record a successful operation."""
        if self._consecutive_failures > 0:
            logger.info(f"Redis connection recovered after {self._consecutive_failures} failures")
        self._consecutive_failures = 0
        self._healthy = True
        self._circuit_open = False
        self._circuit_open_until = None

    async def health_check(self, force: bool = False) -> bool:
        """
        Perform health check on Redis connection.

        Args:
            force: Ping even if a check ran within REDIS_HEALTH_CHECK_INTERVAL

        Returns:
            True if healthy, False otherwise
        """
        if not self._client:
            return False

        if not force and self._last_health_check:
            elapsed = (datetime.now(timezone.utc) - self._last_health_check).total_seconds()
            if elapsed < REDIS_HEALTH_CHECK_INTERVAL:
                return self._healthy

        try:
            await self._client.ping()
            self.record_success()
            return True
        except Exception as e:
            logger.warning(f"Redis health check failed: {e}")
            self.record_failure()
            return False
        finally:
            self._last_health_check = datetime.now(timezone.utc)

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._client:
            try:
                await self._client.aclose()
            except Exception as e:
                # Ignore close errors during shutdown
                logger.debug(f"Exception while closing Redis client: {e}")
        if self._pool:
            try:
                await self._pool.disconnect()
            except Exception as e:
                logger.debug(f"Exception while disconnecting Redis pool: {e}")
        self._client = None
        self._pool = None
        self._healthy = False
