"""
Queue client for transcode jobs.

Wraps a Redis Stream consumed through a consumer group:
- Each entry is visible to one consumer at a time until acknowledged
- Unacknowledged entries become re-claimable once their lease expires
- Failed entries wait an extra, growing backoff before redelivery
- Exhausted entries are copied to a dead-letter stream and acknowledged

This module only handles delivery mechanics. Deciding when to acknowledge
belongs to the worker loop, which must do so only after the transcode
attempt for a claim has finished.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from redis.asyncio import Redis
from redis.exceptions import RedisError, ResponseError

from broker.redis_client import RedisClient
from config import (
    CONSUMER_GROUP,
    CONSUMER_NAME,
    DEAD_LETTER_MAX_LEN,
    DEAD_LETTER_STREAM,
    ERROR_DETAIL_MAX_LENGTH,
    LEASE_MS,
    RETRY_BACKOFF_BASE_MS,
    RETRY_BACKOFF_MAX_MS,
    STREAM_MAX_LEN,
    STREAM_NAME,
)

logger = logging.getLogger(__name__)

# Payload key for the job identifier; "job_id" is accepted on read as well
JOB_ID_FIELD = "jobID"

# How many pending entries to inspect per recovery pass
RECOVERY_SCAN_COUNT = 10

# Reset an entry's idle time only while ARGV[3] still owns it; returns 1 if renewed.
# JUSTID leaves the delivery counter alone.
EXTEND_LEASE_LUA = """
local pending = redis.call("XPENDING", KEYS[1], ARGV[1], ARGV[2], ARGV[2], 1)
if #pending == 0 or pending[1][2] ~= ARGV[3] then
  return 0
end
redis.call("XCLAIM", KEYS[1], ARGV[1], ARGV[3], 0, ARGV[2], "JUSTID")
return 1
"""


class QueueError(Exception):
    """Base class for queue client errors."""


class BrokerUnavailableError(QueueError):
    """The broker could not be reached or rejected the call. Transient."""


class QueueBootstrapError(QueueError):
    """Consumer group could not be created. Fatal at startup."""


class MalformedEntryError(QueueError):
    """A claimed entry could not be parsed into a job reference."""

    def __init__(self, handle: "EntryHandle", fields: Dict[str, Any], reason: str, acknowledged: bool = True):
        super().__init__(f"Malformed entry {handle.message_id} on {handle.stream}: {reason}")
        self.handle = handle
        self.fields = fields
        self.reason = reason
        self.acknowledged = acknowledged


@dataclass(frozen=True)
class EntryHandle:
    """Identifies one delivery of a stream entry, used to acknowledge it."""

    stream: str
    message_id: str


@dataclass
class JobReference:
    """A claimed transcode job."""

    job_id: str
    source_uri: Optional[str] = None
    profile: Optional[str] = None
    output_target: Optional[str] = None
    created_at: Optional[datetime] = None
    # Times this entry has been claimed, including the current claim
    delivery_count: int = 1
    handle: Optional[EntryHandle] = field(default=None, repr=False, compare=False)

    def to_stream_dict(self) -> Dict[str, str]:
        """Convert to Redis stream message format (all string values)."""
        data = {JOB_ID_FIELD: self.job_id}
        if self.source_uri:
            data["source_uri"] = self.source_uri
        if self.profile:
            data["profile"] = self.profile
        if self.output_target:
            data["output_target"] = self.output_target
        data["created_at"] = (self.created_at or datetime.now(timezone.utc)).isoformat()
        return data

    @classmethod
    def from_stream_dict(
        cls,
        data: Dict[str, Any],
        handle: Optional[EntryHandle] = None,
        delivery_count: int = 1,
    ) -> "JobReference":
        """Create from a Redis stream message.

        Raises:
            ValueError: If the job id is missing or blank
        """
        job_id = data.get(JOB_ID_FIELD) or data.get("job_id")
        if not isinstance(job_id, str) or not job_id.strip():
            raise ValueError(f"missing required field '{JOB_ID_FIELD}'")

        created_at = None
        if data.get("created_at"):
            try:
                created_at = datetime.fromisoformat(data["created_at"])
            except (ValueError, TypeError):
                # Invalid timestamps are informational only
                pass

        return cls(
            job_id=job_id.strip(),
            source_uri=data.get("source_uri") or None,
            profile=data.get("profile") or None,
            output_target=data.get("output_target") or None,
            created_at=created_at,
            delivery_count=delivery_count,
            handle=handle,
        )


class JobQueue(ABC):
    """Claim/acknowledge interface the worker loop depends on."""

    @abstractmethod
    async def ensure_group(self) -> None:
        """Create the consumer group if it does not exist."""

    @abstractmethod
    async def claim_next(self, timeout: float) -> Optional[JobReference]:
        """Block up to `timeout` seconds for the next entry; None when there is none."""

    @abstractmethod
    async def acknowledge(self, handle: EntryHandle) -> None:
        """Mark a delivery as done so it is never redelivered."""

    @abstractmethod
    async def dead_letter(self, job: JobReference, error: str) -> None:
        """Record an exhausted job on the dead-letter path and acknowledge it."""

    @abstractmethod
    async def release(self, job: JobReference) -> None:
        """Give up a claim without counting it as an attempt."""

    async def extend_lease(self, job: JobReference) -> bool:
        """Renew the claim on a job still being processed. False if it was lost."""
        return True


class RedisStreamQueue(JobQueue):
    """JobQueue backed by a Redis Stream and consumer group."""

    def __init__(
        self,
        redis_client: RedisClient,
        stream: str = STREAM_NAME,
        group: str = CONSUMER_GROUP,
        consumer: str = CONSUMER_NAME,
        dead_letter_stream: str = DEAD_LETTER_STREAM,
        lease_ms: int = LEASE_MS,
        backoff_base_ms: int = RETRY_BACKOFF_BASE_MS,
        backoff_max_ms: int = RETRY_BACKOFF_MAX_MS,
        max_len: int = STREAM_MAX_LEN,
    ) -> None:
        self._client = redis_client
        self.stream = stream
        self.group = group
        self.consumer = consumer
        self.dead_letter_stream = dead_letter_stream
        self.lease_ms = lease_ms
        self.backoff_base_ms = backoff_base_ms
        self.backoff_max_ms = backoff_max_ms
        self.max_len = max_len

    async def _redis(self) -> Redis:
        redis = await self._client.get_client()
        if redis is None:
            raise BrokerUnavailableError("Redis unavailable")
        return redis

    def _broker_error(self, operation: str, error: Exception) -> BrokerUnavailableError:
        self._client.record_failure()
        return BrokerUnavailableError(f"{operation} failed: {error}")

    def redelivery_idle_ms(self, times_delivered: int) -> int:
        """Idle time after which an entry delivered `times_delivered` times may be reclaimed."""
        exponent = max(times_delivered, 1) - 1
        backoff = min(self.backoff_base_ms * (2**exponent), self.backoff_max_ms)
        return self.lease_ms + backoff

    async def ensure_group(self) -> None:
        """
        Create the consumer group (and stream) if absent.

        Raises:
            QueueBootstrapError: On any failure other than "group already exists"
        """
        try:
            redis = await self._redis()
        except BrokerUnavailableError as e:
            raise QueueBootstrapError(f"Cannot create consumer group {self.group}: {e}") from e

        try:
            # Start at 0 so entries added before the group existed are still delivered
            await redis.xgroup_create(self.stream, self.group, id="0", mkstream=True)
            logger.info(f"Created consumer group {self.group} on stream {self.stream}")
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise QueueBootstrapError(f"Cannot create consumer group {self.group}: {e}") from e
            logger.debug(f"Consumer group {self.group} already exists on {self.stream}")
        except RedisError as e:
            raise QueueBootstrapError(f"Cannot create consumer group {self.group}: {e}") from e

    async def claim_next(self, timeout: float) -> Optional[JobReference]:
        """
        Claim the next entry for this consumer.

        Abandoned entries (lease plus backoff expired) are recovered before new
        entries are read, so failed jobs are retried even when the stream is busy.

        Args:
            timeout: Seconds to block waiting for a new entry

        Returns:
            JobReference with its delivery handle, or None if nothing arrived in time

        Raises:
            BrokerUnavailableError: Broker unreachable or call failed
            MalformedEntryError: Entry had no job id (it has been acknowledged)
        """
        redis = await self._redis()

        try:
            raw = await self._recover_abandoned(redis)
            if raw is None:
                raw = await self._read_new(redis, timeout)
        except ResponseError as e:
            if "NOGROUP" in str(e):
                # Group or stream deleted under us; recreate and let the caller re-poll
                logger.warning(f"Consumer group {self.group} missing on {self.stream}, recreating")
                try:
                    await self.ensure_group()
                except QueueBootstrapError as bootstrap_error:
                    logger.warning(f"Failed to recreate consumer group: {bootstrap_error}")
            raise self._broker_error("Claim", e) from e
        except RedisError as e:
            raise self._broker_error("Claim", e) from e

        self._client.record_success()
        if raw is None:
            return None

        message_id, data, delivery_count = raw
        handle = EntryHandle(stream=self.stream, message_id=message_id)
        try:
            return JobReference.from_stream_dict(data, handle=handle, delivery_count=delivery_count)
        except ValueError as e:
            # Acknowledge so an unparseable entry cannot block the stream forever
            acknowledged = True
            try:
                await self.acknowledge(handle)
            except BrokerUnavailableError as ack_error:
                acknowledged = False
                logger.warning(f"Failed to acknowledge malformed entry {message_id}: {ack_error}")
            raise MalformedEntryError(handle, dict(data), str(e), acknowledged=acknowledged) from e

    async def _recover_abandoned(self, redis: Redis) -> Optional[Tuple[str, Dict[str, Any], int]]:
        """Claim one pending entry whose lease and retry backoff have expired."""
        pending = await redis.xpending_range(
            self.stream,
            self.group,
            min="-",
            max="+",
            count=RECOVERY_SCAN_COUNT,
            idle=self.lease_ms,
        )

        for msg in pending:
            times_delivered = int(msg.get("times_delivered", 1))
            min_idle = self.redelivery_idle_ms(times_delivered)
            if int(msg.get("time_since_delivered", 0)) < min_idle:
                continue

            # XCLAIM re-checks the idle time, so two consumers cannot both win
            claimed = await redis.xclaim(
                self.stream,
                self.group,
                self.consumer,
                min_idle,
                [msg["message_id"]],
            )
            if not claimed:
                continue

            message_id, data = claimed[0]
            if data is None:
                # Entry was trimmed from the stream; drop it from the pending list
                await redis.xack(self.stream, self.group, message_id)
                continue

            logger.info(
                f"Recovered entry {message_id} (delivery {times_delivered + 1}) "
                f"from {msg.get('consumer')} after {msg.get('time_since_delivered')}ms idle"
            )
            return message_id, data, times_delivered + 1

        return None

    async def _read_new(self, redis: Redis, timeout: float) -> Optional[Tuple[str, Dict[str, Any], int]]:
        """Block for a never-delivered entry."""
        messages = await redis.xreadgroup(
            self.group,
            self.consumer,
            {self.stream: ">"},
            count=1,
            block=max(1, int(timeout * 1000)),
        )
        if not messages:
            return None

        # messages format: [[stream_name, [(message_id, data), ...]]]
        _stream, msg_list = messages[0]
        if not msg_list:
            return None
        message_id, data = msg_list[0]
        return message_id, data, 1

    async def acknowledge(self, handle: EntryHandle) -> None:
        """
        Acknowledge a delivery.

        Raises:
            BrokerUnavailableError: If the XACK could not be issued
        """
        redis = await self._redis()
        try:
            await redis.xack(handle.stream, self.group, handle.message_id)
        except RedisError as e:
            raise self._broker_error(f"Acknowledge {handle.message_id}", e) from e
        self._client.record_success()
        logger.debug(f"Acknowledged {handle.message_id} on {handle.stream}")

    async def dead_letter(self, job: JobReference, error: str) -> None:
        """
        Copy a job to the dead-letter stream and acknowledge the original entry.

        Both commands run in one MULTI/EXEC so the entry is never acknowledged
        without its dead-letter record.

        Raises:
            BrokerUnavailableError: If the transaction failed
        """
        if job.handle is None:
            raise ValueError(f"Job {job.job_id} has no delivery handle")

        dlq_data = job.to_stream_dict()
        dlq_data["error"] = (error or "")[:ERROR_DETAIL_MAX_LENGTH]
        dlq_data["failed_at"] = datetime.now(timezone.utc).isoformat()
        dlq_data["delivery_count"] = str(job.delivery_count)
        dlq_data["original_stream"] = job.handle.stream
        dlq_data["original_id"] = job.handle.message_id
        dlq_data["consumer"] = self.consumer

        redis = await self._redis()
        try:
            pipe = redis.pipeline(transaction=True)
            pipe.xadd(self.dead_letter_stream, dlq_data, maxlen=DEAD_LETTER_MAX_LEN, approximate=True)
            pipe.xack(job.handle.stream, self.group, job.handle.message_id)
            await pipe.execute()
        except RedisError as e:
            raise self._broker_error(f"Dead-letter {job.job_id}", e) from e
        self._client.record_success()
        logger.info(f"Job {job.job_id} moved to dead letter stream after {job.delivery_count} deliveries")

    async def release(self, job: JobReference) -> None:
        """
        Make a claimed entry immediately recoverable by any consumer.

        Resets the entry's idle time past the redelivery threshold and rolls its
        delivery counter back, so an attempt interrupted by shutdown is neither
        stuck until lease expiry nor charged against the retry budget.

        Raises:
            BrokerUnavailableError: If the XCLAIM could not be issued
        """
        if job.handle is None:
            raise ValueError(f"Job {job.job_id} has no delivery handle")

        redis = await self._redis()
        try:
            await redis.xclaim(
                job.handle.stream,
                self.group,
                self.consumer,
                0,
                [job.handle.message_id],
                idle=self.lease_ms + self.backoff_max_ms,
                retrycount=max(job.delivery_count - 1, 0),
                justid=True,
            )
        except RedisError as e:
            raise self._broker_error(f"Release {job.job_id}", e) from e
        self._client.record_success()
        logger.info(f"Released job {job.job_id} ({job.handle.message_id}) for redelivery")

    async def extend_lease(self, job: JobReference) -> bool:
        """
        Reset the idle time of an entry this consumer is still working on.

        Returns:
            False if another consumer has taken the entry over

        Raises:
            BrokerUnavailableError: If the broker could not be reached
        """
        if job.handle is None:
            return False

        redis = await self._redis()
        try:
            renewed = await redis.eval(
                EXTEND_LEASE_LUA,
                1,
                job.handle.stream,
                self.group,
                job.handle.message_id,
                self.consumer,
            )
        except RedisError as e:
            raise self._broker_error(f"Extend lease {job.job_id}", e) from e
        self._client.record_success()
        if not renewed:
            logger.warning(f"Lost claim on job {job.job_id} ({job.handle.message_id})")
            return False
        logger.debug(f"Extended lease on job {job.job_id}")
        return True

    async def publish_job(self, job: JobReference) -> str:
        """
        Append a job to the stream.

        Returns:
            The new entry's message id
        """
        redis = await self._redis()
        try:
            message_id = await redis.xadd(self.stream, job.to_stream_dict(), maxlen=self.max_len, approximate=True)
        except RedisError as e:
            raise self._broker_error(f"Publish {job.job_id}", e) from e
        logger.debug(f"Published job {job.job_id} to {self.stream} as {message_id}")
        return message_id

    async def get_queue_stats(self) -> Dict[str, Any]:
        """
        Get queue statistics.

        Returns:
            Dict with stream length, pending count, consumers and dead-letter length
        """
        redis = await self._redis()
        stats: Dict[str, Any] = {
            "stream": self.stream,
            "group": self.group,
            "length": 0,
            "pending": 0,
            "consumers": [],
            "dead_letter": 0,
        }

        try:
            stats["length"] = await redis.xlen(self.stream)
            stats["dead_letter"] = await redis.xlen(self.dead_letter_stream)
            try:
                pending_info = await redis.xpending(self.stream, self.group)
                stats["pending"] = pending_info.get("pending", 0) if pending_info else 0
                stats["consumers"] = [
                    {"name": c["name"], "pending": c["pending"], "idle_ms": c["idle"]}
                    for c in await redis.xinfo_consumers(self.stream, self.group)
                ]
            except ResponseError as e:
                if "NOGROUP" not in str(e):
                    raise
                # Group not created yet; nothing is pending
        except RedisError as e:
            raise self._broker_error("Queue stats", e) from e

        return stats

    async def list_dead_letters(self, count: int = 20) -> List[Tuple[str, Dict[str, Any]]]:
        """Return the newest dead-letter records, newest first."""
        redis = await self._redis()
        try:
            return await redis.xrevrange(self.dead_letter_stream, count=count)
        except RedisError as e:
            raise self._broker_error("List dead letters", e) from e
