"""
Job metadata lookup.

Stream entries carry little more than a job id. Everything needed to run the
job (local source path, profile, output location) is resolved here, from a
Redis hash written by the producer, with any fields inlined in the stream
entry taking precedence.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional
from urllib.parse import unquote, urlparse

from redis.exceptions import RedisError

from broker.job_queue import JobReference
from broker.redis_client import RedisClient
from config import DEFAULT_PROFILE, OUTPUT_DIR, REDIS_PREFIX

logger = logging.getLogger(__name__)


class JobLookupError(Exception):
    """Job details could not be resolved."""


@dataclass(frozen=True)
class JobDetails:
    """Everything the transcoder needs for one job."""

    job_id: str
    source_path: Path
    profile: str
    output_target: Path


def job_key(job_id: str, prefix: str = REDIS_PREFIX) -> str:
    """Redis key of the metadata hash for a job."""
    return f"{prefix}:job:{job_id}"


def source_uri_to_path(source_uri: str) -> Path:
    """
    Convert a source reference to a local path.

    Accepts plain paths and file:// URIs. Fetching remote media is the
    producer's job, so any other scheme is rejected.

    Raises:
        JobLookupError: For non-local schemes
    """
    parsed = urlparse(source_uri)
    if parsed.scheme in ("", "file"):
        if parsed.scheme == "file":
            if parsed.netloc not in ("", "localhost"):
                raise JobLookupError(f"Source must be on local storage: {source_uri}")
            return Path(unquote(parsed.path))
        return Path(source_uri)
    raise JobLookupError(f"Unsupported source scheme '{parsed.scheme}' (stage media locally first): {source_uri}")


def _safe_component(job_id: str) -> str:
    """Reject job ids that would escape the output directory."""
    if job_id in (".", "..") or "/" in job_id or "\\" in job_id or "\x00" in job_id:
        raise JobLookupError(f"Job id not usable as a path component: {job_id!r}")
    return job_id


class JobStore(ABC):
    """Resolves a claimed job reference to runnable details."""

    @abstractmethod
    async def resolve(self, job: JobReference) -> JobDetails:
        """Raises JobLookupError when the job cannot be run as described."""


def build_details(
    job: JobReference,
    record: Dict[str, str],
    output_root: Path,
    default_profile: str,
) -> JobDetails:
    """Merge a stored record with fields inlined in the stream entry."""
    source_uri = job.source_uri or record.get("source_uri") or record.get("source_path")
    if not source_uri:
        raise JobLookupError(f"Job {job.job_id} has no source")

    source_path = source_uri_to_path(source_uri)
    if not source_path.is_file():
        raise JobLookupError(f"Source file not found for job {job.job_id}: {source_path}")

    output = job.output_target or record.get("output_target")
    output_target = Path(output) if output else output_root / _safe_component(job.job_id)

    return JobDetails(
        job_id=job.job_id,
        source_path=source_path,
        profile=job.profile or record.get("profile") or default_profile,
        output_target=output_target,
    )


class RedisJobStore(JobStore):
    """JobStore reading `<prefix>:job:<job_id>` hashes."""

    def __init__(
        self,
        redis_client: RedisClient,
        prefix: str = REDIS_PREFIX,
        output_root: Path = OUTPUT_DIR,
        default_profile: str = DEFAULT_PROFILE,
    ) -> None:
        self._client = redis_client
        self.prefix = prefix
        self.output_root = output_root
        self.default_profile = default_profile

    async def _fetch(self, job_id: str) -> Dict[str, str]:
        redis = await self._client.get_client()
        if redis is None:
            raise JobLookupError("Redis unavailable for job lookup")
        try:
            return await redis.hgetall(job_key(job_id, self.prefix)) or {}
        except RedisError as e:
            self._client.record_failure()
            raise JobLookupError(f"Job lookup failed for {job_id}: {e}") from e

    async def resolve(self, job: JobReference) -> JobDetails:
        record: Dict[str, str] = {}
        # Fully inlined entries need no round-trip
        if not job.source_uri:
            record = await self._fetch(job.job_id)
            if not record:
                raise JobLookupError(f"No metadata found for job {job.job_id}")
        return build_details(job, record, self.output_root, self.default_profile)

    async def save_job(
        self,
        job_id: str,
        source_uri: str,
        profile: Optional[str] = None,
        output_target: Optional[str] = None,
    ) -> None:
        """Write a job's metadata hash (producer side)."""
        redis = await self._client.get_client()
        if redis is None:
            raise JobLookupError("Redis unavailable for job lookup")
        mapping = {"source_uri": source_uri}
        if profile:
            mapping["profile"] = profile
        if output_target:
            mapping["output_target"] = output_target
        try:
            await redis.hset(job_key(job_id, self.prefix), mapping=mapping)
        except RedisError as e:
            self._client.record_failure()
            raise JobLookupError(f"Failed to save job {job_id}: {e}") from e
        logger.debug(f"Saved metadata for job {job_id}")
