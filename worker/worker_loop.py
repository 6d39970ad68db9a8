"""
Worker loop: claim a job, run it, decide what happens to the entry.

One claim at a time per worker. The entry claimed in an iteration is always
decided in that same iteration: acknowledged after a successful transcode,
left pending for redelivery after a failure, dead-lettered once its
deliveries are used up, or released when shutdown cancels the attempt.
An attempt whose claim is taken over by another consumer is stopped and the
entry is left to its new owner.
Acknowledgment never happens before the transcode attempt has finished.
"""

import asyncio
import logging
import time
from contextlib import suppress
from dataclasses import dataclass, field
from typing import List, Optional

from broker.job_queue import BrokerUnavailableError, JobQueue, JobReference, MalformedEntryError
from broker.job_store import JobLookupError, JobStore
from config import (
    BROKER_BACKOFF_BASE,
    BROKER_BACKOFF_MAX,
    LEASE_MS,
    MAX_REDELIVERIES,
    POLL_TIMEOUT,
)
from worker.alerts import (
    alert_job_dead_lettered,
    alert_job_failed,
    alert_malformed_entry,
    get_metrics,
    send_alert_fire_and_forget,
)
from worker.events import Disposition, emit_event
from worker.metrics import BROKER_ERRORS_TOTAL, TRANSCODE_DURATION_SECONDS, TRANSCODE_JOBS_ACTIVE, record_disposition
from worker.profiles import ProfileRegistry, UnknownProfileError
from worker.transcoder import TranscodeCancelledError, TranscodeError, Transcoder

logger = logging.getLogger(__name__)

# Floor on the claim renewal interval while a transcode runs
MIN_LEASE_RENEWAL_SECONDS = 1.0


@dataclass
class WorkerSettings:
    """Tunables for the loop, defaulting to the environment configuration."""

    poll_timeout: float = POLL_TIMEOUT
    max_redeliveries: int = MAX_REDELIVERIES
    lease_ms: int = LEASE_MS
    broker_backoff_base: float = BROKER_BACKOFF_BASE
    broker_backoff_max: float = BROKER_BACKOFF_MAX


@dataclass
class WorkerState:
    """Process-wide worker state shared with signal handlers and the health server."""

    worker_id: str
    # Set once on SIGINT/SIGTERM; also cancels the running transcode
    shutdown_event: asyncio.Event = field(default_factory=asyncio.Event)
    current_job: Optional[str] = None
    jobs_processed: int = 0
    jobs_failed: int = 0
    jobs_released: int = 0
    started_at: float = field(default_factory=time.time)

    @property
    def shutting_down(self) -> bool:
        return self.shutdown_event.is_set()

    def request_shutdown(self) -> None:
        if not self.shutdown_event.is_set():
            logger.info("Shutdown requested, finishing current claim...")
        self.shutdown_event.set()


@dataclass
class TranscodeOutcome:
    """Result of one execution attempt."""

    success: bool
    artifacts: List[str] = field(default_factory=list)
    error: Optional[str] = None
    output: str = ""
    duration_seconds: float = 0.0
    cancelled: bool = False


class Worker:
    """Sequential claim/execute/acknowledge loop over a JobQueue."""

    def __init__(
        self,
        queue: JobQueue,
        transcoder: Transcoder,
        job_store: JobStore,
        profiles: ProfileRegistry,
        state: WorkerState,
        settings: Optional[WorkerSettings] = None,
    ) -> None:
        self.queue = queue
        self.transcoder = transcoder
        self.job_store = job_store
        self.profiles = profiles
        self.state = state
        self.settings = settings or WorkerSettings()

    def broker_backoff(self, failures: int) -> float:
        """Delay before the next claim after `failures` consecutive broker errors."""
        delay = self.settings.broker_backoff_base * (2 ** max(failures - 1, 0))
        return min(delay, self.settings.broker_backoff_max)

    async def _sleep_unless_shutdown(self, delay: float) -> None:
        try:
            await asyncio.wait_for(self.state.shutdown_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def run(self) -> None:
        """Run until shutdown is requested. Never raises for per-job or broker errors."""
        logger.info(f"Worker {self.state.worker_id} started")
        failures = 0
        while not self.state.shutting_down:
            try:
                await self.run_once()
                failures = 0
            except BrokerUnavailableError as e:
                failures += 1
                BROKER_ERRORS_TOTAL.inc()
                delay = self.broker_backoff(failures)
                logger.warning(f"Broker unavailable ({e}), retrying in {delay:.1f}s")
                await self._sleep_unless_shutdown(delay)
            except Exception as e:
                failures += 1
                logger.exception(f"Unexpected error in worker loop: {e}")
                await self._sleep_unless_shutdown(self.broker_backoff(failures))

        logger.info(
            f"Worker {self.state.worker_id} stopped. Jobs processed: {self.state.jobs_processed}, "
            f"failed: {self.state.jobs_failed}, released: {self.state.jobs_released}"
        )

    async def run_once(self) -> Optional[Disposition]:
        """
        One loop iteration: claim at most one entry and decide it.

        Returns:
            The disposition of the claimed entry, or None if nothing was claimed

        Raises:
            BrokerUnavailableError: If the claim itself failed
        """
        if self.state.shutting_down:
            return None

        try:
            job = await self.queue.claim_next(self.settings.poll_timeout)
        except MalformedEntryError as e:
            return self._on_malformed(e)

        if job is None:
            return None
        return await self.process(job)

    async def process(self, job: JobReference) -> Disposition:
        """Execute a claimed job and apply its disposition."""
        logger.info(f"Claimed job {job.job_id} (delivery {job.delivery_count}/{self.settings.max_redeliveries})")
        self.state.current_job = job.job_id
        execute_task = asyncio.create_task(self._execute(job))
        lease_task = asyncio.create_task(self._keep_lease(job))
        TRANSCODE_JOBS_ACTIVE.inc()
        try:
            await asyncio.wait({execute_task, lease_task}, return_when=asyncio.FIRST_COMPLETED)
            if self._lease_lost(lease_task):
                # Another consumer owns the entry now; stop ffmpeg and leave the entry alone
                await self._stop_attempt(execute_task)
                return self._on_lease_lost(job)
            outcome = await execute_task
        except asyncio.CancelledError:
            # Task cancelled from outside; stop ffmpeg before handing the entry back
            await self._stop_attempt(execute_task)
            await self._release(job, TranscodeOutcome(success=False, cancelled=True, error="Task cancelled"))
            raise
        finally:
            lease_task.cancel()
            with suppress(asyncio.CancelledError):
                await lease_task
            self.state.current_job = None
            TRANSCODE_JOBS_ACTIVE.dec()

        result = "success" if outcome.success else "cancelled" if outcome.cancelled else "failed"
        TRANSCODE_DURATION_SECONDS.labels(result=result).observe(outcome.duration_seconds)
        if self._lease_lost(lease_task):
            return self._on_lease_lost(job)
        return await self._dispose(job, outcome)

    @staticmethod
    def _lease_lost(lease_task: asyncio.Task) -> bool:
        # _keep_lease only returns once the claim is gone
        return lease_task.done() and not lease_task.cancelled()

    @staticmethod
    async def _stop_attempt(execute_task: asyncio.Task) -> None:
        if execute_task.done():
            return
        execute_task.cancel()
        with suppress(asyncio.CancelledError):
            await execute_task

    async def _keep_lease(self, job: JobReference) -> None:
        """Renew the claim periodically; return once the claim has been lost."""
        interval = max(self.settings.lease_ms / 3000.0, MIN_LEASE_RENEWAL_SECONDS)
        while True:
            await asyncio.sleep(interval)
            try:
                if not await self.queue.extend_lease(job):
                    logger.warning(f"Lost claim on job {job.job_id}, stopping the attempt")
                    return
            except BrokerUnavailableError as e:
                logger.warning(f"Could not extend lease on job {job.job_id}: {e}")
            except Exception as e:
                logger.exception(f"Unexpected error extending lease on job {job.job_id}: {e}")

    async def _execute(self, job: JobReference) -> TranscodeOutcome:
        started = time.monotonic()
        try:
            details = await self.job_store.resolve(job)
            profile = self.profiles.get(details.profile)
            artifacts = await self.transcoder.transcode(
                details.source_path,
                details.output_target,
                profile,
                self.state.shutdown_event,
            )
        except TranscodeCancelledError as e:
            return TranscodeOutcome(
                success=False,
                cancelled=True,
                error=str(e),
                duration_seconds=time.monotonic() - started,
            )
        except TranscodeError as e:
            return TranscodeOutcome(
                success=False,
                error=str(e),
                output=e.output,
                duration_seconds=time.monotonic() - started,
            )
        except (JobLookupError, UnknownProfileError) as e:
            return TranscodeOutcome(success=False, error=str(e), duration_seconds=time.monotonic() - started)
        except Exception as e:
            logger.exception(f"Unexpected error executing job {job.job_id}")
            return TranscodeOutcome(
                success=False,
                error=f"Unexpected error: {e}",
                duration_seconds=time.monotonic() - started,
            )

        return TranscodeOutcome(success=True, artifacts=artifacts, duration_seconds=time.monotonic() - started)

    def _event(self, disposition: Disposition, job: JobReference, outcome: Optional[TranscodeOutcome] = None, **extra):
        fields = {
            "job_id": job.job_id,
            "message_id": job.handle.message_id if job.handle else None,
            "stream": job.handle.stream if job.handle else None,
            "consumer": self.state.worker_id,
            "delivery_count": job.delivery_count,
            "max_redeliveries": self.settings.max_redeliveries,
        }
        if outcome is not None:
            fields["duration_seconds"] = outcome.duration_seconds
            if outcome.success:
                fields["artifacts"] = outcome.artifacts
            else:
                fields["error"] = outcome.error
        fields.update(extra)
        record_disposition(disposition.value, job.delivery_count)
        emit_event(disposition, **fields)

    async def _dispose(self, job: JobReference, outcome: TranscodeOutcome) -> Disposition:
        metrics = get_metrics()

        if outcome.success:
            try:
                await self.queue.acknowledge(job.handle)
            except BrokerUnavailableError as e:
                # Entry stays pending and will be redelivered; the output is rebuilt idempotently
                metrics.ack_failures += 1
                logger.error(f"Job {job.job_id} succeeded but acknowledgment failed: {e}")
                self._event(Disposition.ACK_FAILED, job, outcome, error=str(e))
                return Disposition.ACK_FAILED

            metrics.jobs_acknowledged += 1
            self.state.jobs_processed += 1
            logger.info(f"Job {job.job_id} completed in {outcome.duration_seconds:.1f}s")
            self._event(Disposition.ACKNOWLEDGED, job, outcome)
            return Disposition.ACKNOWLEDGED

        if outcome.cancelled:
            return await self._release(job, outcome)

        self.state.jobs_failed += 1
        logger.warning(f"Job {job.job_id} failed on delivery {job.delivery_count}: {outcome.error}")

        if job.delivery_count >= self.settings.max_redeliveries:
            try:
                await self.queue.dead_letter(job, outcome.error or "")
            except BrokerUnavailableError as e:
                # Not acknowledged either; the next delivery dead-letters it
                logger.error(f"Failed to dead-letter job {job.job_id}: {e}")
                metrics.jobs_retried += 1
                self._event(Disposition.RETRIED, job, outcome, details={"dead_letter_error": str(e)})
                return Disposition.RETRIED

            metrics.jobs_dead_lettered += 1
            self._event(Disposition.DEAD_LETTERED, job, outcome)
            send_alert_fire_and_forget(
                alert_job_dead_lettered(
                    job_id=job.job_id,
                    message_id=job.handle.message_id if job.handle else "",
                    delivery_count=job.delivery_count,
                    max_redeliveries=self.settings.max_redeliveries,
                    last_error=outcome.error,
                    consumer=self.state.worker_id,
                )
            )
            return Disposition.DEAD_LETTERED

        # Left unacknowledged: the broker redelivers after lease plus backoff
        metrics.jobs_retried += 1
        self._event(Disposition.RETRIED, job, outcome)
        send_alert_fire_and_forget(
            alert_job_failed(
                job_id=job.job_id,
                delivery_count=job.delivery_count,
                error=outcome.error or "",
                will_retry=True,
            )
        )
        return Disposition.RETRIED

    async def _release(self, job: JobReference, outcome: TranscodeOutcome) -> Disposition:
        try:
            await self.queue.release(job)
        except BrokerUnavailableError as e:
            logger.warning(f"Could not release job {job.job_id}, it will be recovered after its lease expires: {e}")
        get_metrics().jobs_released += 1
        self.state.jobs_released += 1
        logger.info(f"Job {job.job_id} released for redelivery (shutdown)")
        self._event(Disposition.RELEASED, job, outcome)
        return Disposition.RELEASED

    def _on_lease_lost(self, job: JobReference) -> Disposition:
        # Neither acknowledged nor dead-lettered: the new owner decides the entry
        get_metrics().jobs_lease_lost += 1
        logger.warning(f"Abandoned job {job.job_id} after losing its claim")
        self._event(Disposition.LEASE_LOST, job)
        return Disposition.LEASE_LOST

    def _on_malformed(self, error: MalformedEntryError) -> Disposition:
        get_metrics().malformed_entries += 1
        record_disposition(Disposition.MALFORMED.value)
        logger.error(str(error))
        emit_event(
            Disposition.MALFORMED,
            message_id=error.handle.message_id,
            stream=error.handle.stream,
            consumer=self.state.worker_id,
            error=error.reason,
            details={"fields": error.fields, "acknowledged": error.acknowledged},
        )
        send_alert_fire_and_forget(
            alert_malformed_entry(
                message_id=error.handle.message_id,
                stream=error.handle.stream,
                reason=error.reason,
                fields=error.fields,
            )
        )
        return Disposition.MALFORMED
