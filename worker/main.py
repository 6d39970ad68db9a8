"""
Worker process entrypoint.

Wires the Redis stream queue, job store, profile registry and ffmpeg
transcoder into a Worker, installs signal handlers, and runs until SIGINT or
SIGTERM. Exit code 1 means the worker could not start (broker not configured,
consumer group could not be created, invalid profiles).
"""

import asyncio
import logging
import signal
import sys
from typing import Optional

from broker.job_queue import QueueBootstrapError, RedisStreamQueue
from broker.job_store import RedisJobStore
from broker.redis_client import RedisClient, redact_url
from config import (
    CONSUMER_GROUP,
    CONSUMER_NAME,
    DEFAULT_PROFILE,
    FFMPEG_PATH,
    HEALTH_ENABLED,
    HEALTH_PORT,
    LOG_LEVEL,
    MAX_REDELIVERIES,
    OUTPUT_DIR,
    PROFILES_FILE,
    REDIS_URL,
    STREAM_NAME,
)
from worker.alerts import alert_worker_shutdown, alert_worker_startup
from worker.health_server import HealthServer
from worker.metrics import init_app_info
from worker.profiles import ProfileError, ProfileRegistry
from worker.transcoder import FFmpegTranscoder
from worker.worker_loop import Worker, WorkerState

logger = logging.getLogger(__name__)


def configure_logging(level: str = LOG_LEVEL) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def install_signal_handlers(state: WorkerState) -> None:
    """Route SIGINT/SIGTERM to the shutdown event."""
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, state.request_shutdown)
        except NotImplementedError:
            # Not supported on this platform's event loop
            signal.signal(sig, lambda _sig, _frame: loop.call_soon_threadsafe(state.request_shutdown))


async def run_worker(state: Optional[WorkerState] = None) -> int:
    """
    Start the worker and run until shutdown.

    Returns:
        Process exit code
    """
    if not REDIS_URL:
        logger.error("MEDIA_ENGINE_REDIS_URL is not set, cannot start worker")
        return 1

    try:
        profiles = ProfileRegistry.load(PROFILES_FILE or None)
    except ProfileError as e:
        logger.error(f"Invalid transcode profiles: {e}")
        return 1
    if DEFAULT_PROFILE not in profiles:
        logger.error(f"Default profile '{DEFAULT_PROFILE}' is not defined (have: {', '.join(profiles.names())})")
        return 1

    state = state or WorkerState(worker_id=CONSUMER_NAME)
    init_app_info(consumer=state.worker_id)

    logger.info("Media engine worker starting...")
    logger.info(f"  Redis: {redact_url(REDIS_URL)}")
    logger.info(f"  Stream: {STREAM_NAME} (group {CONSUMER_GROUP}, consumer {state.worker_id})")
    logger.info(f"  Output dir: {OUTPUT_DIR}")
    logger.info(f"  Profiles: {', '.join(profiles.names())} (default {DEFAULT_PROFILE})")
    logger.info(f"  Max deliveries: {MAX_REDELIVERIES}")

    redis_client = await RedisClient.get_instance()
    queue = RedisStreamQueue(redis_client, consumer=state.worker_id)
    job_store = RedisJobStore(redis_client)
    transcoder = FFmpegTranscoder(FFMPEG_PATH)

    health_server: Optional[HealthServer] = None
    try:
        try:
            await queue.ensure_group()
        except QueueBootstrapError as e:
            logger.error(f"Cannot start worker: {e}")
            return 1

        install_signal_handlers(state)

        if HEALTH_ENABLED:
            health_server = HealthServer(state, port=HEALTH_PORT, broker_check_fn=redis_client.health_check)
            try:
                await health_server.start()
            except OSError as e:
                logger.warning(f"Health server could not start on port {HEALTH_PORT}: {e}")
                health_server = None

        await alert_worker_startup(state.worker_id, STREAM_NAME, CONSUMER_GROUP)

        worker = Worker(queue, transcoder, job_store, profiles, state)
        await worker.run()

        await alert_worker_shutdown(state.worker_id, jobs_released=state.jobs_released)
        return 0
    finally:
        if health_server is not None:
            await health_server.stop()
        await RedisClient.reset_instance()


def main() -> None:
    """Entry point for the worker process."""
    configure_logging()
    sys.exit(asyncio.run(run_worker()))


if __name__ == "__main__":
    main()
