"""
Health check HTTP server for the worker.

Provides Kubernetes-compatible health endpoints:
- /health (liveness): Process is running
- /ready (readiness): Worker can take jobs (ffmpeg present, broker reachable, not shutting down)
- /metrics: Prometheus text format
- /: Service info and counters

Runs on port 8080 by default (configurable via MEDIA_ENGINE_HEALTH_PORT).
"""

import asyncio
import json
import logging
import shutil
import time
from http import HTTPStatus
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from prometheus_client import CONTENT_TYPE_LATEST

from config import CONSUMER_GROUP, FFMPEG_PATH, HEALTH_PORT, STREAM_NAME
from worker.alerts import get_metrics
from worker.metrics import get_metrics as get_prometheus_metrics
from worker.worker_loop import WorkerState

logger = logging.getLogger(__name__)

SERVICE_NAME = "media-engine-worker"


class HealthServer:
    """Simple async HTTP health server for worker liveness/readiness probes."""

    def __init__(
        self,
        state: WorkerState,
        port: int = HEALTH_PORT,
        host: str = "0.0.0.0",
        broker_check_fn: Optional[Callable[[], Awaitable[bool]]] = None,
        ffmpeg_path: str = FFMPEG_PATH,
    ):
        """
        Args:
            state: Shared worker state (shutdown flag, current job, counters)
            port: Port to listen on (0 picks a free port)
            host: Interface to bind
            broker_check_fn: Coroutine returning True if the broker is reachable
            ffmpeg_path: ffmpeg binary checked by the readiness probe
        """
        self.state = state
        self.port = port
        self.host = host
        self.broker_check_fn = broker_check_fn
        self.ffmpeg_path = ffmpeg_path
        self._server: Optional[asyncio.Server] = None

    @property
    def bound_port(self) -> Optional[int]:
        """Port actually listened on, once started."""
        if self._server is None or not self._server.sockets:
            return None
        return self._server.sockets[0].getsockname()[1]

    def _check_ffmpeg(self) -> bool:
        return shutil.which(self.ffmpeg_path) is not None

    async def _check_broker(self) -> bool:
        if self.broker_check_fn is None:
            return False
        try:
            return bool(await self.broker_check_fn())
        except Exception as e:
            logger.debug(f"Broker check failed: {e}")
            return False

    async def route(self, path: str) -> Tuple[HTTPStatus, Dict[str, Any]]:
        """Build the response status and body for a request path."""
        if path == "/health":
            return HTTPStatus.OK, {"status": "alive"}

        if path == "/ready":
            checks = {
                "ffmpeg": self._check_ffmpeg(),
                "broker": await self._check_broker(),
                "accepting_jobs": not self.state.shutting_down,
            }
            all_ok = all(checks.values())
            status = HTTPStatus.OK if all_ok else HTTPStatus.SERVICE_UNAVAILABLE
            return status, {"status": "ready" if all_ok else "not_ready", "checks": checks}

        if path == "/":
            return HTTPStatus.OK, {
                "service": SERVICE_NAME,
                "worker_id": self.state.worker_id,
                "stream": STREAM_NAME,
                "group": CONSUMER_GROUP,
                "current_job": self.state.current_job,
                "uptime_seconds": round(time.time() - self.state.started_at, 1),
                "jobs_processed": self.state.jobs_processed,
                "jobs_failed": self.state.jobs_failed,
                "metrics": get_metrics().to_dict(),
            }

        return HTTPStatus.NOT_FOUND, {"error": "not found"}

    async def _handle_request(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        """Handle incoming HTTP request."""
        try:
            request_line = await asyncio.wait_for(reader.readline(), timeout=5.0)
            parts = request_line.decode("utf-8", errors="replace").split()
            path = parts[1] if len(parts) > 1 else "/"

            # Drain remaining headers (we don't need them)
            while True:
                line = await asyncio.wait_for(reader.readline(), timeout=5.0)
                if line in (b"\r\n", b"\n", b""):
                    break

            if path == "/metrics":
                status, content_type, body = HTTPStatus.OK, CONTENT_TYPE_LATEST, get_prometheus_metrics()
            else:
                status, payload = await self.route(path)
                content_type, body = "application/json", json.dumps(payload).encode()
            header = (
                f"HTTP/1.1 {status.value} {status.phrase}\r\n"
                f"Content-Type: {content_type}\r\n"
                f"Content-Length: {len(body)}\r\n"
                f"Connection: close\r\n"
                f"\r\n"
            )
            writer.write(header.encode() + body)
            await writer.drain()

        except asyncio.TimeoutError:
            pass
        except Exception as e:
            logger.debug(f"Health request failed: {e}")
            error_response = (
                "HTTP/1.1 500 Internal Server Error\r\n"
                "Content-Type: application/json\r\n"
                "Content-Length: 25\r\n"
                "Connection: close\r\n"
                "\r\n"
                '{"error": "server error"}'
            )
            writer.write(error_response.encode())
            await writer.drain()
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except Exception:
                pass

    async def start(self):
        """Start the health server."""
        self._server = await asyncio.start_server(self._handle_request, self.host, self.port)
        logger.info(f"Health server listening on port {self.bound_port}")

    async def stop(self):
        """Stop the health server."""
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
