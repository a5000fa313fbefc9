"""
Health check HTTP server for pipeline workers.

Provides Kubernetes-compatible health endpoints:
- /health (liveness): Process is running
- /ready (readiness): Worker can accept jobs (catalog connected, FFmpeg available)
- /metrics: Job and refresh counters as JSON

Runs on port 8080 by default (configurable via VODPIPE_WORKER_HEALTH_PORT).
"""

import asyncio
import json
import logging
import shutil
from http import HTTPStatus
from typing import Callable, Optional

from config import FFMPEG_PATH
from worker.alerts import get_metrics

logger = logging.getLogger(__name__)

# Default health check port
DEFAULT_HEALTH_PORT = 8080


class HealthServer:
    """Simple async HTTP health server for worker liveness/readiness probes."""

    def __init__(
        self,
        port: int = DEFAULT_HEALTH_PORT,
        refresh_in_flight_fn: Optional[Callable[[], int]] = None,
        ffmpeg_path: str = FFMPEG_PATH,
    ):
        """
        Initialize health server.

        Args:
            port: Port to listen on (0 picks a free port)
            refresh_in_flight_fn: Optional callback returning the number of running refreshes
            ffmpeg_path: Encoder binary that must be resolvable for readiness
        """
        self.port = port
        self.refresh_in_flight_fn = refresh_in_flight_fn
        self.ffmpeg_path = ffmpeg_path
        self._server: Optional[asyncio.Server] = None
        self._is_ready = False

    def set_ready(self, ready: bool):
        """Set readiness state (called after the catalog connection is up)."""
        self._is_ready = ready

    async def _check_ffmpeg(self) -> bool:
        return shutil.which(self.ffmpeg_path) is not None

    async def _route(self, path: str):
        if path == "/health":
            return HTTPStatus.OK, {"status": "alive"}
        if path == "/ready":
            checks = {
                "ffmpeg": await self._check_ffmpeg(),
                "catalog_connected": self._is_ready,
            }
            status = HTTPStatus.OK if all(checks.values()) else HTTPStatus.SERVICE_UNAVAILABLE
            return status, {"status": "ready" if status == HTTPStatus.OK else "not_ready", "checks": checks}
        if path == "/metrics":
            body = get_metrics().to_dict()
            if self.refresh_in_flight_fn is not None:
                body["refreshes_in_flight"] = self.refresh_in_flight_fn()
            return HTTPStatus.OK, body
        if path == "/":
            return HTTPStatus.OK, {"service": "vodpipe-worker"}
        return HTTPStatus.NOT_FOUND, {"error": "not found"}

    async def _handle_request(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        """Handle incoming HTTP request."""
        try:
            request_line = await asyncio.wait_for(reader.readline(), timeout=5.0)
            parts = request_line.decode("utf-8", errors="replace").split()
            path = parts[1] if len(parts) > 1 else "/"

            # Drain remaining headers
            while True:
                line = await asyncio.wait_for(reader.readline(), timeout=5.0)
                if line in (b"\r\n", b"\n", b""):
                    break

            status, payload = await self._route(path)
            body = json.dumps(payload)
            response = (
                f"HTTP/1.1 {status.value} {status.phrase}\r\n"
                f"Content-Type: application/json\r\n"
                f"Content-Length: {len(body)}\r\n"
                f"Connection: close\r\n"
                f"\r\n"
                f"{body}"
            )
            writer.write(response.encode())
            await writer.drain()

        except asyncio.TimeoutError:
            pass
        except (ConnectionError, OSError) as e:
            logger.debug(f"Health request aborted: {e}")
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass

    async def start(self):
        """Start the health server."""
        self._server = await asyncio.start_server(self._handle_request, "0.0.0.0", self.port)
        if self.port == 0:
            self.port = self._server.sockets[0].getsockname()[1]
        logger.info(f"Health server listening on port {self.port}")

    async def stop(self):
        """Stop the health server."""
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
