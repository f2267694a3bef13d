"""HTTP health and control surface of a worker.

Exposes:
- GET  /healthz  -> Lease state, ready while the worker is available
- GET  /info     -> Identity, endpoint and heartbeat details
- POST /shutdown -> Graceful shutdown (same path as SIGTERM)
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import socket
from typing import TYPE_CHECKING, Iterator, Optional

import uvicorn
from fastapi import FastAPI
from pydantic import BaseModel, Field

from .protocol import WorkerState

if TYPE_CHECKING:
    from .controller import WorkerController

logger = logging.getLogger(__name__)


class WorkerHealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(..., description="'ok', 'starting' or 'stopping'")
    ready: bool = Field(..., description="True while the lease is available")
    worker_id: str = Field(..., serialization_alias="workerId", description="Worker identity")
    state: str = Field(..., description="Controller lifecycle state")


class WorkerInfoResponse(BaseModel):
    """Worker details response."""

    worker_id: str = Field(..., serialization_alias="workerId")
    endpoint: Optional[str] = Field(None, description="Published browser server endpoint")
    started_at: str = Field(..., serialization_alias="startedAt")
    last_heartbeat: Optional[str] = Field(None, serialization_alias="lastHeartbeat")
    heartbeat_count: int = Field(0, serialization_alias="heartbeatCount")
    headless: bool
    shutdown_cause: Optional[str] = Field(None, serialization_alias="shutdownCause")


class ShutdownResponse(BaseModel):
    status: str
    accepted: bool = Field(..., description="False if a shutdown was already in progress")


def create_health_app(controller: "WorkerController") -> FastAPI:
    """Build the FastAPI app bound to a controller."""
    app = FastAPI(title="browser worker", docs_url=None, redoc_url=None)

    @app.get("/healthz", response_model=WorkerHealthResponse, response_model_by_alias=True)
    async def healthz() -> WorkerHealthResponse:
        state = controller.state
        ready = state is WorkerState.AVAILABLE and not controller.shutdown_requested
        if ready:
            status = "ok"
        elif state is WorkerState.STARTING:
            status = "starting"
        else:
            status = "stopping"
        return WorkerHealthResponse(
            status=status,
            ready=ready,
            worker_id=controller.worker_id,
            state=state.value,
        )

    @app.get("/info", response_model=WorkerInfoResponse, response_model_by_alias=True)
    async def info() -> WorkerInfoResponse:
        return WorkerInfoResponse(
            worker_id=controller.worker_id,
            endpoint=controller.endpoint,
            started_at=controller.started_at,
            last_heartbeat=controller.last_heartbeat,
            heartbeat_count=controller.heartbeat_count,
            headless=controller.config.headless,
            shutdown_cause=controller.shutdown_cause,
        )

    @app.post("/shutdown", response_model=ShutdownResponse)
    async def shutdown_endpoint() -> ShutdownResponse:
        from .controller import CAUSE_HTTP

        accepted = controller.request_shutdown(CAUSE_HTTP)
        return ShutdownResponse(status="shutting_down", accepted=accepted)

    return app


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the controller."""

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


class HealthServer:
    """Runs the health app inside the worker's event loop."""

    def __init__(self, controller: "WorkerController", port: int, host: str = "0.0.0.0"):
        self.port = port
        self.host = host
        config = uvicorn.Config(
            create_health_app(controller),
            host=host,
            port=port,
            log_level="warning",
            access_log=False,
            lifespan="off",
        )
        self._server = _EmbeddedServer(config)
        self._task: Optional[asyncio.Task] = None

    def _bind_socket(self) -> socket.socket:
        # Bound here so a busy port raises OSError instead of uvicorn's sys.exit()
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((self.host, self.port))
        except OSError:
            sock.close()
            raise
        return sock

    async def start(self) -> None:
        """
        Start serving and wait until the server is accepting connections.

        Raises:
            OSError: If the port cannot be bound
        """
        sock = self._bind_socket()
        self._task = asyncio.create_task(self._server.serve(sockets=[sock]))
        while not self._server.started:
            if self._task.done():
                self._task.result()
                raise RuntimeError(f"Health server failed to start on port {self.port}")
            await asyncio.sleep(0.05)
        logger.info(f"Health endpoint listening on {self.host}:{self.port}")

    async def stop(self, timeout: float = 2.0) -> None:
        if self._task is None:
            return
        self._server.should_exit = True
        try:
            await asyncio.wait_for(self._task, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Health server did not stop within {timeout}s, cancelled")
        self._task = None
