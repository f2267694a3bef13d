"""WorkerController - lease lifecycle of one browser worker process.

Responsibilities:
- Connect to Redis with bounded retry
- Launch the Playwright browser server
- Publish the lease and keep it alive with heartbeats
- Retire on a recycle command, a heartbeat failure or a signal
- Tear everything down exactly once
"""

from __future__ import annotations

import asyncio
import logging
import signal
import uuid
from typing import TYPE_CHECKING, Awaitable, Callable, List, Optional

from ..config import WorkerConfig
from ..services.playwright_installer import ensure_playwright_installed
from .engine import BrowserServer, engine_path
from .protocol import InvalidLeaseRecord, LeaseRecord, LeaseStatus, WorkerState
from .store import LeaseStore
from .utils import rewrite_loopback_host, utc_now_iso

if TYPE_CHECKING:
    from .health import HealthServer

logger = logging.getLogger(__name__)

# Shutdown causes besides signal names
CAUSE_RECYCLE = "recycle_command"
CAUSE_HEARTBEAT_ERROR = "heartbeat_error"
CAUSE_INVALID_STATUS = "invalid_status"
CAUSE_LEASE_LOST = "lease_lost"
CAUSE_HTTP = "http_shutdown"

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)

EngineFactory = Callable[[WorkerConfig, str], BrowserServer]


def default_engine_factory(config: WorkerConfig, worker_id: str) -> BrowserServer:
    """Build the Playwright server for a worker."""
    return BrowserServer(
        port=config.port,
        path=engine_path(worker_id),
        headless=config.headless,
        host=config.bind_host,
        startup_timeout=config.engine_startup_timeout,
    )


class WorkerController:
    """
    Drives one worker through its lease lifecycle.

    State machine:
        starting -> available -> [recycling-observed] -> shutting-down -> terminated

    Every shutdown trigger (signal, recycle command, heartbeat error, HTTP
    request) goes through request_shutdown(), a one-shot gate. run() waits on
    the gate and executes the teardown sequence once.
    """

    def __init__(
        self,
        config: WorkerConfig,
        worker_id: Optional[str] = None,
        store: Optional[LeaseStore] = None,
        engine_factory: Optional[EngineFactory] = None,
        installer: Optional[Callable[[], Awaitable[None]]] = None,
        install_signal_handlers: bool = True,
    ):
        """
        Initialize controller.

        Args:
            config: Worker configuration, loaded once at process entry
            worker_id: Worker identity (a fresh UUID4 when omitted)
            store: Lease store (built from config when omitted)
            engine_factory: Callable(config, worker_id) returning the engine
            installer: Coroutine function ensuring browsers are installed
            install_signal_handlers: Map SIGINT/SIGTERM to graceful shutdown
        """
        self.config = config
        self.worker_id = worker_id or str(uuid.uuid4())
        self.started_at = utc_now_iso()
        self.store = store or LeaseStore(config, self.worker_id)

        self._engine_factory = engine_factory or default_engine_factory
        self._installer = installer or ensure_playwright_installed
        self._install_signal_handlers = install_signal_handlers

        self.engine: Optional[BrowserServer] = None
        self.endpoint: Optional[str] = None
        self.state = WorkerState.STARTING
        self.last_heartbeat: Optional[str] = None
        self.heartbeat_count = 0
        self.shutdown_cause: Optional[str] = None

        self._connected = False
        self._shutdown_requested = asyncio.Event()
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._signals: List[signal.Signals] = []
        self._health_server: Optional["HealthServer"] = None

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown_requested.is_set()

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(self) -> int:
        """
        Start the worker, serve until told to stop, then tear down.

        Returns:
            Exit code (0 after a graceful shutdown, 1 after a startup failure)
        """
        try:
            await self.start()
        except Exception:
            logger.error("Failed to start browser worker", exc_info=True)
            return await self._fatal_exit()

        await self._shutdown_requested.wait()
        return await self._graceful_shutdown()

    async def start(self) -> None:
        """
        Bring the worker from 'starting' to 'available'.

        Raises:
            StoreUnavailable: If Redis cannot be reached
            EngineError: If the browser server cannot be started
            RedisError: If the lease cannot be published
        """
        logger.info(
            f"Starting browser worker {self.worker_id}...",
            extra={"config": self.config.redacted()},
        )

        # A signal during startup is acted on once start() returns
        self._setup_signal_handlers()

        if self.config.health_port:
            await self._start_health_server()

        await self.store.connect()
        self._connected = True

        if self.config.install_browsers:
            await self._installer()

        self.engine = self._engine_factory(self.config, self.worker_id)
        raw_endpoint = await self.engine.start()
        self.endpoint = rewrite_loopback_host(raw_endpoint, self.config.private_hostname)
        logger.info(
            f"Browser server launched at {self.endpoint}",
            extra={"endpoint": self.endpoint},
        )

        record = LeaseRecord.new(self.worker_id, self.endpoint, self.started_at)
        await self.store.register(record)
        self.last_heartbeat = record.last_heartbeat
        self.state = WorkerState.AVAILABLE

        self._start_heartbeat()

        logger.info("Browser worker is running and registered")

    # ------------------------------------------------------------------
    # Heartbeat
    # ------------------------------------------------------------------

    def _start_heartbeat(self) -> None:
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        logger.info(
            f"Heartbeat started (every {self.config.heartbeat_interval:.1f}s)",
            extra={"intervalMs": self.config.heartbeat_interval_ms},
        )

    async def _heartbeat_loop(self) -> None:
        while not self._shutdown_requested.is_set():
            await asyncio.sleep(self.config.heartbeat_interval)
            await self.heartbeat()

    async def heartbeat(self) -> None:
        """
        Run one heartbeat tick.

        Reads the lease status first: a recycle command (or a record that is
        gone or unreadable) requests shutdown instead of renewing. Any Redis
        error requests shutdown with cause 'heartbeat_error'.
        """
        if self._shutdown_requested.is_set():
            return

        try:
            raw_status = await self.store.read_status()

            if raw_status is None:
                logger.error(
                    f"Lease {self.store.key} no longer exists in Redis, retiring worker"
                )
                self.request_shutdown(CAUSE_LEASE_LOST)
                return

            try:
                status = LeaseStatus.parse(raw_status)
            except InvalidLeaseRecord:
                logger.error(
                    "Lease record holds an unknown status, treating it as a recycle command",
                    exc_info=True,
                    extra={"status": raw_status},
                )
                self.request_shutdown(CAUSE_INVALID_STATUS)
                return

            if status is LeaseStatus.RECYCLING:
                logger.info("Recycle command received from dispatcher. Initiating shutdown.")
                self.state = WorkerState.RECYCLING_OBSERVED
                self.request_shutdown(CAUSE_RECYCLE)
                return

            self.last_heartbeat = await self.store.renew()
            self.heartbeat_count += 1
            logger.info("Heartbeat sent", extra={"key": self.store.key})

        except Exception:
            logger.error("Failed to perform heartbeat", exc_info=True)
            self.request_shutdown(CAUSE_HEARTBEAT_ERROR)

    async def _stop_heartbeat(self) -> None:
        task = self._heartbeat_task
        self._heartbeat_task = None
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    def request_shutdown(self, cause: str) -> bool:
        """
        Ask the worker to shut down gracefully.

        Only the first request counts; later ones are ignored.

        Returns:
            True if this call initiated the shutdown
        """
        if self._shutdown_requested.is_set():
            logger.info(
                f"Shutdown already in progress ({self.shutdown_cause}), ignoring {cause}"
            )
            return False

        self.shutdown_cause = cause
        self._shutdown_requested.set()
        logger.info(f"Shutdown requested: {cause}", extra={"initiator": cause})
        return True

    async def _graceful_shutdown(self) -> int:
        logger.info(
            "Initiating graceful shutdown...",
            extra={"initiator": self.shutdown_cause},
        )
        self.state = WorkerState.SHUTTING_DOWN

        await self._stop_heartbeat()

        try:
            logger.info('Updating worker status to "shutting-down" in Redis')
            await self.store.mark_shutting_down()
        except Exception:
            logger.error("Failed to update worker status during shutdown", exc_info=True)

        await self._close_engine()
        return await self._cleanup(0)

    async def _fatal_exit(self) -> int:
        # Block late triggers from racing with the teardown
        if not self._shutdown_requested.is_set():
            self.shutdown_cause = "startup_failure"
            self._shutdown_requested.set()
        self.state = WorkerState.SHUTTING_DOWN
        await self._close_engine()
        return await self._cleanup(1)

    async def _close_engine(self) -> None:
        if self.engine is None:
            return
        try:
            await self.engine.close()
        except Exception:
            logger.error("Failed to close the browser server", exc_info=True)

    async def _cleanup(self, exit_code: int) -> int:
        await self._stop_heartbeat()
        self._remove_signal_handlers()

        if self._connected:
            try:
                await self.store.delete()
                logger.info("Worker key removed from Redis")
            except Exception:
                logger.error(
                    "Failed to remove worker key from Redis during cleanup", exc_info=True
                )

        try:
            await self.store.close()
        except Exception:
            logger.warning("Error closing Redis connection", exc_info=True)

        await self._stop_health_server()

        self.state = WorkerState.TERMINATED
        logger.info(
            f"Redis connection closed. Exiting with code {exit_code}",
            extra={"exitCode": exit_code},
        )
        return exit_code

    # ------------------------------------------------------------------
    # Signals
    # ------------------------------------------------------------------

    def _setup_signal_handlers(self) -> None:
        if not self._install_signal_handlers:
            return

        loop = asyncio.get_running_loop()
        for sig in HANDLED_SIGNALS:
            try:
                loop.add_signal_handler(sig, self.request_shutdown, sig.name)
            except NotImplementedError:
                # Platforms without loop signal support
                def _handler(signum, frame, name=sig.name):
                    loop.call_soon_threadsafe(self.request_shutdown, name)

                signal.signal(sig, _handler)
            self._signals.append(sig)

    def _remove_signal_handlers(self) -> None:
        if not self._signals:
            return
        loop = asyncio.get_running_loop()
        for sig in self._signals:
            try:
                loop.remove_signal_handler(sig)
            except NotImplementedError:
                signal.signal(sig, signal.SIG_DFL)
        self._signals = []

    # ------------------------------------------------------------------
    # Health endpoint
    # ------------------------------------------------------------------

    async def _start_health_server(self) -> None:
        from .health import HealthServer

        self._health_server = HealthServer(self, port=self.config.health_port)
        await self._health_server.start()

    async def _stop_health_server(self) -> None:
        if self._health_server is None:
            return
        try:
            await self._health_server.stop()
        except Exception:
            logger.warning("Error stopping health server", exc_info=True)
        self._health_server = None
