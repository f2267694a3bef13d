"""Playwright browser server managed by a worker.

The server is the bundled Playwright driver running ``launch-server``:

    python -m playwright launch-server --browser chromium --config <file>

The config file holds the ``launchServer`` options (headless, port, wsPath,
host). The driver prints its ``ws://`` endpoint once ready; that URI is what
clients connect to with ``browser_type.connect()``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import sys
import tempfile
from typing import Any, Dict, List, Optional

from .protocol import EngineError

logger = logging.getLogger(__name__)

_ENDPOINT_RE = re.compile(r"(wss?://\S+)")

# Seconds between SIGTERM and SIGKILL when closing
CLOSE_GRACE_SECONDS = 5.0


def engine_path(worker_id: str) -> str:
    """Unique URL path for a worker's browser server."""
    return f"/playwright/{worker_id}"


def parse_listening_line(line: str) -> Optional[str]:
    """
    Extract the ws:// endpoint from a server output line.

    Examples:
        >>> parse_listening_line('Listening on ws://localhost:3131/playwright/abc')
        'ws://localhost:3131/playwright/abc'
        >>> parse_listening_line('Downloading Chromium...') is None
        True
    """
    match = _ENDPOINT_RE.search(line)
    return match.group(1) if match else None


class BrowserServer:
    """
    One Playwright server subprocess.

    Lifecycle: start() -> endpoint -> close(). close() is safe to call more
    than once and before start().
    """

    def __init__(
        self,
        port: int,
        path: str,
        headless: bool = True,
        host: str = "0.0.0.0",
        startup_timeout: float = 60.0,
    ):
        self.port = port
        self.path = path
        self.headless = headless
        self.host = host
        self.startup_timeout = startup_timeout

        self._proc: Optional[asyncio.subprocess.Process] = None
        self._endpoint: Optional[str] = None
        self._output_task: Optional[asyncio.Task] = None
        self._config_path: Optional[str] = None

    def launch_options(self) -> Dict[str, Any]:
        """Options handed to the driver's launchServer()."""
        return {
            "headless": self.headless,
            "port": self.port,
            "wsPath": self.path,
            "host": self.host,
        }

    def _write_config(self) -> str:
        fd, path = tempfile.mkstemp(prefix="browser-server-", suffix=".json")
        with os.fdopen(fd, "w") as f:
            json.dump(self.launch_options(), f)
        return path

    def _remove_config(self) -> None:
        if self._config_path is None:
            return
        try:
            os.unlink(self._config_path)
        except FileNotFoundError:
            pass
        self._config_path = None

    def _build_command(self, config_path: str) -> List[str]:
        return [
            sys.executable,
            "-m",
            "playwright",
            "launch-server",
            "--browser",
            "chromium",
            "--config",
            config_path,
        ]

    def _build_env(self) -> dict:
        env = os.environ.copy()
        env.setdefault("PYTHONUNBUFFERED", "1")
        if not self.headless and not env.get("DISPLAY"):
            logger.warning("Headed browsers requested but DISPLAY is not set")
        return env

    @property
    def endpoint(self) -> str:
        if self._endpoint is None:
            raise EngineError("Browser server has not reported an endpoint yet")
        return self._endpoint

    def is_alive(self) -> bool:
        """Check if the server process is still running."""
        return self._proc is not None and self._proc.returncode is None

    async def start(self) -> str:
        """
        Launch the server and wait until it is listening.

        Returns:
            The endpoint reported by the server

        Raises:
            EngineError: If the server exits or stays silent past startup_timeout
        """
        self._config_path = self._write_config()
        cmd = self._build_command(self._config_path)
        logger.info(
            f"Launching browser server on port {self.port} "
            f"(path {self.path}, headless={self.headless})"
        )
        try:
            self._proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                env=self._build_env(),
            )
        except OSError as e:
            self._remove_config()
            raise EngineError(f"Failed to launch browser server: {e}") from e

        try:
            self._endpoint = await asyncio.wait_for(
                self._wait_listening(), timeout=self.startup_timeout
            )
        except asyncio.TimeoutError:
            await self.close()
            raise EngineError(
                f"Browser server failed to become ready in {self.startup_timeout}s"
            ) from None
        except EngineError:
            await self.close()
            raise

        # Keep draining output so the pipe never fills up
        self._output_task = asyncio.create_task(self._forward_output())
        logger.info(f"Browser server listening at {self._endpoint}")
        return self._endpoint

    async def _wait_listening(self) -> str:
        assert self._proc is not None and self._proc.stdout is not None
        while True:
            raw = await self._proc.stdout.readline()
            if not raw:
                returncode = await self._proc.wait()
                raise EngineError(
                    f"Browser server exited before becoming ready (exit code: {returncode})"
                )
            line = raw.decode(errors="replace").rstrip()
            logger.debug(f"browser-server: {line}")
            endpoint = parse_listening_line(line)
            if endpoint:
                return endpoint

    async def _forward_output(self) -> None:
        assert self._proc is not None and self._proc.stdout is not None
        while True:
            raw = await self._proc.stdout.readline()
            if not raw:
                return
            logger.debug(f"browser-server: {raw.decode(errors='replace').rstrip()}")

    async def close(self) -> None:
        """Terminate the server gracefully, then forcefully if needed."""
        proc = self._proc
        if proc is None:
            self._remove_config()
            return

        if proc.returncode is None:
            logger.info("Closing the browser server")
            try:
                proc.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(proc.wait(), timeout=CLOSE_GRACE_SECONDS)
            except asyncio.TimeoutError:
                logger.warning(
                    f"Browser server ignored SIGTERM for {CLOSE_GRACE_SECONDS}s, killing"
                )
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
                await proc.wait()
            logger.info(f"Browser server closed (exit code: {proc.returncode})")

        if self._output_task is not None:
            self._output_task.cancel()
            try:
                await self._output_task
            except asyncio.CancelledError:
                pass
            self._output_task = None

        self._remove_config()
