"""Command-line entry point of a browser worker.

Usage:
    python -m browser_pool.worker [--port 3131] [--private-hostname worker] ...

Every option falls back to its environment variable (see browser_pool.config).
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import uuid
from typing import List, Optional

from pydantic import ValidationError

from ..config import load_config
from ..logging_config import setup_logging
from .controller import WorkerController

logger = logging.getLogger("browser_pool.worker")


def _bool_arg(value: str) -> bool:
    lowered = value.lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise argparse.ArgumentTypeError(f"expected a boolean, got {value!r}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Playwright browser worker")
    parser.add_argument("--redis-url", dest="redis_url", help="Redis connection URL")
    parser.add_argument("--retry-attempts", dest="retry_attempts", type=int)
    parser.add_argument("--retry-delay", dest="retry_delay_ms", type=int, help="Milliseconds")
    parser.add_argument("--connect-timeout", dest="connect_timeout_ms", type=int, help="Milliseconds")
    parser.add_argument("--key-ttl", dest="key_ttl", type=int, help="Lease TTL in seconds")
    parser.add_argument("--shutdown-ttl", dest="shutdown_ttl", type=int, help="Seconds")
    parser.add_argument("--port", type=int, help="Browser server port")
    parser.add_argument("--bind-host", dest="bind_host")
    parser.add_argument("--headless", type=_bool_arg, metavar="BOOL")
    parser.add_argument("--private-hostname", dest="private_hostname")
    parser.add_argument(
        "--heartbeat-interval", dest="heartbeat_interval_ms", type=int, help="Milliseconds"
    )
    parser.add_argument("--engine-startup-timeout", dest="engine_startup_timeout", type=int)
    parser.add_argument("--install-browsers", dest="install_browsers", type=_bool_arg, metavar="BOOL")
    parser.add_argument("--health-port", dest="health_port", type=int, help="0 disables it")
    parser.add_argument("--log-level", dest="log_level")
    parser.add_argument("--log-format", dest="log_format", choices=["json", "text"])
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """
    Run one worker until it retires.

    Returns:
        Exit code (0 graceful, 1 startup failure, 2 invalid configuration)
    """
    args = build_parser().parse_args(argv)

    try:
        config = load_config(vars(args))
    except ValidationError as e:
        setup_logging("error", "text")
        logger.error(f"Invalid worker configuration:\n{e}")
        return 2

    worker_id = str(uuid.uuid4())
    setup_logging(config.log_level, config.log_format, worker_id=worker_id)

    controller = WorkerController(config, worker_id=worker_id)
    try:
        return asyncio.run(controller.run())
    except Exception:
        logger.critical("Caught unhandled exception during startup. Exiting.", exc_info=True)
        return 1


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
