"""Browser worker lease and liveness protocol.

Each worker process runs one Playwright browser server and advertises it in
Redis under ``worker:<id>`` so a dispatcher can route sessions to it and ask
it to retire.

Key components:
- controller: WorkerController driving registration, heartbeat and shutdown
- store: LeaseStore, the Redis adapter for one worker's lease
- engine: BrowserServer, the managed Playwright server subprocess
- protocol: LeaseRecord, LeaseStatus and error types
- health: Optional FastAPI health/control endpoint
"""

from .controller import WorkerController
from .engine import BrowserServer
from .protocol import (
    EngineError,
    InvalidLeaseRecord,
    LeaseError,
    LeaseRecord,
    LeaseStatus,
    StoreUnavailable,
    WorkerState,
    worker_key,
)
from .store import LeaseStore

__all__ = [
    "WorkerController",
    "BrowserServer",
    "LeaseStore",
    "LeaseRecord",
    "LeaseStatus",
    "WorkerState",
    "LeaseError",
    "StoreUnavailable",
    "InvalidLeaseRecord",
    "EngineError",
    "worker_key",
]
