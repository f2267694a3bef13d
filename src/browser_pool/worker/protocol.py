"""Lease record shared between browser workers and the dispatcher.

Every live worker owns one Redis hash, ``worker:<id>``, with the fields:
- id            -> Worker identity (UUID4)
- endpoint      -> ws:// URI of the Playwright server
- status        -> available | recycling | shutting-down
- startedAt     -> ISO-8601 process start time
- lastHeartbeat -> ISO-8601 time of the latest renewal
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Mapping, Optional

from .utils import utc_now_iso

KEY_PREFIX = "worker:"


class LeaseError(Exception):
    """Base class for lease protocol failures."""


class StoreUnavailable(LeaseError):
    """Redis could not be reached within the configured attempts."""


class InvalidLeaseRecord(LeaseError):
    """A stored lease record could not be decoded."""


class EngineError(Exception):
    """The automation engine failed to start or stopped unexpectedly."""


class LeaseStatus(str, Enum):
    """Status values as they appear in the ``status`` field."""

    STARTING = "starting"  # Never persisted
    AVAILABLE = "available"  # Accepting sessions
    RECYCLING = "recycling"  # Written by the dispatcher only
    SHUTTING_DOWN = "shutting-down"  # Terminal state before deletion

    @classmethod
    def parse(cls, value: Optional[str]) -> "LeaseStatus":
        try:
            return cls(value)
        except ValueError:
            raise InvalidLeaseRecord(f"Unknown lease status: {value!r}") from None


class WorkerState(str, Enum):
    """Controller lifecycle states."""

    STARTING = "starting"
    AVAILABLE = "available"
    RECYCLING_OBSERVED = "recycling-observed"
    SHUTTING_DOWN = "shutting-down"
    TERMINATED = "terminated"


def worker_key(worker_id: str) -> str:
    """Redis key holding the lease of ``worker_id``."""
    return f"{KEY_PREFIX}{worker_id}"


@dataclass
class LeaseRecord:
    """Typed view of one worker's lease hash."""

    id: str
    endpoint: str
    status: LeaseStatus
    started_at: str
    last_heartbeat: str

    @classmethod
    def new(cls, worker_id: str, endpoint: str, started_at: str) -> "LeaseRecord":
        """Build the record published when a worker becomes available."""
        return cls(
            id=worker_id,
            endpoint=endpoint,
            status=LeaseStatus.AVAILABLE,
            started_at=started_at,
            last_heartbeat=utc_now_iso(),
        )

    def to_fields(self) -> Dict[str, str]:
        """Encode as the string map stored in Redis."""
        return {
            "id": self.id,
            "endpoint": self.endpoint,
            "status": self.status.value,
            "startedAt": self.started_at,
            "lastHeartbeat": self.last_heartbeat,
        }

    @classmethod
    def from_fields(cls, fields: Mapping[str, str]) -> "LeaseRecord":
        """
        Decode a Redis hash.

        Raises:
            InvalidLeaseRecord: If a field is missing or status is unknown
        """
        missing = [
            name
            for name in ("id", "endpoint", "status", "startedAt", "lastHeartbeat")
            if name not in fields
        ]
        if missing:
            raise InvalidLeaseRecord(f"Lease record missing fields: {', '.join(missing)}")

        return cls(
            id=fields["id"],
            endpoint=fields["endpoint"],
            status=LeaseStatus.parse(fields["status"]),
            started_at=fields["startedAt"],
            last_heartbeat=fields["lastHeartbeat"],
        )
