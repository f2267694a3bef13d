"""Redis adapter for a single worker's lease.

Owns the worker's only Redis connection and knows the key layout and TTL
rules of the lease protocol. Errors from Redis propagate to the caller, which
decides whether they are fatal, trigger a shutdown, or are best-effort.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from ..config import WorkerConfig, redact_url
from .protocol import LeaseRecord, LeaseStatus, StoreUnavailable, worker_key
from .utils import utc_now_iso

logger = logging.getLogger(__name__)


class LeaseStore:
    """
    Lease operations for one worker identity.

    Key TTL rules:
    - register/renew reset the TTL to ``key_ttl``
    - mark_shutting_down shortens it to ``shutdown_ttl``
    """

    def __init__(self, config: WorkerConfig, worker_id: str, client: Any = None):
        """
        Args:
            config: Worker configuration (URL, retry and TTL settings)
            worker_id: Identity whose lease this store manages
            client: Pre-built redis.asyncio client (tests pass a double)
        """
        self.config = config
        self.worker_id = worker_id
        self.key = worker_key(worker_id)
        self._client = client or aioredis.from_url(
            config.redis_url,
            decode_responses=True,
            single_connection_client=True,
            socket_connect_timeout=config.connect_timeout,
        )

    async def connect(self) -> None:
        """
        Connect and ping with bounded retry.

        Each attempt (connect + PING) is bounded by ``connect_timeout``; a
        failed attempt waits ``retry_delay`` before the next one.

        Raises:
            StoreUnavailable: After ``retry_attempts`` failed attempts
        """
        attempts = self.config.retry_attempts
        url = redact_url(self.config.redis_url)
        logger.info(f"Connecting to Redis at {url}...", extra={"url": url})

        for attempt in range(1, attempts + 1):
            try:
                await asyncio.wait_for(self._client.initialize(), self.config.connect_timeout)
                if not await asyncio.wait_for(self._client.ping(), self.config.connect_timeout):
                    raise RedisError("PING returned a falsy reply")
                logger.info("Successfully connected to Redis", extra={"url": url})
                return
            except (RedisError, OSError, asyncio.TimeoutError) as e:
                logger.warning(
                    f"Redis connection attempt {attempt}/{attempts} failed: {e!r}",
                    extra={"attempt": attempt, "maxAttempts": attempts},
                )
                if attempt >= attempts:
                    raise StoreUnavailable(
                        f"Failed to connect to Redis after {attempt} attempts"
                    ) from e
                await asyncio.sleep(self.config.retry_delay)

    async def register(self, record: LeaseRecord) -> None:
        """Publish the full lease record and start its TTL."""
        await self._client.hset(self.key, mapping=record.to_fields())
        await self._client.expire(self.key, self.config.key_ttl)
        logger.info(
            f"Worker registered in Redis as {self.key}",
            extra={"key": self.key, "endpoint": record.endpoint},
        )

    async def read_status(self) -> Optional[str]:
        """Raw ``status`` field, or None when the lease no longer exists."""
        return await self._client.hget(self.key, "status")

    async def renew(self) -> str:
        """
        Refresh ``lastHeartbeat`` and reset the TTL.

        Returns:
            The heartbeat timestamp written
        """
        timestamp = utc_now_iso()
        await self._client.hset(self.key, "lastHeartbeat", timestamp)
        await self._client.expire(self.key, self.config.key_ttl)
        return timestamp

    async def mark_shutting_down(self) -> None:
        """Write the terminal status and shorten the TTL."""
        await self._client.hset(self.key, "status", LeaseStatus.SHUTTING_DOWN.value)
        await self._client.expire(self.key, self.config.shutdown_ttl)

    async def delete(self) -> None:
        """Remove the lease."""
        await self._client.delete(self.key)

    async def close(self) -> None:
        """Close the Redis connection."""
        await self._client.aclose()
