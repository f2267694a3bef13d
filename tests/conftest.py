import asyncio
from typing import Dict, Optional, Set

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from browser_pool.config import WorkerConfig
from browser_pool.worker.store import LeaseStore


class FakeRedis:
    """In-memory stand-in for the redis.asyncio client calls the store makes."""

    def __init__(self):
        self.hashes: Dict[str, Dict[str, str]] = {}
        self.ttls: Dict[str, int] = {}
        self.calls = []
        self.writes = []  # ("hset" | "expire" | "delete", key, payload)
        self.failing: Set[str] = set()  # method names that raise
        self.connect_failures = 0  # initialize() failures before succeeding
        self.connect_delay: Optional[float] = None  # seconds initialize() hangs
        self.connect_attempts = 0
        self.closed = False

    def _maybe_fail(self, name: str) -> None:
        self.calls.append(name)
        if name in self.failing:
            raise RedisConnectionError(f"{name} failed")

    async def initialize(self):
        self.connect_attempts += 1
        if self.connect_delay is not None:
            await asyncio.sleep(self.connect_delay)
        if self.connect_failures > 0:
            self.connect_failures -= 1
            raise RedisConnectionError("Connection refused")
        self._maybe_fail("initialize")
        return self

    async def ping(self):
        self._maybe_fail("ping")
        return True

    async def hset(self, key, field=None, value=None, mapping=None):
        self._maybe_fail("hset")
        written = dict(mapping or {})
        if field is not None:
            written[field] = value
        self.writes.append(("hset", key, written))
        self.hashes.setdefault(key, {}).update(written)
        return len(written)

    async def hget(self, key, field):
        self._maybe_fail("hget")
        return self.hashes.get(key, {}).get(field)

    async def expire(self, key, seconds):
        self._maybe_fail("expire")
        self.writes.append(("expire", key, seconds))
        if key not in self.hashes:
            return False
        self.ttls[key] = seconds
        return True

    async def delete(self, key):
        self._maybe_fail("delete")
        self.writes.append(("delete", key, None))
        self.ttls.pop(key, None)
        return 1 if self.hashes.pop(key, None) is not None else 0

    async def aclose(self):
        self.calls.append("aclose")
        self.closed = True


class FakeEngine:
    """Browser server double with the BrowserServer start/close contract."""

    def __init__(self, port: int = 3131, path: str = "/playwright/test", host: str = "localhost"):
        self.port = port
        self.path = path
        self.host = host
        self.fail_start = False
        self.start_calls = 0
        self.close_calls = 0

    async def start(self) -> str:
        self.start_calls += 1
        if self.fail_start:
            from browser_pool.worker.protocol import EngineError

            raise EngineError("Browser server exited before becoming ready (exit code: 1)")
        return f"ws://{self.host}:{self.port}{self.path}"

    async def close(self) -> None:
        self.close_calls += 1
        await asyncio.sleep(0)


@pytest.fixture
def config() -> WorkerConfig:
    return WorkerConfig(
        redis_url="redis://redis:6379",
        retry_attempts=3,
        retry_delay_ms=10,
        connect_timeout_ms=200,
        key_ttl=60,
        shutdown_ttl=10,
        heartbeat_interval_ms=20,
        private_hostname="worker",
    )


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def store(config, fake_redis) -> LeaseStore:
    return LeaseStore(config, "test-worker", client=fake_redis)
