import asyncio
import socket

import pytest
from fastapi.testclient import TestClient

from browser_pool.worker.controller import WorkerController
from browser_pool.worker.health import HealthServer, create_health_app
from browser_pool.worker.protocol import WorkerState
from browser_pool.worker.store import LeaseStore

from conftest import FakeRedis


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture
def controller(config):
    return WorkerController(
        config,
        worker_id="w1",
        store=LeaseStore(config, "w1", client=FakeRedis()),
        install_signal_handlers=False,
    )


@pytest.fixture
def client(controller):
    return TestClient(create_health_app(controller))


def test_healthz_while_starting(client):
    body = client.get("/healthz").json()

    assert body == {"status": "starting", "ready": False, "workerId": "w1", "state": "starting"}


def test_healthz_when_available(client, controller):
    controller.state = WorkerState.AVAILABLE

    response = client.get("/healthz")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert response.json()["ready"] is True


def test_info_reports_lease_details(client, controller):
    controller.endpoint = "ws://worker:3131/playwright/w1"
    controller.last_heartbeat = "2024-05-01T10:00:10.000Z"
    controller.heartbeat_count = 4

    body = client.get("/info").json()

    assert body["workerId"] == "w1"
    assert body["endpoint"] == "ws://worker:3131/playwright/w1"
    assert body["startedAt"] == controller.started_at
    assert body["lastHeartbeat"] == "2024-05-01T10:00:10.000Z"
    assert body["heartbeatCount"] == 4
    assert body["headless"] is True


def test_shutdown_endpoint_requests_shutdown_once(client, controller):
    controller.state = WorkerState.AVAILABLE

    first = client.post("/shutdown").json()
    second = client.post("/shutdown").json()

    assert first == {"status": "shutting_down", "accepted": True}
    assert second["accepted"] is False
    assert controller.shutdown_cause == "http_shutdown"
    assert client.get("/healthz").json()["status"] == "stopping"


async def test_health_server_serves_and_stops(controller):
    port = _free_port()
    server = HealthServer(controller, port=port, host="127.0.0.1")

    await server.start()
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    writer.write(b"GET /healthz HTTP/1.1\r\nHost: test\r\nConnection: close\r\n\r\n")
    await writer.drain()
    response = await reader.read()
    writer.close()
    await server.stop()

    assert b"200 OK" in response
    assert b'"workerId":"w1"' in response


async def test_health_server_port_in_use(controller):
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as busy:
        busy.bind(("127.0.0.1", 0))
        busy.listen()
        server = HealthServer(controller, port=busy.getsockname()[1], host="127.0.0.1")

        with pytest.raises(OSError):
            await server.start()
