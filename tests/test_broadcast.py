"""Tests for the WebSocket broadcast hub."""

from __future__ import annotations

import asyncio
import json

import pytest
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer

from sensor_bridge.broadcast import BroadcastHub, origin_allowed
from sensor_bridge.telemetry import FieldUpdate, SnapshotField, TelemetryStore


class _FakeClient:
    def __init__(self, *, fail: bool = False) -> None:
        self.closed = False
        self.fail = fail
        self.sent: list[dict] = []
        self.close_calls = 0

    async def send_str(self, data: str) -> None:
        if self.fail:
            raise ConnectionResetError("peer went away")
        self.sent.append(json.loads(data))

    async def close(self) -> bool:
        self.close_calls += 1
        self.closed = True
        return True


@pytest.mark.asyncio
async def test_new_client_receives_current_snapshot_only():
    store = TelemetryStore()
    store.apply_update(FieldUpdate(SnapshotField.TEMPERATURE, 18.0))
    hub = BroadcastHub(store)
    existing = _FakeClient()
    await hub.on_client_connected(existing)

    newcomer = _FakeClient()
    await hub.on_client_connected(newcomer)

    assert len(existing.sent) == 1
    assert newcomer.sent == [
        {
            "event": "telemetry",
            "data": {
                "temperature": 18.0,
                "humidity": None,
                "pressure": None,
                "altitude": None,
                "soilMoisture": None,
            },
        }
    ]
    assert hub.client_count == 2


@pytest.mark.asyncio
async def test_broadcast_reaches_every_client():
    store = TelemetryStore()
    hub = BroadcastHub(store)
    clients = [_FakeClient() for _ in range(3)]
    for client in clients:
        await hub.on_client_connected(client)

    store.apply_update(FieldUpdate(SnapshotField.SOIL_MOISTURE, 64))
    delivered = await hub.broadcast_current()

    assert delivered == 3
    for client in clients:
        assert client.sent[-1]["data"]["soilMoisture"] == 64


@pytest.mark.asyncio
async def test_failed_client_is_dropped_without_retry():
    store = TelemetryStore()
    hub = BroadcastHub(store)
    healthy = _FakeClient()
    flaky = _FakeClient()
    await hub.on_client_connected(healthy)
    await hub.on_client_connected(flaky)
    flaky.fail = True

    assert await hub.broadcast_current() == 1
    assert hub.client_count == 1

    assert await hub.broadcast_current() == 1
    assert len(healthy.sent) == 3
    assert len(flaky.sent) == 1


@pytest.mark.asyncio
async def test_closed_client_is_skipped():
    store = TelemetryStore()
    hub = BroadcastHub(store)
    client = _FakeClient()
    await hub.on_client_connected(client)
    client.closed = True

    assert await hub.broadcast_current() == 0
    assert hub.client_count == 0


@pytest.mark.asyncio
async def test_broadcast_without_clients_is_noop():
    hub = BroadcastHub(TelemetryStore())

    assert await hub.broadcast_current() == 0
    assert hub.broadcast_count == 1


@pytest.mark.asyncio
async def test_client_added_during_broadcast_gets_latest_snapshot():
    store = TelemetryStore()
    hub = BroadcastHub(store)
    gate = asyncio.Event()

    class _SlowClient(_FakeClient):
        async def send_str(self, data: str) -> None:
            await gate.wait()
            await super().send_str(data)

    slow = _SlowClient()
    connecting = asyncio.create_task(hub.on_client_connected(slow))
    await asyncio.sleep(0)

    store.apply_update(FieldUpdate(SnapshotField.HUMIDITY, 71.0))
    await hub.broadcast_current()
    gate.set()
    await connecting

    assert slow.sent[-1]["data"]["humidity"] == 71.0


@pytest.mark.asyncio
async def test_close_closes_all_clients():
    hub = BroadcastHub(TelemetryStore())
    clients = [_FakeClient(), _FakeClient()]
    for client in clients:
        await hub.on_client_connected(client)

    await hub.close()

    assert hub.client_count == 0
    assert [client.close_calls for client in clients] == [1, 1]


def test_origin_allowed():
    assert origin_allowed("http://anything.example", "*")
    assert origin_allowed(None, "https://dash.example")
    assert origin_allowed("https://dash.example/", "https://dash.example")
    assert not origin_allowed("https://evil.example", "https://dash.example")


def _ws_app(hub: BroadcastHub) -> web.Application:
    app = web.Application()
    app.router.add_get("/ws", hub.handle_websocket)
    return app


@pytest.mark.asyncio
async def test_websocket_client_gets_snapshot_then_updates():
    store = TelemetryStore()
    store.apply_update(FieldUpdate(SnapshotField.PRESSURE, 1012.0))
    hub = BroadcastHub(store)

    async with TestClient(TestServer(_ws_app(hub))) as client:
        ws = await client.ws_connect("/ws")

        first = await ws.receive_json(timeout=1.0)
        assert first == {
            "event": "telemetry",
            "data": {
                "temperature": None,
                "humidity": None,
                "pressure": 1012.0,
                "altitude": None,
                "soilMoisture": None,
            },
        }

        for _ in range(10):
            if hub.client_count == 1:
                break
            await asyncio.sleep(0.01)

        store.apply_update(FieldUpdate(SnapshotField.TEMPERATURE, 25.0))
        assert await hub.broadcast_current() == 1

        second = await ws.receive_json(timeout=1.0)
        assert second["data"]["temperature"] == 25.0
        assert second["data"]["pressure"] == 1012.0

        await ws.send_str("ping")
        assert await ws.receive_str(timeout=1.0) == "pong"

        await ws.close()

    for _ in range(10):
        if hub.client_count == 0:
            break
        await asyncio.sleep(0.01)
    assert hub.client_count == 0


@pytest.mark.asyncio
async def test_websocket_rejects_disallowed_origin():
    hub = BroadcastHub(TelemetryStore(), allowed_origin="https://dash.example")

    async with TestClient(TestServer(_ws_app(hub))) as client:
        response = await client.get("/ws", headers={"Origin": "https://evil.example"})
        assert response.status == 403

    assert hub.client_count == 0
