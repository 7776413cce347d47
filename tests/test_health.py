from types import SimpleNamespace

import pytest
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer

from sensor_bridge.health import HealthMonitor
from sensor_bridge.telemetry import FieldUpdate, SnapshotField, TelemetryStore


class _Bus:
    def __init__(self, connected: bool = True) -> None:
        self.connected = connected

    def is_connected(self) -> bool:
        return self.connected


def _subscriber(**overrides) -> SimpleNamespace:
    values = dict(
        subscription="esp32/#",
        subscribed=True,
        last_error=None,
        messages_received=0,
        decode_failures=0,
    )
    values.update(overrides)
    return SimpleNamespace(**values)


def _monitor(bus=None, subscriber=None, store=None, state="active"):
    return HealthMonitor(
        bus or _Bus(),
        subscriber or _subscriber(),
        store or TelemetryStore(),
        SimpleNamespace(client_count=2, broadcast_count=5),
        state=lambda: state,
    )


def test_report_reflects_bridge_counters():
    store = TelemetryStore()
    store.apply_update(FieldUpdate(SnapshotField.HUMIDITY, 40.0))
    subscriber = _subscriber(messages_received=3, decode_failures=1)

    payload = _monitor(subscriber=subscriber, store=store).report().as_dict()

    assert payload == {
        "status": "ok",
        "bridgeState": "active",
        "bus": {
            "connected": True,
            "subscription": "esp32/#",
            "subscribed": True,
            "lastError": None,
        },
        "telemetry": {
            "messagesReceived": 3,
            "decodeFailures": 1,
            "storeUpdates": 1,
            "broadcasts": 5,
        },
        "liveClients": 2,
    }


@pytest.mark.parametrize(
    ("connected", "subscribed"), [(False, True), (True, False), (False, False)]
)
def test_report_degraded_without_bus_or_subscription(connected, subscribed):
    subscriber = _subscriber(
        subscribed=subscribed,
        last_error=None if subscribed else "MQTT client not connected",
    )

    report = _monitor(_Bus(connected), subscriber, state="degraded").report()

    assert report.healthy is False
    assert report.as_dict()["status"] == "degraded"
    assert report.as_dict()["bridgeState"] == "degraded"


def test_report_is_read_live_from_components():
    bus = _Bus(connected=True)
    monitor = _monitor(bus)
    assert monitor.report().healthy is True

    bus.connected = False
    assert monitor.report().healthy is False


@pytest.mark.asyncio
async def test_health_endpoint_serves_report():
    bus = _Bus(connected=True)
    monitor = _monitor(bus)

    app = web.Application()
    monitor.register(app)

    async with TestClient(TestServer(app)) as client:
        response = await client.get("/healthz")
        payload = await response.json()
        assert response.status == 200
        assert payload["status"] == "ok"

        bus.connected = False
        response = await client.get("/healthz")
        assert response.status == 503
        assert (await response.json())["bus"]["connected"] is False
