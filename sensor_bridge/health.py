"""Health reporting for the bridge process.

``/healthz`` is computed on each request from the live bus connection, the
subscription and the telemetry counters, so it cannot drift from what the
bridge is actually doing.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol

from aiohttp import web


class BusStatus(Protocol):
    def is_connected(self) -> bool: ...


class SubscriptionStatus(Protocol):
    @property
    def subscription(self) -> str: ...

    @property
    def subscribed(self) -> bool: ...

    @property
    def last_error(self) -> Optional[str]: ...

    messages_received: int
    decode_failures: int


class StoreStatus(Protocol):
    @property
    def update_count(self) -> int: ...


class HubStatus(Protocol):
    @property
    def client_count(self) -> int: ...

    @property
    def broadcast_count(self) -> int: ...


@dataclass(frozen=True, slots=True)
class HealthReport:
    state: str
    bus_connected: bool
    subscription: str
    subscribed: bool
    subscribe_error: Optional[str]
    messages_received: int
    decode_failures: int
    store_updates: int
    live_clients: int
    broadcasts: int

    @property
    def healthy(self) -> bool:
        """Telemetry can flow: the bus is up and the wildcard is subscribed."""
        return self.bus_connected and self.subscribed

    def as_dict(self) -> Dict[str, object]:
        return {
            "status": "ok" if self.healthy else "degraded",
            "bridgeState": self.state,
            "bus": {
                "connected": self.bus_connected,
                "subscription": self.subscription,
                "subscribed": self.subscribed,
                "lastError": self.subscribe_error,
            },
            "telemetry": {
                "messagesReceived": self.messages_received,
                "decodeFailures": self.decode_failures,
                "storeUpdates": self.store_updates,
                "broadcasts": self.broadcasts,
            },
            "liveClients": self.live_clients,
        }


class HealthMonitor:
    """Reads the bridge components and serves the result on ``/healthz``."""

    def __init__(
        self,
        bus: BusStatus,
        subscriber: SubscriptionStatus,
        store: StoreStatus,
        hub: HubStatus,
        *,
        state: Callable[[], str],
    ) -> None:
        self._bus = bus
        self._subscriber = subscriber
        self._store = store
        self._hub = hub
        self._state = state

    def report(self) -> HealthReport:
        return HealthReport(
            state=self._state(),
            bus_connected=self._bus.is_connected(),
            subscription=self._subscriber.subscription,
            subscribed=self._subscriber.subscribed,
            subscribe_error=self._subscriber.last_error,
            messages_received=self._subscriber.messages_received,
            decode_failures=self._subscriber.decode_failures,
            store_updates=self._store.update_count,
            live_clients=self._hub.client_count,
            broadcasts=self._hub.broadcast_count,
        )

    def register(self, app: web.Application, path: str = "/healthz") -> None:
        app.router.add_get(path, self._handle_health)

    async def _handle_health(self, request: web.Request) -> web.Response:
        report = self.report()
        return web.json_response(report.as_dict(), status=200 if report.healthy else 503)
