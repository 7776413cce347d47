"""Main application entry-point for sensor-bridge."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from enum import Enum
from typing import Optional

from aiohttp import web

from . import constants
from .adapters import MQTTClient, MQTTConnectionError
from .broadcast import BroadcastHub
from .config import BridgeConfig, load_config
from .gateway import CommandGateway, cors_middleware
from .health import HealthMonitor
from .logging import configure_logging
from .telemetry import BusSubscriber, FieldDecoder, TelemetryStore

LOGGER = logging.getLogger(__name__)


class BridgeState(str, Enum):
    STARTING = "starting"
    ACTIVE = "active"
    DEGRADED = "degraded"
    STOPPING = "stopping"


class SensorBridgeApp:
    """Coordinates application startup and shutdown.

    Owns the single :class:`TelemetryStore` and hands it to the bus
    subscriber, the broadcast hub and the command gateway. The HTTP and
    WebSocket surface keeps serving while the broker is unreachable; paho
    retries the connection in the background.
    """

    def __init__(
        self,
        config: Optional[BridgeConfig] = None,
        *,
        mqtt_client: Optional[MQTTClient] = None,
    ) -> None:
        self._config = config or load_config()
        self._store = TelemetryStore()
        self._mqtt_client = mqtt_client or MQTTClient(
            self._config.mqtt, client_id=_build_client_id(self._config)
        )
        self._hub = BroadcastHub(
            self._store, allowed_origin=self._config.server.allowed_origin
        )
        self._subscriber = BusSubscriber(
            self._mqtt_client,
            FieldDecoder.from_config(self._config.topics),
            self._store,
            self._hub,
            subscription=self._config.topics.subscription,
            qos=self._config.topics.qos,
        )
        self._gateway = CommandGateway(
            self._store,
            self._mqtt_client,
            actuator_topic=self._config.topics.actuator,
            qos=self._config.topics.qos,
        )
        self._health = HealthMonitor(
            self._mqtt_client,
            self._subscriber,
            self._store,
            self._hub,
            state=lambda: self._state.value,
        )
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None
        self._shutdown_event: Optional[asyncio.Event] = None
        self._state = BridgeState.STARTING
        self._state_detail: Optional[str] = None
        self._stopping = False

    @property
    def store(self) -> TelemetryStore:
        return self._store

    @property
    def hub(self) -> BroadcastHub:
        return self._hub

    @property
    def subscriber(self) -> BusSubscriber:
        return self._subscriber

    @property
    def gateway(self) -> CommandGateway:
        return self._gateway

    @property
    def health(self) -> HealthMonitor:
        return self._health

    @property
    def state(self) -> BridgeState:
        return self._state

    def build_web_app(self) -> web.Application:
        app = web.Application(
            middlewares=[cors_middleware(self._config.server.allowed_origin)]
        )
        self._gateway.register(app)
        self._health.register(app)
        app.router.add_get(self._config.server.websocket_path, self._hub.handle_websocket)
        app.on_shutdown.append(self._on_web_shutdown)
        return app

    async def run(self) -> None:
        """Serve until :meth:`request_shutdown` is called or the task is cancelled."""

        self._shutdown_event = asyncio.Event()

        LOGGER.info("sensor-bridge starting with config: %s", self._config.path)
        await self._start_services()

        try:
            await self._shutdown_event.wait()
        except asyncio.CancelledError:
            LOGGER.info("sensor-bridge received shutdown signal")
            raise
        finally:
            await self._stop_services()

    def request_shutdown(self) -> None:
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    @classmethod
    def start(cls, config: Optional[BridgeConfig] = None) -> None:
        config = config or load_config()
        configure_logging(
            config.logging.level,
            log_path=config.logging.path,
            log_network=config.logging.log_network,
        )
        instance = cls(config=config)
        try:
            asyncio.run(instance.run())
        except KeyboardInterrupt:
            LOGGER.info("sensor-bridge received shutdown signal")

    def _transition_state(
        self, state: BridgeState, *, detail: Optional[str] = None
    ) -> None:
        if state == self._state and detail == self._state_detail:
            return

        previous = self._state
        self._state = state
        self._state_detail = detail
        LOGGER.info(
            "Bridge state transition %s -> %s (%s)",
            previous.value,
            state.value,
            detail or state.value,
        )

    async def _start_services(self) -> None:
        self._stopping = False
        self._transition_state(BridgeState.STARTING, detail="initialising")

        await self._start_web_server()

        self._subscriber.start()
        self._mqtt_client.register_connect_handler(self._on_mqtt_connect)
        self._mqtt_client.register_disconnect_handler(self._on_mqtt_disconnect)

        try:
            await self._mqtt_client.connect()
        except MQTTConnectionError as exc:
            LOGGER.error("MQTT connection failed: %s", exc)
            self._transition_state(
                BridgeState.DEGRADED, detail="waiting for mqtt broker"
            )
            return

        self._refresh_bus_state()

    async def _start_web_server(self) -> None:
        server = self._config.server
        self._runner = web.AppRunner(self.build_web_app())
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, server.host, server.port)
        await self._site.start()
        LOGGER.info("Backend listening on http://%s:%s", server.host, server.port)

    async def _stop_services(self) -> None:
        self._transition_state(BridgeState.STOPPING, detail="shutdown requested")
        self._stopping = True

        self._subscriber.stop()

        with contextlib.suppress(MQTTConnectionError):
            await self._mqtt_client.disconnect()

        if self._runner is not None:
            await self._runner.cleanup()
        self._runner = None
        self._site = None

    async def _on_web_shutdown(self, app: web.Application) -> None:
        await self._hub.close()

    def _refresh_bus_state(self) -> None:
        if self._stopping:
            return
        if self._mqtt_client.is_connected() and self._subscriber.subscribed:
            self._transition_state(BridgeState.ACTIVE, detail="bus connected")
        else:
            self._transition_state(BridgeState.DEGRADED, detail="bus unavailable")

    # -------------------------------------------------------------------------
    # MQTT client callbacks (scheduled onto the event loop by the adapter)
    # -------------------------------------------------------------------------

    def _on_mqtt_connect(self, rc: int) -> None:
        self._refresh_bus_state()

    def _on_mqtt_disconnect(self, rc: int) -> None:
        if self._stopping:
            return
        LOGGER.warning("MQTT connection lost (rc=%s); waiting for reconnect", rc)
        self._refresh_bus_state()


def _build_client_id(config: BridgeConfig) -> str:
    if config.mqtt.client_id:
        return config.mqtt.client_id
    return f"{constants.APP_NAME}-{os.getpid()}"
