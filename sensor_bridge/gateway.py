"""HTTP request surface: snapshot reads and the pump control command."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Protocol

from aiohttp import web

from . import constants
from .adapters import MQTTConnectionError
from .telemetry.store import TelemetrySnapshot, TelemetryStore

LOGGER = logging.getLogger(__name__)

PUMP_ON_PAYLOAD = "ON"
PUMP_OFF_PAYLOAD = "OFF"


class InvalidInput(ValueError):
    """Raised when a control request carries a malformed value."""


class PublishFailure(RuntimeError):
    """Raised when the control command could not be published to the bus."""


class CommandPublisher(Protocol):
    async def publish_and_wait(
        self,
        topic: str,
        payload: bytes | str,
        *,
        qos: int = 1,
        retain: bool = False,
    ) -> int: ...


class CommandGateway:
    """Serves snapshot reads and republishes actuator commands on the bus.

    The control path never touches the telemetry store.
    """

    def __init__(
        self,
        store: TelemetryStore,
        publisher: CommandPublisher,
        *,
        actuator_topic: str = constants.DEFAULT_ACTUATOR_TOPIC,
        qos: int = 1,
    ) -> None:
        self._store = store
        self._publisher = publisher
        self._actuator_topic = actuator_topic
        self._qos = qos

    @property
    def actuator_topic(self) -> str:
        return self._actuator_topic

    def liveness(self) -> str:
        return constants.LIVENESS_TEXT

    def get_snapshot(self) -> TelemetrySnapshot:
        return self._store.current_snapshot()

    async def set_actuator(self, pump_on: object) -> str:
        """Publish the pump command and wait for broker acknowledgement.

        Returns the payload that was published.
        """

        # bool is checked by type: 1, "true" and "yes" are all rejected.
        if not isinstance(pump_on, bool):
            raise InvalidInput("pumpOn must be boolean")

        payload = PUMP_ON_PAYLOAD if pump_on else PUMP_OFF_PAYLOAD

        try:
            await self._publisher.publish_and_wait(
                self._actuator_topic,
                payload,
                qos=self._qos,
            )
        except MQTTConnectionError as exc:
            raise PublishFailure(str(exc)) from exc

        LOGGER.info("Published control to %s: %s", self._actuator_topic, payload)
        return payload

    # ------------------------------------------------------------------
    # aiohttp handlers
    # ------------------------------------------------------------------
    def register(self, app: web.Application) -> None:
        app.router.add_get("/", self._handle_root)
        app.router.add_get("/api/telemetry", self._handle_telemetry)
        app.router.add_post("/api/control", self._handle_control)

    async def _handle_root(self, request: web.Request) -> web.Response:
        return web.Response(text=self.liveness())

    async def _handle_telemetry(self, request: web.Request) -> web.Response:
        return web.json_response(self.get_snapshot().as_dict())

    async def _handle_control(self, request: web.Request) -> web.Response:
        try:
            body = await request.json()
        except ValueError:
            body = None

        pump_on = body.get("pumpOn") if isinstance(body, dict) else None

        try:
            await self.set_actuator(pump_on)
        except InvalidInput as exc:
            return web.json_response({"error": str(exc)}, status=400)
        except PublishFailure as exc:
            LOGGER.error("Error publishing control message: %s", exc)
            return web.json_response(
                {"error": "Failed to publish MQTT message"}, status=500
            )

        return web.json_response({"success": True})


Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


def _apply_cors_headers(headers, allowed_origin: str) -> None:
    headers["Access-Control-Allow-Origin"] = allowed_origin
    headers["Access-Control-Allow-Methods"] = "GET, POST"
    headers["Access-Control-Allow-Headers"] = "Content-Type"
    if allowed_origin != "*":
        headers["Vary"] = "Origin"


def cors_middleware(allowed_origin: str):
    """Build a middleware that adds CORS headers for ``allowed_origin``."""

    @web.middleware
    async def middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
        if (
            request.method == "OPTIONS"
            and "Access-Control-Request-Method" in request.headers
        ):
            preflight = web.Response(status=204)
            _apply_cors_headers(preflight.headers, allowed_origin)
            return preflight

        try:
            response = await handler(request)
        except web.HTTPException as exc:
            _apply_cors_headers(exc.headers, allowed_origin)
            raise

        # Upgraded WebSocket responses have already sent their headers.
        if not response.prepared:
            _apply_cors_headers(response.headers, allowed_origin)
        return response

    return middleware
