"""Bus subscriber feeding decoded sensor messages into the telemetry store."""

from __future__ import annotations

import logging
from typing import Optional, Protocol

from ..adapters import MQTTConnectionError
from ..adapters.mqtt import MessageHandler
from .decoder import DecodeError, FieldDecoder
from .store import TelemetryStore

LOGGER = logging.getLogger(__name__)


class SubscriberTransport(Protocol):
    """Subset of :class:`~sensor_bridge.adapters.MQTTClient` used here."""

    def subscribe(self, topic: str, qos: int = 1) -> None: ...

    def set_message_handler(self, handler: Optional[MessageHandler]) -> None: ...

    def register_connect_handler(self, handler) -> None: ...

    def is_connected(self) -> bool: ...


class Broadcaster(Protocol):
    async def broadcast_current(self) -> int: ...


class BusSubscriber:
    """Routes inbound bus messages through the decoder into the store.

    Every message on a known topic triggers a broadcast of the full
    snapshot, including messages whose payload failed to decode.
    """

    def __init__(
        self,
        transport: SubscriberTransport,
        decoder: FieldDecoder,
        store: TelemetryStore,
        hub: Broadcaster,
        *,
        subscription: str,
        qos: int = 1,
    ) -> None:
        self._transport = transport
        self._decoder = decoder
        self._store = store
        self._hub = hub
        self._subscription = subscription
        self._qos = qos
        self._active = False
        self._subscribed = False
        self._last_error: Optional[str] = None
        self.messages_received = 0
        self.decode_failures = 0

    @property
    def subscription(self) -> str:
        return self._subscription

    @property
    def subscribed(self) -> bool:
        return self._subscribed

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    def start(self) -> None:
        """Attach to the transport and subscribe on every (re)connect."""

        if self._active:
            return
        self._active = True
        self._transport.set_message_handler(self.handle_message)
        self._transport.register_connect_handler(self._on_connect)
        if self._transport.is_connected():
            self._subscribe()

    def stop(self) -> None:
        if not self._active:
            return
        self._active = False
        self._subscribed = False
        self._transport.set_message_handler(None)

    def _on_connect(self, rc: int) -> None:
        if self._active:
            self._subscribe()

    def _subscribe(self) -> None:
        try:
            self._transport.subscribe(self._subscription, qos=self._qos)
        except MQTTConnectionError as exc:
            self._subscribed = False
            self._last_error = str(exc)
            LOGGER.error("Error subscribing to %s: %s", self._subscription, exc)
            return

        self._subscribed = True
        self._last_error = None
        LOGGER.info("Subscribed to %s", self._subscription)

    async def handle_message(self, topic: str, payload: bytes) -> None:
        self.messages_received += 1
        LOGGER.debug("MQTT message on %s: %r", topic, payload)

        if not self._decoder.is_known(topic):
            LOGGER.debug("Ignoring message on unmapped topic %s", topic)
            return

        try:
            update = self._decoder.decode(topic, payload)
        except DecodeError as exc:
            self.decode_failures += 1
            LOGGER.warning("%s; keeping previous value", exc)
        else:
            if update is not None:
                self._store.apply_update(update)

        try:
            await self._hub.broadcast_current()
        except Exception:
            LOGGER.exception("Failed to broadcast telemetry after message on %s", topic)
