"""MQTT adapter encapsulating paho-mqtt client usage."""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import paho.mqtt.client as mqtt

from ..config import MQTTConfig

LOGGER = logging.getLogger(__name__)

MessageHandler = Callable[[str, bytes], Awaitable[None] | None]


class MQTTConnectionError(RuntimeError):
    """Raised when the MQTT client cannot connect, subscribe or publish."""


def _reason_value(reason_code: Any) -> int:
    """Return the numeric value of a paho ``ReasonCode`` or plain int."""

    value = getattr(reason_code, "value", reason_code)
    try:
        return int(value)
    except (TypeError, ValueError):
        return -1


def _queued(rc: int, qos: int) -> bool:
    """Return whether paho kept a published message for (re)delivery."""

    if rc == mqtt.MQTT_ERR_SUCCESS:
        return True
    # QoS 1/2 messages stay in paho's outgoing queue unless the queue is full.
    return qos > 0 and rc != mqtt.MQTT_ERR_QUEUE_SIZE


class MQTTClient:
    """Async-friendly wrapper over the threaded paho-mqtt client.

    paho runs its network loop on a background thread. Every callback that
    reaches user code (messages, connect and disconnect notifications,
    publish acknowledgements) is handed over to the asyncio loop that called
    :meth:`connect`, so consumers never run on the paho thread.
    """

    def __init__(self, config: MQTTConfig, *, client_id: str) -> None:
        self.config = config
        self.client_id = client_id

        self._client: Optional[mqtt.Client] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._connected_event: Optional[asyncio.Event] = None
        self._disconnect_event: Optional[asyncio.Event] = None
        self._message_handler: Optional[MessageHandler] = None
        self._last_connect_rc: Optional[int] = None
        self._connected: bool = False
        self._disconnect_handlers: List[Callable[[int], None]] = []
        self._connect_handlers: List[Callable[[int], None]] = []
        self._handler_tasks: Set[asyncio.Task[Any]] = set()

        # Publish acknowledgements arrive on the paho thread, possibly before
        # publish() has returned the message id to us. Early acks are only
        # recorded while a publish() call is in progress.
        self._ack_lock = threading.Lock()
        self._pending_acks: Dict[int, asyncio.Future[int]] = {}
        self._early_acks: Dict[int, int] = {}
        self._publish_in_progress = False

    async def connect(self, timeout: Optional[float] = None) -> None:
        """Start the network loop and wait for the broker to accept us.

        The paho network loop keeps retrying in the background even when
        this coroutine raises, so a broker that comes up later is picked up
        without intervention.
        """

        if timeout is None:
            timeout = self.config.connect_timeout_seconds

        self._loop = asyncio.get_running_loop()
        self._connected_event = asyncio.Event()
        self._disconnect_event = asyncio.Event()
        self._last_connect_rc = None

        client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=self.client_id)
        client.enable_logger(LOGGER)

        if self.config.username:
            client.username_pw_set(self.config.username, self.config.password)

        if self.config.use_tls:
            client.tls_set()

        client.reconnect_delay_set(
            min_delay=self.config.reconnect_min_seconds,
            max_delay=self.config.reconnect_max_seconds,
        )

        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        client.on_publish = self._on_publish

        self._client = client

        LOGGER.info(
            "Connecting to MQTT broker %s:%s",
            self.config.broker_host,
            self.config.broker_port,
        )

        client.connect_async(
            self.config.broker_host, self.config.broker_port, self.config.keepalive
        )
        client.loop_start()

        try:
            await asyncio.wait_for(self._connected_event.wait(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise MQTTConnectionError("Timed out connecting to MQTT broker") from exc

        if self._last_connect_rc != 0:
            raise MQTTConnectionError(
                f"MQTT broker rejected connection (rc={self._last_connect_rc})"
            )

    async def disconnect(self, timeout: float = 5.0) -> None:
        """Gracefully disconnect from the broker."""

        if not self._client:
            return

        client = self._client
        was_connected = self._connected
        client.disconnect()

        try:
            if was_connected and self._disconnect_event is not None:
                await asyncio.wait_for(self._disconnect_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            LOGGER.warning("Timed out waiting for MQTT disconnect acknowledgement")
        finally:
            client.loop_stop()
            self._client = None
            self._connected = False
            self._fail_pending_acks("MQTT client disconnected")

    async def publish_and_wait(
        self,
        topic: str,
        payload: bytes | str,
        *,
        qos: int = 1,
        retain: bool = False,
    ) -> int:
        """Publish a message and wait until the broker acknowledges it.

        Returns the message id. Raises :class:`MQTTConnectionError` only when
        nothing was handed to paho (the client is disconnected or refuses the
        message), when the broker rejects it, or when :meth:`disconnect`
        tears the client down. Once paho has queued a QoS 1/2 message it
        resends it after a reconnect, so the wait has no deadline.
        """

        if not self._client or not self._loop or not self._connected:
            raise MQTTConnectionError("MQTT client not connected")

        future: asyncio.Future[int] = self._loop.create_future()
        info = None
        with self._ack_lock:
            self._publish_in_progress = True
        try:
            info = self._client.publish(topic, payload, qos=qos, retain=retain)
        except ValueError as exc:
            raise MQTTConnectionError(f"Publish refused: {exc}") from exc
        finally:
            with self._ack_lock:
                self._publish_in_progress = False
                early_acks, self._early_acks = self._early_acks, {}
                early = early_acks.get(info.mid) if info is not None else None
                if info is not None and early is None and _queued(info.rc, qos):
                    self._pending_acks[info.mid] = future

        if not _queued(info.rc, qos):
            raise MQTTConnectionError(f"Publish failed with rc={info.rc}")
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            LOGGER.warning(
                "MQTT message %s queued (rc=%s); awaiting delivery after reconnect",
                info.mid,
                info.rc,
            )
        if early is not None:
            self._settle_ack(future, info.mid, early)

        try:
            await future
        finally:
            with self._ack_lock:
                self._pending_acks.pop(info.mid, None)

        return info.mid

    def subscribe(self, topic: str, qos: int = 1) -> None:
        if not self._client:
            raise MQTTConnectionError("MQTT client not connected")
        result, _ = self._client.subscribe(topic, qos=qos)
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise MQTTConnectionError(f"Subscribe failed with rc={result}")

    def set_message_handler(self, handler: Optional[MessageHandler]) -> None:
        self._message_handler = handler

    def register_disconnect_handler(self, handler: Callable[[int], None]) -> None:
        self._disconnect_handlers.append(handler)

    def register_connect_handler(self, handler: Callable[[int], None]) -> None:
        self._connect_handlers.append(handler)

    def is_connected(self) -> bool:
        return self._connected

    # ------------------------------------------------------------------
    # Internal callbacks bridging the threaded paho callbacks into asyncio
    # ------------------------------------------------------------------
    def _on_connect(
        self, client: mqtt.Client, userdata, flags, reason_code, properties=None
    ) -> None:
        rc = _reason_value(reason_code)
        self._last_connect_rc = rc
        loop = self._loop
        if rc == 0:
            LOGGER.info("Connected to MQTT broker")
            self._connected = True
            if loop:
                for handler in self._connect_handlers:
                    loop.call_soon_threadsafe(handler, rc)
        else:
            LOGGER.error("MQTT connection failed with rc=%s", rc)
            self._connected = False

        if loop and self._connected_event:
            loop.call_soon_threadsafe(self._connected_event.set)

    def _on_disconnect(
        self, client: mqtt.Client, userdata, flags, reason_code=None, properties=None
    ) -> None:
        rc = _reason_value(reason_code)
        LOGGER.info("Disconnected from MQTT broker (rc=%s)", rc)
        self._connected = False
        loop = self._loop
        if not loop:
            return
        if self._disconnect_event:
            loop.call_soon_threadsafe(self._disconnect_event.set)
        for handler in self._disconnect_handlers:
            loop.call_soon_threadsafe(handler, rc)

    def _on_message(
        self, client: mqtt.Client, userdata, message: mqtt.MQTTMessage
    ) -> None:
        loop = self._loop
        if not self._message_handler or not loop:
            return
        loop.call_soon_threadsafe(self._dispatch_message, message.topic, message.payload)

    def _dispatch_message(self, topic: str, payload: bytes) -> None:
        handler = self._message_handler
        if not handler:
            return

        try:
            result = handler(topic, payload)
        except Exception:
            LOGGER.exception("MQTT message handler raised an exception")
            return

        if asyncio.iscoroutine(result):
            task = asyncio.ensure_future(result)
            self._handler_tasks.add(task)
            task.add_done_callback(self._handler_done)

    def _handler_done(self, task: asyncio.Task[Any]) -> None:
        self._handler_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error(
                "MQTT message handler raised an exception", exc_info=exc
            )

    def _on_publish(
        self, client: mqtt.Client, userdata, mid: int, reason_code=None, properties=None
    ) -> None:
        rc = _reason_value(reason_code) if reason_code is not None else 0
        with self._ack_lock:
            future = self._pending_acks.pop(mid, None)
            if future is None:
                if self._publish_in_progress:
                    self._early_acks[mid] = rc
                return
        loop = self._loop
        if loop:
            loop.call_soon_threadsafe(self._settle_ack, future, mid, rc)

    @staticmethod
    def _settle_ack(future: asyncio.Future[int], mid: int, rc: int) -> None:
        if future.done():
            return
        # Reason codes of 0x80 and above are failures in MQTT v5.
        if rc >= 0x80:
            future.set_exception(
                MQTTConnectionError(f"Broker rejected message {mid} (rc={rc})")
            )
        else:
            future.set_result(mid)

    def _fail_pending_acks(self, reason: str) -> None:
        with self._ack_lock:
            pending = list(self._pending_acks.values())
            self._pending_acks.clear()
            self._early_acks.clear()
        for future in pending:
            if not future.done():
                future.set_exception(MQTTConnectionError(reason))
