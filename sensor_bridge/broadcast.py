"""WebSocket fan-out of the telemetry snapshot."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from itertools import count
from typing import Dict, Optional, Protocol

from aiohttp import WSMsgType, web

from . import constants
from .telemetry.store import TelemetryStore

LOGGER = logging.getLogger(__name__)


class LiveClient(Protocol):
    """The part of ``web.WebSocketResponse`` the hub relies on."""

    @property
    def closed(self) -> bool: ...

    async def send_str(self, data: str) -> None: ...

    async def close(self) -> bool: ...


def origin_allowed(origin: Optional[str], allowed_origin: str) -> bool:
    if allowed_origin == "*":
        return True
    if origin is None:
        # Non-browser clients do not send an Origin header.
        return True
    return origin.rstrip("/") == allowed_origin.rstrip("/")


class BroadcastHub:
    """Delivers full telemetry snapshots to connected live-update clients.

    Delivery is best effort: a client whose send fails is dropped and never
    retried. A client that missed updates catches up with the next full
    snapshot it receives or when it reconnects.
    """

    def __init__(
        self,
        store: TelemetryStore,
        *,
        event: str = constants.TELEMETRY_EVENT,
        allowed_origin: str = constants.DEFAULT_ALLOWED_ORIGIN,
    ) -> None:
        self._store = store
        self._event = event
        self._allowed_origin = allowed_origin
        self._clients: Dict[str, LiveClient] = {}
        self._ids = count(1)
        self._broadcasts = 0

    @property
    def client_count(self) -> int:
        return len(self._clients)

    @property
    def broadcast_count(self) -> int:
        return self._broadcasts

    def _encode_current(self) -> str:
        snapshot = self._store.current_snapshot()
        return json.dumps({"event": self._event, "data": snapshot.as_dict()})

    async def broadcast_current(self) -> int:
        """Send the current snapshot to every connected client.

        Returns the number of clients the snapshot was delivered to.
        """

        self._broadcasts += 1
        if not self._clients:
            return 0

        message = self._encode_current()
        targets = list(self._clients.items())
        results = await asyncio.gather(
            *(self._send(client, message) for _, client in targets)
        )

        delivered = 0
        for (client_id, _), ok in zip(targets, results):
            if ok:
                delivered += 1
            else:
                self._clients.pop(client_id, None)
                LOGGER.debug("Dropped live client %s after failed send", client_id)

        LOGGER.debug("Broadcast telemetry to %d client(s)", delivered)
        return delivered

    async def on_client_connected(self, client: LiveClient) -> str:
        """Send the current snapshot to ``client`` and start tracking it."""

        client_id = f"client-{next(self._ids)}"
        seen = self._broadcasts
        if not await self._send(client, self._encode_current()):
            LOGGER.debug("Live client %s went away before first snapshot", client_id)
            return client_id

        self._clients[client_id] = client
        LOGGER.info("Live client connected: %s", client_id)

        # A broadcast that ran while the first send was in flight skipped
        # this client.
        if self._broadcasts != seen and not await self._send(
            client, self._encode_current()
        ):
            self._clients.pop(client_id, None)
        return client_id

    def on_client_disconnected(self, client_id: str) -> None:
        if self._clients.pop(client_id, None) is not None:
            LOGGER.info("Live client disconnected: %s", client_id)

    async def handle_websocket(self, request: web.Request) -> web.StreamResponse:
        origin = request.headers.get("Origin")
        if not origin_allowed(origin, self._allowed_origin):
            LOGGER.warning("Rejected live client from origin %s", origin)
            raise web.HTTPForbidden(text="origin not allowed")

        ws = web.WebSocketResponse(heartbeat=30.0)
        await ws.prepare(request)

        client_id = await self.on_client_connected(ws)
        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    if msg.data == "ping":
                        await ws.send_str("pong")
                    else:
                        LOGGER.debug("Ignoring message from %s", client_id)
                elif msg.type == WSMsgType.ERROR:
                    LOGGER.debug(
                        "Live client %s connection error: %s",
                        client_id,
                        ws.exception(),
                    )
                    break
        finally:
            self.on_client_disconnected(client_id)

        return ws

    async def close(self) -> None:
        clients = list(self._clients.values())
        self._clients.clear()
        for client in clients:
            with contextlib.suppress(Exception):
                await client.close()

    @staticmethod
    async def _send(client: LiveClient, message: str) -> bool:
        if client.closed:
            return False
        try:
            await client.send_str(message)
        except (ConnectionError, RuntimeError) as exc:
            LOGGER.debug("Live client send failed: %s", exc)
            return False
        return True
