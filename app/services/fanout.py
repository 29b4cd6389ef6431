"""Live subscriber fan-out for chat rooms."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any, Dict, Set

from fastapi.websockets import WebSocket, WebSocketDisconnect, WebSocketState

from app.monitoring.metrics import realtime_connections
from app.schemas import ChatMessage
from pingpong.realtime.transport import (
    CHAT_ROOM_FANOUT_TOPIC,
    RedisNATSTransport,
    Subscription,
    TransportUnavailableError,
)


logger = logging.getLogger(__name__)

DEFAULT_DESTINATION_PREFIX = "/topic/chatRoom/"


def destination_for(conversation_id: str, prefix: str = DEFAULT_DESTINATION_PREFIX) -> str:
    """Return the live subscriber address of a conversation."""

    return f"{prefix}{conversation_id}"


class ChatRoomSubscriptionHub:
    """Tracks websockets subscribed to chat room destinations on this instance."""

    def __init__(self) -> None:
        self._connections: Dict[str, Set[WebSocket]] = defaultdict(set)
        self._lock = asyncio.Lock()

    async def connect(self, destination: str, websocket: WebSocket) -> None:
        async with self._lock:
            sockets = self._connections[destination]
            if websocket not in sockets:
                sockets.add(websocket)
                realtime_connections.labels("chat_rooms").inc()

    async def disconnect(self, destination: str, websocket: WebSocket) -> None:
        async with self._lock:
            sockets = self._connections.get(destination)
            if not sockets or websocket not in sockets:
                return
            sockets.discard(websocket)
            realtime_connections.labels("chat_rooms").dec()
            if not sockets:
                self._connections.pop(destination, None)

    def subscriber_count(self, destination: str) -> int:
        return len(self._connections.get(destination, ()))

    async def broadcast(self, destination: str, payload: dict[str, Any]) -> int:
        async with self._lock:
            targets = list(self._connections.get(destination, ()))
        delivered = 0
        for socket in targets:
            if socket.application_state != WebSocketState.CONNECTED:
                continue
            try:
                await socket.send_json(payload)
            except (RuntimeError, WebSocketDisconnect):
                logger.debug("Dropped chat payload for closed websocket", extra={"destination": destination})
                continue
            delivered += 1
        return delivered


class ChatRoomFanout:
    """Delivers chat messages to live subscribers on every instance.

    Local subscribers are served directly from the hub; the same envelope is
    published on the broker so other instances can deliver it to theirs.
    """

    def __init__(
        self,
        hub: ChatRoomSubscriptionHub,
        transport: RedisNATSTransport | None = None,
        *,
        node_id: str,
        backend: str | None = None,
        destination_prefix: str = DEFAULT_DESTINATION_PREFIX,
    ) -> None:
        self._hub = hub
        self._transport = transport
        self._node_id = node_id
        self._backend = backend
        self._prefix = destination_prefix
        self._subscription: Subscription | None = None

    @property
    def hub(self) -> ChatRoomSubscriptionHub:
        return self._hub

    @property
    def backend(self) -> str:
        return self._backend or "local"

    def destination_for(self, conversation_id: str) -> str:
        return destination_for(conversation_id, self._prefix)

    async def start(self) -> None:
        if self._transport is None:
            return

        async def handle(envelope: dict[str, Any]) -> None:
            if envelope.get("origin") == self._node_id:
                return
            destination = envelope.get("destination")
            message = envelope.get("message")
            if not isinstance(destination, str) or not isinstance(message, dict):
                return
            await self._hub.broadcast(destination, self._frame(destination, message))

        try:
            self._subscription = await self._transport.subscribe(
                CHAT_ROOM_FANOUT_TOPIC, handle, backend=self._backend
            )
        except TransportUnavailableError:
            logger.warning(
                "Realtime backend unavailable for chat fan-out; continuing with local delivery only",
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
            self._subscription = None

    async def stop(self) -> None:
        if self._subscription is not None:
            await self._subscription.close()
            self._subscription = None

    async def publish(self, destination: str, message: ChatMessage) -> None:
        payload = message.to_payload()
        await self._hub.broadcast(destination, self._frame(destination, payload))
        if self._transport is None:
            return
        await self._transport.publish(
            CHAT_ROOM_FANOUT_TOPIC,
            {"origin": self._node_id, "destination": destination, "message": payload},
            backend=self._backend,
        )

    @staticmethod
    def _frame(destination: str, message: dict[str, Any]) -> dict[str, Any]:
        return {"type": "message", "destination": destination, "message": message}
