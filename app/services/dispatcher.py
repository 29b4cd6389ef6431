"""Routes inbound chat messages and keeps the conversation summary current."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Protocol

from app.models import RoutingMode
from app.monitoring import observability_guard
from app.monitoring.metrics import (
    chat_attachments_total,
    chat_dispatch_total,
    chat_publish_errors_total,
)
from app.schemas import ChatMessage
from app.services.errors import ConversationNotFound, RoutingValidationError, StorageError
from app.services.room_state import RoomStateStore
from pingpong.realtime.transport import TransportUnavailableError


logger = logging.getLogger(__name__)


class MessageEgress(Protocol):
    """Downstream transport accepting routed messages keyed by conversation."""

    name: str
    backend: str

    async def publish(self, conversation_id: str, message: ChatMessage) -> None:
        """Hand the message over to the downstream transport."""


class FanoutChannel(Protocol):
    """Live subscriber delivery path addressed by conversation destination."""

    backend: str

    def destination_for(self, conversation_id: str) -> str:
        """Derive the subscriber address of a conversation."""

    async def publish(self, destination: str, message: ChatMessage) -> None:
        """Deliver the message to everyone subscribed to ``destination``."""


def classify(message: ChatMessage) -> RoutingMode:
    """Return the routing mode of ``message`` or raise :class:`RoutingValidationError`."""

    mode = message.routing_mode
    if mode is None:
        raise RoutingValidationError(message.topic)
    return mode


class MessageDispatcher:
    """Dispatches one chat message: egress by routing mode, live fan-out, room state.

    An unrecognised routing tag only skips the egress publish; the live fan-out
    and the room state update still happen. Publish failures are logged and
    counted but never fail the dispatch. Only room state failures propagate.

    The only state kept between dispatches is the set of channels whose outage
    has already been logged. It throttles warnings and never affects routing,
    delivery or room state; it is only touched from the event loop thread.
    """

    def __init__(
        self,
        *,
        direct: MessageEgress,
        broadcast: MessageEgress,
        fanout: FanoutChannel,
        room_state: RoomStateStore,
    ) -> None:
        self._egress = {RoutingMode.DIRECT: direct, RoutingMode.BROADCAST: broadcast}
        self._fanout = fanout
        self._room_state = room_state
        self._unavailable_logged: set[str] = set()

    async def dispatch(self, message: ChatMessage) -> None:
        conversation_id = message.chat_room_id
        try:
            mode: RoutingMode | None = classify(message)
        except RoutingValidationError as exc:
            mode = None
            with observability_guard("routing diagnostic"):
                logger.warning(
                    "Chat message routing failed for room %s: %s; skipping egress",
                    conversation_id,
                    exc,
                    extra={"chat_room_id": conversation_id, "sender_id": message.sender_id},
                )
        route = mode.name.lower() if mode is not None else "invalid"

        publishes: list[Awaitable[None]] = []
        if mode is not None:
            egress = self._egress[mode]
            publishes.append(
                self._publish_safely(egress.name, egress.backend, egress.publish(conversation_id, message))
            )
        destination = self._fanout.destination_for(conversation_id)
        publishes.append(
            self._publish_safely("fanout", self._fanout.backend, self._fanout.publish(destination, message))
        )
        await asyncio.gather(*publishes)

        if message.has_attachment:
            with observability_guard("attachment event"):
                chat_attachments_total.inc()
                logger.info(
                    "File attached to chat message in room %s: %s",
                    conversation_id,
                    message.file_url,
                    extra={"chat_room_id": conversation_id},
                )

        try:
            await self._room_state.update(message)
        except ConversationNotFound:
            self._count(route, "conversation_not_found")
            logger.error("Chat room not found while dispatching message: %s", conversation_id)
            raise
        except StorageError:
            self._count(route, "storage_error")
            logger.warning(
                "Chat room %s state update failed; dispatch may be retried",
                conversation_id,
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
            raise

        self._count(route, "ok")
        with observability_guard("dispatch event"):
            logger.info(
                "Dispatched chat message in room %s via %s",
                conversation_id,
                route,
                extra={"chat_room_id": conversation_id, "route": route},
            )

    async def _publish_safely(self, channel: str, backend: str, publish: Awaitable[None]) -> None:
        try:
            await publish
        except TransportUnavailableError:
            if channel not in self._unavailable_logged:
                logger.warning(
                    "Realtime backend unavailable while publishing to %s; continuing without it",
                    channel,
                    exc_info=logger.isEnabledFor(logging.DEBUG),
                )
                self._unavailable_logged.add(channel)
            self._count_publish_error(channel, backend, "unavailable")
        except Exception:
            logger.exception("Unexpected error while publishing chat message to %s", channel)
            self._count_publish_error(channel, backend, "error")
        else:
            self._unavailable_logged.discard(channel)

    @staticmethod
    def _count_publish_error(channel: str, backend: str, reason: str) -> None:
        with observability_guard("publish error metric"):
            chat_publish_errors_total.labels(channel, backend, reason).inc()

    @staticmethod
    def _count(route: str, outcome: str) -> None:
        with observability_guard("dispatch metric"):
            chat_dispatch_total.labels(route, outcome).inc()
