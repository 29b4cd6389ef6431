"""Egress channels forwarding routed chat messages to the broker."""

from __future__ import annotations

import logging

from app.schemas import ChatMessage
from pingpong.realtime.transport import RedisNATSTransport


logger = logging.getLogger(__name__)


class TopicEgress:
    """Publishes chat messages to one broker topic, keyed by conversation."""

    def __init__(
        self,
        transport: RedisNATSTransport,
        topic: str,
        *,
        backend: str | None = None,
        name: str | None = None,
    ) -> None:
        self._transport = transport
        self._topic = topic
        self._backend = backend
        self._name = name or topic

    @property
    def name(self) -> str:
        return self._name

    @property
    def topic(self) -> str:
        return self._topic

    @property
    def backend(self) -> str:
        return self._backend or "default"

    async def publish(self, conversation_id: str, message: ChatMessage) -> None:
        await self._transport.publish(
            self._topic,
            message.to_payload(),
            key=conversation_id,
            backend=self._backend,
        )
        logger.debug(
            "Handed chat message to egress topic %s",
            self._topic,
            extra={"chat_room_id": conversation_id},
        )
