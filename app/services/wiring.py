"""Assembles the dispatcher and its collaborators from application settings."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

from sqlalchemy.orm import Session, sessionmaker

from app.config import Settings
from app.logging_config import configure_logging
from app.services.dispatcher import MessageDispatcher
from app.services.egress import TopicEgress
from app.services.fanout import ChatRoomFanout, ChatRoomSubscriptionHub
from app.services.room_state import RoomStateStore
from pingpong.realtime.transport import BrokerConfig, RedisNATSTransport, TransportUnavailableError


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ChatServices:
    """Everything a message entry point needs to dispatch chat messages."""

    settings: Settings
    transport: RedisNATSTransport
    hub: ChatRoomSubscriptionHub
    fanout: ChatRoomFanout
    room_state: RoomStateStore
    dispatcher: MessageDispatcher

    async def startup(self) -> None:
        if self.settings.configure_logging:
            configure_logging(self.settings)
        try:
            await self.transport.start()
        except (TransportUnavailableError, OSError):
            logger.warning(
                "Realtime backend unavailable during startup; continuing in local-only mode",
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
            return
        if self.transport.started:
            await self.fanout.start()

    async def shutdown(self) -> None:
        await self.fanout.stop()
        await self.transport.stop()


def build_chat_services(
    settings: Settings,
    session_factory: sessionmaker[Session] | None = None,
    *,
    transport: RedisNATSTransport | None = None,
) -> ChatServices:
    if session_factory is None:
        from app.database import SessionLocal

        session_factory = SessionLocal
    node_id = settings.realtime_node_id or uuid.uuid4().hex
    backend = settings.realtime_backend_preference
    if transport is None:
        transport = RedisNATSTransport(
            BrokerConfig(
                redis_url=settings.realtime_redis_url,
                redis_prefix=settings.realtime_namespace,
                nats_url=settings.realtime_nats_url,
                nats_prefix=settings.realtime_namespace,
                node_id=node_id,
            )
        )
    hub = ChatRoomSubscriptionHub()
    fanout = ChatRoomFanout(
        hub,
        transport,
        node_id=node_id,
        backend=backend,
        destination_prefix=settings.chat_room_destination_prefix,
    )
    room_state = RoomStateStore(
        session_factory,
        timeout_seconds=settings.room_state_update_timeout_seconds,
    )
    dispatcher = MessageDispatcher(
        direct=TopicEgress(transport, settings.chat_direct_topic, backend=backend, name="direct"),
        broadcast=TopicEgress(transport, settings.chat_broadcast_topic, backend=backend, name="broadcast"),
        fanout=fanout,
        room_state=room_state,
    )
    return ChatServices(
        settings=settings,
        transport=transport,
        hub=hub,
        fanout=fanout,
        room_state=room_state,
        dispatcher=dispatcher,
    )
