"""End-to-end dispatch through services assembled from settings."""

from __future__ import annotations

import logging

import pytest

from app.config import Settings
from app.monitoring.metrics import chat_publish_errors_total
from app.schemas import ChatMessage
from app.services import build_chat_services
from pingpong.realtime.transport import BrokerConfig, RedisNATSTransport


def local_settings(**overrides) -> Settings:
    values = {
        "realtime_node_id": "node-test",
        "room_state_update_timeout_seconds": 5.0,
        "configure_logging": False,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.mark.anyio("asyncio")
async def test_local_only_services_still_fan_out_and_update_state(
    session_factory, create_room, websocket_factory, caplog
):
    create_room("room-42", ["u1", "u2", "u3"])
    services = build_chat_services(local_settings(), session_factory)
    socket = websocket_factory()
    await services.hub.connect(services.fanout.destination_for("room-42"), socket)

    with caplog.at_level(logging.WARNING):
        await services.startup()
        await services.dispatcher.dispatch(
            ChatMessage(chat_room_id="room-42", sender_id="u1", content="hi", topic="one")
        )

    assert socket.sent[0]["destination"] == "/topic/chatRoom/room-42"
    assert socket.sent[0]["message"]["content"] == "hi"
    summary = await services.room_state.get_summary("room-42")
    assert summary.unread_counts == {"u1": 0, "u2": 1, "u3": 1}
    assert chat_publish_errors_total.value("direct", "redis", "unavailable") == 1
    assert chat_publish_errors_total.value("fanout", "redis", "unavailable") == 1

    await services.shutdown()


@pytest.mark.anyio("asyncio")
async def test_services_use_configured_topics_and_prefix(session_factory):
    transport = RedisNATSTransport(BrokerConfig())
    services = build_chat_services(
        local_settings(
            chat_direct_topic="dm",
            chat_broadcast_topic="group",
            chat_room_destination_prefix="/rooms/",
        ),
        session_factory,
        transport=transport,
    )

    assert services.transport is transport
    assert services.fanout.destination_for("room-1") == "/rooms/room-1"
    topics = sorted(egress.topic for egress in services.dispatcher._egress.values())
    assert topics == ["dm", "group"]
