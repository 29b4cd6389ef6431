"""Unit tests validating chat message and summary schemas."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from app.models import RoutingMode
from app.schemas import ChatMessage, ConversationSummary


def test_routing_mode_accepts_values_and_names():
    assert RoutingMode.parse("one") is RoutingMode.DIRECT
    assert RoutingMode.parse("many") is RoutingMode.BROADCAST
    assert RoutingMode.parse(" Direct ") is RoutingMode.DIRECT
    assert RoutingMode.parse("ONE") is RoutingMode.DIRECT
    assert RoutingMode.parse("Many") is RoutingMode.BROADCAST
    assert RoutingMode.parse(RoutingMode.BROADCAST) is RoutingMode.BROADCAST
    assert RoutingMode.parse("group") is None
    assert RoutingMode.parse("") is None
    assert RoutingMode.parse(None) is None


def test_message_keeps_the_raw_routing_tag():
    message = ChatMessage(chat_room_id="room-42", sender_id="u1", topic="group")
    assert message.topic == "group"
    assert message.routing_mode is None

    enum_tagged = ChatMessage(chat_room_id="room-42", sender_id="u1", topic=RoutingMode.DIRECT)
    assert enum_tagged.topic == "one"
    assert enum_tagged.routing_mode is RoutingMode.DIRECT


def test_message_requires_conversation_and_sender():
    with pytest.raises(ValidationError):
        ChatMessage(chat_room_id="", sender_id="u1")
    with pytest.raises(ValidationError):
        ChatMessage(chat_room_id="room-42", sender_id="")


def test_message_is_immutable():
    message = ChatMessage(chat_room_id="room-42", sender_id="u1", content="hi")
    with pytest.raises(ValidationError):
        message.content = "edited"


def test_attachment_requires_a_non_blank_reference():
    assert ChatMessage(chat_room_id="r", sender_id="u", file_url="s3://bucket/a.png").has_attachment
    assert not ChatMessage(chat_room_id="r", sender_id="u", file_url="  ").has_attachment
    assert not ChatMessage(chat_room_id="r", sender_id="u").has_attachment


def test_payload_is_json_ready():
    message = ChatMessage(
        chat_room_id="room-42",
        sender_id="u1",
        content="hi",
        topic="one",
        sent_at="2024-05-01T12:00:00Z",
    )
    payload = message.to_payload()
    assert payload["chat_room_id"] == "room-42"
    assert payload["topic"] == "one"
    assert isinstance(payload["sent_at"], str)


def test_summary_defaults_unread_to_zero():
    summary = ConversationSummary(chat_room_id="room-42", unread_counts={"u2": 3})
    assert summary.unread("u2") == 3
    assert summary.unread("u9") == 0
