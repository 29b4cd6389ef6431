"""Schemas for inbound chat messages and conversation summaries."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.models.enums import RoutingMode


class ChatMessage(BaseModel):
    """Inbound chat message handed to the dispatcher.

    ``topic`` keeps the routing tag exactly as the client sent it so that an
    unrecognised tag can still be reported; ``routing_mode`` is the parsed value.
    """

    model_config = ConfigDict(frozen=True)

    chat_room_id: str = Field(..., min_length=1, description="Conversation identifier")
    sender_id: str = Field(..., min_length=1, description="Identifier of the sending user")
    content: str = Field(default="", description="Message body")
    file_url: str | None = Field(default=None, description="Optional attachment reference")
    topic: str | None = Field(default=None, description="Routing tag, e.g. 'one' or 'many'")
    sent_at: datetime | None = Field(default=None, description="Send time assigned by the caller")

    @field_validator("topic", mode="before")
    @classmethod
    def unwrap_routing_mode(cls, value: Any) -> Any:
        if isinstance(value, RoutingMode):
            return value.value
        return value

    @property
    def routing_mode(self) -> RoutingMode | None:
        return RoutingMode.parse(self.topic)

    @property
    def has_attachment(self) -> bool:
        return bool(self.file_url and self.file_url.strip())

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class ConversationSummary(BaseModel):
    """Read-only snapshot of a conversation summary record."""

    model_config = ConfigDict(from_attributes=True, frozen=True)

    chat_room_id: str
    last_message: str | None = None
    last_active: datetime | None = None
    participant_ids: list[str] = Field(default_factory=list)
    unread_counts: dict[str, int] = Field(default_factory=dict)

    def unread(self, user_id: str) -> int:
        return self.unread_counts.get(user_id, 0)
