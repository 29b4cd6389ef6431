from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import Base


class ChatRoom(Base):
    """Summary record of a conversation: last message, activity and unread counters."""

    __tablename__ = "chat_rooms"

    id: Mapped[int] = mapped_column(primary_key=True)
    chat_room_id: Mapped[str] = mapped_column(String(64), unique=True, index=True, nullable=False)
    last_message: Mapped[str | None] = mapped_column(Text)
    last_active: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    participants: Mapped[list["ChatRoomParticipant"]] = relationship(
        back_populates="room",
        cascade="all, delete-orphan",
        order_by="ChatRoomParticipant.id",
    )

    @property
    def participant_ids(self) -> list[str]:
        return [participant.user_id for participant in self.participants]

    @property
    def unread_counts(self) -> dict[str, int]:
        return {participant.user_id: participant.unread_count for participant in self.participants}

    def increment_unread_count(self, user_id: str) -> None:
        for participant in self.participants:
            if participant.user_id == user_id:
                participant.unread_count = (participant.unread_count or 0) + 1
                return


class ChatRoomParticipant(Base):
    """Membership of a user in a chat room together with their unread counter."""

    __tablename__ = "chat_room_participants"
    __table_args__ = (
        UniqueConstraint("room_id", "user_id", name="uq_chat_room_participant"),
        CheckConstraint("unread_count >= 0", name="ck_chat_room_participant_unread"),
        Index("ix_chat_room_participants_user", "user_id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    room_id: Mapped[int] = mapped_column(
        ForeignKey("chat_rooms.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str | None] = mapped_column(String(128))
    profile: Mapped[str | None] = mapped_column(String(512))
    unread_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    room: Mapped[ChatRoom] = relationship(back_populates="participants")
