"""Database models package."""

from .base import Base
from .chat import ChatRoom, ChatRoomParticipant
from .enums import RoutingMode

__all__ = [
    "Base",
    "ChatRoom",
    "ChatRoomParticipant",
    "RoutingMode",
]
