"""Chat dispatch services."""

from .dispatcher import MessageDispatcher, classify
from .egress import TopicEgress
from .errors import (
    ChatDispatchError,
    ConversationNotFound,
    RoutingValidationError,
    StorageError,
)
from .fanout import ChatRoomFanout, ChatRoomSubscriptionHub, destination_for
from .room_state import ConversationLocks, RoomStateStore
from .wiring import ChatServices, build_chat_services

__all__ = [
    "MessageDispatcher",
    "classify",
    "TopicEgress",
    "ChatDispatchError",
    "ConversationNotFound",
    "RoutingValidationError",
    "StorageError",
    "ChatRoomFanout",
    "ChatRoomSubscriptionHub",
    "destination_for",
    "ConversationLocks",
    "RoomStateStore",
    "ChatServices",
    "build_chat_services",
]
