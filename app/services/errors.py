"""Errors raised while dispatching chat messages and updating room state."""

from __future__ import annotations


class ChatDispatchError(Exception):
    """Base class for dispatch and room state failures."""


class RoutingValidationError(ChatDispatchError):
    """The routing tag of a message is missing or not recognised."""

    def __init__(self, tag: object) -> None:
        super().__init__(f"Unrecognised routing tag: {tag!r}")
        self.tag = tag


class ConversationNotFound(ChatDispatchError):
    """The conversation referenced by a message does not exist."""

    def __init__(self, conversation_id: str) -> None:
        super().__init__(f"Chat room not found: {conversation_id}")
        self.conversation_id = conversation_id


class StorageError(ChatDispatchError):
    """Transient storage failure; the whole dispatch may be retried by the caller."""

    def __init__(self, conversation_id: str, reason: str) -> None:
        super().__init__(f"Failed to update chat room {conversation_id}: {reason}")
        self.conversation_id = conversation_id
        self.reason = reason
