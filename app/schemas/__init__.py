"""Pydantic schemas for chat messages and conversation summaries."""

from .messages import ChatMessage, ConversationSummary

__all__ = ["ChatMessage", "ConversationSummary"]
