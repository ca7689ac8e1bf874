"""Conversation persistence."""

from turnstile.storage.history import ConversationStore, InMemoryConversationStore

__all__ = ["ConversationStore", "InMemoryConversationStore"]
