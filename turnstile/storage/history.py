"""Conversation persistence.

ConversationStore is the narrow interface the runner needs.  The
in-memory implementation keeps the most recently used conversations in
an OrderedDict and evicts the least recently used one when full.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from datetime import UTC, datetime
from typing import Protocol

from turnstile.api.models import Conversation, Message

logger = logging.getLogger(__name__)


class ConversationStore(Protocol):
    async def load_history(self, conversation_id: str) -> list[Message]: ...

    async def get(self, conversation_id: str) -> Conversation | None: ...

    async def list_conversations(self) -> list[Conversation]: ...

    async def save(
        self,
        conversation_id: str,
        messages: list[Message],
        input_tokens: int = 0,
        output_tokens: int = 0,
    ) -> Conversation: ...

    async def delete(self, conversation_id: str) -> bool: ...


class InMemoryConversationStore:
    """Process-local store with LRU eviction. Lost on restart."""

    def __init__(self, max_conversations: int = 100) -> None:
        if max_conversations < 1:
            raise ValueError("max_conversations must be >= 1")
        self._max_conversations = max_conversations
        self._conversations: OrderedDict[str, Conversation] = OrderedDict()

    def __len__(self) -> int:
        return len(self._conversations)

    def __contains__(self, conversation_id: object) -> bool:
        return conversation_id in self._conversations

    async def load_history(self, conversation_id: str) -> list[Message]:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            return []
        self._conversations.move_to_end(conversation_id)
        return list(conversation.messages)

    async def get(self, conversation_id: str) -> Conversation | None:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            return None
        return _copy(conversation)

    async def list_conversations(self) -> list[Conversation]:
        """All stored conversations, most recently used first."""
        return [_copy(c) for c in reversed(self._conversations.values())]

    async def save(
        self,
        conversation_id: str,
        messages: list[Message],
        input_tokens: int = 0,
        output_tokens: int = 0,
    ) -> Conversation:
        """Replace the message list and add to the running token totals."""
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            # Evict oldest if at capacity
            while len(self._conversations) >= self._max_conversations:
                evicted, _ = self._conversations.popitem(last=False)
                logger.info("Evicted conversation %s (LRU)", evicted)
            conversation = Conversation(conversation_id=conversation_id)
            self._conversations[conversation_id] = conversation
        else:
            self._conversations.move_to_end(conversation_id)

        conversation.messages = list(messages)
        conversation.input_tokens += input_tokens
        conversation.output_tokens += output_tokens
        conversation.turn_count += 1
        conversation.updated_at = datetime.now(UTC)
        logger.debug(
            "Saved conversation %s: %d messages, turn %d",
            conversation_id, len(messages), conversation.turn_count,
        )
        return conversation

    async def delete(self, conversation_id: str) -> bool:
        removed = self._conversations.pop(conversation_id, None)
        if removed is not None:
            logger.info("Deleted conversation %s", conversation_id)
        return removed is not None


def _copy(conversation: Conversation) -> Conversation:
    return Conversation(
        conversation_id=conversation.conversation_id,
        messages=list(conversation.messages),
        input_tokens=conversation.input_tokens,
        output_tokens=conversation.output_tokens,
        turn_count=conversation.turn_count,
        updated_at=conversation.updated_at,
    )
