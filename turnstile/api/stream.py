"""Stream emitter -- turns orchestrator events into client envelopes.

Envelope shapes, one JSON object per NDJSON line:

    {"type": "text", "content": ...}
    {"type": "reasoning", "content": ...}
    {"type": "tool_call", "id": ..., "name": ..., "args": ...}
    {"type": "tool_result", "id": ..., "name": ..., "result": ..., "is_error": ...}
    {"type": "error", "error": ...}
    {"type": "complete", "content": ..., "conversationId": ..., "usage": {...}}

Every turn ends with exactly one terminal envelope (complete or error).
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import aclosing
from typing import Any

from turnstile.api.models import TurnEvent

logger = logging.getLogger(__name__)

TERMINAL_TYPES = frozenset({"complete", "error"})
ENVELOPE_TYPES = frozenset({"text", "reasoning", "tool_call", "tool_result"}) | TERMINAL_TYPES


class StreamEmitter:
    """Maps TurnEvents to envelopes for one turn.

    Enforces the ordering rules: a tool_result only after its tool_call,
    no event emitted twice (by sequence number), nothing after a
    terminal envelope.
    """

    def __init__(self, conversation_id: str) -> None:
        self.conversation_id = conversation_id
        self.terminated = False
        self._seen_seq: set[int] = set()
        self._announced_calls: set[str] = set()

    def emit(self, event: TurnEvent) -> dict[str, Any] | None:
        """Return the envelope for an event, or None if it must not be sent."""
        if self.terminated:
            logger.debug("Dropping %s event after terminal envelope", event.type)
            return None
        if event.seq:
            if event.seq in self._seen_seq:
                logger.debug("Dropping duplicate event seq=%d", event.seq)
                return None
            self._seen_seq.add(event.seq)

        if event.type in ("text", "reasoning"):
            return {"type": event.type, "content": event.content}

        if event.type == "tool_call":
            self._announced_calls.add(event.tool_call_id)
            return {
                "type": "tool_call",
                "id": event.tool_call_id,
                "name": event.tool_name,
                "args": event.args,
            }

        if event.type == "tool_result":
            if event.tool_call_id not in self._announced_calls:
                logger.warning(
                    "Dropping tool_result for unannounced call %s (%s)",
                    event.tool_call_id, event.tool_name,
                )
                return None
            return {
                "type": "tool_result",
                "id": event.tool_call_id,
                "name": event.tool_name,
                "result": event.result,
                "is_error": event.is_error,
            }

        if event.type == "error":
            self.terminated = True
            return {"type": "error", "error": event.error or "Unknown error"}

        if event.type == "complete":
            self.terminated = True
            return {
                "type": "complete",
                "content": event.content,
                "conversationId": self.conversation_id,
                "usage": event.usage or {"input_tokens": 0, "output_tokens": 0},
            }

        logger.warning("Unknown turn event type %r, not emitted", event.type)
        return None

    def error(self, message: str) -> dict[str, Any] | None:
        """Terminal error envelope, unless the turn already terminated."""
        if self.terminated:
            return None
        self.terminated = True
        return {"type": "error", "error": message}

    async def stream(
        self, events: AsyncIterator[TurnEvent],
    ) -> AsyncGenerator[dict[str, Any], None]:
        """Emit envelopes for an event source, closing with exactly one terminal.

        Exceptions from the source become an error envelope; closing this
        generator closes the source.
        """
        try:
            async with aclosing(events) as source:
                async for event in source:
                    envelope = self.emit(event)
                    if envelope is not None:
                        yield envelope
                    if self.terminated:
                        break
        except Exception as e:
            logger.error("Turn stream for %s failed: %s", self.conversation_id, e)
            envelope = self.error(str(e) or type(e).__name__)
            if envelope is not None:
                yield envelope
            return

        if not self.terminated:
            logger.warning("Turn stream for %s ended without a terminal event", self.conversation_id)
            yield self.error("Turn ended without completing")

    @staticmethod
    def encode(envelope: dict[str, Any]) -> str:
        """One NDJSON line."""
        return json.dumps(envelope, default=str, ensure_ascii=False) + "\n"

    @staticmethod
    def decode(line: str) -> dict[str, Any] | None:
        """Parse one NDJSON line. Blank lines return None.

        Unknown envelope types are returned as-is so newer servers do not
        break older clients.  Raises ValueError on malformed lines.
        """
        line = line.strip()
        if not line:
            return None
        envelope = json.loads(line)
        if not isinstance(envelope, dict) or "type" not in envelope:
            raise ValueError(f"Not an envelope: {line[:100]}")
        if envelope["type"] not in ENVELOPE_TYPES:
            logger.debug("Unknown envelope type %r", envelope["type"])
        return envelope
