"""Shared fixtures: scripted model provider, word counter, registries.

No network: the provider replays scripted ModelResponses, and HTTP
clients use httpx transports.
"""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from turnstile.api.models import (
    Message,
    ModelDelta,
    ModelResponse,
    ModelUsage,
    TextPart,
    ToolCallPart,
)
from turnstile.api.tokens import FunctionTokenCounter
from turnstile.api.tools import ToolRegistry
from turnstile.config import Settings
from turnstile.storage.history import InMemoryConversationStore

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def text_response(text: str, input_tokens: int = 10, output_tokens: int = 5) -> ModelResponse:
    return ModelResponse(
        parts=[TextPart(text=text)],
        input_tokens=input_tokens,
        output_tokens=output_tokens,
    )


def tool_response(
    *calls: tuple[str, str, dict[str, Any] | str],
    text: str = "",
    input_tokens: int = 10,
    output_tokens: int = 5,
) -> ModelResponse:
    """ModelResponse with optional text followed by (id, name, args) tool calls."""
    parts: list[Any] = [TextPart(text=text)] if text else []
    parts.extend(ToolCallPart(id=cid, name=name, args=args) for cid, name, args in calls)
    return ModelResponse(
        parts=parts,
        stop_reason="tool_use",
        input_tokens=input_tokens,
        output_tokens=output_tokens,
    )


class ScriptedProvider:
    """ModelProvider that replays a script, one entry per model call.

    Entries are ModelResponses (streamed as the input usage, one text
    delta, then the response) or exceptions (raised).  Records the
    messages of every call.
    """

    def __init__(self, *script: ModelResponse | Exception, delay: float = 0.0) -> None:
        self.script = list(script)
        self.calls: list[list[Message]] = []
        self.tools_seen: list[list[dict[str, Any]] | None] = []
        self.delay = delay
        self.closed = 0

    async def stream(self, system_prompt, messages, tools=None):
        self.calls.append(list(messages))
        self.tools_seen.append(tools)
        if not self.script:
            raise AssertionError("ScriptedProvider ran out of responses")
        item = self.script.pop(0)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if isinstance(item, Exception):
                raise item
            yield ModelUsage(item.input_tokens, 0)
            if item.text:
                yield ModelDelta(kind="text", text=item.text)
            yield item
        finally:
            self.closed += 1


def words(text: str) -> int:
    return len(text.split())


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return Settings(
        ANTHROPIC_API_KEY="test-key",
        max_steps=5,
        max_tokens=1024,
        input_token_budget=1000,
        system_prompt="You are a test assistant.",
    )


@pytest.fixture
def word_counter() -> FunctionTokenCounter:
    return FunctionTokenCounter(words)


@pytest.fixture
def registry() -> ToolRegistry:
    """ToolRegistry with echo and add tools."""
    reg = ToolRegistry()

    async def echo(message: str = "default") -> str:
        return f"Echo: {message}"

    def add(a: float = 0, b: float = 0) -> float:
        return a + b

    reg.register("echo", echo, {
        "type": "object",
        "description": "Echo tool",
        "properties": {"message": {"type": "string"}},
        "required": ["message"],
    })
    reg.register("add", add, {
        "type": "object",
        "description": "Add two numbers",
        "properties": {"a": {"type": "number"}, "b": {"type": "number"}},
    })
    return reg


@pytest.fixture
def store() -> InMemoryConversationStore:
    return InMemoryConversationStore(max_conversations=10)
