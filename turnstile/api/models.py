"""Shared data models for the orchestration layer.

Messages and content parts are pydantic models so they round-trip
through the store and HTTP bodies unchanged.  Per-turn runtime state
(responses, tool results, the turn accumulator) are plain dataclasses.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Annotated, Any, Literal, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


def new_message_id() -> str:
    return f"msg_{uuid4().hex[:16]}"


class Role(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


# ---------------------------------------------------------------------------
# Content parts
# ---------------------------------------------------------------------------


class TextPart(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["text"] = "text"
    text: str


class ToolCallPart(BaseModel):
    """A tool invocation requested by the model.

    ``args`` is normally a dict.  When the model streamed arguments that
    are not valid JSON the raw string is kept so the invoker can report
    the parse error back to the model.
    """

    model_config = ConfigDict(frozen=True)

    type: Literal["tool_call"] = "tool_call"
    id: str
    name: str
    args: dict[str, Any] | str = Field(default_factory=dict)


class ToolResultPart(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["tool_result"] = "tool_result"
    tool_call_id: str
    name: str = ""
    result: Any = None
    is_error: bool = False


class ReasoningPart(BaseModel):
    """Model "thinking" content. Replayable only when signed."""

    model_config = ConfigDict(frozen=True)

    type: Literal["reasoning"] = "reasoning"
    text: str
    signature: str | None = None


class RedactedReasoningPart(BaseModel):
    """Provider placeholder for reasoning that can never carry a signature."""

    model_config = ConfigDict(frozen=True)

    type: Literal["redacted_reasoning"] = "redacted_reasoning"
    data: str = ""


ContentPart = Annotated[
    Union[TextPart, ToolCallPart, ToolResultPart, ReasoningPart, RedactedReasoningPart],
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


class Message(BaseModel):
    """A single message in a conversation."""

    role: Role
    parts: list[ContentPart] = Field(default_factory=list)
    id: str = Field(default_factory=new_message_id)

    @classmethod
    def user(cls, text: str, **kwargs: Any) -> Message:
        return cls(role=Role.USER, parts=[TextPart(text=text)], **kwargs)

    @classmethod
    def assistant(cls, text: str, **kwargs: Any) -> Message:
        return cls(role=Role.ASSISTANT, parts=[TextPart(text=text)], **kwargs)

    @classmethod
    def tool_result(cls, result: ToolCallResult) -> Message:
        return cls(role=Role.TOOL, parts=[result.to_part()])

    @property
    def text(self) -> str:
        return "".join(p.text for p in self.parts if isinstance(p, TextPart))

    @property
    def tool_calls(self) -> list[ToolCallPart]:
        return [p for p in self.parts if isinstance(p, ToolCallPart)]

    @property
    def tool_result_ids(self) -> list[str]:
        return [p.tool_call_id for p in self.parts if isinstance(p, ToolResultPart)]


@dataclass
class Conversation:
    """A persisted conversation with cumulative token counters."""

    conversation_id: str
    messages: list[Message] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0
    turn_count: int = 0
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ToolDescriptor:
    """Immutable tool declaration shared by every conversation."""

    name: str
    description: str
    parameter_schema: dict[str, Any]

    def to_api(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.parameter_schema,
        }


@dataclass
class ToolCallResult:
    """Outcome of one tool call: either a value or an error message."""

    tool_call_id: str
    name: str
    value: Any = None
    error: str | None = None
    duration_ms: int | None = None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def to_part(self) -> ToolResultPart:
        return ToolResultPart(
            tool_call_id=self.tool_call_id,
            name=self.name,
            result=self.error if self.is_error else self.value,
            is_error=self.is_error,
        )


# ---------------------------------------------------------------------------
# Model responses
# ---------------------------------------------------------------------------


@dataclass
class ModelDelta:
    """A streamed increment of model output."""

    kind: Literal["text", "reasoning"]
    text: str


@dataclass
class ModelUsage:
    """Token usage reported mid-stream, cumulative for the call so far."""

    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class ModelResponse:
    """One complete model reply."""

    parts: list[ContentPart]
    stop_reason: str = "end_turn"  # end_turn, max_tokens, tool_use, stop_sequence
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def tool_calls(self) -> list[ToolCallPart]:
        return [p for p in self.parts if isinstance(p, ToolCallPart)]

    @property
    def text(self) -> str:
        return "".join(p.text for p in self.parts if isinstance(p, TextPart))

    def to_message(self) -> Message:
        return Message(role=Role.ASSISTANT, parts=list(self.parts))


# ---------------------------------------------------------------------------
# Turn state
# ---------------------------------------------------------------------------


def concat_messages(current: list[Message], update: list[Message]) -> list[Message]:
    """Merge function for the messages channel."""
    return current + update


def add_tokens(current: int, update: int) -> int:
    """Merge function for the token channels."""
    return current + update


@dataclass
class TurnState:
    """Accumulator for one orchestrator run.

    ``messages`` starts as the sanitized context sent to the model;
    ``new_messages`` are those appended during this turn.
    """

    messages: list[Message] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0
    step_count: int = 0
    initial_count: int = 0

    @classmethod
    def start(cls, messages: list[Message]) -> TurnState:
        return cls(messages=list(messages), initial_count=len(messages))

    @property
    def new_messages(self) -> list[Message]:
        return self.messages[self.initial_count:]

    def add_messages(self, messages: list[Message]) -> None:
        self.messages = concat_messages(self.messages, messages)

    def add_usage(self, input_tokens: int, output_tokens: int) -> None:
        self.input_tokens = add_tokens(self.input_tokens, input_tokens)
        self.output_tokens = add_tokens(self.output_tokens, output_tokens)

    def increment_step(self) -> None:
        self.step_count += 1

    @property
    def usage(self) -> dict[str, int]:
        return {"input_tokens": self.input_tokens, "output_tokens": self.output_tokens}


@dataclass
class TurnEvent:
    """Internal orchestrator event, consumed by the StreamEmitter."""

    type: Literal["text", "reasoning", "tool_call", "tool_result", "error", "complete"]
    seq: int = 0
    content: str = ""
    tool_call_id: str = ""
    tool_name: str = ""
    args: Any = None
    result: Any = None
    is_error: bool = False
    error: str = ""
    usage: dict[str, int] | None = None
