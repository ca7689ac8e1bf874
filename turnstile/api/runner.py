"""Agent runner -- executes conversational turns.

TurnOrchestrator is the model/tool loop for one turn, an explicit
state machine:

    AGENT --(response has tool calls)--> TOOLS --> AGENT
    AGENT --(plain answer / step cap / model error)--> END

AgentRunner wires a turn to its collaborators: loads history from the
store, truncates and sanitizes it, runs the orchestrator, persists the
result, and refuses a second concurrent turn on the same conversation.
"""

from __future__ import annotations

import json
import logging
from collections import OrderedDict
from collections.abc import AsyncGenerator
from contextlib import aclosing
from enum import StrEnum
from typing import Any

from turnstile.api.models import (
    Message,
    ModelDelta,
    ModelResponse,
    ModelUsage,
    ReasoningPart,
    Role,
    TextPart,
    ToolCallPart,
    ToolResultPart,
    TurnEvent,
    TurnState,
)
from turnstile.api.provider import ModelProvider
from turnstile.api.sanitizers import ToolCallCheckMode, sanitize_messages
from turnstile.api.tokens import HeuristicTokenCounter, TokenCounter
from turnstile.api.tools import ToolRegistry
from turnstile.api.truncation import HistoryTruncator
from turnstile.config import Settings
from turnstile.exceptions import ConversationBusyError
from turnstile.storage.history import ConversationStore

logger = logging.getLogger(__name__)

STEP_LIMIT_NOTICE = (
    "[Stopped: reached the maximum of {max_steps} tool steps for this turn. "
    "Ask me to continue if more work is needed.]"
)


class TurnPhase(StrEnum):
    AGENT = "agent"
    TOOLS = "tools"
    END = "end"


class TurnOrchestrator:
    """Runs one turn of the model/tool loop and yields TurnEvents.

    The state (messages, token usage, step count) lives on ``self.state``
    and stays readable after the iterator finishes, fails or is closed,
    so callers can persist partial turns.
    """

    def __init__(
        self,
        provider: ModelProvider,
        registry: ToolRegistry,
        system_prompt: str,
        messages: list[Message],
        max_steps: int = 25,
        counter: TokenCounter | None = None,
    ) -> None:
        self._provider = provider
        self._registry = registry
        self._system_prompt = system_prompt
        self._max_steps = max_steps
        self._counter = counter
        self.state = TurnState.start(messages)
        self.phase = TurnPhase.AGENT
        self.tools_visits = 0
        self.final_text = ""
        self.error: str | None = None
        self._pending: list[ToolCallPart] = []
        self._seq = 0

    def _event(self, type_: str, **fields: Any) -> TurnEvent:
        self._seq += 1
        return TurnEvent(type=type_, seq=self._seq, **fields)

    async def run(self) -> AsyncGenerator[TurnEvent, None]:
        """Drive the state machine to END, yielding events as they happen."""
        if self.phase is not TurnPhase.AGENT:
            raise RuntimeError("TurnOrchestrator.run() can only be called once")

        while self.phase is not TurnPhase.END:
            step = self._agent_step() if self.phase is TurnPhase.AGENT else self._tools_step()
            async with aclosing(step) as events:
                async for event in events:
                    yield event

        if self.error is None:
            yield self._event("complete", content=self.final_text, usage=self.state.usage)

    async def _agent_step(self) -> AsyncGenerator[TurnEvent, None]:
        tools = self._registry.tool_definitions()
        response: ModelResponse | None = None
        reported = ModelUsage()
        try:
            try:
                stream = self._provider.stream(self._system_prompt, self.state.messages, tools or None)
                async with aclosing(stream) as items:
                    async for item in items:
                        if isinstance(item, ModelDelta):
                            yield self._event(item.kind, content=item.text)
                        elif isinstance(item, ModelUsage):
                            reported = item
                        elif isinstance(item, ModelResponse):
                            response = item
                if response is None:
                    raise RuntimeError("Model stream ended without a response")
            except Exception as e:
                logger.error("Model invocation failed at step %d: %s", self.state.step_count, e)
                self.error = str(e) or type(e).__name__
                self.phase = TurnPhase.END
                yield self._event("error", error=self.error)
                return
        finally:
            # Usage counts even when the call fails or the turn is closed mid-stream
            usage = response or reported
            self.state.add_usage(usage.input_tokens, usage.output_tokens)

        self._calibrate(response.input_tokens, tools)

        calls = response.tool_calls
        if not calls:
            self.state.add_messages([response.to_message()])
            self.final_text = response.text
            self.phase = TurnPhase.END
            return

        if self.state.step_count >= self._max_steps:
            logger.warning(
                "Tool loop reached max_steps=%d; dropping %d pending tool call(s)",
                self._max_steps, len(calls),
            )
            notice = STEP_LIMIT_NOTICE.format(max_steps=self._max_steps)
            self.final_text = f"{response.text}\n\n{notice}" if response.text else notice
            parts = [p for p in response.parts if not isinstance(p, ToolCallPart)]
            parts.append(TextPart(text=notice))
            self.state.add_messages([Message(role=Role.ASSISTANT, parts=parts)])
            self.phase = TurnPhase.END
            return

        self.state.add_messages([response.to_message()])
        self.state.increment_step()
        self._pending = calls
        for call in calls:
            yield self._event("tool_call", tool_call_id=call.id, tool_name=call.name, args=call.args)
        self.phase = TurnPhase.TOOLS

    async def _tools_step(self) -> AsyncGenerator[TurnEvent, None]:
        self.tools_visits += 1
        calls, self._pending = self._pending, []
        results = await self._registry.invoke_all(calls)
        self.state.add_messages([Message.tool_result(r) for r in results])
        for result in results:
            yield self._event(
                "tool_result",
                tool_call_id=result.tool_call_id,
                tool_name=result.name,
                result=result.error if result.is_error else result.value,
                is_error=result.is_error,
            )
        self.phase = TurnPhase.AGENT

    def _calibrate(self, input_tokens: int, tools: list[dict[str, Any]]) -> None:
        if not isinstance(self._counter, HeuristicTokenCounter) or input_tokens <= 0:
            return
        input_chars = len(self._system_prompt) + sum(_content_chars(m) for m in self.state.messages)
        if tools:
            input_chars += len(json.dumps(tools))
        self._counter.calibrate(input_chars, input_tokens)


def _content_chars(message: Message) -> int:
    """Characters of everything a message sends to the model."""
    total = 0
    for part in message.parts:
        if isinstance(part, (TextPart, ReasoningPart)):
            total += len(part.text)
        elif isinstance(part, ToolCallPart):
            total += len(part.name) + len(part.args if isinstance(part.args, str) else json.dumps(part.args, default=str))
        elif isinstance(part, ToolResultPart):
            result = part.result if isinstance(part.result, str) else json.dumps(part.result, default=str)
            total += len(result)
    return total


class AgentRunner:
    """Runs conversational turns against a store, provider and tool registry.

    A HeuristicTokenCounter calibrates itself, so each conversation gets
    its own copy seeded from the configured one; any other counter is
    stateless and shared.
    """

    def __init__(
        self,
        settings: Settings,
        provider: ModelProvider,
        registry: ToolRegistry,
        store: ConversationStore,
        counter: TokenCounter | None = None,
    ) -> None:
        self._settings = settings
        self._provider = provider
        self._registry = registry
        self._store = store
        self._counter = counter or HeuristicTokenCounter()
        self._counters: OrderedDict[str, HeuristicTokenCounter] = OrderedDict()
        self._active: set[str] = set()

    @property
    def active_conversations(self) -> frozenset[str]:
        return frozenset(self._active)

    def is_busy(self, conversation_id: str) -> bool:
        return conversation_id in self._active

    def counter_for(self, conversation_id: str) -> TokenCounter:
        """Token counter used for one conversation's truncation and calibration."""
        if not isinstance(self._counter, HeuristicTokenCounter):
            return self._counter
        counter = self._counters.get(conversation_id)
        if counter is not None:
            self._counters.move_to_end(conversation_id)
            return counter
        counter = HeuristicTokenCounter(self._counter.ratio)
        self._counters[conversation_id] = counter
        while len(self._counters) > self._settings.max_conversations:
            self._counters.popitem(last=False)
        return counter

    def forget(self, conversation_id: str) -> None:
        """Drop per-conversation state kept outside the store."""
        self._counters.pop(conversation_id, None)

    async def prepare_context(
        self,
        conversation_id: str,
        user_message: Message,
    ) -> tuple[list[Message], list[Message]]:
        """Return (full_history, model_context) for a new user message.

        The persisted history is truncated against the budget left after
        the new message, then the new message is appended and the result
        sanitized.
        """
        settings = self._settings
        truncator = HistoryTruncator(self.counter_for(conversation_id))
        history = await self._store.load_history(conversation_id)
        budget = max(0, settings.input_token_budget - truncator.message_cost(user_message))
        selected = truncator.truncate(
            settings.system_prompt,
            history,
            budget,
            settings.reasoning_token_budget,
        )
        context = sanitize_messages(
            selected + [user_message], ToolCallCheckMode(settings.tool_call_check),
        )
        return history, context

    async def stream_turn(
        self,
        conversation_id: str,
        user_message: str | Message,
    ) -> AsyncGenerator[TurnEvent, None]:
        """Run one turn, yielding TurnEvents.

        Raises ConversationBusyError before yielding anything if the
        conversation already has a turn in flight.  The conversation is
        saved when the turn ends, fails or is cancelled.
        """
        if conversation_id in self._active:
            logger.warning("Rejecting concurrent turn for conversation %s", conversation_id)
            raise ConversationBusyError(conversation_id)
        self._active.add(conversation_id)

        try:
            if isinstance(user_message, str):
                user_message = Message.user(user_message)
            history, context = await self.prepare_context(conversation_id, user_message)

            orchestrator = TurnOrchestrator(
                provider=self._provider,
                registry=self._registry,
                system_prompt=self._settings.system_prompt,
                messages=context,
                max_steps=self._settings.max_steps,
                counter=self.counter_for(conversation_id),
            )
            try:
                async with aclosing(orchestrator.run()) as events:
                    async for event in events:
                        yield event
            finally:
                state = orchestrator.state
                await self._store.save(
                    conversation_id,
                    history + [user_message] + state.new_messages,
                    state.input_tokens,
                    state.output_tokens,
                )
                logger.info(
                    "Turn finished for %s: phase=%s steps=%d tokens=%d/%d error=%s",
                    conversation_id,
                    orchestrator.phase.value,
                    state.step_count,
                    state.input_tokens,
                    state.output_tokens,
                    orchestrator.error,
                )
        finally:
            self._active.discard(conversation_id)
