"""Anthropic Messages API provider over httpx.

Streams a single model call: yields ModelDelta objects for text and
reasoning increments as they arrive, ModelUsage whenever the API reports
token counts, and finishes with one ModelResponse carrying the assembled
content parts and usage.

No retries here; a failed call raises ModelInvocationError and the
orchestrator ends the turn.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncGenerator, AsyncIterator
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from turnstile.api.models import (
    ContentPart,
    Message,
    ModelDelta,
    ModelResponse,
    ModelUsage,
    ReasoningPart,
    RedactedReasoningPart,
    Role,
    TextPart,
    ToolCallPart,
    ToolResultPart,
)
from turnstile.config import Settings
from turnstile.exceptions import ModelInvocationError

logger = logging.getLogger(__name__)

# Anthropic API version header
_API_VERSION = "2023-06-01"


class ModelProvider(Protocol):
    """What the orchestrator needs from a language model."""

    def stream(
        self,
        system_prompt: str,
        messages: list[Message],
        tools: list[dict[str, Any]] | None = None,
    ) -> AsyncGenerator[ModelDelta | ModelUsage | ModelResponse, None]: ...


@dataclass
class StreamEvent:
    """A single event from the streaming API response."""

    # message_start, text_block_start, thinking_block_start, redacted_thinking,
    # tool_start, text_delta, thinking_delta, signature_delta, tool_input_delta,
    # block_stop, done, message_stop, error
    type: str
    text: str = ""
    tool_name: str = ""
    tool_id: str = ""
    stop_reason: str = ""
    block_index: int = 0
    input_tokens: int = 0
    output_tokens: int = 0


def parse_sse_event(data: dict[str, Any]) -> StreamEvent | None:
    """Parse an Anthropic SSE data payload into a StreamEvent.

    Ping keepalives and unknown event types return None.  stop_reason and
    output usage arrive in message_delta; input usage in message_start.
    In-stream errors arrive with HTTP 200 and type "error".
    """
    event_type = data.get("type")

    if event_type == "ping":
        return None

    if event_type == "error":
        error = data.get("error", {})
        return StreamEvent(
            type="error",
            text=f"{error.get('type', 'unknown')}: {error.get('message', '')}",
        )

    if event_type == "message_start":
        usage = data.get("message", {}).get("usage", {})
        return StreamEvent(
            type="message_start",
            input_tokens=(
                usage.get("input_tokens", 0)
                + usage.get("cache_creation_input_tokens", 0)
                + usage.get("cache_read_input_tokens", 0)
            ),
            output_tokens=usage.get("output_tokens", 0),
        )

    if event_type == "content_block_start":
        block = data.get("content_block", {})
        block_index = data.get("index", 0)
        block_type = block.get("type")
        if block_type == "tool_use":
            return StreamEvent(
                type="tool_start",
                tool_name=block.get("name", ""),
                tool_id=block.get("id", ""),
                block_index=block_index,
            )
        if block_type == "thinking":
            return StreamEvent(type="thinking_block_start", block_index=block_index)
        if block_type == "redacted_thinking":
            return StreamEvent(
                type="redacted_thinking", text=block.get("data", ""), block_index=block_index,
            )
        return StreamEvent(type="text_block_start", block_index=block_index)

    if event_type == "content_block_delta":
        delta = data.get("delta", {})
        block_index = data.get("index", 0)
        delta_type = delta.get("type")
        if delta_type == "text_delta":
            return StreamEvent(type="text_delta", text=delta.get("text", ""), block_index=block_index)
        if delta_type == "thinking_delta":
            return StreamEvent(
                type="thinking_delta", text=delta.get("thinking", ""), block_index=block_index,
            )
        if delta_type == "signature_delta":
            return StreamEvent(
                type="signature_delta", text=delta.get("signature", ""), block_index=block_index,
            )
        if delta_type == "input_json_delta":
            return StreamEvent(
                type="tool_input_delta",
                text=delta.get("partial_json", ""),
                block_index=block_index,
            )
        return None

    if event_type == "content_block_stop":
        return StreamEvent(type="block_stop", block_index=data.get("index", 0))

    if event_type == "message_delta":
        return StreamEvent(
            type="done",
            stop_reason=data.get("delta", {}).get("stop_reason", "") or "",
            output_tokens=data.get("usage", {}).get("output_tokens", 0),
        )

    if event_type == "message_stop":
        return StreamEvent(type="message_stop")

    return None


def _result_content(result: Any) -> str:
    if isinstance(result, str):
        return result
    return json.dumps(result, default=str)


def format_messages(messages: list[Message]) -> tuple[list[str], list[dict[str, Any]]]:
    """Convert messages to Anthropic format.

    Returns (system_texts, api_messages).  System messages are lifted out
    for the system prompt.  Tool messages become user messages with
    tool_result blocks; consecutive same-role messages are merged.  Tool
    results whose call does not appear earlier are skipped, as are
    messages left without any blocks.
    """
    system_texts: list[str] = []
    formatted: list[dict[str, Any]] = []
    seen_calls: set[str] = set()

    for message in messages:
        if message.role is Role.SYSTEM:
            if message.text.strip():
                system_texts.append(message.text)
            continue

        blocks: list[dict[str, Any]] = []
        for part in message.parts:
            if isinstance(part, TextPart):
                if part.text.strip():
                    blocks.append({"type": "text", "text": part.text})
            elif isinstance(part, ToolCallPart):
                seen_calls.add(part.id)
                blocks.append({
                    "type": "tool_use",
                    "id": part.id,
                    "name": part.name,
                    "input": part.args if isinstance(part.args, dict) else {},
                })
            elif isinstance(part, ToolResultPart):
                if part.tool_call_id not in seen_calls:
                    logger.debug("Skipping orphan tool result %s", part.tool_call_id)
                    continue
                blocks.append({
                    "type": "tool_result",
                    "tool_use_id": part.tool_call_id,
                    "content": _result_content(part.result),
                    "is_error": part.is_error,
                })
            elif isinstance(part, ReasoningPart):
                blocks.append({
                    "type": "thinking",
                    "thinking": part.text,
                    "signature": part.signature or "",
                })
            elif isinstance(part, RedactedReasoningPart):
                blocks.append({"type": "redacted_thinking", "data": part.data})

        if not blocks:
            continue

        role = "assistant" if message.role is Role.ASSISTANT else "user"
        if formatted and formatted[-1]["role"] == role:
            formatted[-1]["content"].extend(blocks)
        else:
            formatted.append({"role": role, "content": blocks})

    return system_texts, formatted


class AnthropicProvider:
    """Streams Anthropic Messages API calls with a shared httpx client."""

    def __init__(self, settings: Settings, http: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._http = http
        self._owns_http = http is None

    async def start(self) -> None:
        """Initialize the httpx client with auth and timeout settings."""
        if self._http is not None:
            return
        settings = self._settings

        headers: dict[str, str] = {
            "anthropic-version": _API_VERSION,
            "content-type": "application/json",
        }
        if settings.anthropic_auth_token:
            headers["authorization"] = f"Bearer {settings.anthropic_auth_token}"
        elif settings.anthropic_api_key:
            headers["x-api-key"] = settings.anthropic_api_key
        else:
            logger.warning(
                "Neither ANTHROPIC_API_KEY nor ANTHROPIC_AUTH_TOKEN is set -- "
                "model calls will fail"
            )

        timeout = httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )
        limits = httpx.Limits(max_connections=10, max_keepalive_connections=5)

        self._http = httpx.AsyncClient(
            base_url=settings.api_base_url,
            headers=headers,
            timeout=timeout,
            limits=limits,
        )
        self._owns_http = True
        logger.info(
            "httpx client initialized (auth: %s)",
            "Bearer token" if settings.anthropic_auth_token else "API key",
        )

    async def close(self) -> None:
        """Clean up the httpx client if we created it."""
        if self._http and self._owns_http:
            await self._http.aclose()
        self._http = None

    def build_payload(
        self,
        system_prompt: str,
        messages: list[Message],
        tools: list[dict[str, Any]] | None = None,
    ) -> dict[str, Any]:
        """Build a streaming Messages API request payload."""
        system_texts, api_messages = format_messages(messages)
        system = "\n\n".join([system_prompt, *system_texts]) if system_texts else system_prompt

        payload: dict[str, Any] = {
            "model": self._settings.model,
            "max_tokens": self._settings.max_tokens,
            "messages": api_messages,
            "stream": True,
        }
        if system:
            payload["system"] = [
                {"type": "text", "text": system, "cache_control": {"type": "ephemeral"}}
            ]
        if tools:
            payload["tools"] = tools
        if self._settings.reasoning_token_budget > 0:
            payload["thinking"] = {
                "type": "enabled",
                "budget_tokens": self._settings.reasoning_token_budget,
            }
        return payload

    async def stream(
        self,
        system_prompt: str,
        messages: list[Message],
        tools: list[dict[str, Any]] | None = None,
    ) -> AsyncGenerator[ModelDelta | ModelUsage | ModelResponse, None]:
        """Call the API with streaming; yield deltas and usage, then one ModelResponse."""
        if not self._http:
            raise RuntimeError("httpx client not initialized -- call start() first")

        payload = self.build_payload(system_prompt, messages, tools)
        try:
            async with self._http.stream("POST", "/v1/messages", json=payload) as response:
                if response.status_code != 200:
                    body = (await response.aread()).decode(errors="replace")
                    raise ModelInvocationError(
                        _describe_http_error(response.status_code, body),
                        status_code=response.status_code,
                    )
                async for item in _assemble(response.aiter_lines()):
                    yield item
        except httpx.TimeoutException as e:
            raise ModelInvocationError(f"API request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise ModelInvocationError(f"HTTP error: {e}") from e


def _describe_http_error(status_code: int, body: str) -> str:
    try:
        error = json.loads(body).get("error", {})
        return f"Anthropic API error ({status_code}): {error.get('type', 'unknown')} - {error.get('message', '')}"
    except (ValueError, AttributeError):
        return f"Anthropic API error ({status_code}): {body[:500]}"


async def _assemble(
    lines: AsyncIterator[str],
) -> AsyncGenerator[ModelDelta | ModelUsage | ModelResponse, None]:
    """Turn SSE lines into deltas, usage updates and a final ModelResponse.

    Blocks are accumulated by index and emitted in index order.  Tool
    input JSON that fails to parse is kept as the raw string.
    """
    blocks: dict[int, dict[str, Any]] = {}
    parts: dict[int, ContentPart] = {}
    stop_reason = ""
    input_tokens = 0
    output_tokens = 0
    finished = False

    async for line in lines:
        # Only data: lines carry payloads; event: lines are redundant
        if not line.startswith("data: "):
            continue
        try:
            data = json.loads(line[6:])
        except json.JSONDecodeError:
            logger.warning("Skipping unparseable SSE line: %s", line[:200])
            continue
        event = parse_sse_event(data)
        if event is None:
            continue

        if event.type == "error":
            raise ModelInvocationError(event.text)
        elif event.type == "message_start":
            input_tokens += event.input_tokens
            output_tokens += event.output_tokens
            yield ModelUsage(input_tokens, output_tokens)
        elif event.type == "text_block_start":
            blocks[event.block_index] = {"kind": "text", "text": []}
        elif event.type == "thinking_block_start":
            blocks[event.block_index] = {"kind": "thinking", "text": [], "signature": []}
        elif event.type == "redacted_thinking":
            parts[event.block_index] = RedactedReasoningPart(data=event.text)
        elif event.type == "tool_start":
            blocks[event.block_index] = {
                "kind": "tool_use", "id": event.tool_id, "name": event.tool_name, "text": [],
            }
        elif event.type == "text_delta":
            blocks.setdefault(event.block_index, {"kind": "text", "text": []})["text"].append(event.text)
            yield ModelDelta(kind="text", text=event.text)
        elif event.type == "thinking_delta":
            acc = blocks.setdefault(
                event.block_index, {"kind": "thinking", "text": [], "signature": []}
            )
            acc["text"].append(event.text)
            yield ModelDelta(kind="reasoning", text=event.text)
        elif event.type == "signature_delta":
            acc = blocks.get(event.block_index)
            if acc and acc["kind"] == "thinking":
                acc["signature"].append(event.text)
        elif event.type == "tool_input_delta":
            acc = blocks.get(event.block_index)
            if acc:
                acc["text"].append(event.text)
        elif event.type == "block_stop":
            acc = blocks.pop(event.block_index, None)
            if acc:
                parts[event.block_index] = _finish_block(acc)
        elif event.type == "done":
            stop_reason = event.stop_reason or stop_reason
            # message_delta usage is cumulative for the call
            output_tokens = max(output_tokens, event.output_tokens)
            yield ModelUsage(input_tokens, output_tokens)
            finished = True
        elif event.type == "message_stop":
            finished = True

    if not finished:
        raise ModelInvocationError("Stream ended before the message completed")

    for index in sorted(blocks):
        parts[index] = _finish_block(blocks[index])

    yield ModelResponse(
        parts=[parts[i] for i in sorted(parts)],
        stop_reason=stop_reason or "end_turn",
        input_tokens=input_tokens,
        output_tokens=output_tokens,
    )


def _finish_block(acc: dict[str, Any]) -> ContentPart:
    text = "".join(acc["text"])
    if acc["kind"] == "tool_use":
        args: dict[str, Any] | str
        try:
            args = json.loads(text) if text else {}
        except json.JSONDecodeError:
            args = text
        return ToolCallPart(id=acc["id"], name=acc["name"], args=args)
    if acc["kind"] == "thinking":
        return ReasoningPart(text=text, signature="".join(acc["signature"]) or None)
    return TextPart(text=text)
