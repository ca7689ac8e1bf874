"""Tool registry and invoker.

ToolRegistry maps tool names to handlers plus their immutable
ToolDescriptor.  invoke() turns every failure mode (unknown tool,
malformed arguments, handler exception) into an error ToolCallResult
so the orchestrator can feed it back to the model instead of aborting.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from turnstile.api.models import ToolCallPart, ToolCallResult, ToolDescriptor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RegisteredTool:
    descriptor: ToolDescriptor
    handler: Callable[..., Any]


def _parse_args(args: dict[str, Any] | str) -> dict[str, Any]:
    """Return call arguments as a dict or raise ValueError describing why not."""
    if isinstance(args, str):
        if not args.strip():
            return {}
        try:
            args = json.loads(args)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON arguments: {e}") from e
    if not isinstance(args, dict):
        raise ValueError(f"Arguments must be a JSON object, got {type(args).__name__}")
    return args


def _unwrap_mcp(result: Any) -> Any:
    """Flatten an MCP-format response to its text; pass other values through."""
    if isinstance(result, dict) and isinstance(result.get("content"), list):
        texts = [
            block.get("text", "")
            for block in result["content"]
            if isinstance(block, dict) and block.get("type") == "text"
        ]
        if texts:
            return "\n".join(texts)
    return result


class ToolRegistry:
    """Registers tool handlers and dispatches tool calls from the model.

    Handlers are sync or async callables taking keyword arguments.  They
    return any JSON-serializable value, or an MCP-format response
    {"content": [{"type": "text", "text": "..."}]} which is flattened
    to its text.
    """

    def __init__(self) -> None:
        self._tools: dict[str, RegisteredTool] = {}

    def register(
        self,
        name: str,
        handler: Callable[..., Any],
        schema: dict[str, Any],
        description: str | None = None,
    ) -> ToolDescriptor:
        """Register a tool handler with its JSON schema."""
        if name in self._tools:
            logger.warning("Tool %s registered twice, replacing previous handler", name)
        descriptor = ToolDescriptor(
            name=name,
            description=description if description is not None else schema.get("description", ""),
            parameter_schema=schema,
        )
        self._tools[name] = RegisteredTool(descriptor=descriptor, handler=handler)
        return descriptor

    def resolve(self, name: str) -> RegisteredTool | None:
        return self._tools.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def descriptors(self) -> list[ToolDescriptor]:
        return [t.descriptor for t in self._tools.values()]

    def tool_definitions(self) -> list[dict[str, Any]]:
        """Return all tool definitions in Anthropic API format."""
        return [t.descriptor.to_api() for t in self._tools.values()]

    async def invoke(self, call: ToolCallPart) -> ToolCallResult:
        """Execute one tool call. Never raises except on cancellation."""
        tool = self._tools.get(call.name)
        if tool is None:
            logger.warning("Model called unknown tool %s (call %s)", call.name, call.id)
            return ToolCallResult(call.id, call.name, error=f"Unknown tool: {call.name}")

        try:
            args = _parse_args(call.args)
        except ValueError as e:
            logger.warning("Malformed arguments for %s (call %s): %s", call.name, call.id, e)
            return ToolCallResult(call.id, call.name, error=str(e))

        start_time = time.monotonic()
        try:
            result = tool.handler(**args)
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            logger.exception("Tool dispatch error for %s", call.name)
            return ToolCallResult(
                call.id, call.name,
                error=f"Tool error: {e}",
                duration_ms=int((time.monotonic() - start_time) * 1000),
            )

        return ToolCallResult(
            call.id, call.name,
            value=_unwrap_mcp(result),
            duration_ms=int((time.monotonic() - start_time) * 1000),
        )

    async def invoke_all(self, calls: list[ToolCallPart]) -> list[ToolCallResult]:
        """Run calls concurrently; results come back in declaration order."""
        if not calls:
            return []
        return list(await asyncio.gather(*(self.invoke(c) for c in calls)))
