"""REST API for turnstile.

Endpoints:
  POST   /chat/stream                - Run a turn, stream NDJSON envelopes
  POST   /chat                       - Run a turn, return the final answer
  GET    /conversations              - Conversation summaries
  GET    /conversations/{id}         - Stored messages and token totals
  DELETE /conversations/{id}         - Forget a conversation
  GET    /tools                      - Registered tool descriptors
  GET    /health                     - Health check
"""

from __future__ import annotations

import logging
from typing import Any
from uuid import uuid4

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response, StreamingResponse
from starlette.routing import Route

from turnstile.api.runner import AgentRunner
from turnstile.api.stream import StreamEmitter
from turnstile.api.tools import ToolRegistry
from turnstile.config import Settings
from turnstile.storage.history import ConversationStore

logger = logging.getLogger(__name__)


async def _parse_chat_body(request: Request) -> tuple[str, str] | JSONResponse:
    """Return (message, conversation_id) or an error response."""
    try:
        body = await request.json()
    except Exception:
        return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
    if not isinstance(body, dict):
        return JSONResponse({"error": "Body must be a JSON object"}, status_code=400)

    message = body.get("message")
    if not isinstance(message, str) or not message.strip():
        return JSONResponse({"error": "Missing required field: message"}, status_code=400)

    conversation_id = body.get("conversation_id") or str(uuid4())
    return message, str(conversation_id)


def create_app(
    runner: AgentRunner,
    registry: ToolRegistry,
    store: ConversationStore,
    settings: Settings,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""

    def _busy(conversation_id: str) -> JSONResponse:
        return JSONResponse(
            {
                "error": f"Conversation {conversation_id} already has a turn in progress",
                "conversation_id": conversation_id,
            },
            status_code=409,
        )

    async def chat_stream(request: Request) -> Response:
        """POST /chat/stream - NDJSON streaming chat."""
        parsed = await _parse_chat_body(request)
        if isinstance(parsed, JSONResponse):
            return parsed
        message, conversation_id = parsed

        if runner.is_busy(conversation_id):
            return _busy(conversation_id)

        emitter = StreamEmitter(conversation_id)

        async def ndjson_lines():
            # Closing this generator on client disconnect closes the turn
            async for envelope in emitter.stream(runner.stream_turn(conversation_id, message)):
                yield emitter.encode(envelope)

        return StreamingResponse(
            ndjson_lines(),
            media_type="application/x-ndjson",
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
                "X-Conversation-Id": conversation_id,
            },
        )

    async def chat(request: Request) -> JSONResponse:
        """POST /chat - Run a turn and return the final answer."""
        parsed = await _parse_chat_body(request)
        if isinstance(parsed, JSONResponse):
            return parsed
        message, conversation_id = parsed

        if runner.is_busy(conversation_id):
            return _busy(conversation_id)

        emitter = StreamEmitter(conversation_id)
        tool_calls: dict[str, dict[str, Any]] = {}
        terminal: dict[str, Any] = {}
        async for envelope in emitter.stream(runner.stream_turn(conversation_id, message)):
            kind = envelope["type"]
            if kind == "tool_call":
                tool_calls[envelope["id"]] = {
                    "id": envelope["id"],
                    "name": envelope["name"],
                    "args": envelope["args"],
                }
            elif kind == "tool_result":
                tool_calls[envelope["id"]].update(
                    result=envelope["result"], is_error=envelope["is_error"],
                )
            elif kind in ("complete", "error"):
                terminal = envelope

        if terminal.get("type") != "complete":
            error = terminal.get("error", "Turn did not complete")
            logger.error("Chat error for %s: %s", conversation_id, error)
            return JSONResponse(
                {"error": error, "conversation_id": conversation_id}, status_code=502,
            )

        return JSONResponse({
            "response": terminal["content"],
            "conversation_id": conversation_id,
            "usage": terminal["usage"],
            "tool_calls": list(tool_calls.values()),
        })

    async def list_conversations(request: Request) -> JSONResponse:
        """GET /conversations - Summaries, most recently used first."""
        conversations = await store.list_conversations()
        return JSONResponse({
            "conversations": [
                {
                    "conversation_id": c.conversation_id,
                    "message_count": len(c.messages),
                    "usage": {"input_tokens": c.input_tokens, "output_tokens": c.output_tokens},
                    "turn_count": c.turn_count,
                    "updated_at": c.updated_at.isoformat(),
                }
                for c in conversations
            ],
            "total": len(conversations),
        })

    async def get_conversation(request: Request) -> JSONResponse:
        """GET /conversations/{id} - Stored messages and token totals."""
        conversation_id = request.path_params["id"]
        conversation = await store.get(conversation_id)
        if conversation is None:
            return JSONResponse({"error": "Conversation not found"}, status_code=404)
        return JSONResponse({
            "conversation_id": conversation.conversation_id,
            "messages": [m.model_dump(mode="json") for m in conversation.messages],
            "usage": {
                "input_tokens": conversation.input_tokens,
                "output_tokens": conversation.output_tokens,
            },
            "turn_count": conversation.turn_count,
            "updated_at": conversation.updated_at.isoformat(),
        })

    async def delete_conversation(request: Request) -> JSONResponse:
        """DELETE /conversations/{id} - Forget a conversation."""
        conversation_id = request.path_params["id"]
        if runner.is_busy(conversation_id):
            return _busy(conversation_id)
        if not await store.delete(conversation_id):
            return JSONResponse({"error": "Conversation not found"}, status_code=404)
        runner.forget(conversation_id)
        return JSONResponse({"status": "deleted", "conversation_id": conversation_id})

    async def list_tools(request: Request) -> JSONResponse:
        """GET /tools - Registered tool descriptors."""
        return JSONResponse({
            "tools": [
                {
                    "name": d.name,
                    "description": d.description,
                    "parameter_schema": d.parameter_schema,
                }
                for d in registry.descriptors()
            ],
        })

    async def health(request: Request) -> JSONResponse:
        """GET /health - Health check."""
        return JSONResponse({
            "status": "healthy",
            "model": settings.model,
            "active_turns": len(runner.active_conversations),
        })

    routes = [
        Route("/chat", chat, methods=["POST"]),
        Route("/chat/stream", chat_stream, methods=["POST"]),
        Route("/conversations", list_conversations, methods=["GET"]),
        Route("/conversations/{id}", get_conversation, methods=["GET"]),
        Route("/conversations/{id}", delete_conversation, methods=["DELETE"]),
        Route("/tools", list_tools),
        Route("/health", health),
    ]

    kwargs: dict[str, Any] = {"routes": routes}
    if lifespan is not None:
        kwargs["lifespan"] = lifespan
    return Starlette(**kwargs)
