"""turnstile entry point.

Initializes all components and starts the server:
  Settings -> Provider -> ToolRegistry -> Store -> Runner -> App -> Uvicorn

Components are created in a Starlette lifespan so they live on the
same event loop as uvicorn.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import httpx
import uvicorn
from starlette.applications import Starlette

from turnstile.api.provider import AnthropicProvider
from turnstile.api.runner import AgentRunner
from turnstile.api.tokens import HeuristicTokenCounter
from turnstile.api.tools import ToolRegistry
from turnstile.api.web_tools import register_builtin_tools
from turnstile.config import Settings
from turnstile.storage.history import InMemoryConversationStore

logger = logging.getLogger(__name__)


async def create_components(settings: Settings) -> dict[str, Any]:
    """Initialize all components in dependency order.

    1. AnthropicProvider - model client with API credentials
    2. web_http - separate client for tools, no credentials
    3. ToolRegistry - built-in tools
    4. InMemoryConversationStore
    5. AgentRunner
    """
    provider = AnthropicProvider(settings)
    await provider.start()

    web_http = httpx.AsyncClient(
        timeout=httpx.Timeout(connect=10, read=30, write=10, pool=10),
        limits=httpx.Limits(max_connections=5, max_keepalive_connections=2),
    )

    registry = ToolRegistry()
    register_builtin_tools(registry, settings, web_http)

    store = InMemoryConversationStore(settings.max_conversations)
    runner = AgentRunner(settings, provider, registry, store, counter=HeuristicTokenCounter())

    return {
        "provider": provider,
        "web_http": web_http,
        "registry": registry,
        "store": store,
        "runner": runner,
    }


async def shutdown_components(components: dict[str, Any]) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down turnstile...")

    web_http = components.get("web_http")
    if web_http:
        await web_http.aclose()

    provider = components.get("provider")
    if provider:
        await provider.close()

    logger.info("turnstile shutdown complete.")


def build_app(settings: Settings) -> Starlette:
    """Build the Starlette app; components are created by its lifespan."""
    components: dict[str, Any] = {}

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        components.update(await create_components(settings))
        # Store on app.state for access in tests
        app.state.components = components
        logger.info(
            "turnstile started: model=%s, max_steps=%d, input_token_budget=%d, tools=%d",
            settings.model,
            settings.max_steps,
            settings.input_token_budget,
            len(components["registry"]),
        )
        yield
        await shutdown_components(components)

    from turnstile.api.rest import create_app

    return create_app(
        runner=_lazy_component(components, "runner"),
        registry=_lazy_component(components, "registry"),
        store=_lazy_component(components, "store"),
        settings=settings,
        lifespan=lifespan,
    )


class _LazyProxy:
    """Forwards attribute access to a component created later in lifespan.

    create_app() needs its collaborators when routes are built, before
    the lifespan has run.
    """

    def __init__(self, components: dict[str, Any], key: str) -> None:
        object.__setattr__(self, "_components", components)
        object.__setattr__(self, "_key", key)

    def _resolve(self) -> Any:
        components = object.__getattribute__(self, "_components")
        key = object.__getattribute__(self, "_key")
        obj = components.get(key)
        if obj is None:
            raise RuntimeError(f"Component '{key}' not yet initialized -- lifespan hasn't started")
        return obj

    def __getattr__(self, name: str) -> Any:
        return getattr(self._resolve(), name)

    def __len__(self) -> int:
        return len(self._resolve())


def _lazy_component(components: dict[str, Any], key: str) -> Any:
    return _LazyProxy(components, key)


def main() -> None:
    """Entry point -- parse settings, build app, run server."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Starting turnstile on %s:%d", settings.host, settings.port)
    logger.info("Model: %s", settings.model)
    logger.info("Tool call check: %s", settings.tool_call_check)

    if not settings.anthropic_api_key and not settings.anthropic_auth_token:
        logger.warning(
            "Neither ANTHROPIC_API_KEY nor ANTHROPIC_AUTH_TOKEN is set -- "
            "/chat endpoints will fail"
        )

    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
