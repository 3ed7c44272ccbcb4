"""Conjure engine entry point.

Initializes all components and starts the server:
  Settings -> Database -> Stores -> EventBus -> Tools -> Model -> Graph -> RunManager -> App -> Uvicorn

Uses Starlette lifespan to manage component lifecycle on the same
event loop as uvicorn.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from starlette.applications import Starlette

from conjure.agent.builtin_tools import register_builtin_tools
from conjure.agent.graph import ExecutionGraph
from conjure.agent.model import ChatModel, create_chat_model
from conjure.agent.runner import RunManager
from conjure.agent.tools import ToolDispatcher, ToolInvoker
from conjure.config import Settings
from conjure.events import EventBus
from conjure.storage.artifacts import ArtifactStore
from conjure.storage.checkpoints import CheckpointStore
from conjure.storage.database import Database

logger = logging.getLogger(__name__)


async def create_components(
    settings: Settings,
    chat_model: ChatModel | None = None,
    dispatcher: ToolDispatcher | None = None,
) -> dict[str, Any]:
    """Initialize all components in dependency order.

    Returns dict with all components for lifespan storage.

    1. Database - engine + tables
    2. CheckpointStore / ArtifactStore
    3. EventBus - started before any run can emit
    4. ToolDispatcher - built-in tools (plus any caller-registered ones)
    5. ChatModel - provider client from settings unless injected
    6. ExecutionGraph + RunManager
    """
    database = Database(settings)
    await database.connect()

    checkpoints = CheckpointStore(database)
    artifacts = ArtifactStore(database)

    bus = EventBus(max_queue=settings.event_queue_size)
    await bus.start()

    if dispatcher is None:
        dispatcher = ToolDispatcher()
    register_builtin_tools(dispatcher, artifacts)

    owned_model = None
    if chat_model is None:
        owned_model = create_chat_model(settings)
        await owned_model.start()
        chat_model = owned_model

    invoker = ToolInvoker(dispatcher, artifacts)
    graph = ExecutionGraph(chat_model, invoker, checkpoints, artifacts)
    run_manager = RunManager(graph, checkpoints, artifacts, bus, settings)

    return {
        "database": database,
        "checkpoints": checkpoints,
        "artifacts": artifacts,
        "bus": bus,
        "dispatcher": dispatcher,
        "chat_model": chat_model,
        "owned_model": owned_model,
        "graph": graph,
        "run_manager": run_manager,
    }


async def shutdown_components(components: dict[str, Any]) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down Conjure...")

    # Runs first so their last events still reach the bus
    run_manager = components.get("run_manager")
    if run_manager:
        await run_manager.shutdown()

    bus = components.get("bus")
    if bus:
        await bus.stop()

    owned_model = components.get("owned_model")
    if owned_model:
        await owned_model.close()

    database = components.get("database")
    if database:
        await database.disconnect()

    logger.info("Conjure shutdown complete.")


def build_app(settings: Settings, chat_model: ChatModel | None = None) -> Starlette:
    """Build the Starlette app; components are created in its lifespan."""
    components: dict[str, Any] = {}

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        components.update(await create_components(settings, chat_model=chat_model))

        # Store on app.state for access in tests
        app.state.components = components

        logger.info(
            "Conjure started: provider=%s, recursion_limit=%d",
            settings.provider,
            settings.recursion_limit,
        )
        yield

        await shutdown_components(components)

    from conjure.api.rest import create_app

    return create_app(
        run_manager=_lazy_component(components, "run_manager"),
        checkpoints=_lazy_component(components, "checkpoints"),
        artifacts=_lazy_component(components, "artifacts"),
        bus=_lazy_component(components, "bus"),
        database=_lazy_component(components, "database"),
        namespace=settings.checkpoint_namespace,
        lifespan=lifespan,
    )


class _LazyProxy:
    """Proxy that defers attribute access to a dict-backed component.

    Allows create_app() to receive component references before lifespan
    has initialized them.
    """

    def __init__(self, components: dict, key: str) -> None:
        object.__setattr__(self, "_components", components)
        object.__setattr__(self, "_key", key)

    def _resolve(self):
        components = object.__getattribute__(self, "_components")
        key = object.__getattribute__(self, "_key")
        obj = components.get(key)
        if obj is None:
            raise RuntimeError(f"Component '{key}' not yet initialized: lifespan hasn't started")
        return obj

    def __getattr__(self, name):
        return getattr(self._resolve(), name)


def _lazy_component(components: dict, key: str) -> Any:
    return _LazyProxy(components, key)


def main() -> None:
    """Entry point: parse settings, build app, run server."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Starting Conjure on %s:%d", settings.host, settings.port)
    logger.info("Provider: %s (model: %s)", settings.provider, settings.model or "default")
    logger.info("Database: %s", settings.database_url.split("@")[-1])

    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
