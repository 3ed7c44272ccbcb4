"""REST API for the Conjure engine.

Endpoints:
  POST   /threads/{thread_id}/runs              - Start a run (replaces any active one)
  GET    /threads/{thread_id}/runs              - Is a run active?
  DELETE /threads/{thread_id}/runs              - Stop the active run
  GET    /threads/{thread_id}/events            - SSE stream of run events
  GET    /threads/{thread_id}/checkpoints       - Checkpoint history (newest first)
  GET    /threads/{thread_id}/checkpoints/latest - Latest checkpoint with pending writes
  GET    /threads/{thread_id}/artifacts         - Artifacts of the thread
  DELETE /threads/{thread_id}                   - Stop runs, delete checkpoints and artifacts
  GET    /health                                - Health check (DB connectivity)
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from typing import Any

from pydantic import ValidationError
from sqlalchemy import text
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, StreamingResponse
from starlette.routing import Route

from conjure.agent.runner import RunManager
from conjure.events import WILDCARD, Event, EventBus
from conjure.storage.artifacts import ArtifactStore
from conjure.storage.checkpoints import CheckpointStore
from conjure.storage.database import Database

logger = logging.getLogger(__name__)

# Events after which a run produces nothing more
TERMINAL_EVENTS = frozenset({"done", "error"})

KEEPALIVE_SECONDS = 15.0


def format_sse(event: Event) -> str:
    return f"event: {event.type}\ndata: {json.dumps(event.to_dict())}\n\n"


class ThreadEventStream:
    """Buffers bus events for one thread from the moment it is created.

    Iterating yields SSE frames until a terminal event, with a comment line
    as keepalive when the thread is quiet.
    """

    def __init__(self, bus: EventBus, thread_id: str, keepalive: float = KEEPALIVE_SECONDS) -> None:
        self._bus = bus
        self._thread_id = thread_id
        self._keepalive = keepalive
        self._queue: asyncio.Queue[Event] = asyncio.Queue()
        bus.on(WILDCARD, self._handle)

    async def _handle(self, event: Event) -> None:
        if event.thread_id == self._thread_id:
            self._queue.put_nowait(event)

    def close(self) -> None:
        self._bus.off(WILDCARD, self._handle)

    async def __aiter__(self) -> AsyncIterator[str]:
        try:
            while True:
                try:
                    event = await asyncio.wait_for(self._queue.get(), timeout=self._keepalive)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                yield format_sse(event)
                if event.type in TERMINAL_EVENTS:
                    return
        finally:
            self.close()


def create_app(
    run_manager: RunManager,
    checkpoints: CheckpointStore,
    artifacts: ArtifactStore,
    bus: EventBus,
    database: Database,
    namespace: str = "",
    lifespan: Any | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""

    async def start_run(request: Request) -> JSONResponse:
        """POST /threads/{thread_id}/runs - Start a run."""
        thread_id = request.path_params["thread_id"]
        try:
            body = await request.json()
        except Exception:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        if not isinstance(body, dict):
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)

        message = body.get("message")
        if not message:
            return JSONResponse({"error": "Missing required field: message"}, status_code=400)

        checkpoint_id = body.get("checkpoint_id")
        if checkpoint_id is not None:
            saved = await checkpoints.get(thread_id, namespace, checkpoint_id)
            if saved is None:
                return JSONResponse({"error": f"Checkpoint {checkpoint_id} not found"}, status_code=404)

        try:
            run_manager.start_run(
                thread_id,
                message,
                context=body.get("context"),
                checkpoint_id=checkpoint_id,
                recursion_limit=body.get("recursion_limit"),
            )
        except (ValueError, ValidationError) as e:
            return JSONResponse({"error": str(e)}, status_code=400)

        return JSONResponse({"status": "started", "thread_id": thread_id}, status_code=202)

    async def run_status(request: Request) -> JSONResponse:
        """GET /threads/{thread_id}/runs - Run status."""
        thread_id = request.path_params["thread_id"]
        return JSONResponse({"thread_id": thread_id, "running": run_manager.is_running(thread_id)})

    async def stop_run(request: Request) -> JSONResponse:
        """DELETE /threads/{thread_id}/runs - Stop the active run."""
        thread_id = request.path_params["thread_id"]
        return JSONResponse({"thread_id": thread_id, "stopped": run_manager.stop_run(thread_id)})

    async def stream_events(request: Request) -> StreamingResponse:
        """GET /threads/{thread_id}/events - SSE stream until done/error."""
        stream = ThreadEventStream(bus, request.path_params["thread_id"])
        return StreamingResponse(
            stream,
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
            },
        )

    async def list_checkpoints(request: Request) -> JSONResponse:
        """GET /threads/{thread_id}/checkpoints - Checkpoint history."""
        thread_id = request.path_params["thread_id"]
        params = request.query_params
        try:
            limit = int(params["limit"]) if "limit" in params else None
        except ValueError:
            return JSONResponse({"error": "limit must be an integer"}, status_code=400)
        try:
            rows = await checkpoints.list(
                thread_id,
                namespace=params.get("namespace"),
                before=params.get("before"),
                limit=limit,
            )
        except Exception as e:
            logger.error("List checkpoints error: %s", e)
            return JSONResponse({"error": str(e)}, status_code=500)
        return JSONResponse({
            "checkpoints": [row.to_dict() for row in rows],
            "total": len(rows),
        })

    async def latest_checkpoint(request: Request) -> JSONResponse:
        """GET /threads/{thread_id}/checkpoints/latest - Latest checkpoint."""
        thread_id = request.path_params["thread_id"]
        saved = await checkpoints.get(thread_id, request.query_params.get("namespace", namespace))
        if saved is None:
            return JSONResponse({"error": f"No checkpoints for thread {thread_id}"}, status_code=404)
        return JSONResponse(saved.to_dict())

    async def list_artifacts(request: Request) -> JSONResponse:
        """GET /threads/{thread_id}/artifacts - Artifacts of the thread."""
        thread_id = request.path_params["thread_id"]
        items = await artifacts.list_artifacts(thread_id)
        return JSONResponse({
            "artifacts": [a.model_dump(mode="json") for a in items],
            "total": len(items),
        })

    async def delete_thread(request: Request) -> JSONResponse:
        """DELETE /threads/{thread_id} - Delete all state for a thread."""
        thread_id = request.path_params["thread_id"]
        try:
            await run_manager.delete_thread(thread_id)
            removed = await artifacts.delete_thread(thread_id)
        except Exception as e:
            logger.error("Delete thread error: %s", e)
            return JSONResponse({"error": str(e)}, status_code=500)
        return JSONResponse({"status": "deleted", "thread_id": thread_id, "artifacts_removed": removed})

    async def health(request: Request) -> JSONResponse:
        """GET /health - Health check."""
        try:
            async with database.session() as session:
                await session.execute(text("SELECT 1"))
            return JSONResponse({"status": "healthy"})
        except Exception as e:
            return JSONResponse({"status": "unhealthy", "error": str(e)}, status_code=503)

    routes = [
        Route("/threads/{thread_id}/runs", start_run, methods=["POST"]),
        Route("/threads/{thread_id}/runs", run_status, methods=["GET"]),
        Route("/threads/{thread_id}/runs", stop_run, methods=["DELETE"]),
        Route("/threads/{thread_id}/events", stream_events),
        Route("/threads/{thread_id}/checkpoints", list_checkpoints),
        Route("/threads/{thread_id}/checkpoints/latest", latest_checkpoint),
        Route("/threads/{thread_id}/artifacts", list_artifacts),
        Route("/threads/{thread_id}", delete_thread, methods=["DELETE"]),
        Route("/health", health),
    ]

    kwargs: dict[str, Any] = {"routes": routes}
    if lifespan is not None:
        kwargs["lifespan"] = lifespan
    return Starlette(**kwargs)
