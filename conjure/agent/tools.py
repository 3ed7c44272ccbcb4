"""Tool registry and invoker for the execution graph.

Provides:
- ToolDispatcher: registers tool handlers with their JSON schemas and
  dispatches calls by name
- ToolInvoker: turns the tool calls of an assistant message into tool
  messages, one per call, then refreshes the artifact list

Failures never escape a single call. An unknown tool name or a handler
exception becomes a tool message with an error payload so the model can
read it and correct itself on the next turn.
"""

from __future__ import annotations

import inspect
import json
import logging
from collections.abc import Awaitable, Callable, Sequence
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Any, Protocol

from conjure.agent.cancellation import CancelToken
from conjure.agent.messages import ToolCall, ToolMessage
from conjure.agent.state import Artifact

logger = logging.getLogger(__name__)

ResultCallback = Callable[[ToolCall, ToolMessage], Awaitable[None]]

# Thread whose tool calls are executing in the current task
_CURRENT_THREAD: ContextVar[str | None] = ContextVar("current_thread", default=None)


def current_thread_id() -> str:
    """Thread id of the run executing the current tool call."""
    thread_id = _CURRENT_THREAD.get()
    if thread_id is None:
        raise RuntimeError("No thread bound: tool called outside a run")
    return thread_id


class ArtifactSource(Protocol):
    async def list_artifacts(self, thread_id: str) -> list[Artifact]: ...


@dataclass(frozen=True)
class ToolSpec:
    """Name, description and argument schema bound to the model."""

    name: str
    description: str
    input_schema: dict[str, Any]


@dataclass
class ToolBatch:
    messages: list[ToolMessage] = field(default_factory=list)
    artifacts: list[Artifact] = field(default_factory=list)


# ---------------------------------------------------------------------------
# ToolDispatcher
# ---------------------------------------------------------------------------


class ToolDispatcher:
    """Registers tool handlers and dispatches tool calls by name.

    Handlers are callables invoked with the call's arguments as **kwargs.
    They may be sync or async and return a string or any JSON-encodable
    object.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, Callable[..., Any]] = {}
        self._specs: dict[str, ToolSpec] = {}

    def register(
        self,
        name: str,
        handler: Callable[..., Any],
        schema: dict[str, Any],
        description: str = "",
    ) -> None:
        """Register a tool handler with its JSON schema."""
        self._handlers[name] = handler
        self._specs[name] = ToolSpec(
            name=name,
            description=description or schema.get("description", ""),
            input_schema=schema,
        )

    def __contains__(self, name: str) -> bool:
        return name in self._handlers

    async def dispatch(self, name: str, args: dict[str, Any]) -> tuple[str, bool]:
        """Dispatch a tool call and return (result_text, is_error)."""
        handler = self._handlers.get(name)
        if not handler:
            return f"Unknown tool: {name}", True
        try:
            result = handler(**args)
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            logger.exception("Tool dispatch error for %s", name)
            return str(e) or type(e).__name__, True
        if isinstance(result, str):
            return result, False
        return json.dumps(result, default=str), False

    def tool_definitions(self) -> list[ToolSpec]:
        return list(self._specs.values())


# ---------------------------------------------------------------------------
# ToolInvoker
# ---------------------------------------------------------------------------


class ToolInvoker:
    """Executes requested tool calls and reports the refreshed artifacts."""

    def __init__(self, dispatcher: ToolDispatcher, artifacts: ArtifactSource) -> None:
        self._dispatcher = dispatcher
        self._artifacts = artifacts

    def tool_specs(self) -> list[ToolSpec]:
        return self._dispatcher.tool_definitions()

    async def invoke(self, call: ToolCall) -> ToolMessage:
        """Run one call. Never raises; failures become error payloads."""
        logger.info("Executing tool %s (%s)", call.name, call.id)
        text, is_error = await self._dispatcher.dispatch(call.name, call.args)
        if is_error:
            logger.warning("Tool %s failed: %s", call.name, text[:200])
            text = json.dumps({"error": text})
        return ToolMessage(
            content=text,
            tool_call_id=call.id,
            name=call.name,
            is_error=is_error,
        )

    async def invoke_all(
        self,
        thread_id: str,
        calls: Sequence[ToolCall],
        token: CancelToken | None = None,
        on_result: ResultCallback | None = None,
    ) -> ToolBatch:
        """Run calls sequentially in request order.

        Cancellation is checked before each call and again once it returns,
        so the result of a call that finished after cancellation is dropped.
        """
        batch = ToolBatch()
        bound = _CURRENT_THREAD.set(thread_id)
        try:
            for call in calls:
                if token is not None:
                    token.raise_if_cancelled()
                message = await self.invoke(call)
                if token is not None:
                    token.raise_if_cancelled()
                batch.messages.append(message)
                if on_result is not None:
                    await on_result(call, message)
        finally:
            _CURRENT_THREAD.reset(bound)

        batch.artifacts = await self._artifacts.list_artifacts(thread_id)
        return batch
