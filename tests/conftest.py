"""Test fixtures: SQLite databases under tmp_path and scripted collaborators."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import pytest
import pytest_asyncio

from conjure.agent.graph import ExecutionGraph
from conjure.agent.messages import AssistantMessage, Message, ToolCall
from conjure.agent.prompts import PLANNER_SYSTEM_PROMPT
from conjure.agent.runner import RunManager
from conjure.agent.tools import ToolDispatcher, ToolInvoker, ToolSpec
from conjure.config import Settings
from conjure.events import Event
from conjure.storage.artifacts import ArtifactStore
from conjure.storage.checkpoints import CheckpointStore
from conjure.storage.database import Database

# ---------------------------------------------------------------------------
# Scripted chat model
# ---------------------------------------------------------------------------

Reply = AssistantMessage | Exception | Callable[[int], AssistantMessage]


@dataclass
class ModelCall:
    system_prompt: str
    messages: list[Message]
    tools: list[ToolSpec] | None


class ScriptedChatModel:
    """Returns canned planner and orchestrator replies, records every call.

    Planner calls are recognised by their system prompt. Orchestrator
    replies may be a message, an exception to raise, or a callable taking
    the orchestrator call index; once the script runs out, ``default`` is
    used. ``gate`` (if set) is awaited before every call.
    """

    def __init__(
        self,
        replies: list[Reply] | None = None,
        plans: list[str] | None = None,
        default: Reply | None = None,
    ) -> None:
        self.replies = list(replies or [])
        self.plans = list(plans or [])
        self.default = default or AssistantMessage(content="Done.")
        self.calls: list[ModelCall] = []
        self.orchestrator_calls = 0
        self.gate: asyncio.Event | None = None
        self.entered = asyncio.Event()

    @property
    def planner_calls(self) -> list[ModelCall]:
        return [c for c in self.calls if c.system_prompt.startswith(PLANNER_SYSTEM_PROMPT)]

    async def invoke(self, system_prompt, messages, tools=None) -> AssistantMessage:
        self.calls.append(ModelCall(system_prompt, list(messages), list(tools) if tools is not None else None))
        self.entered.set()
        if self.gate is not None:
            await self.gate.wait()

        if system_prompt.startswith(PLANNER_SYSTEM_PROMPT):
            return AssistantMessage(content=self.plans.pop(0) if self.plans else "plan")

        index = self.orchestrator_calls
        self.orchestrator_calls += 1
        reply = self.replies.pop(0) if self.replies else self.default
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            return reply(index)
        return reply


def tool_reply(name: str, args: dict[str, Any] | None = None, call_id: str = "call_1") -> AssistantMessage:
    return AssistantMessage(content="", tool_calls=[ToolCall(id=call_id, name=name, args=args or {})])


# ---------------------------------------------------------------------------
# Event sink
# ---------------------------------------------------------------------------


@dataclass
class RecordingSink:
    events: list[Event] = field(default_factory=list)

    def emit(self, event: Event) -> None:
        self.events.append(event)

    def types(self, thread_id: str | None = None) -> list[str]:
        return [e.type for e in self.events if thread_id is None or e.thread_id == thread_id]

    def of_type(self, event_type: str) -> list[Event]:
        return [e for e in self.events if e.type == event_type]


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'conjure.db'}",
    )


@pytest_asyncio.fixture
async def db(settings):
    database = Database(settings)
    await database.connect()
    yield database
    await database.disconnect()


@pytest.fixture
def checkpoints(db) -> CheckpointStore:
    return CheckpointStore(db)


@pytest.fixture
def artifacts(db) -> ArtifactStore:
    return ArtifactStore(db)


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def dispatcher() -> ToolDispatcher:
    return ToolDispatcher()


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


@dataclass
class Engine:
    model: ScriptedChatModel
    graph: ExecutionGraph
    manager: RunManager
    dispatcher: ToolDispatcher
    sink: RecordingSink


@pytest.fixture
def make_engine(settings, checkpoints, artifacts, sink, dispatcher):
    """Factory wiring a RunManager around a scripted model."""

    def _make(model: ScriptedChatModel, **overrides: Any) -> Engine:
        run_settings = settings.model_copy(update=overrides) if overrides else settings
        invoker = ToolInvoker(dispatcher, artifacts)
        graph = ExecutionGraph(model, invoker, checkpoints, artifacts)
        manager = RunManager(graph, checkpoints, artifacts, sink, run_settings)
        return Engine(model=model, graph=graph, manager=manager, dispatcher=dispatcher, sink=sink)

    return _make
