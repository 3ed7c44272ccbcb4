"""Execution graph: Planner -> Orchestrator -> ToolExecutor -> ... -> Done.

The state set is small and fixed, so the graph is an explicit dispatch loop
over Node rather than a compiled graph. Each node mutates the run's
ConversationState in place, writes a checkpoint, and returns the next node.

    PLANNER        model call without tools; output becomes state.plan
    ORCHESTRATOR   model call with the tool catalog; response appended
                   -> TOOL_EXECUTOR if it requested tools, else DONE
    TOOL_EXECUTOR  runs every requested call, appends the tool messages
                   -> PLANNER
    DONE           terminal

The recursion limit counts orchestrator visits within one run. When the
visit that reaches it still requests tools, those calls are answered with
error tool messages, a guidance message is appended, and the run ends.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

from conjure.agent.cancellation import CancelToken
from conjure.agent.messages import AssistantMessage, ToolCall, ToolMessage, dump_message
from conjure.agent.model import ChatModel
from conjure.agent.prompts import agent_system_prompt, planner_system_prompt
from conjure.agent.sanitize import sanitize_messages
from conjure.agent.state import ConversationState, merge_artifacts
from conjure.agent.tools import ArtifactSource, ToolInvoker
from conjure.storage.checkpoints import CheckpointStore

logger = logging.getLogger(__name__)

# Channel name for tool results recorded as pending writes
MESSAGES_CHANNEL = "messages"

# Sync, fire-and-forget: (event_type, data)
Emit = Callable[[str, dict[str, Any]], None]


class Node(str, Enum):
    PLANNER = "planner"
    ORCHESTRATOR = "orchestrator"
    TOOL_EXECUTOR = "tool_executor"
    DONE = "done"


@dataclass
class RunConfig:
    """Per-run settings plus the checkpoint cursor the graph advances."""

    thread_id: str
    namespace: str = ""
    recursion_limit: int = 50
    checkpoint_id: str | None = None  # latest checkpoint written by this run
    start_iteration: int = 0
    step: int = 0


def recursion_limit_message(tool_names: Sequence[str]) -> str:
    quoted = ", ".join(f'"{name}"' for name in tool_names)
    noun = "tool" if len(tool_names) == 1 else "tools"
    return (
        f"I reached the maximum iteration limit while trying to execute the {quoted} {noun}. "
        "You can try again or increase the recursion limit in settings."
    )


class ExecutionGraph:
    def __init__(
        self,
        model: ChatModel,
        invoker: ToolInvoker,
        store: CheckpointStore,
        artifacts: ArtifactSource,
    ) -> None:
        self._model = model
        self._invoker = invoker
        self._store = store
        self._artifacts = artifacts

    async def commit(
        self,
        state: ConversationState,
        config: RunConfig,
        token: CancelToken,
        source: str = "loop",
        node: str | None = None,
    ) -> str:
        """Write a checkpoint chained to the previous one and advance the cursor."""
        token.raise_if_cancelled()
        checkpoint_id = await self._store.put(
            config.thread_id,
            config.namespace,
            state.model_dump(mode="json"),
            metadata={"source": source, "step": config.step, "node": node},
            parent_checkpoint_id=config.checkpoint_id,
        )
        config.checkpoint_id = checkpoint_id
        config.step += 1
        return checkpoint_id

    async def run(
        self,
        state: ConversationState,
        config: RunConfig,
        token: CancelToken,
        emit: Emit,
    ) -> ConversationState:
        """Drive the loop from PLANNER until DONE. Raises RunCancelled if cancelled."""
        node = Node.PLANNER
        while node is not Node.DONE:
            token.raise_if_cancelled()
            logger.debug("Thread %s entering %s", config.thread_id, node.value)
            if node is Node.PLANNER:
                node = await self._planner(state, config, token, emit)
            elif node is Node.ORCHESTRATOR:
                node = await self._orchestrator(state, config, token, emit)
            elif node is Node.TOOL_EXECUTOR:
                node = await self._tool_executor(state, config, token, emit)
            else:
                raise ValueError(f"Unknown node: {node}")
        return state

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    async def _planner(
        self,
        state: ConversationState,
        config: RunConfig,
        token: CancelToken,
        emit: Emit,
    ) -> Node:
        emit("thinking", {"status": "start"})
        started = time.monotonic()

        prompt = planner_system_prompt(state.active_context, state.plan)
        token.raise_if_cancelled()
        response = await self._model.invoke(prompt, sanitize_messages(state.messages))
        token.raise_if_cancelled()

        state.plan = response.content
        await self.commit(state, config, token, node=Node.PLANNER.value)

        duration_ms = int((time.monotonic() - started) * 1000)
        emit("thinking", {"status": "done", "content": response.content, "duration_ms": duration_ms})
        return Node.ORCHESTRATOR

    async def _orchestrator(
        self,
        state: ConversationState,
        config: RunConfig,
        token: CancelToken,
        emit: Emit,
    ) -> Node:
        current = await self._artifacts.list_artifacts(config.thread_id)
        state.artifacts = merge_artifacts(state.artifacts, current)

        prompt = agent_system_prompt(state.active_context, state.plan, current)
        token.raise_if_cancelled()
        response = await self._model.invoke(
            prompt,
            sanitize_messages(state.messages),
            self._invoker.tool_specs(),
        )
        token.raise_if_cancelled()

        state.messages.append(response)
        state.iteration_count += 1
        await self.commit(state, config, token, node=Node.ORCHESTRATOR.value)

        if not response.tool_calls:
            if response.content:
                emit("response", {"content": response.content})
            return Node.DONE

        for call in response.tool_calls:
            emit("tool_call", {"id": call.id, "name": call.name, "args": call.args})

        visits = state.iteration_count - config.start_iteration
        if visits >= config.recursion_limit:
            await self._exhaust(state, config, token, emit, response.tool_calls)
            return Node.DONE
        return Node.TOOL_EXECUTOR

    async def _tool_executor(
        self,
        state: ConversationState,
        config: RunConfig,
        token: CancelToken,
        emit: Emit,
    ) -> Node:
        last = state.messages[-1] if state.messages else None
        if not isinstance(last, AssistantMessage) or not last.tool_calls:
            logger.warning("Tool executor reached without pending tool calls")
            return Node.PLANNER

        # Results are recorded against the orchestrator's checkpoint
        checkpoint_id = config.checkpoint_id

        async def record(call: ToolCall, message: ToolMessage) -> None:
            if checkpoint_id is not None:
                await self._store.put_writes(
                    config.thread_id,
                    config.namespace,
                    checkpoint_id,
                    [(MESSAGES_CHANNEL, dump_message(message))],
                    task_id=call.id,
                )
            emit(
                "tool_result",
                {
                    "id": call.id,
                    "name": call.name,
                    "result": message.content,
                    "is_error": message.is_error,
                },
            )

        batch = await self._invoker.invoke_all(config.thread_id, last.tool_calls, token, on_result=record)
        state.messages.extend(batch.messages)
        state.artifacts = merge_artifacts(state.artifacts, batch.artifacts)
        await self.commit(state, config, token, node=Node.TOOL_EXECUTOR.value)
        return Node.PLANNER

    async def _exhaust(
        self,
        state: ConversationState,
        config: RunConfig,
        token: CancelToken,
        emit: Emit,
        calls: Sequence[ToolCall],
    ) -> None:
        """Close out the unexecuted calls and explain the stop to the user."""
        names = list(dict.fromkeys(call.name for call in calls))
        logger.warning(
            "Thread %s hit recursion limit %d with pending tools %s",
            config.thread_id,
            config.recursion_limit,
            names,
        )
        for call in calls:
            state.messages.append(
                ToolMessage(
                    content=json.dumps({"error": "Not executed: recursion limit reached"}),
                    tool_call_id=call.id,
                    name=call.name,
                    is_error=True,
                )
            )
        text = recursion_limit_message(names)
        state.messages.append(AssistantMessage(content=text))
        await self.commit(state, config, token, source="limit", node=Node.ORCHESTRATOR.value)
        emit("response", {"content": text})
