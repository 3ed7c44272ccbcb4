"""Run manager -- one active run per thread, with cooperative cancellation.

start_run() replaces any run already active on the thread: the old run's
token is cancelled and the new run waits for the old task to unwind before
it loads state, so the two never write checkpoints for the same thread at
the same time.

A run moves through:
1. load the requested (or latest) checkpoint, or start fresh
2. replay tool results recorded as pending writes but not yet checkpointed
3. sanitize the history, append the user message, set the page context
4. write an "input" checkpoint
5. drive the execution graph, then emit done with the artifact list

Model failures and other unexpected exceptions end the run with an error
event. A cancelled run exits silently.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from conjure.agent.cancellation import CancelToken, RunCancelled
from conjure.agent.graph import MESSAGES_CHANNEL, ExecutionGraph, RunConfig
from conjure.agent.messages import AssistantMessage, Message, ToolMessage, UserMessage, load_message
from conjure.agent.sanitize import sanitize_messages
from conjure.agent.state import ConversationState, PageContext
from conjure.agent.tools import ArtifactSource
from conjure.config import Settings
from conjure.events import Event, EventSink
from conjure.storage.checkpoints import CheckpointStore, CheckpointTuple, PendingWrite

logger = logging.getLogger(__name__)


@dataclass
class ActiveRun:
    thread_id: str
    token: CancelToken
    task: asyncio.Task


def replay_pending_writes(messages: Sequence[Message], writes: Sequence[PendingWrite]) -> list[Message]:
    """Append tool results recorded after the checkpoint was written.

    Results are ordered by the last assistant message's tool calls; ones the
    history already contains, or that answer no call of that message, are
    skipped.
    """
    history = list(messages)
    pending: dict[str, ToolMessage] = {}
    for write in writes:
        if write.channel != MESSAGES_CHANNEL:
            continue
        message = load_message(write.value)
        if isinstance(message, ToolMessage):
            pending[message.tool_call_id] = message
    if not pending:
        return history

    last_assistant = next(
        (m for m in reversed(history) if isinstance(m, AssistantMessage) and m.tool_calls),
        None,
    )
    if last_assistant is None:
        return history

    answered = {m.tool_call_id for m in history if isinstance(m, ToolMessage)}
    for call in last_assistant.tool_calls:
        if call.id in pending and call.id not in answered:
            history.append(pending[call.id])
    return history


class RunManager:
    """Owns the thread_id -> active run map for one engine instance."""

    def __init__(
        self,
        graph: ExecutionGraph,
        store: CheckpointStore,
        artifacts: ArtifactSource,
        sink: EventSink,
        settings: Settings,
    ) -> None:
        self._graph = graph
        self._store = store
        self._artifacts = artifacts
        self._sink = sink
        self._settings = settings
        self._runs: dict[str, ActiveRun] = {}
        # Stopped runs still unwinding, so a later run on the thread can wait for them
        self._stopping: dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def start_run(
        self,
        thread_id: str,
        user_message: str,
        context: PageContext | dict[str, Any] | None = None,
        checkpoint_id: str | None = None,
        recursion_limit: int | None = None,
    ) -> asyncio.Task:
        """Start a run, cancelling any run already active on the thread."""
        limit = recursion_limit if recursion_limit is not None else self._settings.recursion_limit
        if limit < 1:
            raise ValueError("recursion_limit must be >= 1")
        if isinstance(context, dict):
            context = PageContext.model_validate(context)

        previous = self._runs.get(thread_id)
        if previous is not None:
            logger.info("Replacing active run on thread %s", thread_id)
            previous.token.cancel("replaced")
        previous_task = previous.task if previous is not None else self._stopping.get(thread_id)

        token = CancelToken()
        task = asyncio.create_task(
            self._run(
                thread_id,
                token,
                user_message,
                context,
                checkpoint_id,
                limit,
                previous_task,
            ),
            name=f"run-{thread_id}",
        )
        self._runs[thread_id] = ActiveRun(thread_id=thread_id, token=token, task=task)
        return task

    def stop_run(self, thread_id: str) -> bool:
        """Signal the thread's run to stop. Returns False if none was active."""
        run = self._runs.pop(thread_id, None)
        if run is None:
            return False
        run.token.cancel("stopped")
        self._track_stopping(thread_id, run.task)
        logger.info("Stop requested for thread %s", thread_id)
        return True

    def is_running(self, thread_id: str) -> bool:
        return thread_id in self._runs

    async def delete_thread(self, thread_id: str) -> None:
        """Stop any run on the thread, wait for it, then drop its checkpoints."""
        pending: set[asyncio.Task] = set()
        run = self._runs.pop(thread_id, None)
        if run is not None:
            run.token.cancel("thread deleted")
            pending.add(run.task)
        stopping = self._stopping.get(thread_id)
        if stopping is not None:
            pending.add(stopping)
        if pending:
            await asyncio.wait(pending)
        await self._store.delete_thread(thread_id)

    async def shutdown(self) -> None:
        """Cancel every active run and wait for all of them to exit."""
        runs = list(self._runs.values())
        for run in runs:
            run.token.cancel("shutdown")
        pending = {run.task for run in runs} | set(self._stopping.values())
        if pending:
            await asyncio.wait(pending)
        logger.info("Run manager stopped (%d runs cancelled)", len(runs))

    def _track_stopping(self, thread_id: str, task: asyncio.Task) -> None:
        self._stopping[thread_id] = task

        def _forget(done: asyncio.Task) -> None:
            if self._stopping.get(thread_id) is done:
                del self._stopping[thread_id]

        task.add_done_callback(_forget)

    # ------------------------------------------------------------------
    # Run body
    # ------------------------------------------------------------------

    async def _run(
        self,
        thread_id: str,
        token: CancelToken,
        user_message: str,
        context: PageContext | None,
        checkpoint_id: str | None,
        recursion_limit: int,
        previous: asyncio.Task | None,
    ) -> ConversationState | None:
        def emit(event_type: str, data: dict[str, Any]) -> None:
            if not token.cancelled:
                self._emit(event_type, thread_id, data)

        try:
            if previous is not None:
                await asyncio.wait({previous})
            token.raise_if_cancelled()

            state, config = await self._prepare(thread_id, user_message, context, checkpoint_id, recursion_limit)
            await self._graph.commit(state, config, token, source="input")
            await self._graph.run(state, config, token, emit)

            artifacts = await self._artifacts.list_artifacts(thread_id)
            emit("done", {"artifacts": [a.model_dump(mode="json") for a in artifacts]})
            return state

        except RunCancelled as e:
            logger.info("Run on thread %s cancelled (%s)", thread_id, e)
            return None
        except Exception as e:
            logger.exception("Run on thread %s failed", thread_id)
            emit("error", {"message": str(e) or type(e).__name__})
            return None
        finally:
            current = self._runs.get(thread_id)
            if current is not None and current.token is token:
                del self._runs[thread_id]

    async def _prepare(
        self,
        thread_id: str,
        user_message: str,
        context: PageContext | None,
        checkpoint_id: str | None,
        recursion_limit: int,
    ) -> tuple[ConversationState, RunConfig]:
        namespace = self._settings.checkpoint_namespace
        saved = await self._store.get(thread_id, namespace, checkpoint_id)
        if saved is None and checkpoint_id is not None:
            raise ValueError(f"Checkpoint {checkpoint_id} not found for thread {thread_id}")

        state = self._restore(saved)
        state.messages = sanitize_messages(state.messages)
        state.messages.append(UserMessage(content=user_message))
        state.active_context = context

        config = RunConfig(
            thread_id=thread_id,
            namespace=namespace,
            recursion_limit=recursion_limit,
            checkpoint_id=saved.checkpoint_id if saved else None,
            start_iteration=state.iteration_count,
            step=int(saved.metadata.get("step", -1)) + 1 if saved else 0,
        )
        return state, config

    @staticmethod
    def _restore(saved: CheckpointTuple | None) -> ConversationState:
        if saved is None:
            return ConversationState()
        state = ConversationState.model_validate(saved.checkpoint)
        if saved.pending_writes:
            state.messages = replay_pending_writes(state.messages, saved.pending_writes)
        return state

    def _emit(self, event_type: str, thread_id: str, data: dict[str, Any]) -> None:
        try:
            self._sink.emit(Event(type=event_type, thread_id=thread_id, data=data))
        except Exception:
            logger.warning("Failed to emit %s event for thread %s", event_type, thread_id, exc_info=True)
