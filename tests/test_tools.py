"""Tests for conjure/agent/tools.py -- ToolDispatcher and ToolInvoker.

Part 1: ToolDispatcher unit tests verify registration, dispatch, unknown
tool handling, error capture and tool definitions output.

Part 2: ToolInvoker tests cover error payloads, ordering, cancellation
between calls and the artifact refresh after a batch.
"""

import json
from unittest.mock import AsyncMock

import pytest

from conjure.agent.cancellation import CancelToken, RunCancelled
from conjure.agent.messages import ToolCall
from conjure.agent.state import Artifact
from conjure.agent.tools import ToolDispatcher, ToolInvoker, current_thread_id

_SCHEMA = {"type": "object", "description": "Inspect the DOM", "properties": {"depth": {"type": "integer"}}}


class FakeArtifacts:
    def __init__(self, items=None) -> None:
        self.items = items or []
        self.calls: list[str] = []

    async def list_artifacts(self, thread_id):
        self.calls.append(thread_id)
        return list(self.items)


# ---------------------------------------------------------------------------
# ToolDispatcher
# ---------------------------------------------------------------------------


class TestToolDispatcher:
    @pytest.mark.asyncio
    async def test_dispatch_calls_handler_with_args(self):
        dispatcher = ToolDispatcher()
        handler = AsyncMock(return_value="ok")
        dispatcher.register("inspect_dom", handler, _SCHEMA)

        text, is_error = await dispatcher.dispatch("inspect_dom", {"depth": 3})

        assert (text, is_error) == ("ok", False)
        handler.assert_awaited_once_with(depth=3)

    @pytest.mark.asyncio
    async def test_unknown_tool(self):
        text, is_error = await ToolDispatcher().dispatch("nope", {})
        assert is_error is True
        assert text == "Unknown tool: nope"

    @pytest.mark.asyncio
    async def test_handler_exception_captured(self):
        dispatcher = ToolDispatcher()
        dispatcher.register("inspect_dom", AsyncMock(side_effect=RuntimeError("Tab not found")), _SCHEMA)
        text, is_error = await dispatcher.dispatch("inspect_dom", {})
        assert (text, is_error) == ("Tab not found", True)

    @pytest.mark.asyncio
    async def test_bad_arguments_are_an_error(self):
        dispatcher = ToolDispatcher()

        async def handler(depth: int) -> str:
            return "ok"

        dispatcher.register("inspect_dom", handler, _SCHEMA)
        _, is_error = await dispatcher.dispatch("inspect_dom", {"bogus": 1})
        assert is_error is True

    @pytest.mark.asyncio
    async def test_sync_handler_and_json_result(self):
        dispatcher = ToolDispatcher()
        dispatcher.register("count", lambda: {"count": 2}, {"type": "object"})
        text, is_error = await dispatcher.dispatch("count", {})
        assert is_error is False
        assert json.loads(text) == {"count": 2}

    def test_tool_definitions(self):
        dispatcher = ToolDispatcher()
        dispatcher.register("inspect_dom", AsyncMock(), _SCHEMA)
        dispatcher.register("other", AsyncMock(), {"type": "object"}, description="Other tool")

        specs = dispatcher.tool_definitions()

        assert [s.name for s in specs] == ["inspect_dom", "other"]
        assert specs[0].description == "Inspect the DOM"
        assert specs[0].input_schema == _SCHEMA
        assert specs[1].description == "Other tool"
        assert "inspect_dom" in dispatcher


# ---------------------------------------------------------------------------
# ToolInvoker
# ---------------------------------------------------------------------------


class TestToolInvoker:
    @pytest.mark.asyncio
    async def test_error_payload_contains_message(self):
        dispatcher = ToolDispatcher()
        dispatcher.register("inspect_dom", AsyncMock(side_effect=RuntimeError("Tab not found")), _SCHEMA)
        invoker = ToolInvoker(dispatcher, FakeArtifacts())

        message = await invoker.invoke(ToolCall(id="c1", name="inspect_dom", args={"depth": 3}))

        assert message.is_error is True
        assert message.tool_call_id == "c1"
        assert message.name == "inspect_dom"
        assert json.loads(message.content) == {"error": "Tab not found"}

    @pytest.mark.asyncio
    async def test_unknown_tool_message(self):
        invoker = ToolInvoker(ToolDispatcher(), FakeArtifacts())
        message = await invoker.invoke(ToolCall(id="c1", name="missing"))
        assert json.loads(message.content) == {"error": "Unknown tool: missing"}

    @pytest.mark.asyncio
    async def test_invoke_all_preserves_order_and_refreshes(self):
        dispatcher = ToolDispatcher()
        dispatcher.register("echo", lambda value: value, {"type": "object"})
        artifact = Artifact(id="a1", thread_id="t1", type="css", name="x", code="")
        artifacts = FakeArtifacts([artifact])
        seen: list[str] = []

        async def on_result(call, message):
            seen.append(call.id)

        calls = [ToolCall(id=f"c{i}", name="echo", args={"value": str(i)}) for i in range(3)]
        batch = await ToolInvoker(dispatcher, artifacts).invoke_all("t1", calls, on_result=on_result)

        assert [m.tool_call_id for m in batch.messages] == ["c0", "c1", "c2"]
        assert [m.content for m in batch.messages] == ["0", "1", "2"]
        assert seen == ["c0", "c1", "c2"]
        assert batch.artifacts == [artifact]
        assert artifacts.calls == ["t1"]

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_batch(self):
        dispatcher = ToolDispatcher()
        dispatcher.register("ok", lambda: "fine", {"type": "object"})
        calls = [ToolCall(id="c1", name="missing"), ToolCall(id="c2", name="ok")]
        batch = await ToolInvoker(dispatcher, FakeArtifacts()).invoke_all("t1", calls)
        assert [m.is_error for m in batch.messages] == [True, False]

    @pytest.mark.asyncio
    async def test_cancel_mid_batch_discards_result(self):
        token = CancelToken()
        executed: list[str] = []

        def first():
            executed.append("first")
            token.cancel()
            return "late"

        dispatcher = ToolDispatcher()
        dispatcher.register("first", first, {"type": "object"})
        dispatcher.register("second", lambda: executed.append("second"), {"type": "object"})
        on_result = AsyncMock()

        with pytest.raises(RunCancelled):
            await ToolInvoker(dispatcher, FakeArtifacts()).invoke_all(
                "t1",
                [ToolCall(id="c1", name="first"), ToolCall(id="c2", name="second")],
                token=token,
                on_result=on_result,
            )

        assert executed == ["first"]
        on_result.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_thread_bound_during_calls(self):
        dispatcher = ToolDispatcher()
        dispatcher.register("whoami", current_thread_id, {"type": "object"})
        batch = await ToolInvoker(dispatcher, FakeArtifacts()).invoke_all("t42", [ToolCall(id="c1", name="whoami")])
        assert batch.messages[0].content == "t42"
        with pytest.raises(RuntimeError):
            current_thread_id()
