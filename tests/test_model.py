"""Tests for conjure/agent/model.py -- provider payloads, parsing and retry.

HTTP is served by httpx.MockTransport; no network calls are made.
"""

import json

import httpx
import pytest

from conjure.agent import model as model_module
from conjure.agent.messages import AssistantMessage, ToolCall, ToolMessage, UserMessage
from conjure.agent.model import (
    DEFAULT_MODELS,
    AnthropicChatModel,
    ModelCallError,
    OpenAIChatModel,
    create_chat_model,
    to_anthropic_messages,
    to_openai_messages,
)
from conjure.agent.tools import ToolSpec
from conjure.config import Settings

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

HISTORY = [
    UserMessage(content="inspect"),
    AssistantMessage(
        content="Looking.",
        tool_calls=[
            ToolCall(id="a", name="inspect_dom", args={"depth": 3}),
            ToolCall(id="b", name="think", args={}),
        ],
    ),
    ToolMessage(content='{"error": "Tab not found"}', tool_call_id="a", is_error=True),
    ToolMessage(content="ok", tool_call_id="b"),
]

SPEC = ToolSpec(name="inspect_dom", description="Inspect", input_schema={"type": "object"})


def _settings(**overrides) -> Settings:
    return Settings(_env_file=None, **overrides)


def _client(handler, base_url: str) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=base_url)


@pytest.fixture
def no_sleep(monkeypatch):
    delays: list[float] = []

    async def fake_sleep(delay):
        delays.append(delay)

    monkeypatch.setattr(model_module.asyncio, "sleep", fake_sleep)
    return delays


# ---------------------------------------------------------------------------
# Message conversion
# ---------------------------------------------------------------------------


class TestConversion:
    def test_anthropic_groups_tool_results(self):
        converted = to_anthropic_messages(HISTORY)

        assert [m["role"] for m in converted] == ["user", "assistant", "user"]
        assistant = converted[1]["content"]
        assert assistant[0] == {"type": "text", "text": "Looking."}
        assert assistant[1] == {"type": "tool_use", "id": "a", "name": "inspect_dom", "input": {"depth": 3}}
        results = converted[2]["content"]
        assert [r["tool_use_id"] for r in results] == ["a", "b"]
        assert results[0]["is_error"] is True

    def test_anthropic_results_not_merged_into_plain_user_text(self):
        converted = to_anthropic_messages([UserMessage(content="hi"), ToolMessage(content="x", tool_call_id="a")])
        assert len(converted) == 2

    def test_empty_assistant_reply_skipped(self):
        history = [
            UserMessage(content="Hi"),
            AssistantMessage(content=""),
            UserMessage(content="Still there?"),
        ]

        anthropic = to_anthropic_messages(history)
        openai = to_openai_messages(history)

        assert [m["role"] for m in anthropic] == ["user", "user"]
        assert all(m["content"] for m in anthropic)
        assert [m["role"] for m in openai] == ["user", "user"]

    def test_assistant_with_only_tool_calls_kept(self):
        history = [UserMessage(content="go"), AssistantMessage(tool_calls=[ToolCall(id="a", name="think")])]

        assert to_anthropic_messages(history)[1]["content"] == [
            {"type": "tool_use", "id": "a", "name": "think", "input": {}}
        ]
        assert to_openai_messages(history)[1]["content"] is None

    def test_openai_tool_role(self):
        converted = to_openai_messages(HISTORY)

        assert [m["role"] for m in converted] == ["user", "assistant", "tool", "tool"]
        call = converted[1]["tool_calls"][0]
        assert call["function"] == {"name": "inspect_dom", "arguments": json.dumps({"depth": 3})}
        assert converted[2] == {"role": "tool", "tool_call_id": "a", "content": '{"error": "Tab not found"}'}


# ---------------------------------------------------------------------------
# Anthropic
# ---------------------------------------------------------------------------


class TestAnthropicChatModel:
    @pytest.mark.asyncio
    async def test_invoke_parses_text_and_tool_use(self):
        captured: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/v1/messages"
            captured.append(json.loads(request.content))
            return httpx.Response(
                200,
                json={
                    "content": [
                        {"type": "text", "text": "Inspecting."},
                        {"type": "tool_use", "id": "toolu_1", "name": "inspect_dom", "input": {"depth": 3}},
                    ],
                    "stop_reason": "tool_use",
                },
            )

        async with _client(handler, "https://api.anthropic.com") as client:
            chat = AnthropicChatModel(_settings(), client=client)
            result = await chat.invoke("system", [UserMessage(content="hi")], [SPEC])

        assert result.content == "Inspecting."
        assert result.tool_calls == [ToolCall(id="toolu_1", name="inspect_dom", args={"depth": 3})]
        payload = captured[0]
        assert payload["model"] == DEFAULT_MODELS["anthropic"]
        assert payload["system"] == "system"
        assert payload["tools"] == [{"name": "inspect_dom", "description": "Inspect", "input_schema": {"type": "object"}}]

    @pytest.mark.asyncio
    async def test_no_tools_key_without_tools(self):
        captured: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            captured.append(json.loads(request.content))
            return httpx.Response(200, json={"content": [{"type": "text", "text": "plan"}]})

        async with _client(handler, "https://api.anthropic.com") as client:
            await AnthropicChatModel(_settings(model="claude-test"), client=client).invoke("s", [UserMessage(content="x")])

        assert "tools" not in captured[0]
        assert captured[0]["model"] == "claude-test"

    @pytest.mark.asyncio
    async def test_retries_once_on_overload(self, no_sleep):
        statuses = [529, 200]

        def handler(request: httpx.Request) -> httpx.Response:
            status = statuses.pop(0)
            if status != 200:
                return httpx.Response(
                    status,
                    json={"error": {"type": "overloaded_error", "message": "busy"}},
                    headers={"retry-after": "2"},
                )
            return httpx.Response(200, json={"content": [{"type": "text", "text": "ok"}]})

        async with _client(handler, "https://api.anthropic.com") as client:
            result = await AnthropicChatModel(_settings(), client=client).invoke("s", [UserMessage(content="x")])

        assert result.content == "ok"
        assert no_sleep == [2.0]

    @pytest.mark.asyncio
    async def test_second_failure_raises(self, no_sleep):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, json={"error": {"type": "api_error", "message": "boom"}})

        async with _client(handler, "https://api.anthropic.com") as client:
            with pytest.raises(ModelCallError, match="api_error - boom"):
                await AnthropicChatModel(_settings(), client=client).invoke("s", [UserMessage(content="x")])

        assert len(no_sleep) == 1

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self, no_sleep):
        calls: list[int] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(1)
            return httpx.Response(400, text="bad request")

        async with _client(handler, "https://api.anthropic.com") as client:
            with pytest.raises(ModelCallError, match="400"):
                await AnthropicChatModel(_settings(), client=client).invoke("s", [UserMessage(content="x")])

        assert calls == [1]
        assert no_sleep == []

    @pytest.mark.asyncio
    async def test_not_started(self):
        with pytest.raises(RuntimeError, match="start"):
            await AnthropicChatModel(_settings()).invoke("s", [UserMessage(content="x")])


# ---------------------------------------------------------------------------
# OpenAI
# ---------------------------------------------------------------------------


class TestOpenAIChatModel:
    @pytest.mark.asyncio
    async def test_invoke_parses_tool_calls(self):
        captured: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/v1/chat/completions"
            captured.append(json.loads(request.content))
            return httpx.Response(
                200,
                json={
                    "choices": [
                        {
                            "message": {
                                "content": None,
                                "tool_calls": [
                                    {
                                        "id": "call_1",
                                        "type": "function",
                                        "function": {"name": "inspect_dom", "arguments": '{"depth": 3}'},
                                    },
                                    {
                                        "id": "call_2",
                                        "type": "function",
                                        "function": {"name": "think", "arguments": "not json"},
                                    },
                                ],
                            }
                        }
                    ]
                },
            )

        async with _client(handler, "https://api.openai.com") as client:
            chat = OpenAIChatModel(_settings(provider="openai"), client=client)
            result = await chat.invoke("system", [UserMessage(content="hi")], [SPEC])

        assert result.content == ""
        assert result.tool_calls == [
            ToolCall(id="call_1", name="inspect_dom", args={"depth": 3}),
            ToolCall(id="call_2", name="think", args={}),
        ]
        payload = captured[0]
        assert payload["model"] == DEFAULT_MODELS["openai"]
        assert payload["messages"][0] == {"role": "system", "content": "system"}
        assert payload["tools"][0]["function"]["name"] == "inspect_dom"

    @pytest.mark.asyncio
    async def test_no_choices(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"choices": []})

        async with _client(handler, "https://api.openai.com") as client:
            with pytest.raises(ModelCallError):
                await OpenAIChatModel(_settings(provider="openai"), client=client).invoke("s", [])


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


class TestFactory:
    def test_picks_provider(self):
        assert isinstance(create_chat_model(_settings(provider="anthropic")), AnthropicChatModel)
        assert isinstance(create_chat_model(_settings(provider="openai")), OpenAIChatModel)

    @pytest.mark.asyncio
    async def test_start_and_close_own_client(self):
        chat = create_chat_model(_settings())
        await chat.start()
        try:
            assert chat._http is not None
        finally:
            await chat.close()
        assert chat._http is None
