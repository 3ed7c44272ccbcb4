"""Language-model clients over direct httpx calls.

The engine only depends on the ChatModel protocol:

    invoke(system_prompt, messages, tools=None) -> AssistantMessage

Two implementations talk to provider HTTP APIs without an SDK:
- AnthropicChatModel: Messages API (/v1/messages)
- OpenAIChatModel: Chat Completions API (/v1/chat/completions)

Both retry once on 429/500/529 and on timeouts. Anything else surfaces
as ModelCallError and ends the run.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Sequence
from typing import Any, Protocol

import httpx

from conjure.agent.messages import AssistantMessage, Message, ToolCall, ToolMessage, UserMessage
from conjure.agent.tools import ToolSpec
from conjure.config import Settings

logger = logging.getLogger(__name__)

# Anthropic API version header
_API_VERSION = "2023-06-01"

DEFAULT_MODELS: dict[str, str] = {
    "anthropic": "claude-sonnet-4-20250514",
    "openai": "gpt-4o",
}

_RETRY_STATUSES = (429, 500, 529)


class ModelCallError(RuntimeError):
    """The provider could not produce a response."""


class ChatModel(Protocol):
    async def invoke(
        self,
        system_prompt: str,
        messages: Sequence[Message],
        tools: Sequence[ToolSpec] | None = None,
    ) -> AssistantMessage: ...


class HttpChatModel:
    """Shared httpx plumbing: client lifecycle, payload POST, retry."""

    provider = ""
    endpoint = ""

    def __init__(
        self,
        settings: Settings,
        model: str | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings
        self.model = model or settings.model or DEFAULT_MODELS[self.provider]
        self._http = client
        self._owns_client = client is None

    def _base_url(self) -> str:
        raise NotImplementedError

    def _headers(self) -> dict[str, str]:
        raise NotImplementedError

    def _build_payload(
        self,
        system_prompt: str,
        messages: Sequence[Message],
        tools: Sequence[ToolSpec] | None,
    ) -> dict[str, Any]:
        raise NotImplementedError

    def _parse_response(self, data: dict[str, Any]) -> AssistantMessage:
        raise NotImplementedError

    async def start(self) -> None:
        """Create the httpx client unless one was injected."""
        if self._http is not None:
            return
        settings = self._settings
        timeout = httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )
        limits = httpx.Limits(max_connections=10, max_keepalive_connections=5)
        self._http = httpx.AsyncClient(
            base_url=self._base_url(),
            headers=self._headers(),
            timeout=timeout,
            limits=limits,
        )
        logger.info("%s client initialized (model: %s)", self.provider, self.model)

    async def close(self) -> None:
        if self._http and self._owns_client:
            await self._http.aclose()
        self._http = None

    async def invoke(
        self,
        system_prompt: str,
        messages: Sequence[Message],
        tools: Sequence[ToolSpec] | None = None,
    ) -> AssistantMessage:
        payload = self._build_payload(system_prompt, messages, tools)
        data = await self._post(payload)
        return self._parse_response(data)

    async def _post(self, payload: dict[str, Any]) -> dict[str, Any]:
        """POST the payload with a single retry for 429/500/529 and timeouts."""
        if not self._http:
            raise RuntimeError("httpx client not initialized -- call start() first")

        last_error: Exception | None = None
        for attempt in range(2):  # initial + 1 retry
            try:
                response = await self._http.post(self.endpoint, json=payload)

                if response.status_code == 200:
                    return response.json()

                try:
                    body = response.json()
                    error = body.get("error", {}) if isinstance(body, dict) else body
                    if isinstance(error, dict):
                        error_type = error.get("type", "unknown")
                        error_msg = error.get("message", "unknown error")
                    else:
                        error_type, error_msg = "unknown", str(error)
                except ValueError:
                    error_type = "http_error"
                    error_msg = f"HTTP {response.status_code}: {response.text[:500]}"

                if response.status_code in _RETRY_STATUSES and attempt == 0:
                    retry_after = float(response.headers.get("retry-after", "1"))
                    retry_after = min(retry_after, 30.0)
                    logger.warning(
                        "%s API error %d (%s), retrying in %.1fs: %s",
                        self.provider,
                        response.status_code,
                        error_type,
                        retry_after,
                        error_msg,
                    )
                    await asyncio.sleep(retry_after)
                    continue

                last_error = ModelCallError(
                    f"{self.provider} API error ({response.status_code}): {error_type} - {error_msg}"
                )
                break

            except httpx.TimeoutException as e:
                last_error = ModelCallError(f"API request timed out: {e}")
                if attempt == 0:
                    logger.warning("%s API timeout, retrying: %s", self.provider, e)
                    await asyncio.sleep(1)
                    continue
            except httpx.HTTPError as e:
                last_error = ModelCallError(f"HTTP error: {e}")
                break  # Don't retry connection errors

        raise last_error or ModelCallError("API call failed with unknown error")


# ---------------------------------------------------------------------------
# Anthropic
# ---------------------------------------------------------------------------


class AnthropicChatModel(HttpChatModel):
    provider = "anthropic"
    endpoint = "/v1/messages"

    def _base_url(self) -> str:
        return self._settings.anthropic_base_url

    def _headers(self) -> dict[str, str]:
        headers = {
            "anthropic-version": _API_VERSION,
            "content-type": "application/json",
        }
        if self._settings.anthropic_api_key:
            headers["x-api-key"] = self._settings.anthropic_api_key
        else:
            logger.warning("ANTHROPIC_API_KEY is not set -- API calls will fail")
        return headers

    def _build_payload(
        self,
        system_prompt: str,
        messages: Sequence[Message],
        tools: Sequence[ToolSpec] | None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model,
            "max_tokens": self._settings.max_tokens,
            "system": system_prompt,
            "messages": to_anthropic_messages(messages),
        }
        if tools:
            payload["tools"] = [
                {
                    "name": tool.name,
                    "description": tool.description,
                    "input_schema": tool.input_schema,
                }
                for tool in tools
            ]
        return payload

    def _parse_response(self, data: dict[str, Any]) -> AssistantMessage:
        text_parts: list[str] = []
        tool_calls: list[ToolCall] = []
        for block in data.get("content", []):
            if block.get("type") == "text":
                text_parts.append(block["text"])
            elif block.get("type") == "tool_use":
                tool_calls.append(
                    ToolCall(id=block["id"], name=block["name"], args=block.get("input") or {})
                )
        return AssistantMessage(content="\n".join(text_parts), tool_calls=tool_calls)


def to_anthropic_messages(messages: Sequence[Message]) -> list[dict[str, Any]]:
    """Convert history to Anthropic format.

    Consecutive tool results are folded into a single user message of
    tool_result blocks, which is what the API expects after a multi-call
    assistant turn. Assistant messages with neither text nor tool calls are
    skipped: the API rejects empty assistant content.
    """
    converted: list[dict[str, Any]] = []
    for message in messages:
        if isinstance(message, UserMessage):
            converted.append({"role": "user", "content": message.content})
        elif isinstance(message, AssistantMessage):
            if not message.content and not message.tool_calls:
                continue
            blocks: list[dict[str, Any]] = []
            if message.content:
                blocks.append({"type": "text", "text": message.content})
            for call in message.tool_calls:
                blocks.append({
                    "type": "tool_use",
                    "id": call.id,
                    "name": call.name,
                    "input": call.args,
                })
            converted.append({"role": "assistant", "content": blocks or message.content})
        elif isinstance(message, ToolMessage):
            block = {
                "type": "tool_result",
                "tool_use_id": message.tool_call_id,
                "content": message.content,
                "is_error": message.is_error,
            }
            previous = converted[-1] if converted else None
            if (
                previous is not None
                and previous["role"] == "user"
                and isinstance(previous["content"], list)
            ):
                previous["content"].append(block)
            else:
                converted.append({"role": "user", "content": [block]})
    return converted


# ---------------------------------------------------------------------------
# OpenAI
# ---------------------------------------------------------------------------


class OpenAIChatModel(HttpChatModel):
    provider = "openai"
    endpoint = "/v1/chat/completions"

    def _base_url(self) -> str:
        return self._settings.openai_base_url

    def _headers(self) -> dict[str, str]:
        headers = {"content-type": "application/json"}
        if self._settings.openai_api_key:
            headers["authorization"] = f"Bearer {self._settings.openai_api_key}"
        else:
            logger.warning("OPENAI_API_KEY is not set -- API calls will fail")
        return headers

    def _build_payload(
        self,
        system_prompt: str,
        messages: Sequence[Message],
        tools: Sequence[ToolSpec] | None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model,
            "max_tokens": self._settings.max_tokens,
            "messages": [{"role": "system", "content": system_prompt}, *to_openai_messages(messages)],
        }
        if tools:
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": tool.name,
                        "description": tool.description,
                        "parameters": tool.input_schema,
                    },
                }
                for tool in tools
            ]
        return payload

    def _parse_response(self, data: dict[str, Any]) -> AssistantMessage:
        choices = data.get("choices") or []
        if not choices:
            raise ModelCallError("openai API returned no choices")
        message = choices[0].get("message", {})
        tool_calls: list[ToolCall] = []
        for call in message.get("tool_calls") or []:
            function = call.get("function", {})
            raw_args = function.get("arguments") or ""
            try:
                args = json.loads(raw_args) if raw_args else {}
            except json.JSONDecodeError:
                logger.warning("Unparseable arguments for tool %s", function.get("name"))
                args = {}
            tool_calls.append(ToolCall(id=call["id"], name=function.get("name", ""), args=args))
        return AssistantMessage(content=message.get("content") or "", tool_calls=tool_calls)


def to_openai_messages(messages: Sequence[Message]) -> list[dict[str, Any]]:
    converted: list[dict[str, Any]] = []
    for message in messages:
        if isinstance(message, UserMessage):
            converted.append({"role": "user", "content": message.content})
        elif isinstance(message, AssistantMessage):
            if not message.content and not message.tool_calls:
                continue
            entry: dict[str, Any] = {"role": "assistant", "content": message.content or None}
            if message.tool_calls:
                entry["tool_calls"] = [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {"name": call.name, "arguments": json.dumps(call.args)},
                    }
                    for call in message.tool_calls
                ]
            converted.append(entry)
        elif isinstance(message, ToolMessage):
            converted.append({
                "role": "tool",
                "tool_call_id": message.tool_call_id,
                "content": message.content,
            })
    return converted


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def create_chat_model(
    settings: Settings,
    client: httpx.AsyncClient | None = None,
) -> HttpChatModel:
    """Build the chat model selected by settings.provider."""
    if settings.provider == "anthropic":
        return AnthropicChatModel(settings, client=client)
    if settings.provider == "openai":
        return OpenAIChatModel(settings, client=client)
    raise ValueError(f"Unsupported AI provider: {settings.provider}")

