"""Conversation message types.

Messages form a tagged union discriminated on ``role``:

- UserMessage: text from the person driving the thread
- AssistantMessage: model output, optionally requesting tool calls
- ToolMessage: the result of exactly one requested tool call

All three are pydantic models so a history round-trips through JSON
checkpoints without losing the variant.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter


class ToolCall(BaseModel):
    """A structured tool request embedded in an assistant message."""

    id: str
    name: str
    args: dict[str, Any] = {}


class UserMessage(BaseModel):
    role: Literal["user"] = "user"
    content: str


class AssistantMessage(BaseModel):
    role: Literal["assistant"] = "assistant"
    content: str = ""
    tool_calls: list[ToolCall] = []


class ToolMessage(BaseModel):
    role: Literal["tool"] = "tool"
    content: str
    tool_call_id: str
    name: str = ""
    is_error: bool = False


Message = Annotated[
    Union[UserMessage, AssistantMessage, ToolMessage],
    Field(discriminator="role"),
]

MESSAGE_ADAPTER: TypeAdapter[Message] = TypeAdapter(Message)


def load_message(payload: dict[str, Any]) -> Message:
    """Rebuild a message from its JSON form, picking the variant by role."""
    return MESSAGE_ADAPTER.validate_python(payload)


def dump_message(message: Message) -> dict[str, Any]:
    return message.model_dump(mode="json")
