"""Repair message histories left inconsistent by an interrupted run.

Providers reject a history where an assistant message requests tool calls
that are not all answered by the tool messages directly after it. A run
cancelled (or crashed) mid-batch leaves exactly that shape in its last
checkpoint, so every history is passed through sanitize_messages() before
it reaches the model.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from conjure.agent.messages import AssistantMessage, Message, ToolMessage, UserMessage

logger = logging.getLogger(__name__)


def _answered_ids(messages: Sequence[Message], start: int) -> set[str]:
    """Collect tool_call_ids from the contiguous tool messages at ``start``."""
    answered: set[str] = set()
    for message in messages[start:]:
        if not isinstance(message, ToolMessage):
            break
        answered.add(message.tool_call_id)
    return answered


def sanitize_messages(messages: Sequence[Message]) -> list[Message]:
    """Drop dangling tool-call requests and orphaned tool results.

    - An assistant message whose tool calls are not all answered by the
      tool messages immediately following it is dropped.
    - A tool message is kept only if an assistant message already kept
      in the output requested its tool_call_id.
    - Everything else passes through in order.

    Idempotent: sanitize_messages(sanitize_messages(m)) == sanitize_messages(m).
    """
    result: list[Message] = []
    kept_call_ids: set[str] = set()

    for index, message in enumerate(messages):
        if isinstance(message, AssistantMessage):
            if message.tool_calls:
                requested = {call.id for call in message.tool_calls}
                missing = requested - _answered_ids(messages, index + 1)
                if missing:
                    logger.info(
                        "Dropping assistant message with unanswered tool calls: %s",
                        sorted(missing),
                    )
                    continue
                kept_call_ids.update(requested)
            result.append(message)
        elif isinstance(message, ToolMessage):
            if message.tool_call_id not in kept_call_ids:
                logger.info("Dropping orphaned tool result: %s", message.tool_call_id)
                continue
            result.append(message)
        elif isinstance(message, UserMessage):
            result.append(message)
        else:
            raise TypeError(f"Unsupported message type: {type(message).__name__}")

    return result
