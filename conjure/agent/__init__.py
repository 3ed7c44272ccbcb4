"""Agent module -- orchestration engine for Conjure.

Public API: RunManager + ExecutionGraph, the message and state types they
exchange, and the tool registry. Built-in tools are registered from
conjure.agent.builtin_tools.
"""

from conjure.agent.cancellation import CancelToken, RunCancelled
from conjure.agent.graph import ExecutionGraph, Node, RunConfig
from conjure.agent.messages import AssistantMessage, Message, ToolCall, ToolMessage, UserMessage
from conjure.agent.model import ChatModel, ModelCallError, create_chat_model
from conjure.agent.runner import RunManager
from conjure.agent.sanitize import sanitize_messages
from conjure.agent.state import Artifact, ConversationState, PageContext, merge_artifacts
from conjure.agent.tools import ToolDispatcher, ToolInvoker, ToolSpec

__all__ = [
    "RunManager",
    "ExecutionGraph",
    "Node",
    "RunConfig",
    # Cancellation
    "CancelToken",
    "RunCancelled",
    # Messages
    "AssistantMessage",
    "Message",
    "ToolCall",
    "ToolMessage",
    "UserMessage",
    "sanitize_messages",
    # State
    "Artifact",
    "ConversationState",
    "PageContext",
    "merge_artifacts",
    # Collaborators
    "ChatModel",
    "ModelCallError",
    "create_chat_model",
    "ToolDispatcher",
    "ToolInvoker",
    "ToolSpec",
]
