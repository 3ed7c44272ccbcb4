"""Conversation state threaded through the execution graph.

ConversationState is serialized whole into every checkpoint. Field merge
rules:
- messages: append-only within a turn, never reordered
- plan: overwritten by each planner step
- artifacts: merge_artifacts (last write wins per id)
- active_context: replaced wholesale per run
- iteration_count: +1 per orchestrator visit, never reset
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from conjure.agent.messages import Message

ArtifactType = Literal["react-component", "js-script", "css", "background-worker"]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class CodeVersion(BaseModel):
    code: str
    timestamp: datetime = Field(default_factory=_utcnow)


class Artifact(BaseModel):
    """Latest snapshot of a generated artifact."""

    id: str
    thread_id: str
    type: ArtifactType
    name: str
    code: str
    code_versions: list[CodeVersion] = []
    element_xpath: str | None = None
    enabled: bool = True
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class PageContext(BaseModel):
    """Opaque page information handed to tools and prompts.

    Only url/title are read by the engine; anything else rides along.
    """

    model_config = ConfigDict(extra="allow")

    tab_id: int | None = None
    url: str | None = None
    title: str | None = None


class ConversationState(BaseModel):
    messages: list[Message] = []
    plan: str | None = None
    artifacts: dict[str, Artifact] = {}
    active_context: PageContext | None = None
    iteration_count: int = 0


def merge_artifacts(
    current: dict[str, Artifact],
    updates: Iterable[Artifact],
) -> dict[str, Artifact]:
    """Merge artifact snapshots by id.

    Existing ids are overwritten in place (keeping their position);
    new ids are appended in the order they arrive.
    """
    merged = dict(current)
    for artifact in updates:
        merged[artifact.id] = artifact
    return merged
